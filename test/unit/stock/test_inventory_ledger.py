import asyncio
import unittest
from decimal import Decimal

from msgspec import structs

from common.errors import ProductAlreadyExistsError, ProductNotFoundError, ValidationError
from common.events.stock_events import StockLine
from stock.models import Product, ProductWithStock

from saga_fixtures import make_stack, quantities, seed


def lines(**demand):
    return [StockLine(product_id=pid, quantity=qty) for pid, qty in demand.items()]


class TestInventoryCatalogue(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.stack = make_stack()
        self.ledger = self.stack.ledger

    async def asyncTearDown(self):
        await self.stack.db.aclose()

    async def test_add_and_get_with_stock(self):
        product = Product(id="P1", name="Lamp", price=Decimal("19.99"), description="desk lamp")

        await self.ledger.add(product, initial_stock=7)

        found = await self.ledger.get_by_id("P1", with_stock=True)
        self.assertIsInstance(found, ProductWithStock)
        self.assertEqual(found.product.name, "Lamp")
        self.assertEqual(found.product.price, Decimal("19.99"))
        self.assertEqual(found.product.created_at, self.stack.clock.now())
        self.assertEqual(found.stock.quantity, 7)
        self.assertTrue(await self.ledger.exists("P1"))
        self.assertFalse(await self.ledger.exists("P2"))
        self.assertIsNone(await self.ledger.get_by_id("P2"))

    async def test_add_twice_is_rejected(self):
        product = Product(id="P1", name="Lamp", price=Decimal("1"))
        await self.ledger.add(product, 1)

        with self.assertRaises(ProductAlreadyExistsError):
            await self.ledger.add(product, 5)
        self.assertEqual(await quantities(self.ledger, "P1"), {"P1": 1})

    async def test_negative_initial_stock_is_rejected(self):
        with self.assertRaises(ValidationError):
            await self.ledger.add(Product(id="P1", name="Lamp", price=Decimal("1")), -1)

    async def test_update_keeps_creation_time(self):
        created = await self.ledger.add(Product(id="P1", name="Lamp", price=Decimal("1")), 1)
        self.stack.clock.advance(60)

        updated = await self.ledger.update(structs.replace(created, name="Big lamp", created_at=None))

        self.assertEqual(updated.name, "Big lamp")
        self.assertEqual(updated.created_at, created.created_at)
        self.assertEqual(updated.updated_at, self.stack.clock.now())
        self.assertEqual((await self.ledger.get_by_id("P1")).name, "Big lamp")

    async def test_update_unknown_product(self):
        with self.assertRaises(ProductNotFoundError):
            await self.ledger.update(Product(id="nope", name="x", price=Decimal("1")))

    async def test_soft_delete_hides_from_listing_only(self):
        await seed(self.ledger, P2=1, P1=1)

        await self.ledger.soft_delete("P1")

        self.assertEqual([p.id for p in await self.ledger.list_active()], ["P2"])
        deleted = await self.ledger.get_by_id("P1")
        self.assertFalse(deleted.is_active)
        self.assertEqual(await quantities(self.ledger, "P1"), {"P1": 1})

    async def test_list_active_is_sorted(self):
        await seed(self.ledger, P3=1, P1=1, P2=1)

        self.assertEqual([p.id for p in await self.ledger.list_active()], ["P1", "P2", "P3"])

    async def test_soft_delete_unknown_product(self):
        with self.assertRaises(ProductNotFoundError):
            await self.ledger.soft_delete("nope")


class TestInventoryReservation(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.stack = make_stack()
        self.ledger = self.stack.ledger

    async def asyncTearDown(self):
        await self.stack.db.aclose()

    async def test_all_or_nothing(self):
        await seed(self.ledger, P1=5, P2=0)

        result = await self.ledger.reserve(lines(P1=2, P2=1))

        self.assertFalse(result.success)
        self.assertEqual(result.insufficient_items, ["P2"])
        self.assertEqual(result.shortfalls[0].available, 0)
        self.assertEqual(await quantities(self.ledger, "P1", "P2"), {"P1": 5, "P2": 0})

    async def test_duplicate_lines_are_summed(self):
        await seed(self.ledger, P1=3)

        result = await self.ledger.reserve([StockLine(product_id="P1", quantity=3),
                                            StockLine(product_id="P1", quantity=1)])

        self.assertFalse(result.success)
        self.assertEqual(result.shortfalls[0].requested, 4)
        self.assertEqual(await quantities(self.ledger, "P1"), {"P1": 3})

    async def test_reserve_then_release(self):
        await seed(self.ledger, P1=5, P2=3)

        result = await self.ledger.reserve(lines(P1=2, P2=1))
        self.assertTrue(result.success)
        self.assertEqual(await quantities(self.ledger, "P1", "P2"), {"P1": 3, "P2": 2})

        await self.ledger.release(lines(P1=2, P2=1))
        self.assertEqual(await quantities(self.ledger, "P1", "P2"), {"P1": 5, "P2": 3})

    async def test_every_write_bumps_version(self):
        await seed(self.ledger, P1=5)
        before = await self.ledger.get_stock("P1")

        await self.ledger.reserve(lines(P1=1))
        await self.ledger.release(lines(P1=1))

        after = await self.ledger.get_stock("P1")
        self.assertEqual(after.version, before.version + 2)

    async def test_non_positive_quantity_is_rejected(self):
        await seed(self.ledger, P1=5)

        with self.assertRaises(ValidationError):
            await self.ledger.reserve(lines(P1=0))
        with self.assertRaises(ValidationError):
            await self.ledger.release(lines(P1=-1))

    async def test_unknown_product_cannot_be_reserved(self):
        result = await self.ledger.reserve(lines(GHOST=1))

        self.assertFalse(result.success)
        self.assertEqual(result.insufficient_items, ["GHOST"])

    async def test_concurrent_reservations_never_go_negative(self):
        await seed(self.ledger, P1=3)
        self.ledger.max_attempts = 100

        results = await asyncio.gather(*(self.ledger.reserve(lines(P1=1)) for _ in range(8)))

        self.assertEqual(sum(r.success for r in results), 3)
        self.assertEqual(await quantities(self.ledger, "P1"), {"P1": 0})


if __name__ == '__main__':
    unittest.main()
