import logging

from msgspec import msgpack, structs

from common.clock import Clock, SYSTEM_CLOCK
from common.db.util import optimistic_transaction, retry_db_call
from common.errors import ProductAlreadyExistsError, ProductNotFoundError, ValidationError
from stock.models import Product, ProductWithStock, ReservationResult, Shortfall, StockRecord

ACTIVE_PRODUCTS_KEY = "products:active"


def product_key(product_id: str) -> str:
    return f"product:{product_id}"


def stock_key(product_id: str) -> str:
    return f"stock:{product_id}"


def summarize(items) -> dict[str, int]:
    """Collapse lines into one demand per product, keeping first-seen order."""
    demand: dict[str, int] = {}
    for item in items:
        if item.quantity <= 0:
            raise ValidationError(f"Quantity for {item.product_id} must be positive, got {item.quantity}")
        demand[item.product_id] = demand.get(item.product_id, 0) + item.quantity
    return demand


class InventoryLedger:
    """
    Product catalogue and stock rows stored in Redis.

    Products and their stock live under separate keys and are only joined
    here. Stock quantities change exclusively through ``reserve`` and
    ``release`` (or the staged helpers the participants compose into their
    own transactions), never by assigning a quantity directly.
    """

    def __init__(self, db, clock: Clock = SYSTEM_CLOCK, logger=logging, max_attempts=5, backoff=0.05):
        self.db = db
        self.clock = clock
        self.logger = logger
        self.max_attempts = max_attempts
        self.backoff = backoff

    async def _transaction(self, keys, body):
        return await optimistic_transaction(
            self.db, keys, body, max_attempts=self.max_attempts, backoff=self.backoff, logger=self.logger)

    # ------------------------------------------
    # Staged building blocks (used inside WATCH/MULTI)
    # ------------------------------------------

    @staticmethod
    async def read_many(pipe, product_ids) -> dict[str, StockRecord | None]:
        product_ids = list(product_ids)
        if not product_ids:
            return {}
        raw_values = await pipe.mget([stock_key(pid) for pid in product_ids])
        return {
            pid: msgpack.decode(raw, type=StockRecord) if raw else None
            for pid, raw in zip(product_ids, raw_values)
        }

    def plan_reserve(self, demand: dict[str, int], records: dict[str, StockRecord | None]):
        """Return the reservation verdict and, on success, the records to write."""
        now = self.clock.now()
        shortfalls = []
        updated = []
        for product_id, requested in demand.items():
            record = records.get(product_id)
            available = record.quantity if record else 0
            if available < requested:
                shortfalls.append(Shortfall(product_id, requested, available))
                continue
            updated.append(structs.replace(
                record, quantity=available - requested, updated_at=now, version=record.version + 1))
        if shortfalls:
            return ReservationResult(success=False, shortfalls=shortfalls), []
        return ReservationResult(success=True), updated

    def plan_release(self, demand: dict[str, int], records: dict[str, StockRecord | None]) -> list[StockRecord]:
        now = self.clock.now()
        updated = []
        for product_id, quantity in demand.items():
            record = records.get(product_id)
            if record is None:
                self.logger.warning(f"Stock record for {product_id} missing during release; recreating it")
                updated.append(StockRecord(product_id=product_id, quantity=quantity, updated_at=now, version=1))
                continue
            updated.append(structs.replace(
                record, quantity=record.quantity + quantity, updated_at=now, version=record.version + 1))
        return updated

    @staticmethod
    def stage_writes(pipe, records: list[StockRecord]):
        for record in records:
            pipe.set(stock_key(record.product_id), msgpack.encode(record))

    # ------------------------------------------
    # Stock operations
    # ------------------------------------------

    async def get_stock(self, product_id: str) -> StockRecord | None:
        raw = await retry_db_call(self.db.get, stock_key(product_id))
        return msgpack.decode(raw, type=StockRecord) if raw else None

    async def reserve(self, items) -> ReservationResult:
        """Decrement every item or none of them."""
        demand = summarize(items)

        async def body(pipe):
            records = await self.read_many(pipe, demand)
            result, updated = self.plan_reserve(demand, records)
            if result.success:
                pipe.multi()
                self.stage_writes(pipe, updated)
            return result

        return await self._transaction([stock_key(pid) for pid in demand], body)

    async def release(self, items) -> None:
        """Increment every item back, as one unit."""
        demand = summarize(items)

        async def body(pipe):
            records = await self.read_many(pipe, demand)
            updated = self.plan_release(demand, records)
            pipe.multi()
            self.stage_writes(pipe, updated)

        await self._transaction([stock_key(pid) for pid in demand], body)

    # ------------------------------------------
    # Catalogue
    # ------------------------------------------

    async def add(self, product: Product, initial_stock: int = 0) -> Product:
        if initial_stock < 0:
            raise ValidationError(f"Initial stock for {product.id} cannot be negative")
        now = self.clock.now()
        product = structs.replace(product, created_at=product.created_at or now, updated_at=None)
        stock = StockRecord(product_id=product.id, quantity=initial_stock, updated_at=now, version=1)

        async def body(pipe):
            if await pipe.exists(product_key(product.id)):
                raise ProductAlreadyExistsError(product.id)
            pipe.multi()
            pipe.set(product_key(product.id), msgpack.encode(product))
            pipe.set(stock_key(product.id), msgpack.encode(stock))
            if product.is_active:
                pipe.sadd(ACTIVE_PRODUCTS_KEY, product.id)

        await self._transaction([product_key(product.id), stock_key(product.id)], body)
        self.logger.info(f"Product: {product.id} created with stock {initial_stock}")
        return product

    async def update(self, product: Product) -> Product:
        async def body(pipe):
            raw = await pipe.get(product_key(product.id))
            if not raw:
                raise ProductNotFoundError(product.id)
            stored = msgpack.decode(raw, type=Product)
            updated = structs.replace(product, created_at=stored.created_at, updated_at=self.clock.now())
            pipe.multi()
            pipe.set(product_key(product.id), msgpack.encode(updated))
            if updated.is_active:
                pipe.sadd(ACTIVE_PRODUCTS_KEY, product.id)
            else:
                pipe.srem(ACTIVE_PRODUCTS_KEY, product.id)
            return updated

        return await self._transaction([product_key(product.id)], body)

    async def soft_delete(self, product_id: str) -> None:
        async def body(pipe):
            raw = await pipe.get(product_key(product_id))
            if not raw:
                raise ProductNotFoundError(product_id)
            stored = msgpack.decode(raw, type=Product)
            pipe.multi()
            if stored.is_active:
                pipe.set(product_key(product_id), msgpack.encode(
                    structs.replace(stored, is_active=False, updated_at=self.clock.now())))
            pipe.srem(ACTIVE_PRODUCTS_KEY, product_id)

        await self._transaction([product_key(product_id)], body)
        self.logger.info(f"Product: {product_id} deactivated")

    async def exists(self, product_id: str) -> bool:
        return bool(await retry_db_call(self.db.exists, product_key(product_id)))

    async def get_by_id(self, product_id: str, with_stock: bool = False) -> Product | ProductWithStock | None:
        raw = await retry_db_call(self.db.get, product_key(product_id))
        if not raw:
            return None
        product = msgpack.decode(raw, type=Product)
        if not with_stock:
            return product
        return ProductWithStock(product=product, stock=await self.get_stock(product_id))

    async def list_active(self) -> list[Product]:
        members = await retry_db_call(self.db.smembers, ACTIVE_PRODUCTS_KEY)
        product_ids = sorted(m.decode() if isinstance(m, bytes) else m for m in members)
        if not product_ids:
            return []
        raw_values = await retry_db_call(self.db.mget, [product_key(pid) for pid in product_ids])
        products = [msgpack.decode(raw, type=Product) for raw in raw_values if raw]
        return [p for p in products if p.is_active]
