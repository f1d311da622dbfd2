from datetime import datetime
from decimal import Decimal

from msgspec import Struct, field

from common.events.stock_events import StockLine
from common.saga.saga import SagaState


class Product(Struct, kw_only=True):
    id: str
    name: str
    price: Decimal
    description: str | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


class StockRecord(Struct, kw_only=True):
    product_id: str
    quantity: int
    updated_at: datetime
    version: int = 0


class ProductWithStock(Struct, kw_only=True):
    product: Product
    stock: StockRecord | None


class SagaRecord(Struct, kw_only=True):
    saga_id: str
    order_id: str
    state: SagaState
    items: list[StockLine] = field(default_factory=list)
    deadline: datetime | None = None
    reason: str | None = None
    updated_at: datetime | None = None
    version: int = 0


class ProcessedEvent(Struct, kw_only=True):
    event_id: str
    processed_at: datetime
    outcome: bytes | None = None
    published: bool = False


class Shortfall(Struct, frozen=True):
    product_id: str
    requested: int
    available: int


class ReservationResult(Struct, frozen=True):
    success: bool
    shortfalls: list[Shortfall] = []

    @property
    def insufficient_items(self) -> list[str]:
        return [s.product_id for s in self.shortfalls]
