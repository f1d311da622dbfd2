from datetime import datetime
from decimal import Decimal
from typing import Annotated, Union

import msgspec
from msgspec import Meta, Struct, field

from common.errors import ValidationError
from common.events.envelope import Event, check_version

TOTAL_TOLERANCE = Decimal("0.01")

PositiveQuantity = Annotated[int, Meta(gt=0)]


class OrderLine(Struct, frozen=True, rename="camel"):
    # unit_price and product_name are snapshots taken when the order was
    # placed; later product edits never flow back into them.
    product_id: str
    quantity: PositiveQuantity
    unit_price: Decimal
    product_name: str = ""


class StockLine(Struct, frozen=True, rename="camel"):
    product_id: str
    quantity: PositiveQuantity


# ------------------------------------------
# Request / trigger events
# ------------------------------------------

class OrderCreated(Event, frozen=True, kw_only=True):
    order_id: str
    user_id: str
    items: Annotated[list[OrderLine], Meta(min_length=1)]
    total_amount: Decimal
    status: str = "Pending"
    shipping_address: str | None = None

    def validate(self) -> "OrderCreated":
        if not self.items:
            raise ValidationError(f"Order {self.order_id} has no items", self.saga_id)
        for line in self.items:
            if line.quantity <= 0:
                raise ValidationError(
                    f"Order {self.order_id} has non-positive quantity {line.quantity} for {line.product_id}",
                    self.saga_id,
                )
            if line.unit_price < 0:
                raise ValidationError(f"Order {self.order_id} has negative price for {line.product_id}", self.saga_id)
        expected = sum((line.unit_price * line.quantity for line in self.items), Decimal(0))
        if abs(expected - self.total_amount) > TOTAL_TOLERANCE:
            raise ValidationError(
                f"Order {self.order_id} total {self.total_amount} does not match line items sum {expected}",
                self.saga_id,
            )
        return self

    def demand(self) -> list[StockLine]:
        return [StockLine(product_id=line.product_id, quantity=line.quantity) for line in self.items]


class StockReleaseRequested(Event, frozen=True, kw_only=True):
    order_id: str
    items: list[StockLine] = field(default_factory=list)


class SagaTimedOut(Event, frozen=True, kw_only=True):
    order_id: str
    deadline: datetime | None = None


class SagaCompleted(Event, frozen=True, kw_only=True):
    order_id: str


# ------------------------------------------
# Outcome events
# ------------------------------------------

class StockReserved(Event, frozen=True, kw_only=True):
    order_id: str


class StockReservationFailed(Event, frozen=True, kw_only=True):
    order_id: str
    product_id: str | None = None
    product_ids: list[str] = field(default_factory=list)
    reason: str = ""


class StockReleased(Event, frozen=True, kw_only=True):
    order_id: str


AnyEvent = Union[
    OrderCreated,
    StockReserved,
    StockReservationFailed,
    StockReleaseRequested,
    StockReleased,
    SagaTimedOut,
    SagaCompleted,
]

EVENT_TYPES: dict[str, type[Event]] = {cls.__name__: cls for cls in AnyEvent.__args__}

_encoder = msgspec.json.Encoder()
_decoder = msgspec.json.Decoder(AnyEvent)


def encode_event(event: Event) -> bytes:
    return _encoder.encode(event)


def decode_event(data: bytes | str) -> Event:
    """Decode a wire payload; anything malformed surfaces as ValidationError."""
    try:
        event = _decoder.decode(data)
    except msgspec.ValidationError as e:
        raise ValidationError(f"Event rejected: {e}") from e
    except msgspec.DecodeError as e:
        raise ValidationError(f"Malformed event payload: {e}") from e
    return check_version(event)
