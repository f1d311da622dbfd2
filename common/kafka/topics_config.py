# ------------------------------------------
# One topic per event type
# ------------------------------------------
ORDER_CREATED_TOPIC             = "order.created"             # Starts the saga (published upstream)
STOCK_RESERVED_TOPIC            = "stock.reserved"            # Stock confirms the whole order is held
STOCK_RESERVATION_FAILED_TOPIC  = "stock.reservation-failed"  # Stock (or a downstream step) reports failure
STOCK_RELEASE_REQUESTED_TOPIC   = "stock.release-requested"   # Downstream asks Stock to compensate
STOCK_RELEASED_TOPIC            = "stock.released"            # Stock confirms compensation
SAGA_TIMED_OUT_TOPIC            = "saga.timed-out"            # Synthetic timeout signal
SAGA_COMPLETED_TOPIC            = "saga.completed"            # Last downstream step succeeded

DEAD_LETTER_SUFFIX = ".dead-letter"

TOPIC_BY_EVENT = {
    "OrderCreated":           ORDER_CREATED_TOPIC,
    "StockReserved":          STOCK_RESERVED_TOPIC,
    "StockReservationFailed": STOCK_RESERVATION_FAILED_TOPIC,
    "StockReleaseRequested":  STOCK_RELEASE_REQUESTED_TOPIC,
    "StockReleased":          STOCK_RELEASED_TOPIC,
    "SagaTimedOut":           SAGA_TIMED_OUT_TOPIC,
    "SagaCompleted":          SAGA_COMPLETED_TOPIC,
}

STOCK_SUBSCRIPTIONS = [
    ORDER_CREATED_TOPIC,
    STOCK_RESERVATION_FAILED_TOPIC,
    STOCK_RELEASE_REQUESTED_TOPIC,
    SAGA_TIMED_OUT_TOPIC,
    SAGA_COMPLETED_TOPIC,
]


def topic_for(event_type: str) -> str:
    return TOPIC_BY_EVENT[event_type]


def dead_letter_topic(topic: str) -> str:
    return f"{topic}{DEAD_LETTER_SUFFIX}"
