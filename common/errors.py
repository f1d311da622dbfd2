# ------------------------------------------
# Error taxonomy shared by every participant
# ------------------------------------------
#
# ValidationError            -> never retried, dead-lettered
# ConcurrencyExhaustedError  -> optimistic retries used up, dead-lettered
# TransientTransportError    -> retried with backoff, dead-lettered on exhaustion
#
# Duplicate events and insufficient stock are outcomes, not errors.


class SagaError(Exception):
    def __init__(self, message: str, saga_id: str | None = None):
        super().__init__(message)
        self.saga_id = saga_id


class ValidationError(SagaError):
    pass


class UnsupportedEventVersion(ValidationError):
    def __init__(self, event_type: str, version: int, saga_id: str | None = None):
        super().__init__(f"{event_type} v{version} is not supported by this consumer", saga_id)
        self.event_type = event_type
        self.version = version


class ConcurrencyExhaustedError(SagaError):
    def __init__(self, keys, attempts: int):
        super().__init__(f"Concurrency conflict on {sorted(keys)} persisted after {attempts} attempts")
        self.keys = list(keys)
        self.attempts = attempts


class TransientTransportError(SagaError):
    pass


class InvalidSagaTransition(SagaError):
    def __init__(self, saga_id: str, current, target):
        super().__init__(f"Saga {saga_id} cannot move from {current} to {target}", saga_id)
        self.current = current
        self.target = target


class ProductNotFoundError(SagaError):
    def __init__(self, product_id: str):
        super().__init__(f"Product: {product_id} not found!")
        self.product_id = product_id


class ProductAlreadyExistsError(SagaError):
    def __init__(self, product_id: str):
        super().__init__(f"Product: {product_id} already exists!")
        self.product_id = product_id
