from enum import Enum

from common.errors import InvalidSagaTransition


class SagaState(str, Enum):
    PENDING = "Pending"          # Order seen, reservation not decided yet
    RESERVED = "Reserved"        # Stock held for the order
    FAILED = "Failed"            # Never reserved (shortfall, timeout or early cancel)
    COMPENSATED = "Compensated"  # Was reserved, stock given back
    COMPLETED = "Completed"      # Was reserved, saga finished downstream

    def __str__(self):
        return self.value


# Every legal move. Anything missing here is a bug in the caller.
TRANSITIONS: dict[SagaState, frozenset[SagaState]] = {
    SagaState.PENDING: frozenset({SagaState.RESERVED, SagaState.FAILED}),
    SagaState.RESERVED: frozenset({SagaState.COMPENSATED, SagaState.COMPLETED}),
    SagaState.FAILED: frozenset(),
    SagaState.COMPENSATED: frozenset(),
    SagaState.COMPLETED: frozenset(),
}

# States after which no further local action is expected (deadline cleared).
CLOSED_STATES = frozenset({SagaState.FAILED, SagaState.COMPENSATED, SagaState.COMPLETED})


def can_transition(current: SagaState, target: SagaState) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(saga_id: str, current: SagaState, target: SagaState) -> SagaState:
    if not can_transition(current, target):
        raise InvalidSagaTransition(saga_id, current, target)
    return target


def is_closed(state: SagaState) -> bool:
    return state in CLOSED_STATES
