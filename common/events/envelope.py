import uuid
from datetime import datetime
from typing import TypeVar

from msgspec import Struct, field

from common.clock import Clock, default_clock, utcnow
from common.errors import UnsupportedEventVersion, ValidationError

E = TypeVar("E", bound="Event")


def new_event_id() -> str:
    return str(uuid.uuid4())


class Event(Struct, frozen=True, kw_only=True, tag_field="type", tag=True, rename="camel"):
    """
    Header carried by every event.

    ``event_id`` is minted by the publisher and never changes afterwards.
    ``saga_id`` is minted once when the saga starts and copied verbatim into
    every later event of the same saga (see ``derive``).
    ``occurred_at`` always comes from the publishing participant's clock.
    ``metadata`` is for tracing/correlation only; nothing reads it.
    """
    saga_id: str
    event_id: str = field(default_factory=new_event_id)
    occurred_at: datetime = field(default_factory=utcnow)
    version: int = 1
    source: str | None = None
    metadata: dict[str, str] | None = None

    @property
    def event_type(self) -> str:
        return type(self).__name__

    def derive(self, event_cls: type[E], source: str, clock: Clock | None = None, **fields) -> E:
        """Build the next event of this saga, stamped by ``source`` at ``clock.now()``."""
        return event_cls(
            saga_id=self.saga_id,
            occurred_at=(clock or default_clock()).now(),
            source=source,
            metadata=self.metadata,
            **fields,
        )


# ------------------------------------------
# Version policy
# ------------------------------------------
# Schema versions only ever grow by adding fields, which decoding tolerates
# (unknown fields are ignored, missing ones take their defaults). When a
# producer ships a version whose meaning this consumer cannot honour, its
# first such version is registered here and anything from it onwards is
# rejected to the dead-letter topic.
INCOMPATIBLE_SINCE: dict[str, int] = {}


def check_version(event: Event) -> Event:
    if event.version < 1:
        raise ValidationError(f"{event.event_type} carries invalid version {event.version}", event.saga_id)
    cutoff = INCOMPATIBLE_SINCE.get(event.event_type)
    if cutoff is not None and event.version >= cutoff:
        raise UnsupportedEventVersion(event.event_type, event.version, event.saga_id)
    return event
