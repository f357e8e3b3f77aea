"""
Event bus for ledger signals.

In-process fan-out of post-commit signals (rewards credited, settlement
eligibility, stake transitions) with glob-style pattern matching.
"""

from __future__ import annotations

import fnmatch
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

logger = logging.getLogger(__name__)


# Standard event types
EVENT_REWARD_CREDITED = "reward.credited"
EVENT_PENDING_CONFIRMED = "balance.pending_confirmed"
EVENT_BALANCE_SETTLED = "balance.settled"
EVENT_SPEND_DEBITED = "spend.debited"
EVENT_SPEND_REFUNDED = "spend.refunded"
EVENT_SETTLEMENT_ELIGIBLE = "settlement.eligible"
EVENT_STAKE_LOCKED = "stake.locked"
EVENT_STAKE_UNSTAKING = "stake.unstaking"
EVENT_STAKE_RELEASED = "stake.released"
EVENT_STAKE_REVOKED = "stake.revoked"

ALL_EVENT_TYPES = [
    EVENT_REWARD_CREDITED,
    EVENT_PENDING_CONFIRMED,
    EVENT_BALANCE_SETTLED,
    EVENT_SPEND_DEBITED,
    EVENT_SPEND_REFUNDED,
    EVENT_SETTLEMENT_ELIGIBLE,
    EVENT_STAKE_LOCKED,
    EVENT_STAKE_UNSTAKING,
    EVENT_STAKE_RELEASED,
    EVENT_STAKE_REVOKED,
]


@dataclass(frozen=True)
class Event:
    """A ledger signal, emitted once the change behind it has committed."""

    event_type: str
    source: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:16]}")

    @property
    def user_id(self) -> Optional[str]:
        return self.payload.get("user_id")

    def matches(self, pattern: str) -> bool:
        return fnmatch.fnmatchcase(self.event_type, pattern)


EventHandler = Callable[[Event], Any]


class EventBus(ABC):
    """Fan-out of ledger signals to handlers registered by event-type glob.

    Subclasses decide how one handler receives one event.
    """

    def __init__(self) -> None:
        self._handlers: list[tuple[str, EventHandler]] = []

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        """Call *handler* for every event whose type matches *pattern* (``stake.*``, ``*``)."""
        self._handlers.append((pattern, handler))

    def unsubscribe(self, handler: EventHandler) -> None:
        self._handlers = [(p, h) for p, h in self._handlers if h is not handler]

    def emit(self, event: Event) -> None:
        for pattern, handler in list(self._handlers):
            if event.matches(pattern):
                self._deliver(handler, event)

    @abstractmethod
    def _deliver(self, handler: EventHandler, event: Event) -> None:
        ...


class InMemoryEventBus(EventBus):
    """Delivers synchronously in the emitting call.

    The money has already moved when an event fires, so a failing handler
    is logged and the remaining handlers still run.
    """

    def _deliver(self, handler: EventHandler, event: Event) -> None:
        try:
            handler(event)
        except Exception:
            logger.exception(
                "Handler %r failed on %s (%s)", handler, event.event_type, event.event_id
            )
