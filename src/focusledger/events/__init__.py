"""Event bus for FocusLedger signals."""

from .bus import (
    ALL_EVENT_TYPES,
    EVENT_BALANCE_SETTLED,
    EVENT_PENDING_CONFIRMED,
    EVENT_REWARD_CREDITED,
    EVENT_SETTLEMENT_ELIGIBLE,
    EVENT_SPEND_DEBITED,
    EVENT_SPEND_REFUNDED,
    EVENT_STAKE_LOCKED,
    EVENT_STAKE_RELEASED,
    EVENT_STAKE_REVOKED,
    EVENT_STAKE_UNSTAKING,
    Event,
    EventBus,
    EventHandler,
    InMemoryEventBus,
)

__all__ = [
    "Event",
    "EventBus",
    "EventHandler",
    "InMemoryEventBus",
    "EVENT_REWARD_CREDITED",
    "EVENT_PENDING_CONFIRMED",
    "EVENT_BALANCE_SETTLED",
    "EVENT_SPEND_DEBITED",
    "EVENT_SPEND_REFUNDED",
    "EVENT_SETTLEMENT_ELIGIBLE",
    "EVENT_STAKE_LOCKED",
    "EVENT_STAKE_UNSTAKING",
    "EVENT_STAKE_RELEASED",
    "EVENT_STAKE_REVOKED",
    "ALL_EVENT_TYPES",
]
