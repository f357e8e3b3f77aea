"""Centralized exception hierarchy for FocusLedger.

All FocusLedger exceptions inherit from FocusLedgerError. Each class carries
a ``retryable`` flag so callers at the boundary can tell "you don't have
enough balance" apart from "something went wrong, try again".
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from focusledger.governance.actions import ActionAuthorizationResult


class FocusLedgerError(Exception):
    """Base exception for all FocusLedger errors."""

    retryable: bool = False


class ValidationError(FocusLedgerError):
    """A request carried a malformed amount, identifier or payload."""


class StorageError(FocusLedgerError):
    """Errors related to storage backend operations."""

    retryable = True


# Insufficient funds


class InsufficientFundsError(FocusLedgerError):
    """A balance tier does not hold enough credit for the request."""

    tier: str = "available"

    def __init__(self, user_id: str, required: Decimal, available: Decimal) -> None:
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient {self.tier} balance for {user_id}: "
            f"required {required}, have {available}"
        )


class InsufficientAvailableError(InsufficientFundsError):
    """The available tier cannot cover a debit or stake."""

    tier = "available"


class InsufficientPendingError(InsufficientFundsError):
    """The pending tier cannot cover a confirmation."""

    tier = "pending"


# Conflicts


class ConflictError(FocusLedgerError):
    """Errors caused by concurrent or repeated requests."""


class DuplicateIdempotencyKeyError(ConflictError):
    """An entry with the same (user_id, idempotency_key) already exists.

    Callers should treat this as success: the original request was applied.
    """

    def __init__(self, user_id: str, idempotency_key: str) -> None:
        self.user_id = user_id
        self.idempotency_key = idempotency_key
        super().__init__(
            f"Idempotency key '{idempotency_key}' already recorded for {user_id}"
        )


class ConcurrencyConflictError(ConflictError):
    """Optimistic concurrency retries were exhausted."""

    retryable = True

    def __init__(self, user_id: str, attempts: int) -> None:
        self.user_id = user_id
        self.attempts = attempts
        super().__init__(
            f"Balance update for {user_id} conflicted {attempts} times; retry later"
        )


# Stake state machine


class StakeError(FocusLedgerError):
    """Errors related to capability stakes."""


class UnknownTierError(StakeError, ValidationError):
    """The requested stake tier is not configured."""


class StakeNotFoundError(StakeError):
    """No stake exists with the given id."""


class StakeStateError(StakeError):
    """A stake transition is not valid from the stake's current status."""


class NotActiveError(StakeStateError):
    """Unstaking was requested for a stake that is not active."""


class NotUnstakingError(StakeStateError):
    """Unstake completion was requested for a stake that is not unstaking."""


class CooldownNotElapsedError(StakeStateError):
    """Unstake completion was requested before the cooldown ended."""

    def __init__(self, stake_id: str, unlocks_at: datetime) -> None:
        self.stake_id = stake_id
        self.unlocks_at = unlocks_at
        super().__init__(
            f"Stake {stake_id} is cooling down until {unlocks_at.isoformat()}"
        )


class TierAlreadyActiveError(StakeStateError):
    """The user already holds an active stake for the tier."""

    def __init__(self, user_id: str, tier: str) -> None:
        self.user_id = user_id
        self.tier = tier
        super().__init__(f"{user_id} already has an active stake for {tier}")


# Authorization


class AuthorizationError(FocusLedgerError):
    """Errors raised when an autonomous action is not permitted to run."""

    def __init__(self, result: "ActionAuthorizationResult") -> None:
        self.result = result
        super().__init__(result.blocked_reason or f"Action '{result.action_id}' not permitted")


class ActionDeniedError(AuthorizationError):
    """The action is denied for the user's role."""


class ConfirmationRequiredError(AuthorizationError):
    """The action is allowed but must be confirmed by the user first."""


class SettlementError(FocusLedgerError):
    """A settlement request does not meet the settlement rules."""


__all__ = [
    "FocusLedgerError",
    "ValidationError",
    "StorageError",
    "InsufficientFundsError",
    "InsufficientAvailableError",
    "InsufficientPendingError",
    "ConflictError",
    "DuplicateIdempotencyKeyError",
    "ConcurrencyConflictError",
    "StakeError",
    "UnknownTierError",
    "StakeNotFoundError",
    "StakeStateError",
    "NotActiveError",
    "NotUnstakingError",
    "CooldownNotElapsedError",
    "TierAlreadyActiveError",
    "AuthorizationError",
    "ActionDeniedError",
    "ConfirmationRequiredError",
    "SettlementError",
]
