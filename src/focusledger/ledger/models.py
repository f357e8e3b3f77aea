"""
Ledger Data Model

Append-only ledger entries, per-user balance rows, capability stakes and the
delta/write records through which the store mutates them.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from focusledger.money import ZERO


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerEntryType(str, Enum):
    """Kinds of ledger entries."""

    reward = "reward"
    pending_confirmed = "pending_confirmed"
    spend = "spend"
    refund = "refund"
    settlement = "settlement"
    stake_locked = "stake_locked"
    stake_released = "stake_released"
    stake_revoked = "stake_revoked"


class LedgerEntry(BaseModel):
    """A single append-only ledger entry.

    ``signed_amount`` is positive when credit enters the liquid tiers
    (available + pending) and negative when it leaves them.
    """

    id: str = Field(default_factory=lambda: f"led_{uuid.uuid4().hex[:16]}")
    user_id: str
    event_type: LedgerEntryType
    source_event_type: Optional[str] = Field(
        default=None, description="Behavioral event type for reward entries"
    )
    reward_breakdown_snapshot: Optional[dict[str, Any]] = None
    signed_amount: Decimal
    idempotency_key: str = Field(..., min_length=1)
    reason: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)
    sequence: Optional[int] = Field(default=None, description="Assigned by the store")


class BalanceDelta(BaseModel):
    """Signed change to each balance column. The only way balances change."""

    available: Decimal = ZERO
    pending: Decimal = ZERO
    staked: Decimal = ZERO
    settled_external: Decimal = ZERO
    lifetime_earned: Decimal = ZERO
    total_spent: Decimal = ZERO

    @property
    def is_zero(self) -> bool:
        return all(
            value == 0
            for value in (
                self.available,
                self.pending,
                self.staked,
                self.settled_external,
                self.lifetime_earned,
                self.total_spent,
            )
        )


class Balance(BaseModel):
    """One balance row per user."""

    user_id: str
    available: Decimal = ZERO
    pending: Decimal = ZERO
    settled_external: Decimal = ZERO
    staked: Decimal = ZERO
    lifetime_earned: Decimal = ZERO
    total_spent: Decimal = ZERO
    version: int = 0
    updated_at: Optional[datetime] = None

    @property
    def liquid(self) -> Decimal:
        """Credit the ledger reconciles against (available + pending)."""
        return self.available + self.pending

    def with_delta(self, delta: BalanceDelta, updated_at: Optional[datetime] = None) -> "Balance":
        """Return the row after *delta*, with the version bumped."""
        return Balance(
            user_id=self.user_id,
            available=self.available + delta.available,
            pending=self.pending + delta.pending,
            settled_external=self.settled_external + delta.settled_external,
            staked=self.staked + delta.staked,
            lifetime_earned=self.lifetime_earned + delta.lifetime_earned,
            total_spent=self.total_spent + delta.total_spent,
            version=self.version + 1,
            updated_at=updated_at or _now(),
        )

    def violations(self) -> list[str]:
        """Names of columns that went negative."""
        return [
            name
            for name in ("available", "pending", "staked")
            if getattr(self, name) < 0
        ]


class StakeStatus(str, Enum):
    """Stake lifecycle states."""

    active = "active"
    unstaking = "unstaking"
    unstaked = "unstaked"
    revoked = "revoked"

    @property
    def is_terminal(self) -> bool:
        return self in (StakeStatus.unstaked, StakeStatus.revoked)


class RevocationPolicy(str, Enum):
    """What happens to staked funds when a stake is revoked."""

    forfeit = "forfeit"
    refund = "refund"


class Stake(BaseModel):
    """A capability stake instance."""

    id: str = Field(default_factory=lambda: f"stk_{uuid.uuid4().hex[:16]}")
    user_id: str
    tier: str
    amount: Decimal
    capability: str
    status: StakeStatus = StakeStatus.active
    created_at: datetime = Field(default_factory=_now)
    unlocks_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    refunded: Optional[bool] = None


class StakeWrite(BaseModel):
    """A stake insert (no expected statuses) or a guarded status transition."""

    stake: Stake
    expected_statuses: tuple[StakeStatus, ...] = ()

    @property
    def is_insert(self) -> bool:
        return not self.expected_statuses


class LedgerFilter(BaseModel):
    """Filters for ledger listings."""

    entry_types: Optional[list[LedgerEntryType]] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    def matches(self, entry: LedgerEntry) -> bool:
        if self.entry_types and entry.event_type not in self.entry_types:
            return False
        if self.since and entry.created_at < self.since:
            return False
        if self.until and entry.created_at >= self.until:
            return False
        return True


class LedgerPage(BaseModel):
    """One page of ledger entries; pass ``next_cursor`` to get the next."""

    entries: list[LedgerEntry] = Field(default_factory=list)
    next_cursor: Optional[int] = None


class ReconciliationReport(BaseModel):
    """Ledger sum versus balance for one user."""

    user_id: str
    ledger_total: Decimal
    balance_total: Decimal
    entry_count: int

    @property
    def balanced(self) -> bool:
        return self.ledger_total == self.balance_total

    @property
    def difference(self) -> Decimal:
        return self.balance_total - self.ledger_total
