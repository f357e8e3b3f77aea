"""
Balance Manager

Maintains the per-user three-tier balance (pending, available,
settled-external) plus the staked column. Every change is a
``BalanceDelta`` applied through the store together with its ledger
entries, guarded by the balance row's version and retried on conflict.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence

from focusledger.config import SettlementRules
from focusledger.exceptions import (
    ConcurrencyConflictError,
    InsufficientAvailableError,
    InsufficientPendingError,
    SettlementError,
    ValidationError,
)
from focusledger.ledger.models import (
    Balance,
    BalanceDelta,
    LedgerEntry,
    LedgerEntryType,
    ReconciliationReport,
    StakeWrite,
)
from focusledger.money import AMOUNT_PLACES, ZERO, quantize_amount, to_decimal

if TYPE_CHECKING:
    from focusledger.storage.provider import AbstractLedgerStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Builds the change for one attempt from the balance read at that attempt.
ChangeBuilder = Callable[[Balance], tuple[BalanceDelta, Sequence[LedgerEntry], Sequence[StakeWrite]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_key(prefix: str) -> str:
    return f"{prefix}:{uuid.uuid4().hex}"


def parse_amount(value: Any, *, allow_zero: bool = False) -> Decimal:
    """Validate and round a caller-supplied amount.

    Raises:
        ValidationError: If the amount is not a finite number, is negative,
            or is zero when ``allow_zero`` is False.
    """
    try:
        amount = to_decimal(value)
    except ValueError as e:
        raise ValidationError(str(e)) from e
    amount = quantize_amount(amount)
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(f"Amount must be positive, got {value!r}")
    return amount


class BalanceManager:
    """
    Atomic balance transitions.

    Each operation reads the balance, validates the request against it,
    and hands the resulting delta to ``AbstractLedgerStore.apply`` with
    the version it read. A concurrent writer makes ``apply`` return
    ``None``; the operation then re-reads and re-validates, up to
    ``max_retries`` attempts.
    """

    def __init__(
        self,
        store: AbstractLedgerStore,
        settlement: Optional[SettlementRules] = None,
        *,
        max_retries: Optional[int] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settlement = settlement or SettlementRules()
        self.max_retries = max_retries or store.config.max_retries
        self._clock = clock or _utcnow

    def now(self) -> datetime:
        return self._clock()

    async def transact(self, user_id: str, build: ChangeBuilder) -> tuple[Balance, Balance]:
        """Apply the change produced by *build* under optimistic concurrency.

        *build* may raise (e.g. insufficient funds); that aborts the
        operation without touching the store.

        Returns:
            ``(before, after)`` balances of the attempt that committed.

        Raises:
            ConcurrencyConflictError: Every attempt lost the version race.
        """
        for attempt in range(1, self.max_retries + 1):
            before = await self.store.get_balance(user_id)
            delta, entries, stake_writes = build(before)
            after = await self.store.apply(
                user_id, delta, before.version, entries, stake_writes
            )
            if after is not None:
                return before, after
            logger.debug(
                "Balance conflict for %s at version %d (attempt %d/%d)",
                user_id, before.version, attempt, self.max_retries,
            )
        logger.warning("Giving up on balance update for %s after %d attempts", user_id, self.max_retries)
        raise ConcurrencyConflictError(user_id, self.max_retries)

    def make_entry(
        self,
        user_id: str,
        entry_type: LedgerEntryType,
        amount: Decimal,
        idempotency_key: str,
        reason: Optional[str] = None,
        **fields: Any,
    ) -> LedgerEntry:
        return LedgerEntry(
            user_id=user_id,
            event_type=entry_type,
            signed_amount=amount,
            idempotency_key=idempotency_key,
            reason=reason,
            created_at=self.now(),
            **fields,
        )

    # Tier transitions

    async def credit_pending(
        self,
        user_id: str,
        amount: Any,
        *,
        idempotency_key: str,
        reason: Optional[str] = None,
        source_event_type: Optional[str] = None,
        breakdown_snapshot: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> tuple[Balance, Balance]:
        """Credit a reward to pending and lifetime earnings.

        Zero-amount rewards are still recorded so the idempotency key is
        claimed and the outcome is auditable.

        Returns:
            ``(before, after)`` balances.
        """
        amount = parse_amount(amount, allow_zero=True)

        def build(current: Balance):
            delta = BalanceDelta(pending=amount, lifetime_earned=amount)
            entry = self.make_entry(
                user_id,
                LedgerEntryType.reward,
                amount,
                idempotency_key,
                reason,
                source_event_type=source_event_type,
                reward_breakdown_snapshot=breakdown_snapshot,
                metadata=metadata or {},
            )
            return delta, [entry], []

        before, after = await self.transact(user_id, build)
        logger.debug("Credited %s pending to %s (key=%s)", amount, user_id, idempotency_key)
        return before, after

    async def confirm_pending(
        self,
        user_id: str,
        amount: Any = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Balance:
        """Move pending credit to available. ``None`` confirms everything pending.

        Raises:
            InsufficientPendingError: Nothing pending, or less than *amount*.
        """
        requested = None if amount is None else parse_amount(amount)
        key = idempotency_key or _new_key("confirm")

        def build(current: Balance):
            moved = current.pending if requested is None else requested
            if moved <= 0 or current.pending < moved:
                raise InsufficientPendingError(
                    user_id, moved if moved > 0 else AMOUNT_PLACES, current.pending
                )
            delta = BalanceDelta(pending=-moved, available=moved)
            entry = self.make_entry(
                user_id,
                LedgerEntryType.pending_confirmed,
                ZERO,
                key,
                "Pending credit confirmed",
                metadata={"amount": str(moved)},
            )
            return delta, [entry], []

        before, after = await self.transact(user_id, build)
        logger.info(
            "Confirmed %s pending for %s", before.pending - after.pending, user_id
        )
        return after

    async def debit(
        self,
        user_id: str,
        amount: Any,
        reason: str,
        *,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Balance:
        """Spend from available.

        Raises:
            InsufficientAvailableError: Available is below *amount*.
        """
        amount = parse_amount(amount)
        key = idempotency_key or _new_key("spend")

        def build(current: Balance):
            if current.available < amount:
                raise InsufficientAvailableError(user_id, amount, current.available)
            delta = BalanceDelta(available=-amount, total_spent=amount)
            entry = self.make_entry(
                user_id, LedgerEntryType.spend, -amount, key, reason, metadata=metadata or {}
            )
            return delta, [entry], []

        _, after = await self.transact(user_id, build)
        logger.debug("Debited %s from %s: %s", amount, user_id, reason)
        return after

    async def refund(
        self,
        user_id: str,
        amount: Any,
        reason: str,
        *,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Balance:
        """Return credit to available, undoing a spend."""
        amount = parse_amount(amount)
        key = idempotency_key or _new_key("refund")

        def build(current: Balance):
            delta = BalanceDelta(
                available=amount,
                total_spent=-min(amount, current.total_spent),
            )
            entry = self.make_entry(
                user_id, LedgerEntryType.refund, amount, key, reason, metadata=metadata or {}
            )
            return delta, [entry], []

        _, after = await self.transact(user_id, build)
        logger.info("Refunded %s to %s: %s", amount, user_id, reason)
        return after

    async def settle_external(
        self,
        user_id: str,
        amount: Any = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Balance:
        """Move available credit to the settled-external tier.

        Only the balance-side bookkeeping happens here; the external
        transfer itself is someone else's job. ``None`` settles all of
        available.

        Raises:
            SettlementError: The amount is below the minimum settlement.
            InsufficientAvailableError: Available is below the amount.
        """
        requested = None if amount is None else parse_amount(amount)
        minimum = self.settlement.minimum_settlement
        key = idempotency_key or _new_key("settlement")

        def build(current: Balance):
            settled = current.available if requested is None else requested
            if settled < minimum:
                raise SettlementError(f"Minimum settlement is {minimum}, got {settled}")
            if current.available < settled:
                raise InsufficientAvailableError(user_id, settled, current.available)
            delta = BalanceDelta(available=-settled, settled_external=settled)
            entry = self.make_entry(
                user_id, LedgerEntryType.settlement, -settled, key, "External settlement"
            )
            return delta, [entry], []

        before, after = await self.transact(user_id, build)
        logger.info(
            "Settled %s externally for %s",
            after.settled_external - before.settled_external, user_id,
        )
        return after

    # Reads

    async def get_balance(self, user_id: str) -> Balance:
        """Current balance; all zeros for unknown users."""
        return await self.store.get_balance(user_id)

    async def reconcile(self, user_id: str) -> ReconciliationReport:
        """Compare the ledger sum with available + pending."""
        total, count = await self.store.ledger_total(user_id)
        balance = await self.store.get_balance(user_id)
        report = ReconciliationReport(
            user_id=user_id,
            ledger_total=total,
            balance_total=balance.liquid,
            entry_count=count,
        )
        if not report.balanced:
            logger.error(
                "Ledger for %s does not reconcile: ledger=%s balance=%s",
                user_id, total, balance.liquid,
            )
        return report
