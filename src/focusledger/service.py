"""
Ledger Service

Library-facing facade. Wires the reward engine, balance and staking
managers, role authority, settlement trigger and event bus on top of one
ledger store, and exposes the operations request handlers call.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, TypeVar, Union

from focusledger.activity import ActivityProvider, InMemoryActivityProvider
from focusledger.config import LedgerSettings
from focusledger.events.bus import (
    EVENT_BALANCE_SETTLED,
    EVENT_PENDING_CONFIRMED,
    EVENT_REWARD_CREDITED,
    EVENT_SPEND_DEBITED,
    EVENT_SPEND_REFUNDED,
    Event,
    EventBus,
    InMemoryEventBus,
)
from focusledger.exceptions import (
    ActionDeniedError,
    ConfirmationRequiredError,
    DuplicateIdempotencyKeyError,
)
from focusledger.governance.actions import ActionAuthorizationResult, ActionRegistry
from focusledger.governance.authority import InMemoryRoleProvider, RoleAuthority, RoleProvider
from focusledger.ledger.balance import BalanceManager, Clock, parse_amount
from focusledger.ledger.models import (
    Balance,
    LedgerEntry,
    LedgerEntryType,
    LedgerFilter,
    LedgerPage,
    ReconciliationReport,
    RevocationPolicy,
    Stake,
    StakeStatus,
)
from focusledger.ledger.settlement import SettlementTrigger
from focusledger.rewards.calculator import RewardBreakdown, RewardCalculator, StreakMilestone
from focusledger.rewards.events import EventNormalizer, RewardableEvent
from focusledger.rewards.spend import SpendKind, SpendPricer, SpendQuote
from focusledger.staking.manager import StakingManager
from focusledger.staking.tiers import StakeTierId
from focusledger.storage import AbstractLedgerStore, create_store

logger = logging.getLogger(__name__)

STREAK_BONUS_EVENT = "focus_streak_bonus"

T = TypeVar("T")
Executor = Callable[[], Union[Awaitable[T], T]]


class LedgerService:
    """
    Reward ledger and capability staking engine.

    Example:
        async with LedgerService.from_settings(LedgerSettings()) as ledger:
            breakdown = await ledger.submit_event(
                "u1", "focus_session", {"duration_minutes": 60, "mode": "learning"},
                idempotency_key="session-42",
            )
    """

    def __init__(
        self,
        store: AbstractLedgerStore,
        settings: Optional[LedgerSettings] = None,
        *,
        activity: Optional[ActivityProvider] = None,
        roles: Optional[RoleProvider] = None,
        registry: Optional[ActionRegistry] = None,
        bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or LedgerSettings()
        self.store = store
        self.bus = bus or InMemoryEventBus()
        self.activity = activity or InMemoryActivityProvider()

        self.normalizer = EventNormalizer(clock=clock)
        self.calculator = RewardCalculator(self.settings.rewards)
        self.pricer = SpendPricer(self.settings.spend)
        self.balances = BalanceManager(
            store,
            self.settings.settlement,
            max_retries=self.settings.store.max_retries,
            clock=clock,
        )
        self.staking = StakingManager(self.balances, self.settings.staking, bus=self.bus)
        self.authority = RoleAuthority(
            self.staking, roles or InMemoryRoleProvider(), registry or ActionRegistry()
        )
        self.settlement = SettlementTrigger(self.settings.settlement, bus=self.bus)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[LedgerSettings] = None,
        **kwargs: Any,
    ) -> "LedgerService":
        """Build a service with the store named in ``settings.store``."""
        settings = settings or LedgerSettings()
        return cls(create_store(settings.store), settings, **kwargs)

    async def connect(self) -> None:
        await self.store.connect()

    async def close(self) -> None:
        await self.store.disconnect()

    async def __aenter__(self) -> "LedgerService":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        self.bus.emit(Event(event_type=event_type, source="ledger", payload=payload))

    # Rewards

    async def submit_event(
        self,
        user_id: str,
        event_type: str,
        payload: Optional[Mapping[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        *,
        source_id: Optional[str] = None,
        occurred_at: Optional[Union[datetime, str]] = None,
        previous_streak: Optional[int] = None,
    ) -> RewardBreakdown:
        """Compute and credit the reward for one behavioral event.

        Exactly-once per ``(user_id, idempotency_key)``: a repeated key
        returns the breakdown recorded the first time and credits nothing.
        With *previous_streak*, a streak milestone reached since then is
        credited as a separate reward entry (see ``award_streak_milestone``).

        Raises:
            ValidationError: No idempotency key and no source id.
        """
        event = self.normalizer.normalize(
            {
                "event_type": event_type,
                "payload": payload if payload is not None else {},
                "source_id": source_id,
                "occurred_at": occurred_at,
            },
            idempotency_key=idempotency_key,
        )

        recorded = await self.store.get_entry(user_id, event.idempotency_key)
        if recorded is not None:
            logger.info("Duplicate event %s for %s; returning recorded reward", event.idempotency_key, user_id)
            return self._recorded_breakdown(user_id, recorded, event)

        streak = await self.activity.streak_days(user_id)
        sessions = await self.activity.sessions_this_week(user_id)
        breakdown = self.calculator.compute(event, streak, sessions)

        try:
            before, after = await self.balances.credit_pending(
                user_id,
                breakdown.credit_amount,
                idempotency_key=event.idempotency_key,
                reason="; ".join(breakdown.lines) or None,
                source_event_type=event.type_name,
                breakdown_snapshot=breakdown.model_dump(mode="json"),
                metadata={"occurred_at": event.occurred_at.isoformat()},
            )
        except DuplicateIdempotencyKeyError:
            # Lost a race with a concurrent submission of the same event.
            recorded = await self.store.get_entry(user_id, event.idempotency_key)
            logger.info("Concurrent duplicate event %s for %s", event.idempotency_key, user_id)
            return self._recorded_breakdown(user_id, recorded, event)

        logger.info(
            "Credited %s to %s for %s (key=%s)",
            breakdown.credit_amount, user_id, event.type_name, event.idempotency_key,
        )
        self._emit(
            EVENT_REWARD_CREDITED,
            {
                "user_id": user_id,
                "event_type": event.type_name,
                "idempotency_key": event.idempotency_key,
                "amount": str(breakdown.credit_amount),
                "pending": str(after.pending),
            },
        )
        self.settlement.observe(before.pending, after)
        if previous_streak is not None:
            await self.award_streak_milestone(user_id, previous_streak, streak)
        return breakdown

    async def award_streak_milestone(
        self, user_id: str, previous_streak: int, current_streak: int
    ) -> Optional[StreakMilestone]:
        """Credit the bonus for the highest streak milestone newly reached.

        The bonus is its own reward entry keyed by milestone and previous
        streak, so it never changes an event's breakdown and a replay
        credits nothing. Returns ``None`` when no milestone was crossed.
        """
        milestone = self.calculator.streak_milestone(previous_streak, current_streak)
        if milestone is None:
            return None

        try:
            before, after = await self.balances.credit_pending(
                user_id,
                milestone.bonus,
                idempotency_key=milestone.idempotency_key,
                reason=f"{milestone.milestone_days}-day streak milestone: +{milestone.bonus}",
                source_event_type=STREAK_BONUS_EVENT,
                metadata={
                    "streak_days": milestone.milestone_days,
                    "previous_streak": milestone.previous_streak,
                },
            )
        except DuplicateIdempotencyKeyError:
            logger.info(
                "Streak milestone %d already credited to %s", milestone.milestone_days, user_id
            )
            return milestone

        logger.info(
            "Streak milestone %d reached by %s; credited %s",
            milestone.milestone_days, user_id, milestone.bonus,
        )
        self._emit(
            EVENT_REWARD_CREDITED,
            {
                "user_id": user_id,
                "event_type": STREAK_BONUS_EVENT,
                "idempotency_key": milestone.idempotency_key,
                "amount": str(after.pending - before.pending),
                "pending": str(after.pending),
            },
        )
        self.settlement.observe(before.pending, after)
        return milestone

    @staticmethod
    def _recorded_breakdown(
        user_id: str, entry: Optional[LedgerEntry], event: RewardableEvent
    ) -> RewardBreakdown:
        if entry is not None and entry.event_type != LedgerEntryType.reward:
            logger.warning(
                "Reward key %s for %s is already used by a %s entry; nothing credited",
                event.idempotency_key, user_id, entry.event_type.value,
            )
        if entry is None or not entry.reward_breakdown_snapshot:
            return RewardBreakdown.zero(event, "Already recorded: +0")
        return RewardBreakdown.model_validate(entry.reward_breakdown_snapshot)

    # Balances

    async def get_balance(self, user_id: str) -> Balance:
        return await self.balances.get_balance(user_id)

    async def confirm_pending(self, user_id: str, amount: Any = None) -> Balance:
        """Move pending to available (all of it when *amount* is None)."""
        balance = await self.balances.confirm_pending(user_id, amount)
        self._emit(
            EVENT_PENDING_CONFIRMED,
            {"user_id": user_id, "available": str(balance.available), "pending": str(balance.pending)},
        )
        return balance

    async def settle_external(self, user_id: str, amount: Any = None) -> Balance:
        balance = await self.balances.settle_external(user_id, amount)
        self._emit(
            EVENT_BALANCE_SETTLED,
            {"user_id": user_id, "settled_external": str(balance.settled_external)},
        )
        return balance

    async def is_settlement_eligible(self, user_id: str) -> bool:
        return self.settlement.is_eligible(await self.balances.get_balance(user_id))

    async def sweep_settlements(self, user_ids: Optional[Sequence[str]] = None) -> list[str]:
        return await self.settlement.sweep(self.balances, user_ids)

    async def reconcile(self, user_id: str) -> ReconciliationReport:
        return await self.balances.reconcile(user_id)

    async def list_ledger(
        self,
        user_id: str,
        *,
        entry_types: Optional[Sequence[LedgerEntryType | str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
        cursor: Optional[int] = None,
    ) -> LedgerPage:
        """One page of a user's ledger in insertion order; pass ``next_cursor`` on."""
        filters = LedgerFilter(
            entry_types=[LedgerEntryType(t) for t in entry_types] if entry_types else None,
            since=since,
            until=until,
        )
        return await self.store.list_entries(user_id, filters, limit=limit, after_sequence=cursor)

    # Staking

    async def stake(self, user_id: str, tier: str | StakeTierId) -> Stake:
        return await self.staking.stake(user_id, tier)

    async def request_unstake(self, stake_id: str) -> Stake:
        return await self.staking.request_unstake(stake_id)

    async def complete_unstake(self, stake_id: str) -> Balance:
        return await self.staking.complete_unstake(stake_id)

    async def revoke(
        self,
        stake_id: str,
        reason: str,
        policy: Optional[RevocationPolicy | str] = None,
    ) -> Stake:
        return await self.staking.revoke(stake_id, reason, policy)

    async def list_stakes(
        self,
        user_id: str,
        status: Optional[StakeStatus | Sequence[StakeStatus]] = None,
    ) -> list[Stake]:
        return await self.staking.list_stakes(user_id, status)

    async def get_stake(self, stake_id: str) -> Stake:
        return await self.staking.get_stake(stake_id)

    # Actions

    async def check_action(self, user_id: str, action_id: str) -> ActionAuthorizationResult:
        return await self.authority.check_action(user_id, action_id)

    def quote_spend(
        self,
        kind: SpendKind | str,
        *,
        items: int = 0,
        hours: int = 1,
        base_cost: Any = Decimal("1"),
        available: Optional[Decimal] = None,
    ) -> SpendQuote:
        return self.pricer.quote(
            kind, available=available, items=items, hours=hours, base_cost=parse_amount(base_cost)
        )

    async def execute_paid_action(
        self,
        user_id: str,
        action_id: str,
        cost: Any,
        executor: Executor,
        *,
        idempotency_key: str,
        confirmed: bool = False,
        reason: Optional[str] = None,
    ) -> Any:
        """Authorize, charge, then run *executor*.

        If the executor raises or is cancelled, the charge is refunded under
        ``"<idempotency_key>:refund"`` and the executor's exception is
        re-raised. A refund that itself fails raises its own error, chained
        to the executor's.

        Raises:
            ActionDeniedError: The role may not run the action.
            ConfirmationRequiredError: Confirmation is needed and *confirmed* is False.
            InsufficientAvailableError: Available does not cover *cost*.
            DuplicateIdempotencyKeyError: This action was already paid for.
        """
        decision = await self.authority.check_action(user_id, action_id)
        if not decision.allowed:
            raise ActionDeniedError(decision)
        if decision.requires_confirmation and not confirmed:
            raise ConfirmationRequiredError(decision)

        amount = parse_amount(cost)
        await self.balances.debit(
            user_id,
            amount,
            reason or f"Paid action: {action_id}",
            idempotency_key=idempotency_key,
            metadata={"action_id": action_id},
        )
        self._emit(
            EVENT_SPEND_DEBITED,
            {"user_id": user_id, "action_id": action_id, "amount": str(amount)},
        )

        try:
            result = executor()
            if inspect.isawaitable(result):
                result = await result
        except BaseException as exc:
            # Cancellation included: the charge is refunded before anything propagates.
            logger.warning(
                "Paid action %s failed for %s (%s); refunding %s",
                action_id, user_id, type(exc).__name__, amount,
            )
            try:
                await asyncio.shield(self._refund_action(user_id, action_id, amount, idempotency_key))
            except Exception as refund_error:
                logger.error(
                    "Refund of %s to %s for action %s failed", amount, user_id, action_id,
                )
                raise refund_error from exc
            raise
        return result

    async def _refund_action(
        self, user_id: str, action_id: str, amount: Decimal, idempotency_key: str
    ) -> None:
        await self.balances.refund(
            user_id,
            amount,
            f"Refund for failed action: {action_id}",
            idempotency_key=f"{idempotency_key}:refund",
            metadata={"action_id": action_id},
        )
        self._emit(
            EVENT_SPEND_REFUNDED,
            {"user_id": user_id, "action_id": action_id, "amount": str(amount)},
        )
