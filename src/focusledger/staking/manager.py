"""
Staking Manager

Locks available credit into capability stakes and releases it after a
withdrawal cooldown. Every transition runs through the balance manager so
the stake row, the balance and the ledger entry change together.

State machine::

    active -> unstaking -> unstaked
    active | unstaking -> revoked
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional, Sequence

from focusledger.config import StakingRules
from focusledger.events.bus import (
    EVENT_STAKE_LOCKED,
    EVENT_STAKE_RELEASED,
    EVENT_STAKE_REVOKED,
    EVENT_STAKE_UNSTAKING,
    Event,
    EventBus,
)
from focusledger.exceptions import (
    ConcurrencyConflictError,
    CooldownNotElapsedError,
    DuplicateIdempotencyKeyError,
    InsufficientAvailableError,
    NotActiveError,
    NotUnstakingError,
    StakeNotFoundError,
    StakeStateError,
    TierAlreadyActiveError,
)
from focusledger.ledger.balance import BalanceManager
from focusledger.ledger.models import (
    Balance,
    BalanceDelta,
    LedgerEntryType,
    RevocationPolicy,
    Stake,
    StakeStatus,
    StakeWrite,
)
from focusledger.money import ZERO
from focusledger.staking.tiers import StakeTierCatalog, StakeTierId

logger = logging.getLogger(__name__)


class StakingManager:
    """Stake lifecycle on top of a ``BalanceManager``."""

    def __init__(
        self,
        balances: BalanceManager,
        rules: Optional[StakingRules] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.balances = balances
        self.rules = rules or StakingRules()
        self.catalog = StakeTierCatalog(self.rules.tiers)
        self.bus = bus

    @property
    def store(self):
        return self.balances.store

    @property
    def cooldown(self) -> timedelta:
        return timedelta(days=self.rules.cooldown_days)

    def _emit(self, event_type: str, stake: Stake, **extra) -> None:
        if self.bus is None:
            return
        payload = {
            "stake_id": stake.id,
            "user_id": stake.user_id,
            "tier": stake.tier,
            "amount": str(stake.amount),
            "capability": stake.capability,
            "status": stake.status.value,
        }
        payload.update(extra)
        self.bus.emit(Event(event_type=event_type, source="staking", payload=payload))

    # Lifecycle

    async def stake(self, user_id: str, tier: str | StakeTierId) -> Stake:
        """Lock the tier's amount from available into a new active stake.

        Raises:
            UnknownTierError: The tier is not configured.
            TierAlreadyActiveError: The user already holds this tier.
            InsufficientAvailableError: Available is below the tier amount.
        """
        spec = self.catalog.get(tier)
        created: list[Stake] = []

        def build(current: Balance):
            if current.available < spec.amount:
                raise InsufficientAvailableError(user_id, spec.amount, current.available)
            now = self.balances.now()
            stake = Stake(
                user_id=user_id,
                tier=spec.tier_id,
                amount=spec.amount,
                capability=spec.capability,
                status=StakeStatus.active,
                created_at=now,
            )
            created[:] = [stake]
            entry = self.balances.make_entry(
                user_id,
                LedgerEntryType.stake_locked,
                -spec.amount,
                f"stake:{stake.id}:locked",
                f"Staked {spec.tier_id} ({spec.name or spec.capability})",
                metadata={"stake_id": stake.id, "tier": spec.tier_id},
            )
            delta = BalanceDelta(available=-spec.amount, staked=spec.amount)
            return delta, [entry], [StakeWrite(stake=stake)]

        # Fail fast before touching the balance; the store enforces it again.
        active = await self.store.list_stakes(user_id, [StakeStatus.active])
        if any(s.tier == spec.tier_id for s in active):
            raise TierAlreadyActiveError(user_id, spec.tier_id)

        await self.balances.transact(user_id, build)
        stake = created[0]
        logger.info(
            "User %s staked %s on %s (%s)", user_id, spec.amount, spec.tier_id, stake.id
        )
        self._emit(EVENT_STAKE_LOCKED, stake)
        return stake

    async def request_unstake(self, stake_id: str) -> Stake:
        """Start the withdrawal cooldown. The capability stops being granted now.

        Raises:
            StakeNotFoundError: No such stake.
            NotActiveError: The stake is not active.
        """
        existing = await self.get_stake(stake_id)
        if existing.status != StakeStatus.active:
            raise NotActiveError(f"Stake {stake_id} is {existing.status.value}, not active")

        updated: list[Stake] = []

        def build(current: Balance):
            stake = existing.model_copy(
                update={
                    "status": StakeStatus.unstaking,
                    "unlocks_at": self.balances.now() + self.cooldown,
                }
            )
            updated[:] = [stake]
            write = StakeWrite(stake=stake, expected_statuses=(StakeStatus.active,))
            return BalanceDelta(), [], [write]

        await self._transition(existing, build)
        stake = updated[0]
        logger.info(
            "Unstake requested for %s; unlocks at %s", stake_id, stake.unlocks_at.isoformat()
        )
        self._emit(EVENT_STAKE_UNSTAKING, stake, unlocks_at=stake.unlocks_at.isoformat())
        return stake

    async def complete_unstake(self, stake_id: str) -> Balance:
        """Release an unstaking stake whose cooldown has elapsed.

        Raises:
            StakeNotFoundError: No such stake.
            NotUnstakingError: The stake is not unstaking.
            CooldownNotElapsedError: ``unlocks_at`` is still in the future.
        """
        existing = await self.get_stake(stake_id)
        if existing.status != StakeStatus.unstaking:
            raise NotUnstakingError(
                f"Stake {stake_id} is {existing.status.value}, not unstaking"
            )
        if existing.unlocks_at is not None and self.balances.now() < existing.unlocks_at:
            raise CooldownNotElapsedError(stake_id, existing.unlocks_at)

        def build(current: Balance):
            stake = existing.model_copy(update={"status": StakeStatus.unstaked})
            entry = self.balances.make_entry(
                existing.user_id,
                LedgerEntryType.stake_released,
                existing.amount,
                f"stake:{stake_id}:released",
                f"Unstaked {existing.tier}",
                metadata={"stake_id": stake_id, "tier": existing.tier},
            )
            delta = BalanceDelta(available=existing.amount, staked=-existing.amount)
            write = StakeWrite(stake=stake, expected_statuses=(StakeStatus.unstaking,))
            return delta, [entry], [write]

        balance = await self._transition(existing, build)
        logger.info("Stake %s released %s to %s", stake_id, existing.amount, existing.user_id)
        self._emit(
            EVENT_STAKE_RELEASED, existing.model_copy(update={"status": StakeStatus.unstaked})
        )
        return balance

    async def revoke(
        self,
        stake_id: str,
        reason: str,
        policy: Optional[RevocationPolicy | str] = None,
    ) -> Stake:
        """Revoke an active or unstaking stake.

        ``forfeit`` removes the staked funds; ``refund`` returns them to
        available. Either way the stake ends ``revoked``.

        Raises:
            StakeNotFoundError: No such stake.
            StakeStateError: The stake is already unstaked or revoked.
        """
        policy = RevocationPolicy(policy or self.rules.revocation_policy)
        existing = await self.get_stake(stake_id)
        if existing.status.is_terminal:
            raise StakeStateError(
                f"Stake {stake_id} is {existing.status.value} and cannot be revoked"
            )

        refund = policy == RevocationPolicy.refund
        revoked: list[Stake] = []

        def build(current: Balance):
            stake = existing.model_copy(
                update={
                    "status": StakeStatus.revoked,
                    "revoked_at": self.balances.now(),
                    "revoked_reason": reason,
                    "refunded": refund,
                }
            )
            revoked[:] = [stake]
            amount = existing.amount if refund else ZERO
            entry = self.balances.make_entry(
                existing.user_id,
                LedgerEntryType.stake_revoked,
                amount,
                f"stake:{stake_id}:revoked",
                reason,
                metadata={
                    "stake_id": stake_id,
                    "tier": existing.tier,
                    "policy": policy.value,
                    "amount": str(existing.amount),
                },
            )
            delta = BalanceDelta(available=amount, staked=-existing.amount)
            write = StakeWrite(
                stake=stake,
                expected_statuses=(StakeStatus.active, StakeStatus.unstaking),
            )
            return delta, [entry], [write]

        await self._transition(existing, build)
        stake = revoked[0]
        logger.info(
            "Stake %s revoked (%s, policy=%s): %s", stake_id, existing.tier, policy.value, reason
        )
        self._emit(EVENT_STAKE_REVOKED, stake, policy=policy.value, reason=reason)
        return stake

    async def _transition(self, existing: Stake, build) -> Balance:
        """Run a guarded stake transition.

        A lost race on the stake row surfaces as a conflict from the store;
        once retries are exhausted the stake is re-read so the caller gets
        the real reason (e.g. someone else revoked it first).
        """
        try:
            _, after = await self.balances.transact(existing.user_id, build)
            return after
        except (ConcurrencyConflictError, DuplicateIdempotencyKeyError):
            latest = await self.get_stake(existing.id)
            if latest.status != existing.status:
                raise StakeStateError(
                    f"Stake {existing.id} changed to {latest.status.value} concurrently"
                )
            raise

    # Queries

    async def get_stake(self, stake_id: str) -> Stake:
        """Raises StakeNotFoundError if no such stake."""
        stake = await self.store.get_stake(stake_id)
        if stake is None:
            raise StakeNotFoundError(f"Stake {stake_id} not found")
        return stake

    async def list_stakes(
        self,
        user_id: str,
        status: Optional[StakeStatus | Sequence[StakeStatus]] = None,
    ) -> list[Stake]:
        """A user's stakes, newest first, optionally filtered by status."""
        if isinstance(status, StakeStatus):
            status = [status]
        return await self.store.list_stakes(user_id, status)

    async def active_capabilities(self, user_id: str) -> set[str]:
        """Capabilities granted by active stakes. Unstaking stakes grant nothing."""
        active = await self.store.list_stakes(user_id, [StakeStatus.active])
        return {s.capability for s in active}

    async def autonomy_level(self, user_id: str) -> int:
        """Autonomy level of the strongest active tier, 0 with none."""
        active = await self.store.list_stakes(user_id, [StakeStatus.active])
        levels = [self.catalog.get(s.tier).autonomy_level for s in active if s.tier in self.catalog]
        return max(levels, default=0)
