"""Tests for capability staking."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from focusledger.config import StakingRules
from focusledger.events import EVENT_STAKE_LOCKED, EVENT_STAKE_REVOKED, InMemoryEventBus
from focusledger.exceptions import (
    CooldownNotElapsedError,
    InsufficientAvailableError,
    NotActiveError,
    NotUnstakingError,
    StakeNotFoundError,
    StakeStateError,
    TierAlreadyActiveError,
    UnknownTierError,
)
from focusledger.ledger import BalanceManager, LedgerEntryType, StakeStatus
from focusledger.staking import StakeTierCatalog, StakeTierId, StakingManager
from focusledger.storage import MemoryLedgerStore


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self):
        self.now = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class YieldingStore(MemoryLedgerStore):
    """Yields to the event loop after every read so concurrent callers interleave."""

    async def get_balance(self, user_id):
        balance = await super().get_balance(user_id)
        await asyncio.sleep(0)
        return balance

    async def get_stake(self, stake_id):
        stake = await super().get_stake(stake_id)
        await asyncio.sleep(0)
        return stake

    async def list_stakes(self, user_id, statuses=None):
        stakes = await super().list_stakes(user_id, statuses)
        await asyncio.sleep(0)
        return stakes


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def store():
    store = MemoryLedgerStore()
    await store.connect()
    yield store
    await store.disconnect()


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
async def racy(clock, bus):
    """Staking and balance managers over a store whose reads interleave."""
    store = YieldingStore()
    await store.connect()
    balances = BalanceManager(store, clock=clock)
    yield StakingManager(balances, bus=bus), balances
    await store.disconnect()


@pytest.fixture
def balances(store, clock):
    return BalanceManager(store, clock=clock)


@pytest.fixture
def staking(balances, bus):
    return StakingManager(balances, bus=bus)


async def fund(balances, user_id, amount):
    await balances.credit_pending(user_id, amount, idempotency_key=f"seed-{amount}")
    return await balances.confirm_pending(user_id)


# ---------------------------------------------------------------------------
# Tier catalog
# ---------------------------------------------------------------------------


class TestStakeTierCatalog:
    def test_default_tiers(self):
        catalog = StakeTierCatalog()
        assert len(catalog) == 3
        assert catalog.get(StakeTierId.tier_1).amount == Decimal("500")
        assert catalog.get("tier_2").capability == "auto_schedule"
        assert catalog.get("tier_3").capability == "full_autonomy"
        assert [t.tier_id for t in catalog.all()] == ["tier_1", "tier_2", "tier_3"]

    def test_lookup_by_capability(self):
        catalog = StakeTierCatalog()
        assert catalog.by_capability("auto_close_emails").tier_id == "tier_1"
        assert catalog.by_capability("teleport") is None

    def test_unknown_tier(self):
        with pytest.raises(UnknownTierError):
            StakeTierCatalog().get("tier_9")


# ---------------------------------------------------------------------------
# Staking
# ---------------------------------------------------------------------------


class TestStake:
    @pytest.mark.asyncio
    async def test_stake_locks_available(self, staking, balances, store):
        await fund(balances, "u1", "500")
        stake = await staking.stake("u1", "tier_1")

        balance = await balances.get_balance("u1")
        assert balance.available == 0
        assert balance.staked == Decimal("500")
        assert stake.status == StakeStatus.active
        assert stake.capability == "auto_close_emails"

        entry = await store.get_entry("u1", f"stake:{stake.id}:locked")
        assert entry.event_type == LedgerEntryType.stake_locked
        assert entry.signed_amount == Decimal("-500")

    @pytest.mark.asyncio
    async def test_same_tier_twice_is_rejected(self, staking, balances):
        await fund(balances, "u1", "1000")
        await staking.stake("u1", "tier_1")
        with pytest.raises(TierAlreadyActiveError):
            await staking.stake("u1", "tier_1")
        assert (await balances.get_balance("u1")).available == Decimal("500")

    @pytest.mark.asyncio
    async def test_tiers_are_independent(self, staking, balances):
        await fund(balances, "u1", "2000")
        await staking.stake("u1", "tier_1")
        await staking.stake("u1", StakeTierId.tier_2)
        assert await staking.active_capabilities("u1") == {"auto_close_emails", "auto_schedule"}

    @pytest.mark.asyncio
    async def test_insufficient_available(self, staking, balances):
        await fund(balances, "u1", "499.99")
        with pytest.raises(InsufficientAvailableError):
            await staking.stake("u1", "tier_1")
        assert await staking.list_stakes("u1") == []

    @pytest.mark.asyncio
    async def test_unknown_tier(self, staking):
        with pytest.raises(UnknownTierError):
            await staking.stake("u1", "platinum")

    @pytest.mark.asyncio
    async def test_concurrent_stakes_of_one_tier(self, racy):
        staking, balances = racy
        await fund(balances, "u1", "1500")
        results = await asyncio.gather(
            staking.stake("u1", "tier_1"),
            staking.stake("u1", "tier_1"),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], TierAlreadyActiveError)
        assert (await balances.get_balance("u1")).staked == Decimal("500")
        assert len(await staking.list_stakes("u1", StakeStatus.active)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_stakes_with_funds_for_one(self, racy):
        staking, balances = racy
        await fund(balances, "u1", "500")
        results = await asyncio.gather(
            staking.stake("u1", "tier_1"),
            staking.stake("u1", "tier_1"),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], InsufficientAvailableError)
        balance = await balances.get_balance("u1")
        assert balance.available == 0
        assert balance.staked == Decimal("500")

    @pytest.mark.asyncio
    async def test_stake_emits_event(self, staking, balances, bus):
        seen = []
        bus.subscribe("stake.*", seen.append)
        await fund(balances, "u1", "500")
        stake = await staking.stake("u1", "tier_1")

        assert [e.event_type for e in seen] == [EVENT_STAKE_LOCKED]
        assert seen[0].payload["stake_id"] == stake.id


# ---------------------------------------------------------------------------
# Unstaking
# ---------------------------------------------------------------------------


class TestUnstake:
    @pytest.mark.asyncio
    async def test_full_cycle(self, staking, balances, clock):
        await fund(balances, "u1", "500")
        stake = await staking.stake("u1", "tier_1")

        pending = await staking.request_unstake(stake.id)
        assert pending.status == StakeStatus.unstaking
        assert pending.unlocks_at == clock.now + timedelta(days=7)
        assert await staking.active_capabilities("u1") == set()
        assert (await balances.get_balance("u1")).staked == Decimal("500")

        clock.advance(days=7)
        balance = await staking.complete_unstake(stake.id)

        assert balance.available == Decimal("500")
        assert balance.staked == 0
        assert (await staking.get_stake(stake.id)).status == StakeStatus.unstaked
        assert (await balances.reconcile("u1")).balanced

    @pytest.mark.asyncio
    async def test_complete_before_cooldown(self, staking, balances, clock):
        await fund(balances, "u1", "500")
        stake = await staking.stake("u1", "tier_1")
        await staking.request_unstake(stake.id)

        clock.advance(days=6, hours=23)
        with pytest.raises(CooldownNotElapsedError) as exc_info:
            await staking.complete_unstake(stake.id)
        assert exc_info.value.unlocks_at == clock.now + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_zero_day_cooldown(self, store, clock):
        balances = BalanceManager(store, clock=clock)
        staking = StakingManager(balances, StakingRules(cooldown_days=0))
        await fund(balances, "u1", "500")
        stake = await staking.stake("u1", "tier_1")
        await staking.request_unstake(stake.id)
        balance = await staking.complete_unstake(stake.id)
        assert balance.available == Decimal("500")

    @pytest.mark.asyncio
    async def test_unstake_requires_active(self, staking, balances):
        await fund(balances, "u1", "500")
        stake = await staking.stake("u1", "tier_1")
        await staking.request_unstake(stake.id)
        with pytest.raises(NotActiveError):
            await staking.request_unstake(stake.id)

    @pytest.mark.asyncio
    async def test_complete_requires_unstaking(self, staking, balances):
        await fund(balances, "u1", "500")
        stake = await staking.stake("u1", "tier_1")
        with pytest.raises(NotUnstakingError):
            await staking.complete_unstake(stake.id)

    @pytest.mark.asyncio
    async def test_tier_can_be_restaked_while_unstaking(self, staking, balances):
        await fund(balances, "u1", "1000")
        first = await staking.stake("u1", "tier_1")
        await staking.request_unstake(first.id)
        second = await staking.stake("u1", "tier_1")
        assert second.id != first.id
        assert await staking.active_capabilities("u1") == {"auto_close_emails"}

    @pytest.mark.asyncio
    async def test_missing_stake(self, staking):
        with pytest.raises(StakeNotFoundError):
            await staking.request_unstake("stk_missing")


# ---------------------------------------------------------------------------
# Revocation
# ---------------------------------------------------------------------------


class TestRevoke:
    @pytest.mark.asyncio
    async def test_forfeit_is_default(self, staking, balances, store):
        await fund(balances, "u1", "500")
        stake = await staking.stake("u1", "tier_1")

        revoked = await staking.revoke(stake.id, "abuse detected")

        assert revoked.status == StakeStatus.revoked
        assert revoked.refunded is False
        assert revoked.revoked_reason == "abuse detected"
        balance = await balances.get_balance("u1")
        assert balance.staked == 0
        assert balance.available == 0
        entry = await store.get_entry("u1", f"stake:{stake.id}:revoked")
        assert entry.signed_amount == 0
        assert entry.metadata["policy"] == "forfeit"
        assert (await balances.reconcile("u1")).balanced

    @pytest.mark.asyncio
    async def test_refund_policy(self, staking, balances):
        await fund(balances, "u1", "500")
        stake = await staking.stake("u1", "tier_1")

        revoked = await staking.revoke(stake.id, "policy change", policy="refund")

        assert revoked.refunded is True
        balance = await balances.get_balance("u1")
        assert balance.available == Decimal("500")
        assert balance.staked == 0
        assert (await balances.reconcile("u1")).balanced

    @pytest.mark.asyncio
    async def test_revoke_while_unstaking(self, staking, balances, bus):
        seen = []
        bus.subscribe(EVENT_STAKE_REVOKED, seen.append)
        await fund(balances, "u1", "500")
        stake = await staking.stake("u1", "tier_1")
        await staking.request_unstake(stake.id)

        await staking.revoke(stake.id, "chargeback")

        assert (await staking.get_stake(stake.id)).status == StakeStatus.revoked
        assert seen[0].payload["reason"] == "chargeback"

    @pytest.mark.parametrize("finish", ["unstake", "revoke"])
    @pytest.mark.asyncio
    async def test_terminal_stakes_cannot_be_revoked(self, staking, balances, clock, finish):
        await fund(balances, "u1", "500")
        stake = await staking.stake("u1", "tier_1")
        if finish == "unstake":
            await staking.request_unstake(stake.id)
            clock.advance(days=8)
            await staking.complete_unstake(stake.id)
        else:
            await staking.revoke(stake.id, "first")

        with pytest.raises(StakeStateError):
            await staking.revoke(stake.id, "second")

    @pytest.mark.asyncio
    async def test_concurrent_revokes(self, racy):
        staking, balances = racy
        await fund(balances, "u1", "500")
        stake = await staking.stake("u1", "tier_1")

        results = await asyncio.gather(
            staking.revoke(stake.id, "a", policy="refund"),
            staking.revoke(stake.id, "b", policy="refund"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, StakeStateError) for r in results) == 1
        assert (await balances.get_balance("u1")).available == Decimal("500")
        assert (await staking.get_stake(stake.id)).status == StakeStatus.revoked
        assert (await balances.reconcile("u1")).balanced


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class TestCapabilities:
    @pytest.mark.asyncio
    async def test_no_stakes(self, staking):
        assert await staking.active_capabilities("u1") == set()
        assert await staking.autonomy_level("u1") == 0

    @pytest.mark.asyncio
    async def test_autonomy_follows_strongest_active_tier(self, staking, balances):
        await fund(balances, "u1", "3500")
        await staking.stake("u1", "tier_1")
        top = await staking.stake("u1", "tier_3")
        assert await staking.autonomy_level("u1") == 3

        await staking.request_unstake(top.id)
        assert await staking.autonomy_level("u1") == 1

    @pytest.mark.asyncio
    async def test_list_stakes_by_status(self, staking, balances, clock):
        await fund(balances, "u1", "2000")
        first = await staking.stake("u1", "tier_1")
        clock.advance(minutes=1)
        second = await staking.stake("u1", "tier_2")
        await staking.request_unstake(first.id)

        assert [s.id for s in await staking.list_stakes("u1")] == [second.id, first.id]
        unstaking = await staking.list_stakes("u1", StakeStatus.unstaking)
        assert [s.id for s in unstaking] == [first.id]
