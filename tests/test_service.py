"""End-to-end tests for the ledger service facade."""

import asyncio
import logging
from decimal import Decimal

import pytest

from focusledger import LedgerService, LedgerSettings
from focusledger.activity import InMemoryActivityProvider
from focusledger.events import (
    EVENT_REWARD_CREDITED,
    EVENT_SETTLEMENT_ELIGIBLE,
    EVENT_SPEND_DEBITED,
    EVENT_SPEND_REFUNDED,
)
from focusledger.exceptions import (
    ActionDeniedError,
    ConfirmationRequiredError,
    DuplicateIdempotencyKeyError,
    InsufficientAvailableError,
    StorageError,
    ValidationError,
)
from focusledger.governance import InMemoryRoleProvider, Role
from focusledger.ledger import LedgerEntryType
from focusledger.rewards import SpendKind


@pytest.fixture
def activity():
    return InMemoryActivityProvider()


@pytest.fixture
def roles():
    return InMemoryRoleProvider({"boss": Role.operator})


@pytest.fixture
async def service(activity, roles):
    async with LedgerService.from_settings(
        LedgerSettings(), activity=activity, roles=roles
    ) as service:
        yield service


@pytest.fixture
def events(service):
    seen = []
    service.bus.subscribe("*", seen.append)
    return seen


async def fund(service, user_id, hours=3):
    """Earn and confirm credit through focus sessions (learning, 4.40 per hour)."""
    for i in range(hours):
        await service.submit_event(
            user_id,
            "focus_session",
            {"duration_minutes": 60, "mode": "learning"},
            idempotency_key=f"fund-{i}",
        )
    return await service.confirm_pending(user_id)


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------


class TestSubmitEvent:
    @pytest.mark.asyncio
    async def test_reward_is_credited_to_pending(self, service, events):
        breakdown = await service.submit_event(
            "u1", "focus_session", {"duration_minutes": 60, "mode": "learning"},
            idempotency_key="s-1",
        )

        assert breakdown.credit_amount == Decimal("4.40")
        balance = await service.get_balance("u1")
        assert balance.pending == Decimal("4.40")
        assert balance.available == 0
        assert [e.event_type for e in events] == [EVENT_REWARD_CREDITED]

    @pytest.mark.asyncio
    async def test_duplicate_submission_credits_once(self, service):
        first = await service.submit_event(
            "u1", "task_completed", {"task_effort": 8}, idempotency_key="t-1"
        )
        second = await service.submit_event(
            "u1", "task_completed", {"task_effort": 8}, idempotency_key="t-1"
        )

        assert second == first
        balance = await service.get_balance("u1")
        assert balance.pending == Decimal("2.50")
        assert balance.version == 1

    @pytest.mark.asyncio
    async def test_source_id_derives_key(self, service):
        await service.submit_event("u1", "task_completed", {"task_id": "t-7"})
        await service.submit_event("u1", "task_completed", {"task_id": "t-7"})
        page = await service.list_ledger("u1")
        assert [e.idempotency_key for e in page.entries] == ["task_completed:t-7"]

    @pytest.mark.asyncio
    async def test_missing_key_is_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.submit_event("u1", "task_completed", {})

    @pytest.mark.asyncio
    async def test_activity_feeds_bonuses(self, service, activity):
        activity.set_activity("u1", streak_days=10, sessions_this_week=7)
        breakdown = await service.submit_event(
            "u1", "task_completed", {"task_effort": 5}, idempotency_key="t-1"
        )
        assert breakdown.total_reward == Decimal("1.15")
        assert breakdown.consistency_tier == "gold"

    @pytest.mark.asyncio
    async def test_unknown_event_is_recorded_at_zero(self, service):
        breakdown = await service.submit_event(
            "u1", "meditation_logged", {}, idempotency_key="m-1"
        )
        assert breakdown.total_reward == 0
        page = await service.list_ledger("u1")
        assert len(page.entries) == 1
        assert page.entries[0].source_event_type == "meditation_logged"
        assert page.entries[0].signed_amount == 0

    @pytest.mark.asyncio
    async def test_key_used_by_a_spend_is_flagged(self, service, caplog):
        await fund(service, "u1")
        await service.execute_paid_action(
            "u1", "complete_focus_session", "1", lambda: None, idempotency_key="shared-1"
        )

        with caplog.at_level(logging.WARNING, logger="focusledger.service"):
            breakdown = await service.submit_event(
                "u1", "task_completed", {"task_effort": 8}, idempotency_key="shared-1"
            )

        assert breakdown.total_reward == 0
        assert "already used by a spend entry" in caplog.text
        assert (await service.get_balance("u1")).pending == 0

    @pytest.mark.asyncio
    async def test_snapshot_is_stored_with_entry(self, service):
        await service.submit_event(
            "u1", "instant_catchup", {"messages_count": 10}, idempotency_key="c-1"
        )
        entry = (await service.list_ledger("u1")).entries[0]
        assert entry.event_type == LedgerEntryType.reward
        assert Decimal(entry.reward_breakdown_snapshot["base_reward"]) == Decimal("3.2")


class TestStreakMilestones:
    @pytest.mark.asyncio
    async def test_milestone_is_a_separate_reward_entry(self, service, activity, events):
        activity.set_activity("u1", streak_days=7)
        breakdown = await service.submit_event(
            "u1", "task_completed", {"task_effort": 5}, idempotency_key="t-1",
            previous_streak=6,
        )

        # 1.0 base + 7 * 0.005 streak bonus; the milestone is not folded in.
        assert breakdown.total_reward == Decimal("1.035")
        page = await service.list_ledger("u1")
        assert [e.idempotency_key for e in page.entries] == ["t-1", "streak_milestone:7:6"]
        bonus = page.entries[1]
        assert bonus.event_type == LedgerEntryType.reward
        assert bonus.source_event_type == "focus_streak_bonus"
        assert bonus.signed_amount == Decimal("3.00")
        assert (await service.get_balance("u1")).pending == Decimal("4.04")
        credited = [e for e in events if e.event_type == EVENT_REWARD_CREDITED]
        assert [e.payload["event_type"] for e in credited] == ["task_completed", "focus_streak_bonus"]

    @pytest.mark.asyncio
    async def test_milestone_is_credited_once(self, service):
        first = await service.award_streak_milestone("u1", 2, 3)
        again = await service.award_streak_milestone("u1", 2, 3)

        assert first.milestone_days == again.milestone_days == 3
        balance = await service.get_balance("u1")
        assert balance.pending == Decimal("1.00")
        assert balance.version == 1

    @pytest.mark.asyncio
    async def test_no_milestone_crossed(self, service, activity):
        activity.set_activity("u1", streak_days=5)
        assert await service.award_streak_milestone("u1", 4, 5) is None
        await service.submit_event(
            "u1", "task_completed", {"task_effort": 5}, idempotency_key="t-1",
            previous_streak=4,
        )
        assert len((await service.list_ledger("u1")).entries) == 1

    @pytest.mark.asyncio
    async def test_duplicate_event_does_not_award_again(self, service, activity):
        activity.set_activity("u1", streak_days=3)
        for _ in range(2):
            await service.submit_event(
                "u1", "task_completed", {"task_effort": 5}, idempotency_key="t-1",
                previous_streak=2,
            )
        assert (await service.get_balance("u1")).pending == Decimal("2.02")


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


class TestSettlement:
    @pytest.mark.asyncio
    async def test_crossing_threshold_emits_once(self, service, events):
        # 4.40 pending per learning hour; the third submission crosses 10.
        for i in range(4):
            await service.submit_event(
                "u1", "focus_session", {"duration_minutes": 60, "mode": "learning"},
                idempotency_key=f"s-{i}",
            )

        eligible = [e for e in events if e.event_type == EVENT_SETTLEMENT_ELIGIBLE]
        assert len(eligible) == 1
        assert eligible[0].payload["pending"] == "13.20"
        assert await service.is_settlement_eligible("u1")
        assert await service.sweep_settlements() == ["u1"]

    @pytest.mark.asyncio
    async def test_settle_external(self, service):
        await fund(service, "u1")
        balance = await service.settle_external("u1", "10")
        assert balance.settled_external == Decimal("10.00")
        assert balance.available == Decimal("3.20")
        assert (await service.reconcile("u1")).balanced


# ---------------------------------------------------------------------------
# Paid actions
# ---------------------------------------------------------------------------


class TestExecutePaidAction:
    @pytest.mark.asyncio
    async def test_success_debits(self, service, events):
        await fund(service, "u1")

        result = await service.execute_paid_action(
            "u1", "complete_focus_session", "1.25", lambda: "done", idempotency_key="pa-1"
        )

        assert result == "done"
        balance = await service.get_balance("u1")
        assert balance.available == Decimal("11.95")
        assert balance.total_spent == Decimal("1.25")
        assert EVENT_SPEND_DEBITED in [e.event_type for e in events]

    @pytest.mark.asyncio
    async def test_async_executor(self, service):
        await fund(service, "u1")

        async def run():
            return 42

        assert await service.execute_paid_action(
            "u1", "complete_focus_session", 1, run, idempotency_key="pa-1"
        ) == 42

    @pytest.mark.asyncio
    async def test_failure_refunds_and_reraises(self, service, events):
        await fund(service, "u1")

        async def explode():
            raise RuntimeError("provider down")

        with pytest.raises(RuntimeError, match="provider down"):
            await service.execute_paid_action(
                "u1", "complete_focus_session", "2", explode, idempotency_key="pa-1"
            )

        balance = await service.get_balance("u1")
        assert balance.available == Decimal("13.20")
        assert balance.total_spent == 0
        page = await service.list_ledger("u1", entry_types=["spend", "refund"])
        assert [e.idempotency_key for e in page.entries] == ["pa-1", "pa-1:refund"]
        assert EVENT_SPEND_REFUNDED in [e.event_type for e in events]
        assert (await service.reconcile("u1")).balanced

    @pytest.mark.asyncio
    async def test_cancelled_executor_is_refunded(self, service, events):
        await fund(service, "u1")

        async def cancelled():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await service.execute_paid_action(
                "u1", "complete_focus_session", "2", cancelled, idempotency_key="pa-1"
            )

        balance = await service.get_balance("u1")
        assert balance.available == Decimal("13.20")
        assert balance.total_spent == 0
        page = await service.list_ledger("u1", entry_types=["spend", "refund"])
        assert [e.idempotency_key for e in page.entries] == ["pa-1", "pa-1:refund"]
        assert EVENT_SPEND_REFUNDED in [e.event_type for e in events]

    @pytest.mark.asyncio
    async def test_cancelling_the_caller_refunds(self, service):
        await fund(service, "u1")
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.Event().wait()

        task = asyncio.create_task(
            service.execute_paid_action(
                "u1", "complete_focus_session", "2", hang, idempotency_key="pa-1"
            )
        )
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        balance = await service.get_balance("u1")
        assert balance.available == Decimal("13.20")
        assert (await service.reconcile("u1")).balanced

    @pytest.mark.asyncio
    async def test_failed_refund_is_chained_to_executor_error(self, service, monkeypatch):
        await fund(service, "u1")

        async def refund_down(*args, **kwargs):
            raise StorageError("ledger unavailable")

        monkeypatch.setattr(service.balances, "refund", refund_down)

        def explode():
            raise RuntimeError("provider down")

        with pytest.raises(StorageError) as exc_info:
            await service.execute_paid_action(
                "u1", "complete_focus_session", "2", explode, idempotency_key="pa-1"
            )

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert str(exc_info.value.__cause__) == "provider down"

    @pytest.mark.asyncio
    async def test_denied_action_charges_nothing(self, service):
        await fund(service, "u1")
        with pytest.raises(ActionDeniedError) as exc_info:
            await service.execute_paid_action(
                "u1", "send_message", "1", lambda: None, idempotency_key="pa-1"
            )
        assert exc_info.value.result.can_suggest_instead
        assert (await service.get_balance("u1")).total_spent == 0

    @pytest.mark.asyncio
    async def test_confirmation_required(self, service):
        await fund(service, "boss")
        with pytest.raises(ConfirmationRequiredError):
            await service.execute_paid_action(
                "boss", "send_message", "1", lambda: None, idempotency_key="pa-1"
            )
        await service.execute_paid_action(
            "boss", "send_message", "1", lambda: None, idempotency_key="pa-1", confirmed=True
        )
        assert (await service.get_balance("boss")).total_spent == Decimal("1.00")

    @pytest.mark.asyncio
    async def test_insufficient_funds_skips_executor(self, service):
        calls = []
        with pytest.raises(InsufficientAvailableError):
            await service.execute_paid_action(
                "u1", "complete_focus_session", "1", lambda: calls.append(1),
                idempotency_key="pa-1",
            )
        assert calls == []

    @pytest.mark.asyncio
    async def test_repeated_key_is_not_charged_twice(self, service):
        await fund(service, "u1")
        await service.execute_paid_action(
            "u1", "complete_focus_session", "1", lambda: None, idempotency_key="pa-1"
        )
        with pytest.raises(DuplicateIdempotencyKeyError):
            await service.execute_paid_action(
                "u1", "complete_focus_session", "1", lambda: None, idempotency_key="pa-1"
            )
        assert (await service.get_balance("u1")).total_spent == Decimal("1.00")


# ---------------------------------------------------------------------------
# Staking through the service
# ---------------------------------------------------------------------------


class TestStakingFlow:
    @pytest.mark.asyncio
    async def test_stake_unlocks_confirmation_free_archive(self, service, activity):
        for i in range(114):
            await service.submit_event(
                "boss", "focus_session", {"duration_minutes": 60, "mode": "learning"},
                idempotency_key=f"h-{i}",
            )
        await service.confirm_pending("boss")

        before = await service.check_action("boss", "archive_message")
        assert before.requires_confirmation
        assert before.missing_capability == "auto_close_emails"

        stake = await service.stake("boss", "tier_1")
        after = await service.check_action("boss", "archive_message")
        assert not after.requires_confirmation

        await service.request_unstake(stake.id)
        again = await service.check_action("boss", "archive_message")
        assert again.requires_confirmation
        assert (await service.reconcile("boss")).balanced


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_ledger_pages_in_insertion_order(self, service):
        for i in range(5):
            await service.submit_event(
                "u1", "spam_blocked", {"spam_blocked": 1}, idempotency_key=f"k-{i}"
            )

        first = await service.list_ledger("u1", limit=2)
        second = await service.list_ledger("u1", limit=2, cursor=first.next_cursor)
        third = await service.list_ledger("u1", limit=2, cursor=second.next_cursor)

        keys = [e.idempotency_key for page in (first, second, third) for e in page.entries]
        assert keys == [f"k-{i}" for i in range(5)]
        assert third.next_cursor is None

    @pytest.mark.asyncio
    async def test_list_ledger_filters_by_type(self, service):
        await fund(service, "u1", hours=1)
        page = await service.list_ledger("u1", entry_types=[LedgerEntryType.pending_confirmed])
        assert len(page.entries) == 1

    @pytest.mark.asyncio
    async def test_quote_spend(self, service):
        quote = service.quote_spend(SpendKind.batch_process, items=10, available=Decimal("0.5"))
        assert quote.cost == Decimal("0.70")
        assert quote.affordable is False

        assert service.quote_spend("extended_focus", hours=3).cost == Decimal("0.75")
        assert service.quote_spend("high_volume", base_cost="2").cost == Decimal("3.00")

    @pytest.mark.asyncio
    async def test_unknown_user_has_zero_balance(self, service):
        balance = await service.get_balance("ghost")
        assert balance.available == 0
        assert balance.version == 0
