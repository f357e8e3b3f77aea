"""Tests for event normalization and the event bus."""

from datetime import datetime, timezone

import pytest

from focusledger.events import (
    EVENT_SETTLEMENT_ELIGIBLE,
    EVENT_STAKE_LOCKED,
    Event,
    InMemoryEventBus,
)
from focusledger.exceptions import ValidationError
from focusledger.rewards import EventNormalizer, RewardEventType


FIXED_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def normalizer():
    return EventNormalizer(clock=lambda: FIXED_NOW)


# ---------------------------------------------------------------------------
# EventNormalizer
# ---------------------------------------------------------------------------


class TestEventNormalizer:
    def test_known_type_is_enum(self, normalizer):
        event = normalizer.normalize(
            {"event_type": "focus_session", "payload": {"duration_minutes": 25}},
            idempotency_key="s-1",
        )
        assert event.event_type == RewardEventType.focus_session
        assert event.payload.duration_minutes == 25
        assert event.idempotency_key == "s-1"
        assert event.occurred_at == FIXED_NOW

    def test_key_derived_from_source_id(self, normalizer):
        event = normalizer.normalize(
            {"event_type": "task_completed", "payload": {"task_id": "t-9", "task_effort": 4}}
        )
        assert event.idempotency_key == "task_completed:t-9"
        assert event.payload.source_id == "t-9"

    def test_explicit_source_id_wins(self, normalizer):
        event = normalizer.normalize(
            {"event_type": "task_completed", "source_id": "abc", "payload": {"task_id": "t-9"}}
        )
        assert event.idempotency_key == "task_completed:abc"

    def test_missing_key_and_source_is_rejected(self, normalizer):
        with pytest.raises(ValidationError):
            normalizer.normalize({"event_type": "task_completed", "payload": {}})

    def test_missing_event_type_is_rejected(self, normalizer):
        with pytest.raises(ValidationError):
            normalizer.normalize({"payload": {}}, idempotency_key="k")

    def test_effort_and_counts_are_clamped(self, normalizer):
        event = normalizer.normalize(
            {"event_type": "task_completed", "payload": {"task_effort": 42}},
            idempotency_key="k",
        )
        assert event.payload.effort == 10

        event = normalizer.normalize(
            {"event_type": "focus_session", "payload": {"duration_minutes": -15}},
            idempotency_key="k2",
        )
        assert event.payload.duration_minutes == 0

    def test_unknown_type_is_preserved(self, normalizer, caplog):
        event = normalizer.normalize(
            {"event_type": "yoga_class", "payload": {"duration_minutes": 60}},
            idempotency_key="k",
        )
        assert event.event_type == "yoga_class"
        assert not event.is_known
        assert "Unknown event type" in caplog.text

    def test_malformed_payload_is_flagged(self, normalizer):
        event = normalizer.normalize(
            {"event_type": "focus_session", "payload": {"duration_minutes": "abc"}},
            idempotency_key="k",
        )
        assert event.malformed
        assert event.payload.duration_minutes == 0

    def test_occurred_at_iso_string(self, normalizer):
        event = normalizer.normalize(
            {
                "event_type": "spam_blocked",
                "payload": {"spam_blocked": 3},
                "occurred_at": "2026-01-05T10:00:00Z",
            },
            idempotency_key="k",
        )
        assert event.occurred_at == datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
        assert event.payload.item_count == 3

    def test_events_are_immutable(self, normalizer):
        event = normalizer.normalize(
            {"event_type": "auto_archive", "payload": {"auto_archived": 2}},
            idempotency_key="k",
        )
        with pytest.raises(Exception):
            event.idempotency_key = "other"


# ---------------------------------------------------------------------------
# InMemoryEventBus
# ---------------------------------------------------------------------------


class TestInMemoryEventBus:
    def test_glob_subscription(self):
        bus = InMemoryEventBus()
        seen = []
        bus.subscribe("stake.*", seen.append)

        bus.emit(Event(event_type=EVENT_STAKE_LOCKED, source="staking"))
        bus.emit(Event(event_type=EVENT_SETTLEMENT_ELIGIBLE, source="settlement"))

        assert [e.event_type for e in seen] == [EVENT_STAKE_LOCKED]

    def test_unsubscribe(self):
        bus = InMemoryEventBus()
        seen = []
        handler = seen.append
        bus.subscribe("*", handler)
        bus.unsubscribe(handler)
        bus.emit(Event(event_type=EVENT_STAKE_LOCKED, source="staking"))
        assert seen == []

    def test_failing_subscriber_does_not_block_others(self, caplog):
        bus = InMemoryEventBus()
        seen = []

        def broken(event):
            raise RuntimeError("subscriber down")

        bus.subscribe("*", broken)
        bus.subscribe("*", seen.append)
        bus.emit(Event(event_type=EVENT_STAKE_LOCKED, source="staking"))

        assert len(seen) == 1
        assert "failed on stake.locked" in caplog.text

    def test_event_carries_user_and_unique_id(self):
        first = Event(event_type=EVENT_STAKE_LOCKED, source="staking", payload={"user_id": "u1"})
        second = Event(event_type=EVENT_STAKE_LOCKED, source="staking")

        assert first.user_id == "u1"
        assert second.user_id is None
        assert first.event_id != second.event_id
        assert first.matches("stake.*")
        assert not first.matches("reward.*")
