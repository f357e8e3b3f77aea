"""
Event Normalizer

Turns the raw behavioral events emitted by the focus-session, task and
spam-archival handlers into canonical, immutable ``RewardableEvent`` records.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from focusledger.exceptions import ValidationError

logger = logging.getLogger(__name__)


class RewardEventType(str, Enum):
    """Behavioral events that can earn credit."""

    task_completed = "task_completed"
    instant_catchup = "instant_catchup"
    focus_session = "focus_session"
    spam_blocked = "spam_blocked"
    auto_archive = "auto_archive"


class RewardPayload(BaseModel):
    """Event-specific fields, already coerced and clamped."""

    model_config = ConfigDict(frozen=True)

    effort: Optional[int] = Field(default=None, ge=0, le=10, description="Task effort, 0-10")
    duration_minutes: int = Field(default=0, ge=0)
    mode: Optional[str] = None
    message_count: int = Field(default=0, ge=0)
    item_count: Optional[int] = Field(default=None, ge=0, description="Spam/archive count")
    source_id: Optional[str] = None


class RewardableEvent(BaseModel):
    """A canonical behavioral event. Never mutated after normalization."""

    model_config = ConfigDict(frozen=True)

    event_type: Union[RewardEventType, str] = Field(..., union_mode="left_to_right")
    payload: RewardPayload = Field(default_factory=RewardPayload)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    idempotency_key: str = Field(..., min_length=1)
    malformed: bool = Field(default=False, description="Payload could not be coerced")

    @field_validator("event_type", mode="before")
    @classmethod
    def _coerce_event_type(cls, value: Any) -> Union[RewardEventType, str]:
        return _parse_type(value)

    @property
    def is_known(self) -> bool:
        return isinstance(self.event_type, RewardEventType)

    @property
    def type_name(self) -> str:
        if isinstance(self.event_type, RewardEventType):
            return self.event_type.value
        return str(self.event_type)


# Raw payload field names used by the upstream handlers.
_SOURCE_ID_FIELDS = ("source_id", "task_id", "session_id", "message_id", "batch_id")
_COUNT_FIELDS = {
    RewardEventType.spam_blocked: "spam_blocked",
    RewardEventType.auto_archive: "auto_archived",
}


def _as_int(value: Any, *, lower: int = 0, upper: Optional[int] = None) -> int:
    """Coerce to a clamped int. Raises ValueError/TypeError on garbage."""
    if isinstance(value, bool):
        raise TypeError(f"Expected a number, got {value!r}")
    number = int(float(value))
    if number < lower:
        number = lower
    if upper is not None and number > upper:
        number = upper
    return number


def _parse_type(raw_type: Any) -> Union[RewardEventType, str]:
    try:
        return RewardEventType(raw_type)
    except ValueError:
        return str(raw_type)


class EventNormalizer:
    """Builds ``RewardableEvent`` instances from raw handler payloads.

    Unknown event types and malformed payloads are not errors: they produce
    events that earn nothing but are still recorded for audit.
    """

    def __init__(self, clock=None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def derive_idempotency_key(event_type: str, source_id: str) -> str:
        """Key used when the caller only supplies a source event id."""
        return f"{event_type}:{source_id}"

    def normalize(
        self,
        raw: Mapping[str, Any],
        *,
        idempotency_key: Optional[str] = None,
    ) -> RewardableEvent:
        """Normalize a raw event mapping.

        Args:
            raw: Mapping with ``event_type``, an optional ``payload`` dict,
                and optional ``source_id`` / ``occurred_at``.
            idempotency_key: Explicit key. Derived from the source id if omitted.

        Raises:
            ValidationError: If there is no event type, or neither an
                idempotency key nor a source id to derive one from.
        """
        raw_type = raw.get("event_type")
        if raw_type is None or raw_type == "":
            raise ValidationError("Event is missing event_type")
        event_type = _parse_type(raw_type)
        type_name = event_type.value if isinstance(event_type, RewardEventType) else event_type

        raw_payload = raw.get("payload") or {}
        if not isinstance(raw_payload, Mapping):
            raw_payload = {}
            malformed = True
        else:
            malformed = False

        source_id = raw.get("source_id")
        if source_id is None:
            for field in _SOURCE_ID_FIELDS:
                if raw_payload.get(field):
                    source_id = raw_payload[field]
                    break
        source_id = str(source_id) if source_id is not None else None

        key = idempotency_key or raw.get("idempotency_key")
        if not key:
            if not source_id:
                raise ValidationError(
                    f"Event '{type_name}' has neither an idempotency key nor a source id"
                )
            key = self.derive_idempotency_key(type_name, source_id)

        payload = RewardPayload(source_id=source_id)
        if not malformed:
            try:
                payload = self._coerce_payload(event_type, raw_payload, source_id)
            except (TypeError, ValueError, OverflowError) as exc:
                logger.warning(
                    "Malformed payload for %s event %s: %s", type_name, key, exc
                )
                malformed = True
        else:
            logger.warning("Non-mapping payload for %s event %s", type_name, key)

        if not isinstance(event_type, RewardEventType):
            logger.warning("Unknown event type '%s' (key=%s); it will earn nothing", type_name, key)

        return RewardableEvent(
            event_type=event_type,
            payload=payload,
            occurred_at=self._parse_time(raw.get("occurred_at")),
            idempotency_key=str(key),
            malformed=malformed,
        )

    def _coerce_payload(
        self,
        event_type: Union[RewardEventType, str],
        raw: Mapping[str, Any],
        source_id: Optional[str],
    ) -> RewardPayload:
        effort = raw.get("task_effort", raw.get("effort"))
        minutes = raw.get("duration_minutes")
        messages = raw.get("messages_count", raw.get("message_count"))
        mode = raw.get("mode")

        count_field = _COUNT_FIELDS.get(event_type) if isinstance(event_type, RewardEventType) else None
        count = raw.get(count_field, raw.get("count")) if count_field else raw.get("count")

        return RewardPayload(
            effort=_as_int(effort, upper=10) if effort is not None else None,
            duration_minutes=_as_int(minutes) if minutes is not None else 0,
            mode=str(mode).strip().lower() if mode else None,
            message_count=_as_int(messages) if messages is not None else 0,
            item_count=_as_int(count) if count is not None else None,
            source_id=source_id,
        )

    def _parse_time(self, value: Any) -> datetime:
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        if isinstance(value, str) and value:
            try:
                parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                logger.warning("Unparseable occurred_at %r; using current time", value)
                return self._clock()
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        return self._clock()
