"""
Action Table

Declarative table of autonomous actions: each row names the action's
category, the minimum role allowed to run it, and the staked capability it
depends on. Rows can be added in code or loaded from YAML.
"""

from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

import yaml
from pydantic import BaseModel, Field


class Role(str, Enum):
    """Authority level of a user's assistant, weakest first."""

    analyst = "analyst"
    operator = "operator"

    @property
    def rank(self) -> int:
        return _ROLE_ORDER.index(self)

    def at_least(self, other: "Role") -> bool:
        return self.rank >= other.rank


_ROLE_ORDER = [Role.analyst, Role.operator]


class ActionCategory(str, Enum):
    """Categories of autonomous actions."""

    suggest = "suggest"
    draft = "draft"
    schedule = "schedule"
    archive = "archive"
    send = "send"
    delete = "delete"
    auto_execute = "auto_execute"


# Whether a category needs user confirmation, per role.
CONFIRMATION_TABLE: dict[ActionCategory, dict[Role, bool]] = {
    ActionCategory.suggest: {Role.analyst: False, Role.operator: False},
    ActionCategory.draft: {Role.analyst: True, Role.operator: False},
    ActionCategory.schedule: {Role.analyst: True, Role.operator: False},
    ActionCategory.archive: {Role.analyst: True, Role.operator: False},
    ActionCategory.send: {Role.analyst: True, Role.operator: True},
    ActionCategory.delete: {Role.analyst: True, Role.operator: True},
    ActionCategory.auto_execute: {Role.analyst: True, Role.operator: False},
}

# Categories that need confirmation no matter what a row says.
ALWAYS_CONFIRM_CATEGORIES = frozenset({ActionCategory.send, ActionCategory.delete})

BLOCKED_EXPLANATIONS: dict[ActionCategory, str] = {
    ActionCategory.suggest: "This action is available.",
    ActionCategory.draft: (
        "I can prepare this for your review, but I need your confirmation to proceed."
    ),
    ActionCategory.schedule: "I can schedule this, but your approval is required first.",
    ActionCategory.archive: "I can archive this item, but I need you to confirm.",
    ActionCategory.send: (
        "Sending messages on your behalf requires Operator mode. "
        "Would you like me to draft this for your review instead?"
    ),
    ActionCategory.delete: "Deleting content requires your explicit confirmation.",
    ActionCategory.auto_execute: (
        "Autonomous actions require Operator mode. I can suggest this action, "
        "but you'll need to execute it manually."
    ),
}

UPGRADE_SUGGESTIONS: dict[ActionCategory, str] = {
    ActionCategory.suggest: "",
    ActionCategory.draft: "Enable draft permissions in assistant settings to allow this.",
    ActionCategory.schedule: "Enable scheduling permissions to allow autonomous scheduling.",
    ActionCategory.archive: "Enable archive permissions to allow automatic archiving.",
    ActionCategory.send: "Upgrade to Operator mode in settings to enable message sending.",
    ActionCategory.delete: "This action always requires confirmation for safety.",
    ActionCategory.auto_execute: "Upgrade to Operator mode to enable autonomous actions.",
}

UNKNOWN_ACTION_REASON = "This action is not recognized."
UNKNOWN_ACTION_SUGGESTION = "Please try a different approach."


class ActionSpec(BaseModel):
    """One row of the action table."""

    action_id: str = Field(..., min_length=1)
    category: ActionCategory
    min_role: Role = Field(default=Role.analyst)
    required_capability: Optional[str] = Field(
        default=None, description="Staked capability needed to run without confirmation"
    )
    always_confirm: bool = Field(default=False)
    confirmation: Optional[dict[Role, bool]] = Field(
        default=None, description="Per-role override of the category's confirmation rule"
    )
    description: Optional[str] = None

    def requires_confirmation(self, role: Role) -> bool:
        if self.always_confirm or self.category in ALWAYS_CONFIRM_CATEGORIES:
            return True
        if self.confirmation is not None and role in self.confirmation:
            return self.confirmation[role]
        return CONFIRMATION_TABLE[self.category][role]


class ActionAuthorizationResult(BaseModel):
    """Decision for one attempted action. Computed per request, never stored."""

    action_id: str
    allowed: bool
    requires_confirmation: bool
    role: Optional[Role] = None
    blocked_reason: Optional[str] = None
    suggested_alternative: Optional[str] = None
    can_suggest_instead: bool = False
    missing_capability: Optional[str] = None


def _default_actions() -> list[ActionSpec]:
    return [
        ActionSpec(action_id="suggest", category=ActionCategory.suggest),
        ActionSpec(action_id="analyze", category=ActionCategory.suggest),
        ActionSpec(action_id="create_task", category=ActionCategory.draft),
        ActionSpec(action_id="update_task", category=ActionCategory.draft),
        ActionSpec(action_id="delete_task", category=ActionCategory.delete),
        ActionSpec(
            action_id="start_focus_session",
            category=ActionCategory.schedule,
            required_capability="auto_schedule",
        ),
        ActionSpec(
            action_id="complete_focus_session",
            category=ActionCategory.draft,
            confirmation={Role.analyst: False, Role.operator: False},
        ),
        ActionSpec(action_id="claim_credits", category=ActionCategory.draft),
        ActionSpec(
            action_id="spend_credits", category=ActionCategory.schedule, always_confirm=True
        ),
        ActionSpec(
            action_id="send_message",
            category=ActionCategory.send,
            min_role=Role.operator,
        ),
        ActionSpec(
            action_id="archive_message",
            category=ActionCategory.archive,
            required_capability="auto_close_emails",
        ),
        ActionSpec(
            action_id="schedule_action",
            category=ActionCategory.schedule,
            required_capability="auto_schedule",
        ),
        ActionSpec(
            action_id="auto_reply",
            category=ActionCategory.auto_execute,
            min_role=Role.operator,
            required_capability="full_autonomy",
        ),
        ActionSpec(action_id="draft_reply", category=ActionCategory.draft),
    ]


class ActionRegistry:
    """Lookup table of ``ActionSpec`` rows keyed by action id."""

    def __init__(self, actions: Optional[Iterable[ActionSpec]] = None) -> None:
        self._actions: dict[str, ActionSpec] = {}
        for spec in actions if actions is not None else _default_actions():
            self.register(spec)

    def register(self, spec: ActionSpec) -> None:
        """Add or replace a row."""
        self._actions[spec.action_id] = spec

    def get(self, action_id: str) -> Optional[ActionSpec]:
        return self._actions.get(action_id)

    def all(self) -> list[ActionSpec]:
        return list(self._actions.values())

    def __contains__(self, action_id: object) -> bool:
        return action_id in self._actions

    def __len__(self) -> int:
        return len(self._actions)

    @classmethod
    def from_yaml(cls, path: str | Path, *, include_defaults: bool = True) -> "ActionRegistry":
        """Load rows from a YAML file with a top-level ``actions`` list.

        Rows in the file override default rows with the same id.
        """
        path = Path(path)
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        registry = cls() if include_defaults else cls([])
        for row in data.get("actions", []):
            registry.register(ActionSpec(**row))
        return registry
