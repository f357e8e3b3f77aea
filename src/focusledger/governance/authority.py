"""
Role Authority

Decides whether an autonomous action may run for a user: denied,
allowed with confirmation, or allowed outright. The decision combines the
user's role, the action's row in the action table and the capabilities the
user currently holds through active stakes.
"""

import logging
from typing import Optional, Protocol, runtime_checkable

from focusledger.governance.actions import (
    BLOCKED_EXPLANATIONS,
    UNKNOWN_ACTION_REASON,
    UNKNOWN_ACTION_SUGGESTION,
    UPGRADE_SUGGESTIONS,
    ActionAuthorizationResult,
    ActionCategory,
    ActionRegistry,
    Role,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class RoleProvider(Protocol):
    """Source of a user's assistant role."""

    async def get_role(self, user_id: str) -> Role:
        ...


@runtime_checkable
class CapabilitySource(Protocol):
    """Anything that reports the capabilities a user currently holds."""

    async def active_capabilities(self, user_id: str) -> set[str]:
        ...


class InMemoryRoleProvider:
    """Role lookup backed by a dict. Unknown users are analysts."""

    def __init__(self, roles: Optional[dict[str, Role | str]] = None, default: Role = Role.analyst):
        self._roles: dict[str, Role] = {u: Role(r) for u, r in (roles or {}).items()}
        self.default = default

    def set_role(self, user_id: str, role: Role | str) -> None:
        self._roles[user_id] = Role(role)

    async def get_role(self, user_id: str) -> Role:
        return self._roles.get(user_id, self.default)


class RoleAuthority:
    """
    Table-driven action gate.

    Decision order:
    1. Unknown action: denied.
    2. ``suggest`` category: allowed, no confirmation.
    3. Role below the row's minimum: denied, with an explanation and an
       offer to suggest instead.
    4. Required capability not held: allowed, confirmation forced.
    5. Otherwise: allowed, confirmation per the category/role table.
    """

    def __init__(
        self,
        capabilities: CapabilitySource,
        roles: Optional[RoleProvider] = None,
        registry: Optional[ActionRegistry] = None,
    ) -> None:
        self.capabilities = capabilities
        self.roles = roles or InMemoryRoleProvider()
        self.registry = registry or ActionRegistry()

    async def check_action(self, user_id: str, action_id: str) -> ActionAuthorizationResult:
        spec = self.registry.get(action_id)
        if spec is None:
            logger.warning("Denied unknown action '%s' for %s", action_id, user_id)
            return ActionAuthorizationResult(
                action_id=action_id,
                allowed=False,
                requires_confirmation=True,
                blocked_reason=UNKNOWN_ACTION_REASON,
                suggested_alternative=UNKNOWN_ACTION_SUGGESTION,
                can_suggest_instead=False,
            )

        role = await self.roles.get_role(user_id)

        if spec.category == ActionCategory.suggest:
            return ActionAuthorizationResult(
                action_id=action_id, allowed=True, requires_confirmation=False, role=role
            )

        if not role.at_least(spec.min_role):
            logger.info(
                "Denied %s for %s: role %s below %s",
                action_id, user_id, role.value, spec.min_role.value,
            )
            return ActionAuthorizationResult(
                action_id=action_id,
                allowed=False,
                requires_confirmation=True,
                role=role,
                blocked_reason=BLOCKED_EXPLANATIONS[spec.category],
                suggested_alternative=UPGRADE_SUGGESTIONS[spec.category] or None,
                can_suggest_instead=True,
            )

        if spec.required_capability:
            held = await self.capabilities.active_capabilities(user_id)
            if spec.required_capability not in held:
                logger.debug(
                    "%s for %s needs confirmation: capability %s not staked",
                    action_id, user_id, spec.required_capability,
                )
                return ActionAuthorizationResult(
                    action_id=action_id,
                    allowed=True,
                    requires_confirmation=True,
                    role=role,
                    missing_capability=spec.required_capability,
                )

        return ActionAuthorizationResult(
            action_id=action_id,
            allowed=True,
            requires_confirmation=spec.requires_confirmation(role),
            role=role,
        )
