"""
Governance Layer

Role-gated authorization of autonomous actions.
"""

from .actions import (
    BLOCKED_EXPLANATIONS,
    CONFIRMATION_TABLE,
    UPGRADE_SUGGESTIONS,
    ActionAuthorizationResult,
    ActionCategory,
    ActionRegistry,
    ActionSpec,
    Role,
)
from .authority import CapabilitySource, InMemoryRoleProvider, RoleAuthority, RoleProvider

__all__ = [
    "ActionAuthorizationResult",
    "ActionCategory",
    "ActionRegistry",
    "ActionSpec",
    "Role",
    "CONFIRMATION_TABLE",
    "BLOCKED_EXPLANATIONS",
    "UPGRADE_SUGGESTIONS",
    "RoleAuthority",
    "RoleProvider",
    "CapabilitySource",
    "InMemoryRoleProvider",
]
