"""
Stake Tiers

Fixed capability tiers. Each tier locks a fixed amount of available credit
and unlocks one autonomous capability. Tiers are independent: a user may hold
any combination at once, but never two active stakes of the same tier.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional

from focusledger.config import DEFAULT_STAKE_TIERS, StakeTier
from focusledger.exceptions import UnknownTierError


class StakeTierId(str, Enum):
    """Identifiers of the built-in stake tiers."""

    tier_1 = "tier_1"
    tier_2 = "tier_2"
    tier_3 = "tier_3"


class StakeTierCatalog:
    """Lookup table over the configured stake tiers."""

    def __init__(self, tiers: Optional[Iterable[StakeTier]] = None) -> None:
        tiers = list(tiers) if tiers is not None else list(DEFAULT_STAKE_TIERS)
        self._tiers: dict[str, StakeTier] = {}
        for tier in sorted(tiers, key=lambda t: t.autonomy_level):
            if tier.tier_id in self._tiers:
                raise ValueError(f"Duplicate stake tier '{tier.tier_id}'")
            self._tiers[tier.tier_id] = tier

    def get(self, tier_id: str | StakeTierId) -> StakeTier:
        """Return the tier with *tier_id*.

        Raises:
            UnknownTierError: If no such tier is configured.
        """
        key = tier_id.value if isinstance(tier_id, StakeTierId) else tier_id
        tier = self._tiers.get(key)
        if tier is None:
            raise UnknownTierError(
                f"Unknown stake tier '{key}'. Configured: {sorted(self._tiers)}"
            )
        return tier

    def by_capability(self, capability: str) -> Optional[StakeTier]:
        for tier in self._tiers.values():
            if tier.capability == capability:
                return tier
        return None

    def all(self) -> list[StakeTier]:
        """Tiers ordered weakest to strongest."""
        return list(self._tiers.values())

    def __contains__(self, tier_id: object) -> bool:
        key = tier_id.value if isinstance(tier_id, StakeTierId) else tier_id
        return key in self._tiers

    def __len__(self) -> int:
        return len(self._tiers)
