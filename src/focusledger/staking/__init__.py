"""
Capability Staking

Stake tiers and the stake lifecycle manager.
"""

from .tiers import StakeTierCatalog, StakeTierId
from .manager import StakingManager

__all__ = [
    "StakeTierCatalog",
    "StakeTierId",
    "StakingManager",
]
