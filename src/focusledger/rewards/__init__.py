"""
Reward Engine

Event normalization, deterministic reward computation and spend pricing.
"""

from .events import EventNormalizer, RewardableEvent, RewardEventType, RewardPayload
from .calculator import RewardBreakdown, RewardCalculator, StreakMilestone
from .spend import SpendKind, SpendPricer, SpendQuote

__all__ = [
    "EventNormalizer",
    "RewardableEvent",
    "RewardEventType",
    "RewardPayload",
    "RewardBreakdown",
    "RewardCalculator",
    "StreakMilestone",
    "SpendKind",
    "SpendPricer",
    "SpendQuote",
]
