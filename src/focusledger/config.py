"""
Ledger Configuration

Reward rules, stake tiers, settlement thresholds, spend rates and storage
settings. Every constant has the production default baked in; a YAML file
can override any subset of them.
"""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator


class StakeTier(BaseModel):
    """A stake tier: the amount it locks and the capability it unlocks."""

    tier_id: str = Field(..., description="Tier identifier (e.g. 'tier_1')")
    amount: Decimal = Field(..., gt=0, description="Credit locked while staked")
    capability: str = Field(..., description="Capability unlocked by the tier")
    name: str = Field(default="")
    description: str = Field(default="")
    autonomy_level: int = Field(default=1, ge=0)


DEFAULT_STAKE_TIERS: tuple[StakeTier, ...] = (
    StakeTier(
        tier_id="tier_1",
        amount=Decimal("500"),
        capability="auto_close_emails",
        name="Email Guardian",
        description="Auto-close low-risk emails",
        autonomy_level=1,
    ),
    StakeTier(
        tier_id="tier_2",
        amount=Decimal("1500"),
        capability="auto_schedule",
        name="Time Manager",
        description="Auto-schedule meetings",
        autonomy_level=2,
    ),
    StakeTier(
        tier_id="tier_3",
        amount=Decimal("3000"),
        capability="full_autonomy",
        name="Full Operator",
        description="Full autonomous operation",
        autonomy_level=3,
    ),
)


class ConsistencyTierRule(BaseModel):
    """A weekly consistency tier: reached at ``min_sessions`` sessions."""

    name: str
    min_sessions: int = Field(..., ge=0)
    bonus: Decimal = Field(..., ge=0, description="Fraction of base reward")


def _default_consistency_tiers() -> list[ConsistencyTierRule]:
    return [
        ConsistencyTierRule(name="platinum", min_sessions=10, bonus=Decimal("0.15")),
        ConsistencyTierRule(name="gold", min_sessions=7, bonus=Decimal("0.10")),
        ConsistencyTierRule(name="silver", min_sessions=5, bonus=Decimal("0.05")),
        ConsistencyTierRule(name="bronze", min_sessions=3, bonus=Decimal("0.02")),
    ]


def _default_mode_multipliers() -> dict[str, Decimal]:
    return {
        "deep_work": Decimal("1.5"),
        "learning": Decimal("1.3"),
        "catch_up": Decimal("1.25"),
        "career": Decimal("1.2"),
        "wealth": Decimal("1.1"),
        "health": Decimal("1.0"),
        "communication": Decimal("1.0"),
        "focus": Decimal("1.0"),
    }


def _default_streak_milestones() -> dict[int, Decimal]:
    return {
        3: Decimal("1"),
        7: Decimal("3"),
        14: Decimal("7"),
        30: Decimal("20"),
    }


class RewardRules(BaseModel):
    """Earning rules for behavioral events."""

    # Task completion (effort on a 0-10 scale)
    quick_win: Decimal = Field(default=Decimal("0.25"), ge=0)
    medium_task: Decimal = Field(default=Decimal("1.0"), ge=0)
    high_effort_task: Decimal = Field(default=Decimal("2.5"), ge=0)
    low_effort_max: int = Field(default=2, ge=0, le=10)
    medium_effort_max: int = Field(default=6, ge=0, le=10)
    default_effort: int = Field(default=5, ge=0, le=10)

    # Instant catch-up
    instant_catchup: Decimal = Field(default=Decimal("3.0"), ge=0)
    per_message: Decimal = Field(default=Decimal("0.02"), ge=0)

    # Focus sessions
    focus_minute: Decimal = Field(default=Decimal("0.05"), ge=0)
    focus_hour: Decimal = Field(default=Decimal("0.5"), ge=0)
    default_mode: str = Field(default="health")
    mode_multipliers: dict[str, Decimal] = Field(default_factory=_default_mode_multipliers)

    # Protection
    spam_blocked: Decimal = Field(default=Decimal("0.02"), ge=0)
    auto_archive: Decimal = Field(default=Decimal("0.02"), ge=0)

    # Bonuses
    streak_bonus_per_day: Decimal = Field(default=Decimal("0.005"), ge=0)
    streak_cap: Decimal = Field(default=Decimal("0.25"), ge=0)
    consistency_tiers: list[ConsistencyTierRule] = Field(
        default_factory=_default_consistency_tiers
    )
    # One-off credit when a streak first reaches N days
    streak_milestones: dict[int, Decimal] = Field(default_factory=_default_streak_milestones)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "RewardRules":
        if self.low_effort_max > self.medium_effort_max:
            raise ValueError("low_effort_max must not exceed medium_effort_max")
        names = [t.name for t in self.consistency_tiers]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate consistency tier names: {names}")
        bad = [days for days, bonus in self.streak_milestones.items() if days <= 0 or bonus < 0]
        if bad:
            raise ValueError(f"Streak milestones need positive days and non-negative bonuses: {bad}")
        # Highest threshold first so a top-down scan picks the best tier.
        self.consistency_tiers.sort(key=lambda t: t.min_sessions, reverse=True)
        return self


class StakingRules(BaseModel):
    """Stake tiers, withdrawal cooldown and default revocation policy."""

    tiers: list[StakeTier] = Field(default_factory=lambda: list(DEFAULT_STAKE_TIERS))
    cooldown_days: int = Field(default=7, ge=0)
    revocation_policy: Literal["forfeit", "refund"] = Field(default="forfeit")


class SettlementRules(BaseModel):
    """Pending threshold that makes a user settlement-eligible."""

    threshold: Decimal = Field(default=Decimal("10.0"), gt=0)
    minimum_settlement: Decimal = Field(default=Decimal("1.0"), gt=0)


class SpendRates(BaseModel):
    """Prices for accelerated actions paid from the available balance."""

    batch_process_base: Decimal = Field(default=Decimal("0.5"), ge=0)
    batch_process_per_item: Decimal = Field(default=Decimal("0.02"), ge=0)
    priority_override: Decimal = Field(default=Decimal("1.0"), ge=0)
    extended_focus_per_hour: Decimal = Field(default=Decimal("0.25"), ge=0)
    high_volume_multiplier: Decimal = Field(default=Decimal("1.5"), ge=0)


class StoreConfig(BaseModel):
    """Configuration for the ledger store."""

    backend: Literal["memory", "sql"] = Field(default="memory", description="Store backend type")
    connection_string: Optional[str] = Field(
        default=None,
        description="SQLAlchemy async URL, e.g. postgresql+asyncpg://... or sqlite+aiosqlite://",
    )
    pool_size: int = Field(default=10, ge=1, le=100, description="Connection pool size")
    echo: bool = Field(default=False, description="Log emitted SQL")
    create_schema: bool = Field(default=True, description="Create tables on connect")
    max_retries: int = Field(default=5, ge=1, le=50, description="Optimistic concurrency retries")


class LedgerSettings(BaseModel):
    """Top-level settings for a ledger service."""

    rewards: RewardRules = Field(default_factory=RewardRules)
    staking: StakingRules = Field(default_factory=StakingRules)
    settlement: SettlementRules = Field(default_factory=SettlementRules)
    spend: SpendRates = Field(default_factory=SpendRates)
    store: StoreConfig = Field(default_factory=StoreConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "LedgerSettings":
        """Load settings from a YAML file. Missing sections keep their defaults."""
        path = Path(path)
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    @classmethod
    def from_yaml_string(cls, content: str) -> "LedgerSettings":
        data = yaml.safe_load(content) or {}
        return cls(**data)

    def to_yaml(self, path: str | Path) -> None:
        """Save these settings to a YAML file."""
        path = Path(path)
        data = self.model_dump(mode="json")
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
