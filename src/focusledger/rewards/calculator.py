"""
Reward Calculator

Pure, deterministic conversion of a ``RewardableEvent`` plus the user's
streak length and weekly session count into a ``RewardBreakdown``.

Stacking order is fixed:

1. base reward by event type (mode multiplier folded in for focus sessions)
2. streak bonus = base * min(streak_days * per_day_rate, cap)
3. tier bonus = base * bonus(highest consistency tier reached this week)
4. total = base + streak bonus + tier bonus
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from focusledger.config import ConsistencyTierRule, RewardRules
from focusledger.money import ZERO, quantize_amount, quantize_line
from focusledger.rewards.events import RewardableEvent, RewardEventType

logger = logging.getLogger(__name__)


class RewardBreakdown(BaseModel):
    """Itemised reward for one event."""

    event_type: str
    idempotency_key: str
    base_reward: Decimal = ZERO
    streak_bonus: Decimal = ZERO
    tier_bonus: Decimal = ZERO
    mode_bonus: Decimal = ZERO
    total_reward: Decimal = ZERO

    streak_days: int = 0
    streak_multiplier: Decimal = ZERO
    sessions_this_week: int = 0
    consistency_tier: Optional[str] = None

    lines: list[str] = Field(default_factory=list)

    @property
    def credit_amount(self) -> Decimal:
        """Total rounded to balance precision."""
        return quantize_amount(self.total_reward)

    @classmethod
    def zero(cls, event: RewardableEvent, reason: str) -> "RewardBreakdown":
        return cls(
            event_type=event.type_name,
            idempotency_key=event.idempotency_key,
            lines=[reason],
        )


class StreakMilestone(BaseModel):
    """One-off bonus for a streak reaching a milestone, credited as its own reward."""

    milestone_days: int
    bonus: Decimal
    previous_streak: int
    current_streak: int

    @property
    def idempotency_key(self) -> str:
        return f"streak_milestone:{self.milestone_days}:{self.previous_streak}"


def _fmt(value: Decimal) -> str:
    return f"{quantize_line(value):f}"


class RewardCalculator:
    """Computes reward breakdowns from configured ``RewardRules``."""

    def __init__(self, rules: Optional[RewardRules] = None) -> None:
        self.rules = rules or RewardRules()

    def tier_for(self, sessions_this_week: int) -> Optional[ConsistencyTierRule]:
        """Highest consistency tier whose threshold is met, or ``None``."""
        for tier in self.rules.consistency_tiers:
            if sessions_this_week >= tier.min_sessions:
                return tier
        return None

    def streak_multiplier(self, streak_days: int) -> Decimal:
        """Streak bonus fraction, capped."""
        raw = Decimal(max(streak_days, 0)) * self.rules.streak_bonus_per_day
        return min(raw, self.rules.streak_cap)

    def streak_milestone(self, previous_streak: int, current_streak: int) -> Optional[StreakMilestone]:
        """Highest milestone newly reached going from *previous_streak* to *current_streak*.

        Only one milestone is awarded per step, even when a jump crosses several.
        """
        previous_streak = max(previous_streak, 0)
        reached = [
            days
            for days in self.rules.streak_milestones
            if previous_streak < days <= current_streak
        ]
        if not reached:
            return None
        days = max(reached)
        return StreakMilestone(
            milestone_days=days,
            bonus=self.rules.streak_milestones[days],
            previous_streak=previous_streak,
            current_streak=current_streak,
        )

    def mode_multiplier(self, mode: Optional[str]) -> Decimal:
        mode = mode or self.rules.default_mode
        return self.rules.mode_multipliers.get(mode, Decimal("1.0"))

    def compute(
        self,
        event: RewardableEvent,
        streak_days: int = 0,
        sessions_this_week: int = 0,
    ) -> RewardBreakdown:
        """Compute the reward for *event*.

        Never raises: a computation failure yields a zero reward.
        """
        try:
            return self._compute(event, max(streak_days, 0), max(sessions_this_week, 0))
        except Exception:
            logger.exception(
                "Reward computation failed for %s (key=%s); crediting zero",
                event.type_name,
                event.idempotency_key,
            )
            return RewardBreakdown.zero(event, "Reward computation failed: +0")

    def _compute(
        self,
        event: RewardableEvent,
        streak_days: int,
        sessions_this_week: int,
    ) -> RewardBreakdown:
        lines: list[str] = []
        if event.malformed:
            lines.append(f"Malformed {event.type_name} payload: +0")
            base = ZERO
        elif not event.is_known:
            lines.append(f"Unknown event: {event.type_name}")
            base = ZERO
        else:
            base = quantize_line(self._base_reward(event, lines))

        multiplier = self.streak_multiplier(streak_days)
        streak_bonus = quantize_line(base * multiplier)
        if streak_bonus > 0:
            lines.append(f"Streak bonus ({streak_days}d): +{_fmt(streak_bonus)}")

        tier = self.tier_for(sessions_this_week)
        tier_bonus = quantize_line(base * tier.bonus) if tier else ZERO
        if tier_bonus > 0:
            lines.append(f"{tier.name} tier bonus: +{_fmt(tier_bonus)}")

        total = base + streak_bonus + tier_bonus
        breakdown = RewardBreakdown(
            event_type=event.type_name,
            idempotency_key=event.idempotency_key,
            base_reward=base,
            streak_bonus=streak_bonus,
            tier_bonus=tier_bonus,
            mode_bonus=ZERO,
            total_reward=total,
            streak_days=streak_days,
            streak_multiplier=multiplier,
            sessions_this_week=sessions_this_week,
            consistency_tier=tier.name if tier else None,
            lines=lines,
        )
        logger.debug(
            "Computed reward %s for %s (base=%s streak=%s tier=%s)",
            total, event.idempotency_key, base, streak_bonus, tier_bonus,
        )
        return breakdown

    def _base_reward(self, event: RewardableEvent, lines: list[str]) -> Decimal:
        rules = self.rules
        payload = event.payload
        event_type = event.event_type

        if event_type == RewardEventType.task_completed:
            effort = payload.effort if payload.effort is not None else rules.default_effort
            if effort <= rules.low_effort_max:
                lines.append(f"Quick win: +{_fmt(rules.quick_win)}")
                return rules.quick_win
            if effort <= rules.medium_effort_max:
                lines.append(f"Medium task: +{_fmt(rules.medium_task)}")
                return rules.medium_task
            lines.append(f"High-effort task: +{_fmt(rules.high_effort_task)}")
            return rules.high_effort_task

        if event_type == RewardEventType.instant_catchup:
            lines.append(f"Instant Catch-Up: +{_fmt(rules.instant_catchup)}")
            message_bonus = payload.message_count * rules.per_message
            if message_bonus > 0:
                lines.append(
                    f"Messages processed ({payload.message_count}): +{_fmt(message_bonus)}"
                )
            return rules.instant_catchup + message_bonus

        if event_type == RewardEventType.focus_session:
            minutes = payload.duration_minutes
            mode = payload.mode or rules.default_mode
            multiplier = self.mode_multiplier(mode)
            reward = Decimal(minutes) * rules.focus_minute * multiplier
            lines.append(f"Focus {minutes}m ({mode} x{multiplier}): +{_fmt(reward)}")
            if minutes >= 60:
                hourly = Decimal(minutes // 60) * rules.focus_hour
                lines.append(f"Hourly bonus: +{_fmt(hourly)}")
                reward += hourly
            return reward

        if event_type in (RewardEventType.spam_blocked, RewardEventType.auto_archive):
            count = payload.item_count if payload.item_count is not None else 1
            rate = (
                rules.spam_blocked
                if event_type == RewardEventType.spam_blocked
                else rules.auto_archive
            )
            reward = Decimal(count) * rate
            label = "Spam blocked" if event_type == RewardEventType.spam_blocked else "Auto-archived"
            lines.append(f"{label} ({count}): +{_fmt(reward)}")
            return reward

        lines.append(f"Unknown event: {event.type_name}")
        return ZERO
