"""
Activity Provider

Streak length and weekly focus-session counts feed the reward bonuses.
They live with the focus-session tracker, outside the ledger, so the
ledger only sees them through this narrow interface.
"""

from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class ActivityProvider(Protocol):
    """Source of a user's streak and weekly session count."""

    async def streak_days(self, user_id: str) -> int:
        ...

    async def sessions_this_week(self, user_id: str) -> int:
        ...


class InMemoryActivityProvider:
    """Activity counters held in dicts, for tests and development."""

    def __init__(
        self,
        streaks: Optional[dict[str, int]] = None,
        sessions: Optional[dict[str, int]] = None,
    ) -> None:
        self._streaks = dict(streaks or {})
        self._sessions = dict(sessions or {})

    def set_activity(
        self,
        user_id: str,
        *,
        streak_days: Optional[int] = None,
        sessions_this_week: Optional[int] = None,
    ) -> None:
        if streak_days is not None:
            self._streaks[user_id] = streak_days
        if sessions_this_week is not None:
            self._sessions[user_id] = sessions_this_week

    def record_session(self, user_id: str) -> int:
        """Count one more focus session this week; returns the new count."""
        self._sessions[user_id] = self._sessions.get(user_id, 0) + 1
        return self._sessions[user_id]

    async def streak_days(self, user_id: str) -> int:
        return self._streaks.get(user_id, 0)

    async def sessions_this_week(self, user_id: str) -> int:
        return self._sessions.get(user_id, 0)
