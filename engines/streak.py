"""Daily engagement streak tracking on learner-local calendar dates."""

from __future__ import annotations

from datetime import date, timedelta

from schemas import StreakState


class StreakTracker:
    """Apply the consecutive-day rule for each qualifying action."""

    def touch(self, streak: StreakState, today: date) -> StreakState:
        """Return the streak after an action on ``today``.

        Same day keeps the count, the day after extends it, anything else
        (including the first action ever) restarts it at one.
        """

        last = streak.last_active_date
        if last == today:
            current = streak.current
        elif last is not None and last == today - timedelta(days=1):
            current = streak.current + 1
        else:
            current = 1
        return StreakState(
            current=current,
            longest=max(streak.longest, current),
            last_active_date=today,
        )

    @staticmethod
    def is_streak_at_risk(streak: StreakState, today: date) -> bool:
        """True when the streak survives only if the learner acts today."""

        if streak.current == 0 or streak.last_active_date is None:
            return False
        return streak.last_active_date == today - timedelta(days=1)

    @staticmethod
    def active_streak(streak: StreakState, today: date) -> int:
        """Streak length as it stands today, without recording an action."""

        if streak.last_active_date is None:
            return 0
        if streak.last_active_date >= today - timedelta(days=1):
            return streak.current
        return 0
