from datetime import date, timedelta

import pytest

from engines.streak import StreakTracker
from schemas import StreakState

DAY = date(2024, 3, 4)


@pytest.fixture
def tracker():
    return StreakTracker()


def test_first_action_starts_streak(tracker):
    streak = tracker.touch(StreakState(), DAY)

    assert streak.current == 1
    assert streak.longest == 1
    assert streak.last_active_date == DAY


def test_consecutive_days_extend_streak(tracker):
    streak = StreakState()
    for offset in range(3):
        streak = tracker.touch(streak, DAY + timedelta(days=offset))

    assert streak.current == 3
    assert streak.longest == 3


def test_same_day_actions_do_not_double_count(tracker):
    streak = tracker.touch(StreakState(), DAY)
    streak = tracker.touch(streak, DAY)

    assert streak.current == 1


def test_gap_resets_current_but_keeps_longest(tracker):
    streak = StreakState(current=4, longest=6, last_active_date=DAY)

    streak = tracker.touch(streak, DAY + timedelta(days=5))

    assert streak.current == 1
    assert streak.longest == 6
    assert streak.last_active_date == DAY + timedelta(days=5)


def test_clock_going_backwards_restarts(tracker):
    streak = StreakState(current=2, longest=2, last_active_date=DAY)

    assert tracker.touch(streak, DAY - timedelta(days=3)).current == 1


def test_longest_is_raised_to_current_on_load():
    assert StreakState(current=5, longest=2).longest == 5


@pytest.mark.parametrize(
    "last, current, expected",
    [(DAY - timedelta(days=1), 3, True), (DAY, 3, False), (DAY - timedelta(days=2), 3, False), (None, 0, False)],
)
def test_is_streak_at_risk(last, current, expected):
    streak = StreakState(current=current, longest=current, last_active_date=last)

    assert StreakTracker.is_streak_at_risk(streak, DAY) is expected


def test_active_streak_lapses_after_missed_day():
    streak = StreakState(current=3, longest=3, last_active_date=DAY)

    assert StreakTracker.active_streak(streak, DAY + timedelta(days=1)) == 3
    assert StreakTracker.active_streak(streak, DAY + timedelta(days=2)) == 0
