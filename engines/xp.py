"""Experience and level derivation.

Every value here is a pure function of the aggregate. The inputs are sets
(completed lessons), best scores and an append-only list, so replaying a
duplicate command never changes the total.
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from typing import Optional, Sequence

from progress_rules import PROGRESS_RULES, ProgressRulesRegistry, XPWeights
from schemas import QuizRecord, SimulationResult, UserProgress


@dataclass(frozen=True)
class LevelProgress:
    level: int
    total_xp: int
    level_floor: int
    next_level_xp: Optional[int]

    @property
    def xp_into_level(self) -> int:
        return self.total_xp - self.level_floor

    @property
    def xp_to_next_level(self) -> int:
        if self.next_level_xp is None:
            return 0
        return self.next_level_xp - self.total_xp

    @property
    def percent(self) -> float:
        if self.next_level_xp is None:
            return 100.0
        span = self.next_level_xp - self.level_floor
        return round(100.0 * self.xp_into_level / span, 1)


@dataclass(frozen=True)
class DerivedStats:
    total_xp: int
    level: int


def lesson_xp(weights: XPWeights) -> int:
    return weights.lesson


def quiz_xp(record: QuizRecord, weights: XPWeights) -> int:
    xp = int(round(record.best_score * weights.quiz_score_weight))
    if record.passed:
        xp += weights.quiz_pass_bonus
    return xp


def simulation_xp(result: SimulationResult, weights: XPWeights) -> int:
    xp = weights.simulation_base + int(round(result.total_score * weights.simulation_score_weight))
    return xp + int(weights.simulation_grade_bonus.get(result.grade, 0))


def total_xp(progress: UserProgress, rules: ProgressRulesRegistry | None = None) -> int:
    weights = (rules or PROGRESS_RULES).xp
    lessons = len(set(progress.completed_lessons)) * lesson_xp(weights)
    quizzes = sum(quiz_xp(record, weights) for record in progress.quiz_scores.values())
    simulations = sum(simulation_xp(result, weights) for result in progress.simulation_results)
    return lessons + quizzes + simulations


def level_for_xp(xp: int, thresholds: Sequence[int]) -> int:
    """Return the highest 1-based level whose threshold is ``<= xp``."""

    return max(1, bisect_right(list(thresholds), max(0, xp)))


def level_progress(xp: int, thresholds: Sequence[int]) -> LevelProgress:
    level = level_for_xp(xp, thresholds)
    floor = thresholds[level - 1]
    next_xp = thresholds[level] if level < len(thresholds) else None
    return LevelProgress(level=level, total_xp=xp, level_floor=floor, next_level_xp=next_xp)


class DerivedStatsCache:
    """Memoise XP and level until the next write invalidates them."""

    def __init__(self, rules: ProgressRulesRegistry | None = None) -> None:
        self.rules = rules or PROGRESS_RULES
        self._value: Optional[DerivedStats] = None

    def invalidate(self) -> None:
        self._value = None

    def get(self, progress: UserProgress) -> DerivedStats:
        if self._value is None:
            xp = total_xp(progress, self.rules)
            self._value = DerivedStats(total_xp=xp, level=level_for_xp(xp, self.rules.level_thresholds))
        return self._value
