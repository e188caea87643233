from datetime import datetime, timezone

import pytest

from engines.xp import DerivedStatsCache, level_for_xp, level_progress, total_xp
from progress_rules import PROGRESS_RULES
from schemas import QuizRecord, SimulationResult, UserProgress

THRESHOLDS = PROGRESS_RULES.level_thresholds


def _simulation(score, grade, scenario_id="emergency-fund"):
    return SimulationResult(
        scenario_id=scenario_id,
        total_score=score,
        grade=grade,
        completed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def test_empty_progress_has_no_xp_and_level_one():
    progress = UserProgress()

    assert total_xp(progress) == 0
    assert level_for_xp(0, THRESHOLDS) == 1


def test_xp_combines_lessons_quizzes_and_simulations():
    progress = UserProgress(
        completed_lessons=["ch1-lesson-1", "ch1-lesson-2"],
        quiz_scores={"ch1-quiz": QuizRecord(best_score=85, attempts=2, total_questions=10, passed=True)},
        simulation_results=[_simulation(90, "A")],
    )

    # 2 lessons x 50, quiz 85 + 50 pass bonus, simulation 25 + 45 + 100 for an A
    assert total_xp(progress) == 100 + 135 + 170


def test_duplicate_lesson_ids_count_once():
    progress = UserProgress(completed_lessons=["ch1-lesson-1", "ch1-lesson-1"])

    assert total_xp(progress) == 50


def test_failed_quiz_earns_score_without_bonus():
    progress = UserProgress(quiz_scores={"ch1-quiz": QuizRecord(best_score=40, attempts=1, passed=False)})

    assert total_xp(progress) == 40


@pytest.mark.parametrize(
    "xp, level",
    [(-10, 1), (0, 1), (99, 1), (100, 2), (249, 2), (250, 3), (24999, 12), (25000, 13), (10**6, 13)],
)
def test_level_for_xp(xp, level):
    assert level_for_xp(xp, THRESHOLDS) == level


def test_level_progress_within_level():
    info = level_progress(135, THRESHOLDS)

    assert info.level == 2
    assert info.level_floor == 100
    assert info.next_level_xp == 250
    assert info.xp_into_level == 35
    assert info.xp_to_next_level == 115
    assert info.percent == 23.3


def test_level_progress_at_max_level():
    info = level_progress(30000, THRESHOLDS)

    assert info.level == len(THRESHOLDS)
    assert info.next_level_xp is None
    assert info.xp_to_next_level == 0
    assert info.percent == 100.0


def test_cache_recomputes_only_after_invalidate():
    progress = UserProgress(completed_lessons=["ch1-lesson-1"])
    cache = DerivedStatsCache()

    first = cache.get(progress)
    progress.completed_lessons.append("ch1-lesson-2")
    assert cache.get(progress) is first

    cache.invalidate()
    assert cache.get(progress).total_xp == 100
