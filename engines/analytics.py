"""Learning analytics derived from the progress history.

Nothing computed here is stored as ground truth; dashboards and the chat
context builder call these helpers on a snapshot whenever they render.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from statistics import mean
from typing import Any, Dict, List, Optional

from progress_rules import PROGRESS_RULES, ProgressRulesRegistry, chapter_key
from schemas import UserProgress

# Upper chapter bound of each experience band, used for chat personalisation.
EXPERIENCE_BANDS = ((3, "beginner"), (8, "intermediate"), (14, "advanced"))


@dataclass
class LearningAnalytics:
    average_quiz_score: float
    lesson_completion_rate: float
    financial_literacy_score: int
    total_time_spent: float
    time_spent_by_chapter: Dict[str, float] = field(default_factory=dict)
    concepts_mastered: List[str] = field(default_factory=list)
    struggling_topics: List[str] = field(default_factory=list)


def quiz_topic(quiz_id: str) -> str:
    return quiz_id[: -len("-quiz")] if quiz_id.endswith("-quiz") else quiz_id


def average_quiz_score(progress: UserProgress) -> float:
    scores = [record.best_score for record in progress.quiz_scores.values()]
    return round(mean(scores), 1) if scores else 0.0


def lesson_completion_rate(progress: UserProgress, rules: ProgressRulesRegistry | None = None) -> float:
    """Completed lessons against those reachable from the unlocked chapters."""

    rules = rules or PROGRESS_RULES
    reachable = min(progress.current_chapter, rules.total_chapters) * rules.lessons_per_chapter
    if reachable <= 0:
        return 0.0
    return round(min(100.0, 100.0 * len(progress.completed_lessons) / reachable), 1)


def financial_literacy_score(progress: UserProgress, rules: ProgressRulesRegistry | None = None) -> int:
    """0-1000 score: quizzes 400, lessons 300, distinct tools 200, streak 100."""

    rules = rules or PROGRESS_RULES
    score = 0.0
    if progress.quiz_scores:
        score += average_quiz_score(progress) / 100.0 * 400.0
    score += lesson_completion_rate(progress, rules) / 100.0 * 300.0
    tools_used = sum(1 for usage in progress.calculator_usage.values() if usage.count > 0)
    score += min(tools_used / rules.max_calculators, 1.0) * 200.0
    score += min(progress.streak.current / 7.0, 1.0) * 100.0
    return int(round(min(score, 1000.0)))


def chapter_progress(
    progress: UserProgress, chapter: int, rules: ProgressRulesRegistry | None = None
) -> int:
    """Percent of a chapter's lessons plus its gating quiz that are done."""

    rules = rules or PROGRESS_RULES
    if not rules.chapter_in_range(chapter):
        return 0
    lessons = {lesson_id for lesson_id in progress.completed_lessons if chapter_key(lesson_id) == chapter}
    done = min(len(lessons), rules.lessons_per_chapter)
    rule = rules.rule_for_chapter(chapter)
    if rule is not None:
        record = progress.quiz_scores.get(rule.requires_quiz)
        if record is not None and record.passed:
            done += 1
    return int(round(100.0 * done / (rules.lessons_per_chapter + 1)))


def compute_learning_analytics(
    progress: UserProgress, rules: ProgressRulesRegistry | None = None
) -> LearningAnalytics:
    rules = rules or PROGRESS_RULES
    mastered = [quiz_topic(quiz_id) for quiz_id, record in progress.quiz_scores.items() if record.passed]
    struggling = [quiz_topic(quiz_id) for quiz_id, record in progress.quiz_scores.items() if not record.passed]
    return LearningAnalytics(
        average_quiz_score=average_quiz_score(progress),
        lesson_completion_rate=lesson_completion_rate(progress, rules),
        financial_literacy_score=financial_literacy_score(progress, rules),
        total_time_spent=progress.total_time_spent,
        time_spent_by_chapter=dict(progress.time_spent_by_chapter),
        concepts_mastered=mastered,
        struggling_topics=struggling,
    )


def experience_band(current_chapter: int) -> str:
    for upper, band in EXPERIENCE_BANDS:
        if current_chapter <= upper:
            return band
    return "expert"


def learner_context(
    progress: UserProgress,
    *,
    total_xp: int,
    level: int,
    today: Optional[date] = None,
    rules: ProgressRulesRegistry | None = None,
) -> Dict[str, Any]:
    """Read-only learner summary handed to the chat assistant."""

    rules = rules or PROGRESS_RULES
    analytics = compute_learning_analytics(progress, rules)
    recent = progress.simulation_results[-3:]
    return {
        "experience_level": experience_band(progress.current_chapter),
        "current_chapter": progress.current_chapter,
        "total_chapters": rules.total_chapters,
        "level": level,
        "total_xp": total_xp,
        "financial_literacy_score": analytics.financial_literacy_score,
        "completed_lessons": len(progress.completed_lessons),
        "average_quiz_score": analytics.average_quiz_score,
        "concepts_mastered": analytics.concepts_mastered,
        "struggling_topics": analytics.struggling_topics,
        "tools_used": sorted(progress.calculator_usage),
        "recent_simulations": [
            {"scenario_id": result.scenario_id, "grade": result.grade, "total_score": result.total_score}
            for result in recent
        ],
        "streak_days": progress.streak.current,
        "as_of": today.isoformat() if today is not None else None,
    }
