"""Scoring engine for quiz attempts and simulation outcomes.

Raw results coming from quiz and scenario components are normalised here
before they touch the aggregate: scores are clamped into ``[0, 100]``,
question counts are forced to at least one, and simulation grades are
derived from the score when a component does not report one. A bad input
never rejects the command.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from progress_rules import GRADES, PROGRESS_RULES, ProgressRulesRegistry
from schemas import QuizRecord, SimulationResult, SimulationResultInput, UserProgress
from engines.validation import CommandValidationError

_LOGGER = logging.getLogger(__name__)

# Lower bound of each letter grade, highest first.
GRADE_BANDS = ((90.0, "A"), (80.0, "B"), (70.0, "C"), (60.0, "D"))


@dataclass
class QuizAttempt:
    """One normalised quiz submission."""

    quiz_id: str
    score: float
    total_questions: int
    clamped: bool = False


@dataclass
class QuizOutcome:
    """Effect of a quiz attempt on the stored record."""

    quiz_id: str
    record: QuizRecord
    previous_best: Optional[float]
    threshold: float
    newly_passed: bool

    @property
    def improved(self) -> bool:
        return self.previous_best is None or self.record.best_score > self.previous_best


def clamp_score(value: float) -> float:
    """Clamp ``value`` into ``[0, 100]``; NaN counts as zero."""

    number = float(value)
    if math.isnan(number):
        return 0.0
    return max(0.0, min(100.0, number))


def grade_for_score(score: float) -> str:
    """Map a 0-100 score to a letter grade."""

    for lower, grade in GRADE_BANDS:
        if score >= lower:
            return grade
    return "F"


class ScoringEngine:
    """Turn raw results into stored attempts and pass/fail decisions."""

    def __init__(self, rules: ProgressRulesRegistry | None = None) -> None:
        self.rules = rules or PROGRESS_RULES

    # ----- quizzes -----------------------------------------------------
    def normalize_quiz(self, quiz_id: str, score: float, total_questions: int) -> QuizAttempt:
        """Validate identifiers and clamp the numeric inputs of a quiz submission."""

        quiz_key = (quiz_id or "").strip()
        if not quiz_key:
            raise CommandValidationError("quiz id must be a non-empty string")

        coerced = False
        try:
            raw_score = float(score)
        except (TypeError, ValueError):
            raw_score = 0.0
            coerced = True
        clamped_score = clamp_score(raw_score)

        try:
            questions = int(total_questions)
        except (TypeError, ValueError, OverflowError):
            questions = 1
            coerced = True
        clamped_questions = max(1, questions)

        clamped = coerced or clamped_score != raw_score or clamped_questions != questions
        if clamped:
            _LOGGER.warning(
                "Clamped quiz input for %s: score %r -> %s, totalQuestions %r -> %s",
                quiz_key,
                score,
                clamped_score,
                total_questions,
                clamped_questions,
            )
        return QuizAttempt(quiz_key, clamped_score, clamped_questions, clamped)

    def apply_quiz_attempt(self, progress: UserProgress, attempt: QuizAttempt) -> QuizOutcome:
        """Fold ``attempt`` into ``progress.quiz_scores`` keeping the best score."""

        threshold = self.rules.threshold(attempt.quiz_id)
        existing = progress.quiz_scores.get(attempt.quiz_id)
        previous_best = existing.best_score if existing is not None else None
        was_passed = existing.passed if existing is not None else False

        best = attempt.score if previous_best is None else max(previous_best, attempt.score)
        record = QuizRecord(
            best_score=best,
            attempts=(existing.attempts if existing is not None else 0) + 1,
            total_questions=attempt.total_questions,
            passed=best >= threshold,
        )
        progress.quiz_scores[attempt.quiz_id] = record
        return QuizOutcome(
            quiz_id=attempt.quiz_id,
            record=record,
            previous_best=previous_best,
            threshold=threshold,
            newly_passed=record.passed and not was_passed,
        )

    # ----- simulations -------------------------------------------------
    def normalize_simulation(
        self, raw: SimulationResultInput, *, now: Optional[datetime] = None
    ) -> SimulationResult:
        """Build an immutable :class:`SimulationResult` from a raw report."""

        scenario_id = (raw.scenario_id or "").strip()
        if not scenario_id:
            raise CommandValidationError("simulation scenario id must be a non-empty string")

        score = clamp_score(raw.total_score)
        grade = (raw.grade or "").strip().upper()
        if grade not in GRADES:
            derived = grade_for_score(score)
            if grade:
                _LOGGER.warning("Unknown grade %r for %s; using %s", raw.grade, scenario_id, derived)
            grade = derived

        time_spent = raw.time_spent if math.isfinite(raw.time_spent) else 0.0
        outcome = raw.financial_outcome if math.isfinite(raw.financial_outcome) else 0.0
        return SimulationResult(
            scenario_id=scenario_id,
            total_score=score,
            time_spent=max(0.0, time_spent),
            financial_outcome=outcome,
            grade=grade,
            completed_at=raw.completed_at or now or datetime.now(timezone.utc),
            correct_answers=max(0, raw.correct_answers),
            total_questions=max(0, raw.total_questions),
            strengths=list(raw.strengths),
            improvements=list(raw.improvements),
        )
