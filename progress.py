"""Command/query facade over one learner's progress aggregate.

Collaborators (lesson, quiz, calculator and simulation components, the
navigation gate, dashboards and the chat context builder) only talk to a
:class:`ProgressTracker`. Commands run to completion before returning, are
applied to a working copy and committed atomically, and never raise: bad
input is clamped or ignored and storage failures degrade to in-memory
operation.
"""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from dataclasses import asdict
from datetime import date, datetime, timezone, tzinfo
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from engines.achievements import award_for_quiz, award_for_simulation
from engines.analytics import LearningAnalytics, chapter_progress, compute_learning_analytics, learner_context
from engines.scoring import ScoringEngine
from engines.streak import StreakTracker
from engines.unlock import ChapterState, UnlockPolicy
from engines.validation import CommandValidationError
from engines.xp import DerivedStatsCache, LevelProgress, level_progress
from progress_rules import PROGRESS_RULES, ProgressRulesRegistry
from progress_store import SCHEMA_VERSION, ProgressPersistence
from schemas import (
    COMMAND_ADAPTER,
    CompleteLesson,
    CompleteOnboarding,
    ProgressSnapshot,
    RecordCalculatorUsage,
    RecordQuizScore,
    RecordSimulationResult,
    RecordTimeSpent,
    ResetProgress,
    SimulationResult,
    SimulationResultInput,
    ToolUsage,
    UserProgress,
)

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

DEFAULT_MAX_TRACKERS = 1024

Clock = Callable[[], datetime]


def _local_now() -> datetime:
    return datetime.now().astimezone()


def _clean_id(value: Any, label: str) -> str:
    key = value.strip() if isinstance(value, str) else ""
    if not key:
        raise CommandValidationError(f"{label} must be a non-empty string, got {value!r}")
    return key


def _clean_minutes(value: Any) -> float:
    try:
        minutes = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(minutes) or minutes < 0:
        return 0.0
    return minutes


class ProgressTracker:
    """Single entry point for recording and reading a learner's progress."""

    def __init__(
        self,
        user_id: str = "local",
        *,
        rules: ProgressRulesRegistry | None = None,
        persistence: ProgressPersistence | None = None,
        clock: Clock | None = None,
        tz: tzinfo | None = None,
    ) -> None:
        self.user_id = user_id
        self.rules = rules or PROGRESS_RULES
        self.scoring = ScoringEngine(self.rules)
        self.unlock_policy = UnlockPolicy(self.rules)
        self.streaks = StreakTracker()
        self._derived = DerivedStatsCache(self.rules)
        self._clock = clock or _local_now
        self._tz = tz
        self.persistence = persistence if persistence is not None else ProgressPersistence(user_id)
        self._progress = self.persistence.load()
        logger.info(
            "Progress tracker ready for %s (chapter %s, %s lessons)",
            user_id,
            self._progress.current_chapter,
            len(self._progress.completed_lessons),
        )

    # ----- time --------------------------------------------------------
    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.astimezone()
        return now

    def today(self) -> date:
        """Learner-local calendar date."""

        now = self._now()
        if self._tz is not None:
            now = now.astimezone(self._tz)
        return now.date()

    # ----- command plumbing ---------------------------------------------
    def _run(self, name: str, apply: Callable[..., bool], *args: Any) -> bool:
        try:
            return apply(*args)
        except CommandValidationError as exc:
            logger.warning("Ignoring %s for %s: %s", name, self.user_id, exc)
        except Exception:
            logger.exception("Unexpected failure in %s for %s; progress unchanged", name, self.user_id)
        return False

    def _working_copy(self) -> UserProgress:
        return self._progress.model_copy(deep=True)

    def _touch_streak(self, working: UserProgress) -> None:
        working.streak = self.streaks.touch(working.streak, self.today())

    def _commit(self, working: UserProgress) -> None:
        self._progress = working
        self._derived.invalidate()
        self.persistence.save(working, self._derived.get(working))

    # ----- commands ------------------------------------------------------
    def complete_lesson(self, lesson_id: str, minutes_spent: float = 0.0) -> None:
        """Mark a lesson complete; repeats only add engagement time."""

        self._run("complete_lesson", self._complete_lesson, lesson_id, minutes_spent)

    def _complete_lesson(self, lesson_id: Any, minutes_spent: Any) -> bool:
        lesson_key = _clean_id(lesson_id, "lesson id")
        minutes = _clean_minutes(minutes_spent)
        working = self._working_copy()
        if lesson_key not in working.completed_lessons:
            working.completed_lessons.append(lesson_key)
        else:
            logger.debug("Lesson %s already completed by %s", lesson_key, self.user_id)
        chapter = lesson_key.split("-")[0]
        working.total_time_spent += minutes
        working.time_spent_by_chapter[chapter] = working.time_spent_by_chapter.get(chapter, 0.0) + minutes
        self._touch_streak(working)
        self._commit(working)
        return True

    def record_quiz_score(self, quiz_id: str, score: float, total_questions: int = 1) -> None:
        """Store a quiz attempt, keep the best score and evaluate the unlock gate."""

        self._run("record_quiz_score", self._record_quiz_score, quiz_id, score, total_questions)

    def _record_quiz_score(self, quiz_id: Any, score: Any, total_questions: Any) -> bool:
        attempt = self.scoring.normalize_quiz(quiz_id if isinstance(quiz_id, str) else "", score, total_questions)
        working = self._working_copy()
        outcome = self.scoring.apply_quiz_attempt(working, attempt)
        self.unlock_policy.apply_quiz_result(working, attempt.quiz_id)
        award_for_quiz(working, self.rules.rule_for_quiz(attempt.quiz_id), outcome.record.passed)
        self._touch_streak(working)
        self._commit(working)
        return True

    def record_calculator_usage(self, tool_id: str) -> None:
        self._run("record_calculator_usage", self._record_calculator_usage, tool_id)

    def _record_calculator_usage(self, tool_id: Any) -> bool:
        tool_key = _clean_id(tool_id, "tool id")
        working = self._working_copy()
        previous = working.calculator_usage.get(tool_key)
        working.calculator_usage[tool_key] = ToolUsage(
            count=(previous.count if previous is not None else 0) + 1,
            last_used_at=self._now().astimezone(timezone.utc),
        )
        self._touch_streak(working)
        self._commit(working)
        return True

    def record_simulation_result(self, result: SimulationResultInput | SimulationResult | Mapping[str, Any]) -> None:
        self._run("record_simulation_result", self._record_simulation_result, result)

    def _record_simulation_result(self, result: Any) -> bool:
        if isinstance(result, SimulationResultInput):
            raw = result
        else:
            if isinstance(result, BaseModel):
                result = result.model_dump()
            try:
                raw = SimulationResultInput.model_validate(result)
            except ValidationError as exc:
                raise CommandValidationError(f"invalid simulation result: {exc.errors()[:1]}") from exc
        normalized = self.scoring.normalize_simulation(raw, now=self._now().astimezone(timezone.utc))
        working = self._working_copy()
        working.simulation_results.append(normalized)
        award_for_simulation(working, normalized)
        self._touch_streak(working)
        self._commit(working)
        return True

    def record_time_spent(self, minutes: float) -> None:
        """Add free-standing study time; not a streak action."""

        self._run("record_time_spent", self._record_time_spent, minutes)

    def _record_time_spent(self, minutes: Any) -> bool:
        amount = _clean_minutes(minutes)
        if amount == 0:
            return False
        working = self._working_copy()
        working.total_time_spent += amount
        self._commit(working)
        return True

    def complete_onboarding(self) -> None:
        self._run("complete_onboarding", self._complete_onboarding)

    def _complete_onboarding(self) -> bool:
        if self._progress.onboarding_completed:
            return False
        working = self._working_copy()
        working.onboarding_completed = True
        self._commit(working)
        return True

    def reset_progress(self) -> None:
        """Explicit, user-initiated wipe back to the defaults."""

        self._run("reset_progress", self._reset_progress)

    def _reset_progress(self) -> bool:
        logger.info("Resetting progress for %s", self.user_id)
        self.persistence.clear()
        self._commit(UserProgress())
        return True

    def dispatch(self, command: BaseModel | Mapping[str, Any]) -> bool:
        """Validate a tagged command once and route it; returns whether it applied."""

        if not isinstance(command, BaseModel):
            try:
                command = COMMAND_ADAPTER.validate_python(command)
            except ValidationError as exc:
                logger.warning("Rejected command for %s: %s", self.user_id, exc.errors()[:1])
                return False

        if isinstance(command, CompleteLesson):
            return self._run("complete_lesson", self._complete_lesson, command.lesson_id, command.minutes_spent)
        if isinstance(command, RecordQuizScore):
            return self._run(
                "record_quiz_score",
                self._record_quiz_score,
                command.quiz_id,
                command.score,
                command.total_questions,
            )
        if isinstance(command, RecordCalculatorUsage):
            return self._run("record_calculator_usage", self._record_calculator_usage, command.tool_id)
        if isinstance(command, RecordSimulationResult):
            return self._run("record_simulation_result", self._record_simulation_result, command.result)
        if isinstance(command, RecordTimeSpent):
            return self._run("record_time_spent", self._record_time_spent, command.minutes)
        if isinstance(command, CompleteOnboarding):
            return self._run("complete_onboarding", self._complete_onboarding)
        if isinstance(command, ResetProgress):
            return self._run("reset_progress", self._reset_progress)
        logger.warning("Unknown command type %s for %s", type(command).__name__, self.user_id)
        return False

    # ----- queries -------------------------------------------------------
    def _query(self, name: str, compute: Callable[[], _T], default: _T) -> _T:
        try:
            return compute()
        except Exception:
            logger.exception("Query %s failed for %s", name, self.user_id)
            return default

    def is_chapter_unlocked(self, chapter: int) -> bool:
        return self._query(
            "is_chapter_unlocked",
            lambda: self.unlock_policy.is_chapter_unlocked(self._progress, chapter),
            False,
        )

    def chapter_state(self, chapter: int) -> Optional[ChapterState]:
        return self._query(
            "chapter_state", lambda: self.unlock_policy.chapter_state(self._progress, chapter), None
        )

    def can_take_quiz(self, quiz_id: str) -> bool:
        if not isinstance(quiz_id, str) or not quiz_id.strip():
            return False
        return self._query(
            "can_take_quiz",
            lambda: self.unlock_policy.can_take_quiz(self._progress, quiz_id.strip()),
            False,
        )

    def unlocked_tabs(self) -> List[str]:
        return self._query("unlocked_tabs", lambda: self.unlock_policy.unlocked_tabs(self._progress), [])

    def is_tab_unlocked(self, tab: str) -> bool:
        return tab in self.unlocked_tabs()

    def chapter_progress(self, chapter: int) -> int:
        return self._query("chapter_progress", lambda: chapter_progress(self._progress, chapter, self.rules), 0)

    def chapters(self) -> List[Dict[str, Any]]:
        """Gate and completion summary for every chapter, for navigation."""

        def build() -> List[Dict[str, Any]]:
            rows = []
            for number in range(1, self.rules.total_chapters + 1):
                rule = self.rules.rule_for_chapter(number)
                state = self.unlock_policy.chapter_state(self._progress, number)
                rows.append(
                    {
                        "chapter": number,
                        "title": rule.title if rule is not None else "",
                        "state": state.value if state is not None else None,
                        "unlocked": state is ChapterState.UNLOCKED,
                        "progress": chapter_progress(self._progress, number, self.rules),
                        "gating_quiz": rule.requires_quiz if rule is not None else None,
                    }
                )
            return rows

        return self._query("chapters", build, [])

    @property
    def total_xp(self) -> int:
        return self._derived.get(self._progress).total_xp

    @property
    def level(self) -> int:
        return self._derived.get(self._progress).level

    def level_progress(self) -> LevelProgress:
        return level_progress(self.total_xp, self.rules.level_thresholds)

    def learning_analytics(self) -> LearningAnalytics:
        return compute_learning_analytics(self._progress, self.rules)

    def streak_at_risk(self) -> bool:
        return self.streaks.is_streak_at_risk(self._progress.streak, self.today())

    def learner_context(self) -> Dict[str, Any]:
        derived = self._derived.get(self._progress)
        return learner_context(
            self._progress,
            total_xp=derived.total_xp,
            level=derived.level,
            today=self.today(),
            rules=self.rules,
        )

    def analytics_report(self) -> Dict[str, Any]:
        progress = self.level_progress()
        return {
            "analytics": asdict(self.learning_analytics()),
            "level": {
                "level": progress.level,
                "total_xp": progress.total_xp,
                "xp_into_level": progress.xp_into_level,
                "xp_to_next_level": progress.xp_to_next_level,
                "percent": progress.percent,
            },
            "tabs": self.unlocked_tabs(),
            "streak_at_risk": self.streak_at_risk(),
        }

    def snapshot(self) -> ProgressSnapshot:
        """Deep, frozen copy of the aggregate with XP and level filled in."""

        derived = self._derived.get(self._progress)
        return ProgressSnapshot(
            version=SCHEMA_VERSION,
            total_xp=derived.total_xp,
            level=derived.level,
            **self._progress.model_dump(),
        )


class ProgressTrackerRegistry:
    """One tracker per learner, owned by the application root."""

    def __init__(
        self,
        *,
        rules: ProgressRulesRegistry | None = None,
        persist: bool = True,
        clock: Clock | None = None,
        tz: tzinfo | None = None,
        max_trackers: int = DEFAULT_MAX_TRACKERS,
    ) -> None:
        self.rules = rules or PROGRESS_RULES
        self.persist = persist
        self.clock = clock
        self.tz = tz
        self.max_trackers = max(1, max_trackers)
        self._trackers: OrderedDict[str, ProgressTracker] = OrderedDict()

    def get(self, user_id: str) -> ProgressTracker:
        """Return the learner's tracker, evicting the least recently used one when full."""

        tracker = self._trackers.get(user_id)
        if tracker is not None:
            self._trackers.move_to_end(user_id)
        else:
            while len(self._trackers) >= self.max_trackers:
                evicted, _ = self._trackers.popitem(last=False)
                logger.info("Evicting idle progress tracker for %s", evicted)
            tracker = ProgressTracker(
                user_id,
                rules=self.rules,
                persistence=ProgressPersistence(user_id, enabled=self.persist),
                clock=self.clock,
                tz=self.tz,
            )
            self._trackers[user_id] = tracker
        return tracker

    def forget(self, user_id: str) -> None:
        self._trackers.pop(user_id, None)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._trackers

    def __len__(self) -> int:
        return len(self._trackers)
