"""Sticky chapter unlock policy and in-chapter tab gating."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from progress_rules import ALWAYS_AVAILABLE_TABS, PROGRESS_RULES, ProgressRulesRegistry, chapter_key
from schemas import UserProgress

_LOGGER = logging.getLogger(__name__)


class ChapterState(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"


@dataclass
class UnlockTransition:
    """A ``Locked -> Unlocked`` transition produced by a quiz result."""

    completed_chapter: int
    unlocked_chapter: int
    quiz_id: str


class UnlockPolicy:
    """Decide, per chapter, whether a learner may enter it.

    Chapter 1 is always unlocked. Chapter ``N + 1`` unlocks once the gating
    quiz of chapter ``N`` has a best score at or above its threshold while
    chapter ``N`` is the learner's frontier. The state is carried by
    ``UserProgress.current_chapter``, which only ever grows, so no later
    event can lock a chapter again.
    """

    def __init__(self, rules: ProgressRulesRegistry | None = None) -> None:
        self.rules = rules or PROGRESS_RULES

    # ----- queries -----------------------------------------------------
    def chapter_state(self, progress: UserProgress, chapter: int) -> Optional[ChapterState]:
        """Return the state of ``chapter`` or ``None`` when it does not exist."""

        if not isinstance(chapter, int) or isinstance(chapter, bool):
            return None
        if not self.rules.chapter_in_range(chapter):
            return None
        if chapter == 1 or progress.current_chapter >= chapter:
            return ChapterState.UNLOCKED
        return ChapterState.LOCKED

    def is_chapter_unlocked(self, progress: UserProgress, chapter: int) -> bool:
        return self.chapter_state(progress, chapter) is ChapterState.UNLOCKED

    def can_take_quiz(self, progress: UserProgress, quiz_id: str) -> bool:
        """Require an unlocked chapter and enough of its lessons completed."""

        chapter = self.rules.chapter_for_quiz(quiz_id)
        if chapter is None:
            return True
        if not self.is_chapter_unlocked(progress, chapter):
            return False
        rule = self.rules.rule_for_chapter(chapter)
        required = rule.min_lessons_for_quiz if rule is not None else 0
        done = sum(1 for lesson_id in progress.completed_lessons if chapter_key(lesson_id) == chapter)
        return done >= required

    def unlocked_tabs(self, progress: UserProgress) -> List[str]:
        """Return the in-chapter tabs the learner can see, in display order."""

        tabs = list(ALWAYS_AVAILABLE_TABS)
        attempts = sum(record.attempts for record in progress.quiz_scores.values())
        for rule in self.rules.tabs:
            if rule.tab in tabs:
                continue
            if len(progress.completed_lessons) < rule.min_completed_lessons:
                continue
            if attempts < rule.min_quiz_attempts:
                continue
            tabs.append(rule.tab)
        return tabs

    def is_tab_unlocked(self, progress: UserProgress, tab: str) -> bool:
        return tab in self.unlocked_tabs(progress)

    # ----- transitions -------------------------------------------------
    def apply_quiz_result(
        self, progress: UserProgress, quiz_id: str
    ) -> Optional[UnlockTransition]:
        """Advance ``current_chapter`` when ``quiz_id`` gates the frontier chapter."""

        rule = self.rules.rule_for_quiz(quiz_id)
        if rule is None:
            return None
        record = progress.quiz_scores.get(quiz_id)
        if record is None or record.best_score < rule.pass_threshold:
            return None
        if rule.chapter != progress.current_chapter:
            if rule.chapter > progress.current_chapter:
                _LOGGER.info(
                    "Quiz %s passed while chapter %s is still locked; no unlock",
                    quiz_id,
                    rule.chapter,
                )
            return None
        if rule.chapter >= self.rules.total_chapters:
            return None

        progress.current_chapter = rule.chapter + 1
        _LOGGER.info("Chapter %s unlocked by %s", progress.current_chapter, quiz_id)
        return UnlockTransition(
            completed_chapter=rule.chapter,
            unlocked_chapter=progress.current_chapter,
            quiz_id=quiz_id,
        )
