"""Chapter unlock rules, XP weights and level table loader."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

DEFAULT_PASS_THRESHOLD = 80.0
DEFAULT_MIN_LESSONS_FOR_QUIZ = 2
ALWAYS_AVAILABLE_TABS: Tuple[str, ...] = ("lesson", "calculator", "quiz", "assistant")
GRADES: Tuple[str, ...] = ("A", "B", "C", "D", "F")

_CHAPTER_PREFIX = re.compile(r"^(?:ch|chapter)[-_ ]?(\d+)", re.IGNORECASE)


class ProgressRulesConfigError(ValueError):
    """Raised when ``progress_rules.json`` contains invalid data."""


@dataclass(frozen=True)
class ChapterUnlockRule:
    """Gate for one chapter: passing ``requires_quiz`` unlocks the next chapter."""

    chapter: int
    requires_quiz: str
    pass_threshold: float = DEFAULT_PASS_THRESHOLD
    min_lessons_for_quiz: int = DEFAULT_MIN_LESSONS_FOR_QUIZ
    title: str = ""


@dataclass(frozen=True)
class XPWeights:
    """Experience weights applied to the recorded history."""

    lesson: int = 50
    quiz_score_weight: float = 1.0
    quiz_pass_bonus: int = 50
    simulation_base: int = 25
    simulation_score_weight: float = 0.5
    simulation_grade_bonus: Mapping[str, int] = field(
        default_factory=lambda: {"A": 100, "B": 75, "C": 50, "D": 25, "F": 10}
    )


@dataclass(frozen=True)
class TabUnlockRule:
    """Minimum activity required before an in-chapter tab is shown."""

    tab: str
    min_completed_lessons: int = 0
    min_quiz_attempts: int = 0


def chapter_key(item_id: str) -> Optional[int]:
    """Return the chapter number encoded in a lesson or quiz id (``ch3-...``)."""

    match = _CHAPTER_PREFIX.match(item_id or "")
    if not match:
        return None
    return int(match.group(1))


def _as_int(value: object, label: str, *, minimum: int = 0) -> int:
    if isinstance(value, bool):
        raise ProgressRulesConfigError(f"{label} must be an integer")
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ProgressRulesConfigError(f"{label} must be an integer") from exc
    if number < minimum:
        raise ProgressRulesConfigError(f"{label} must be >= {minimum}")
    return number


def _as_float(value: object, label: str, *, low: float = 0.0, high: float | None = None) -> float:
    if isinstance(value, bool):
        raise ProgressRulesConfigError(f"{label} must be numeric")
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ProgressRulesConfigError(f"{label} must be numeric") from exc
    if number < low or (high is not None and number > high):
        bound = f"[{low:g}, {high:g}]" if high is not None else f">= {low:g}"
        raise ProgressRulesConfigError(f"{label} must be within {bound}")
    return number


class ProgressRulesRegistry:
    """Load gating, XP and level rules from ``progress_rules.json``."""

    def __init__(self, path: str | Path | None = None) -> None:
        base_path = Path(__file__).resolve().parent
        if path is None and os.getenv("PROGRESS_RULES_PATH"):
            path = os.environ["PROGRESS_RULES_PATH"]
        self.path = Path(path) if path is not None else base_path / "progress_rules.json"
        self.total_chapters = 0
        self.lessons_per_chapter = 6
        self.max_calculators = 13
        self.default_pass_threshold = DEFAULT_PASS_THRESHOLD
        self.xp = XPWeights()
        self._chapters: Dict[int, ChapterUnlockRule] = {}
        self._quiz_index: Dict[str, ChapterUnlockRule] = {}
        self._level_thresholds: Tuple[int, ...] = (0,)
        self._tabs: Dict[str, TabUnlockRule] = {}
        self.reload()

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> "ProgressRulesRegistry":
        """Build a registry from an in-memory mapping instead of a file."""

        registry = cls.__new__(cls)
        registry.path = Path("<memory>")
        registry._apply(raw)
        return registry

    # ------------------------------------------------------------------
    def reload(self) -> None:
        """Reload the rules from disk and validate the structure."""

        if not self.path.exists():
            raise FileNotFoundError(f"Progress rules file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        if not isinstance(raw, dict):
            raise ProgressRulesConfigError("Progress rules file must contain a JSON object")
        self._apply(raw)

    def _apply(self, raw: Mapping[str, object]) -> None:
        total = _as_int(raw.get("total_chapters", 17), "total_chapters", minimum=1)
        lessons_per_chapter = _as_int(raw.get("lessons_per_chapter", 6), "lessons_per_chapter", minimum=1)
        max_calculators = _as_int(raw.get("max_calculators", 13), "max_calculators", minimum=1)
        default_threshold = _as_float(
            raw.get("default_pass_threshold", DEFAULT_PASS_THRESHOLD),
            "default_pass_threshold",
            high=100.0,
        )

        chapters = self._parse_chapters(raw.get("chapters", []), total, default_threshold)
        xp = self._parse_xp(raw.get("xp", {}))
        thresholds = self._parse_levels(raw.get("level_thresholds", [0]))
        tabs = self._parse_tabs(raw.get("tabs", []))

        self.total_chapters = total
        self.lessons_per_chapter = lessons_per_chapter
        self.max_calculators = max_calculators
        self.default_pass_threshold = default_threshold
        self.xp = xp
        self._chapters = chapters
        self._quiz_index = {rule.requires_quiz: rule for rule in chapters.values()}
        self._level_thresholds = thresholds
        self._tabs = tabs

    @staticmethod
    def _parse_chapters(
        entries: object, total: int, default_threshold: float
    ) -> Dict[int, ChapterUnlockRule]:
        if not isinstance(entries, list):
            raise ProgressRulesConfigError("'chapters' must be a JSON list")

        rules: Dict[int, ChapterUnlockRule] = {}
        seen_quizzes: set[str] = set()
        for idx, entry in enumerate(entries, start=1):
            if not isinstance(entry, dict):
                raise ProgressRulesConfigError(f"Chapter entry #{idx} must be a JSON object")
            chapter = _as_int(entry.get("chapter"), f"Chapter entry #{idx} 'chapter'", minimum=1)
            if chapter > total:
                raise ProgressRulesConfigError(
                    f"Chapter {chapter} exceeds total_chapters ({total})"
                )
            if chapter in rules:
                raise ProgressRulesConfigError(f"Duplicate chapter rule detected: {chapter}")
            quiz_id = str(entry.get("requires_quiz") or "").strip()
            if not quiz_id:
                raise ProgressRulesConfigError(f"Chapter {chapter} is missing a non-empty 'requires_quiz'")
            if quiz_id in seen_quizzes:
                raise ProgressRulesConfigError(f"Quiz {quiz_id} gates more than one chapter")
            seen_quizzes.add(quiz_id)

            threshold_raw = entry.get("pass_threshold")
            threshold = (
                default_threshold
                if threshold_raw is None or threshold_raw == ""
                else _as_float(threshold_raw, f"Chapter {chapter} pass_threshold", high=100.0)
            )
            min_lessons = _as_int(
                entry.get("min_lessons_for_quiz", DEFAULT_MIN_LESSONS_FOR_QUIZ),
                f"Chapter {chapter} min_lessons_for_quiz",
            )
            rules[chapter] = ChapterUnlockRule(
                chapter=chapter,
                requires_quiz=quiz_id,
                pass_threshold=threshold,
                min_lessons_for_quiz=min_lessons,
                title=str(entry.get("title", "")).strip(),
            )
        return rules

    @staticmethod
    def _parse_xp(raw: object) -> XPWeights:
        if not isinstance(raw, dict):
            raise ProgressRulesConfigError("'xp' must be a JSON object")
        defaults = XPWeights()
        bonus_raw = raw.get("simulation_grade_bonus", defaults.simulation_grade_bonus)
        if not isinstance(bonus_raw, Mapping):
            raise ProgressRulesConfigError("'xp.simulation_grade_bonus' must be a JSON object")
        bonus = {
            grade: _as_int(bonus_raw.get(grade, 0), f"xp.simulation_grade_bonus.{grade}")
            for grade in GRADES
        }
        return XPWeights(
            lesson=_as_int(raw.get("lesson", defaults.lesson), "xp.lesson"),
            quiz_score_weight=_as_float(
                raw.get("quiz_score_weight", defaults.quiz_score_weight), "xp.quiz_score_weight"
            ),
            quiz_pass_bonus=_as_int(raw.get("quiz_pass_bonus", defaults.quiz_pass_bonus), "xp.quiz_pass_bonus"),
            simulation_base=_as_int(raw.get("simulation_base", defaults.simulation_base), "xp.simulation_base"),
            simulation_score_weight=_as_float(
                raw.get("simulation_score_weight", defaults.simulation_score_weight),
                "xp.simulation_score_weight",
            ),
            simulation_grade_bonus=bonus,
        )

    @staticmethod
    def _parse_levels(raw: object) -> Tuple[int, ...]:
        if not isinstance(raw, list) or not raw:
            raise ProgressRulesConfigError("'level_thresholds' must be a non-empty JSON list")
        values = [_as_int(value, f"level_thresholds[{idx}]") for idx, value in enumerate(raw)]
        if values[0] != 0:
            raise ProgressRulesConfigError("level_thresholds must start at 0")
        for previous, current in zip(values, values[1:]):
            if current <= previous:
                raise ProgressRulesConfigError("level_thresholds must be strictly increasing")
        return tuple(values)

    @staticmethod
    def _parse_tabs(raw: object) -> Dict[str, TabUnlockRule]:
        if not isinstance(raw, list):
            raise ProgressRulesConfigError("'tabs' must be a JSON list")
        tabs: Dict[str, TabUnlockRule] = {}
        for idx, entry in enumerate(raw, start=1):
            if not isinstance(entry, dict) or not str(entry.get("tab", "")).strip():
                raise ProgressRulesConfigError(f"Tab entry #{idx} must be an object with a 'tab'")
            name = str(entry["tab"]).strip()
            tabs[name] = TabUnlockRule(
                tab=name,
                min_completed_lessons=_as_int(
                    entry.get("min_completed_lessons", 0), f"Tab {name} min_completed_lessons"
                ),
                min_quiz_attempts=_as_int(entry.get("min_quiz_attempts", 0), f"Tab {name} min_quiz_attempts"),
            )
        return tabs

    # ------------------------------------------------------------------
    @property
    def chapters(self) -> List[ChapterUnlockRule]:
        """Return chapter rules ordered by chapter number."""

        return [self._chapters[number] for number in sorted(self._chapters)]

    def rule_for_chapter(self, chapter: int) -> Optional[ChapterUnlockRule]:
        return self._chapters.get(chapter)

    def rule_for_quiz(self, quiz_id: str) -> Optional[ChapterUnlockRule]:
        return self._quiz_index.get(quiz_id)

    def threshold(self, quiz_id: str) -> float:
        """Return the mastery threshold that applies to ``quiz_id``."""

        rule = self._quiz_index.get(quiz_id)
        return rule.pass_threshold if rule is not None else self.default_pass_threshold

    def chapter_for_quiz(self, quiz_id: str) -> Optional[int]:
        """Return the chapter a quiz belongs to, by rule first and id prefix second."""

        rule = self._quiz_index.get(quiz_id)
        if rule is not None:
            return rule.chapter
        return chapter_key(quiz_id)

    def chapter_in_range(self, chapter: int) -> bool:
        return 1 <= chapter <= self.total_chapters

    @property
    def level_thresholds(self) -> Sequence[int]:
        return self._level_thresholds

    @property
    def tabs(self) -> List[TabUnlockRule]:
        return list(self._tabs.values())

    def tab_rule(self, tab: str) -> Optional[TabUnlockRule]:
        return self._tabs.get(tab)

    def known_tabs(self) -> Tuple[str, ...]:
        return ALWAYS_AVAILABLE_TABS + tuple(name for name in self._tabs if name not in ALWAYS_AVAILABLE_TABS)

    def __iter__(self) -> Iterable[ChapterUnlockRule]:
        return iter(self.chapters)


PROGRESS_RULES = ProgressRulesRegistry()
"""Default registry; trackers receive it by injection and tests may pass their own."""
