"""Persistence adapter for the learner progress aggregate.

The whole aggregate is written as one JSON snapshot after every mutating
command. Loading is tolerant of schema drift: every field is validated on
its own, missing or broken fields fall back to their defaults, unknown keys
are ignored, and snapshots written by the earlier browser client
(``version`` 0 or 1) are upgraded before validation.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import ValidationError

import db
from engines.scoring import clamp_score
from engines.validation import PersistenceError, SchemaMismatchError
from engines.xp import DerivedStats
from progress_rules import DEFAULT_PASS_THRESHOLD
from schemas import QuizRecord, SimulationResult, StreakState, ToolUsage, UserProgress

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

_STORAGE_ERRORS = (sqlite3.Error, OSError)


# ----- serialisation ---------------------------------------------------------


def serialize_progress(progress: UserProgress, derived: DerivedStats) -> Dict[str, Any]:
    """Return the persisted layout (camelCase keys) for ``progress``."""

    payload: Dict[str, Any] = {"version": SCHEMA_VERSION}
    payload.update(progress.model_dump(by_alias=True, mode="json"))
    payload["totalXP"] = derived.total_xp
    payload["level"] = derived.level
    return payload


def _strict_int(value: Any, field: str, *, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SchemaMismatchError(field, f"expected an integer, got {type(value).__name__}")
    if isinstance(value, float) and not value.is_integer():
        raise SchemaMismatchError(field, f"expected an integer, got {value!r}")
    if value < minimum:
        raise SchemaMismatchError(field, f"must be >= {minimum}")
    return int(value)


def _non_negative_float(value: Any, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SchemaMismatchError(field, f"expected a number, got {type(value).__name__}")
    if value != value or value < 0:
        raise SchemaMismatchError(field, "must be a non-negative number")
    return float(value)


def _unique_strings(value: Any, field: str) -> List[str]:
    if not isinstance(value, list):
        raise SchemaMismatchError(field, f"expected a list, got {type(value).__name__}")
    seen: List[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            logger.warning("Dropping invalid entry %r from %s", item, field)
            continue
        if item not in seen:
            seen.append(item)
    return seen


def _model_map(model: Any) -> Callable[[Any, str], Dict[str, Any]]:
    def parse(value: Any, field: str) -> Dict[str, Any]:
        if not isinstance(value, Mapping):
            raise SchemaMismatchError(field, f"expected an object, got {type(value).__name__}")
        entries: Dict[str, Any] = {}
        for key, raw in value.items():
            if not isinstance(key, str) or not key.strip():
                continue
            try:
                entries[key] = model.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Dropping invalid %s entry %s: %s", field, key, exc.errors()[:1])
        return entries

    return parse


def _simulation_list(value: Any, field: str) -> List[SimulationResult]:
    if not isinstance(value, list):
        raise SchemaMismatchError(field, f"expected a list, got {type(value).__name__}")
    results: List[SimulationResult] = []
    for raw in value:
        try:
            results.append(SimulationResult.model_validate(raw))
        except ValidationError as exc:
            logger.warning("Dropping invalid simulation result: %s", exc.errors()[:1])
    return results


def _streak(value: Any, field: str) -> StreakState:
    try:
        return StreakState.model_validate(value)
    except ValidationError as exc:
        raise SchemaMismatchError(field, str(exc.errors()[:1])) from exc


def _bool(value: Any, field: str) -> bool:
    if not isinstance(value, bool):
        raise SchemaMismatchError(field, f"expected a boolean, got {type(value).__name__}")
    return value


def _chapter_minutes(value: Any, field: str) -> Dict[str, float]:
    if not isinstance(value, Mapping):
        raise SchemaMismatchError(field, f"expected an object, got {type(value).__name__}")
    minutes: Dict[str, float] = {}
    for key, raw in value.items():
        try:
            minutes[str(key)] = _non_negative_float(raw, f"{field}.{key}")
        except SchemaMismatchError as exc:
            logger.warning("Dropping %s", exc)
    return minutes


# field name -> (persisted key, parser)
_FIELD_PARSERS: Dict[str, tuple[str, Callable[[Any, str], Any]]] = {
    "current_chapter": ("currentChapter", lambda v, f: _strict_int(v, f, minimum=1)),
    "completed_lessons": ("completedLessons", _unique_strings),
    "quiz_scores": ("quizScores", _model_map(QuizRecord)),
    "calculator_usage": ("calculatorUsage", _model_map(ToolUsage)),
    "simulation_results": ("simulationResults", _simulation_list),
    "streak": ("streak", _streak),
    "achievements": ("achievements", _unique_strings),
    "total_time_spent": ("totalTimeSpent", _non_negative_float),
    "time_spent_by_chapter": ("timeSpentByChapter", _chapter_minutes),
    "onboarding_completed": ("onboardingCompleted", _bool),
}


def _payload_version(data: Mapping[str, Any]) -> int:
    raw = data.get("version", 0)
    if isinstance(raw, bool) or not isinstance(raw, int):
        return 0
    return raw


def _unwrap_envelope(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Strip the ``{state: {userProgress: ...}, version}`` wrapper of the old client."""

    state = payload.get("state")
    if isinstance(state, Mapping) and isinstance(state.get("userProgress"), Mapping):
        inner = dict(state["userProgress"])
        inner.setdefault("version", payload.get("version", 0))
        return inner
    return dict(payload)


def _parse_day(value: Any) -> Optional[date]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def upgrade_legacy_payload(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Translate a version 0/1 snapshot into the current layout."""

    upgraded = dict(data)
    last_active = data.get("lastActiveDate")
    completed = data.get("completedQuizzes")
    passed_quizzes = (
        {quiz_id for quiz_id in completed if isinstance(quiz_id, str)} if isinstance(completed, list) else set()
    )

    scores = data.get("quizScores")
    if isinstance(scores, Mapping):
        records: Dict[str, Any] = {}
        for quiz_id, value in scores.items():
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                best = clamp_score(value)
                records[quiz_id] = {
                    "bestScore": best,
                    "attempts": 1,
                    "totalQuestions": 1,
                    "passed": quiz_id in passed_quizzes or best >= DEFAULT_PASS_THRESHOLD,
                }
            else:
                records[quiz_id] = value
        upgraded["quizScores"] = records

    usage = data.get("calculatorUsage")
    if isinstance(usage, Mapping):
        stamp = last_active if isinstance(last_active, str) else datetime.now(timezone.utc).isoformat()
        upgraded["calculatorUsage"] = {
            tool_id: {"count": value, "lastUsedAt": stamp}
            if isinstance(value, int) and not isinstance(value, bool)
            else value
            for tool_id, value in usage.items()
        }

    simulations = data.get("simulationResults")
    if isinstance(simulations, Mapping):
        ordered = [value for value in simulations.values() if isinstance(value, Mapping)]
        ordered.sort(key=lambda item: str(item.get("completedAt", "")))
        upgraded["simulationResults"] = ordered

    if "streak" not in data and "streakDays" in data:
        days = data.get("streakDays")
        if isinstance(days, int) and not isinstance(days, bool) and days >= 0:
            day = _parse_day(last_active)
            upgraded["streak"] = {
                "current": days,
                "longest": days,
                "lastActiveDate": day.isoformat() if day else None,
            }

    analytics = data.get("learningAnalytics")
    if "timeSpentByChapter" not in data and isinstance(analytics, Mapping):
        upgraded["timeSpentByChapter"] = analytics.get("timeSpentByChapter", {})

    return upgraded


def deserialize_progress(payload: Any) -> UserProgress:
    """Rebuild an aggregate from a stored snapshot; never raises."""

    if not isinstance(payload, Mapping):
        logger.warning("Stored progress is not an object (%s); starting fresh", type(payload).__name__)
        return UserProgress()

    data = _unwrap_envelope(payload)
    version = _payload_version(data)
    if version < SCHEMA_VERSION:
        logger.info("Upgrading stored progress from version %s to %s", version, SCHEMA_VERSION)
        try:
            data = upgrade_legacy_payload(data)
        except Exception:
            logger.exception("Could not upgrade stored progress; loading fields as stored")
    elif version > SCHEMA_VERSION:
        logger.info(
            "Stored progress version %s is newer than %s; loading known fields only",
            version,
            SCHEMA_VERSION,
        )

    fields: Dict[str, Any] = {}
    for name, (key, parser) in _FIELD_PARSERS.items():
        if key in data:
            raw = data[key]
        elif name in data:
            raw = data[name]
        else:
            continue
        try:
            fields[name] = parser(raw, key)
        except SchemaMismatchError as exc:
            logger.warning("Resetting stored field to default: %s", exc)

    try:
        return UserProgress(**fields)
    except ValidationError as exc:
        logger.warning("Stored progress failed validation, starting fresh: %s", exc.errors()[:1])
        return UserProgress()


# ----- adapter ---------------------------------------------------------------


class ProgressPersistence:
    """Read and write one learner's snapshot through :mod:`db`.

    Any storage failure switches the adapter to in-memory mode for the rest
    of the session; commands keep working, only durability is lost.
    """

    def __init__(self, user_id: str, *, enabled: bool = True) -> None:
        self.user_id = user_id
        self.degraded = not enabled
        self.last_error: Optional[PersistenceError] = None
        self.writes = 0

    def _degrade(self, action: str, exc: BaseException) -> None:
        error = PersistenceError(f"could not {action} progress for {self.user_id}: {exc}")
        self.last_error = error
        if not self.degraded:
            logger.error("%s; continuing in memory for this session", error)
        self.degraded = True

    def load(self) -> UserProgress:
        if self.degraded:
            return UserProgress()
        try:
            db.init()
            payload = db.load_progress_payload(self.user_id)
        except _STORAGE_ERRORS as exc:
            self._degrade("load", exc)
            return UserProgress()
        if payload is None:
            logger.info("No stored progress for %s; starting fresh", self.user_id)
            return UserProgress()
        return deserialize_progress(payload)

    def save(self, progress: UserProgress, derived: DerivedStats) -> bool:
        if self.degraded:
            return False
        payload = serialize_progress(progress, derived)
        try:
            db.save_progress_payload(self.user_id, payload, SCHEMA_VERSION)
        except _STORAGE_ERRORS as exc:
            self._degrade("save", exc)
            return False
        self.writes += 1
        return True

    def clear(self) -> None:
        if self.degraded:
            return
        try:
            db.delete_progress_payload(self.user_id)
        except _STORAGE_ERRORS as exc:
            self._degrade("clear", exc)
