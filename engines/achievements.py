"""Achievement awards triggered by quiz and simulation results."""

from __future__ import annotations

import logging
from typing import List, Optional

from progress_rules import ChapterUnlockRule
from schemas import SimulationResult, UserProgress

_LOGGER = logging.getLogger(__name__)


def chapter_complete_id(chapter: int) -> str:
    return f"chapter-{chapter}-complete"


def simulation_master_id(scenario_id: str) -> str:
    return f"simulation-{scenario_id}-master"


def _grant(progress: UserProgress, achievement_id: str) -> bool:
    if achievement_id in progress.achievements:
        return False
    progress.achievements.append(achievement_id)
    _LOGGER.info("Achievement earned: %s", achievement_id)
    return True


def award_for_quiz(
    progress: UserProgress, rule: Optional[ChapterUnlockRule], passed: bool
) -> List[str]:
    """Grant ``chapter-N-complete`` once the chapter's gating quiz is passed."""

    if rule is None or not passed:
        return []
    if progress.current_chapter < rule.chapter:
        return []
    achievement_id = chapter_complete_id(rule.chapter)
    return [achievement_id] if _grant(progress, achievement_id) else []


def award_for_simulation(progress: UserProgress, result: SimulationResult) -> List[str]:
    if result.grade != "A":
        return []
    achievement_id = simulation_master_id(result.scenario_id)
    return [achievement_id] if _grant(progress, achievement_id) else []
