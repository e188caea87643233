"""Pydantic schemas for the learner progress aggregate and its commands."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel

__all__ = [
    "Grade",
    "QuizRecord",
    "ToolUsage",
    "SimulationResult",
    "SimulationResultInput",
    "StreakState",
    "UserProgress",
    "ProgressSnapshot",
    "CompleteLesson",
    "RecordQuizScore",
    "RecordCalculatorUsage",
    "RecordSimulationResult",
    "RecordTimeSpent",
    "CompleteOnboarding",
    "ResetProgress",
    "ProgressCommand",
    "COMMAND_ADAPTER",
]

Grade = Literal["A", "B", "C", "D", "F"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    """Accept both ``snake_case`` and the client's ``camelCase`` keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QuizRecord(_CamelModel):
    best_score: float = Field(default=0.0, ge=0.0, le=100.0, description="Highest percentage ever submitted.")
    attempts: int = Field(default=0, ge=0, description="Every submission, including those below the best.")
    total_questions: int = Field(default=1, ge=1)
    passed: bool = Field(default=False, description="bestScore reached the quiz's mastery threshold.")


class ToolUsage(_CamelModel):
    count: int = Field(default=0, ge=0)
    last_used_at: datetime = Field(default_factory=_utcnow)


class SimulationResult(_CamelModel):
    """Outcome of one scenario exercise; immutable once appended."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    scenario_id: str = Field(min_length=1)
    total_score: float = Field(ge=0.0, le=100.0)
    time_spent: float = Field(default=0.0, ge=0.0, description="Seconds spent in the scenario.")
    financial_outcome: float = 0.0
    grade: Grade
    completed_at: datetime = Field(default_factory=_utcnow)
    correct_answers: int = Field(default=0, ge=0)
    total_questions: int = Field(default=0, ge=0)
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)


class SimulationResultInput(_CamelModel):
    """Raw simulation outcome as reported by a scenario component."""

    scenario_id: str = ""
    total_score: float = 0.0
    time_spent: float = 0.0
    financial_outcome: float = 0.0
    grade: Optional[str] = None
    completed_at: Optional[datetime] = None
    correct_answers: int = 0
    total_questions: int = 0
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)


class StreakState(_CamelModel):
    current: int = Field(default=0, ge=0)
    longest: int = Field(default=0, ge=0)
    last_active_date: Optional[date] = None

    @model_validator(mode="after")
    def _longest_covers_current(self) -> "StreakState":
        if self.longest < self.current:
            self.longest = self.current
        return self


class UserProgress(_CamelModel):
    """Ground-truth history for one learner. XP and level are derived elsewhere."""

    current_chapter: int = Field(default=1, ge=1)
    completed_lessons: List[str] = Field(default_factory=list)
    quiz_scores: Dict[str, QuizRecord] = Field(default_factory=dict)
    calculator_usage: Dict[str, ToolUsage] = Field(default_factory=dict)
    simulation_results: List[SimulationResult] = Field(default_factory=list)
    streak: StreakState = Field(default_factory=StreakState)
    achievements: List[str] = Field(default_factory=list)
    total_time_spent: float = Field(default=0.0, ge=0.0, description="Minutes of recorded study time.")
    time_spent_by_chapter: Dict[str, float] = Field(default_factory=dict)
    onboarding_completed: bool = False


class ProgressSnapshot(UserProgress):
    """Read-only copy handed to rendering, analytics and chat context builders."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    version: int
    total_xp: int = Field(default=0, ge=0, alias="totalXP")
    level: int = Field(default=1, ge=1)


# ----- commands -------------------------------------------------------------


class CompleteLesson(_CamelModel):
    kind: Literal["complete_lesson"] = "complete_lesson"
    lesson_id: str = ""
    minutes_spent: float = 0.0


class RecordQuizScore(_CamelModel):
    kind: Literal["record_quiz_score"] = "record_quiz_score"
    quiz_id: str = ""
    score: float = 0.0
    total_questions: int = 1


class RecordCalculatorUsage(_CamelModel):
    kind: Literal["record_calculator_usage"] = "record_calculator_usage"
    tool_id: str = ""


class RecordSimulationResult(_CamelModel):
    kind: Literal["record_simulation_result"] = "record_simulation_result"
    result: SimulationResultInput


class RecordTimeSpent(_CamelModel):
    kind: Literal["record_time_spent"] = "record_time_spent"
    minutes: float = 0.0


class CompleteOnboarding(_CamelModel):
    kind: Literal["complete_onboarding"] = "complete_onboarding"


class ResetProgress(_CamelModel):
    kind: Literal["reset_progress"] = "reset_progress"


ProgressCommand = Annotated[
    Union[
        CompleteLesson,
        RecordQuizScore,
        RecordCalculatorUsage,
        RecordSimulationResult,
        RecordTimeSpent,
        CompleteOnboarding,
        ResetProgress,
    ],
    Field(discriminator="kind"),
]

COMMAND_ADAPTER: TypeAdapter[Any] = TypeAdapter(ProgressCommand)
"""Validates a raw mapping into exactly one command variant."""
