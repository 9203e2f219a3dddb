from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field

from livesurvey.schemas.admin import QuestionRead
from livesurvey.schemas.results import QuestionStats

PhaseName = Literal["lobby", "question", "transition_delay", "results"]


class ParticipantView(BaseModel):
    name: str
    is_admin: bool = False
    is_spectator: bool = False
    connected: bool = False
    answered_count: int = 0
    answered_current: bool = False


class SessionView(BaseModel):
    id: str
    survey_id: Optional[str]
    phase: PhaseName
    question_count: int
    question_index: Optional[int] = None
    question: Optional[QuestionRead] = None
    # absolute deadline is the source of truth, remaining is derived from it
    timer_ends_at: Optional[datetime] = None
    remaining_seconds: float = 0
    result_index: Optional[int] = None
    results: Optional[QuestionStats] = None
    all_results_shown: bool = False
    admin: Optional[str] = None
    is_admin: bool = False
    is_spectator: bool = False
    my_answer: Any = None
    participants: List[ParticipantView] = Field(default_factory=list)
    now: datetime


class JoinMessage(BaseModel):
    type: Literal["join"]
    name: str = Field(min_length=1)


class AnswerMessage(BaseModel):
    type: Literal["answer"]
    question_index: int
    answer: Any = None


class ControlMessage(BaseModel):
    type: Literal["start", "advance", "next_result", "previous_result", "leave"]


class JoinResult(BaseModel):
    session_id: str
    name: str
    is_admin: bool
    is_spectator: bool
    resumed: bool = False


class ControlOutcome(BaseModel):
    """Result of an admin intent; ``applied`` is False for ignored intents."""

    applied: bool
    all_shown: bool = False
    view: SessionView
