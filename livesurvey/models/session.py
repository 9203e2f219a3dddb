from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel

from livesurvey.core.time import utc_now
from livesurvey.models.survey import JSONColumn

LOBBY_INDEX = -1


class Session(SQLModel, table=True):
    __tablename__ = "sessions"

    # Externally supplied (shared with participants to join)
    id: str = Field(primary_key=True)
    survey_id: Optional[str] = Field(default=None, foreign_key="surveys.id")
    current_question_index: int = Field(default=LOBBY_INDEX)
    is_active: bool = Field(default=False)
    admin_identity: Optional[str] = None
    question_timer_end_time: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    results_mode: bool = Field(default=False)
    current_result_index: int = Field(default=0)
    created_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True)))


class Participant(SQLModel, table=True):
    __tablename__ = "session_participants"

    session_id: str = Field(foreign_key="sessions.id", primary_key=True)
    # Display name doubles as the identity within a session
    name: str = Field(primary_key=True)
    # question index (as string key) -> answer value
    answers: dict = Field(default_factory=dict, sa_column=Column(JSONColumn))
    # legacy, always 0 in survey mode
    score: float = Field(default=0.0, ge=0)
    is_spectator: bool = Field(default=False)
    connected: bool = Field(default=False)
    joined_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True)))
