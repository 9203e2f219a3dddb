from datetime import datetime

from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel

from livesurvey.core.time import utc_now
from livesurvey.models.survey import JSONColumn


class ResultsSnapshot(SQLModel, table=True):
    """Answers frozen at the moment a session entered the results phase."""

    __tablename__ = "results_snapshots"

    session_id: str = Field(foreign_key="sessions.id", primary_key=True)
    # participant name -> answers map, as stored on the participant
    answers: dict = Field(default_factory=dict, sa_column=Column(JSONColumn))
    # one serialized QuestionStats per question, in sequence order
    statistics: list = Field(default_factory=list, sa_column=Column(JSONColumn))
    created_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True)))
