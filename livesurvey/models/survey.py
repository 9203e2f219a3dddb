import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON, Column, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, Relationship, SQLModel

from livesurvey.core.time import utc_now

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite for local runs and tests)
JSONColumn = JSON().with_variant(JSONB(), "postgresql")


class QuestionType(str, Enum):
    SINGLE_CHOICE = "multiple-choice"
    RANKED_ORDER = "ranking"
    PAIRED_ASSOCIATION = "pairing"
    BINARY_CATEGORIZATION = "categorization"


DEFAULT_CATEGORY_A = "Category A"
DEFAULT_CATEGORY_B = "Category B"


def new_survey_id() -> str:
    return f"survey_{uuid.uuid4().hex[:12]}"


def new_question_id(index: int = 0, stamp: Optional[datetime] = None) -> str:
    """Question ids sort lexicographically in creation order."""
    stamp = stamp or utc_now()
    return f"q{stamp:%Y%m%d%H%M%S%f}-{index:04d}"


class Survey(SQLModel, table=True):
    __tablename__ = "surveys"

    id: str = Field(default_factory=new_survey_id, primary_key=True)
    name: str
    created_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True)))

    questions: List["Question"] = Relationship(
        back_populates="survey",
        sa_relationship_kwargs={"order_by": "Question.id"},
    )


class Question(SQLModel, table=True):
    __tablename__ = "survey_questions"

    id: str = Field(default_factory=new_question_id, primary_key=True)
    survey_id: str = Field(foreign_key="surveys.id", index=True)
    text: str
    type: str = Field(default=QuestionType.SINGLE_CHOICE.value)
    # Each option is {"text": ..., "image": optional reference}
    options: list[dict] = Field(default_factory=list, sa_column=Column(JSONColumn))
    category_a: Optional[str] = None
    category_b: Optional[str] = None

    survey: Optional[Survey] = Relationship(back_populates="questions")
