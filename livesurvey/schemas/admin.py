from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from livesurvey.models.survey import QuestionType


class OptionItem(BaseModel):
    text: str
    image: Optional[str] = None


def _normalize_options(value):
    if value is None:
        return value
    return [{"text": item} if isinstance(item, str) else item for item in value]


class QuestionCreate(BaseModel):
    text: str = Field(min_length=1)
    type: QuestionType = QuestionType.SINGLE_CHOICE
    # Plain strings are accepted as text-only options
    options: List[OptionItem] = Field(min_length=2)
    category_a: Optional[str] = None
    category_b: Optional[str] = None

    @field_validator("options", mode="before")
    @classmethod
    def normalize_options(cls, value):
        return _normalize_options(value)


class QuestionUpdate(BaseModel):
    text: Optional[str] = None
    type: Optional[QuestionType] = None
    options: Optional[List[OptionItem]] = Field(default=None, min_length=2)
    category_a: Optional[str] = None
    category_b: Optional[str] = None

    @field_validator("options", mode="before")
    @classmethod
    def normalize_options(cls, value):
        return _normalize_options(value)


class QuestionRead(BaseModel):
    id: str
    text: str
    type: QuestionType
    options: List[OptionItem] = Field(default_factory=list)
    category_a: Optional[str] = None
    category_b: Optional[str] = None

    def option_text(self, index: int) -> str:
        return self.options[index].text


class SurveyCreate(BaseModel):
    name: str = Field(min_length=1)
    questions: List[QuestionCreate] = Field(default_factory=list)


class SurveyRead(BaseModel):
    id: str
    name: str
    created_at: Optional[datetime] = None
    questions: List[QuestionRead] = Field(default_factory=list)


class SessionCreate(BaseModel):
    id: str = Field(min_length=1)
    survey_id: Optional[str] = None


class AttachSurvey(BaseModel):
    survey_id: str


class SessionRead(BaseModel):
    id: str
    survey_id: Optional[str]
    current_question_index: int
    is_active: bool
    admin_identity: Optional[str]
    question_timer_end_time: Optional[datetime]
    results_mode: bool
    current_result_index: int
