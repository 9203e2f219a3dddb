from typing import List, Optional

from sqlalchemy import select
from sqlmodel.ext.asyncio.session import AsyncSession

from livesurvey.models import Question, Survey
from livesurvey.models.survey import DEFAULT_CATEGORY_A, DEFAULT_CATEGORY_B, QuestionType
from livesurvey.schemas import QuestionCreate, QuestionRead, SurveyRead


def serialize_question(question: Question) -> QuestionRead:
    return QuestionRead(
        id=question.id,
        text=question.text,
        type=question.type,
        options=question.options or [],
        category_a=question.category_a,
        category_b=question.category_b,
    )


def serialize_survey(survey: Survey) -> SurveyRead:
    ordered = sorted(survey.questions, key=lambda q: q.id)
    return SurveyRead(
        id=survey.id,
        name=survey.name,
        created_at=survey.created_at,
        questions=[serialize_question(q) for q in ordered],
    )


def build_question(survey_id: str, question_id: str, payload: QuestionCreate) -> Question:
    categorization = payload.type == QuestionType.BINARY_CATEGORIZATION
    return Question(
        id=question_id,
        survey_id=survey_id,
        text=payload.text,
        type=payload.type.value,
        options=[option.model_dump(exclude_none=True) for option in payload.options],
        category_a=(payload.category_a or DEFAULT_CATEGORY_A) if categorization else None,
        category_b=(payload.category_b or DEFAULT_CATEGORY_B) if categorization else None,
    )


async def load_questions(db: AsyncSession, survey_id: Optional[str]) -> List[QuestionRead]:
    """Questions of a survey in sequence order (ascending id)."""
    if not survey_id:
        return []
    result = await db.execute(select(Question).where(Question.survey_id == survey_id).order_by(Question.id))
    return [serialize_question(q) for q in result.scalars().all()]
