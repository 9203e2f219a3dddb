import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy import delete, select, update
from sqlalchemy.orm import selectinload
from sqlmodel.ext.asyncio.session import AsyncSession

from livesurvey.core.errors import QuestionNotFound, SurveyLocked, SurveyNotFound
from livesurvey.core.time import utc_now
from livesurvey.dependencies import get_controller, get_db_session
from livesurvey.models import Question, Session, Survey
from livesurvey.models.survey import DEFAULT_CATEGORY_A, DEFAULT_CATEGORY_B, QuestionType, new_question_id
from livesurvey.schemas import (
    AttachSurvey,
    QuestionCreate,
    QuestionUpdate,
    SessionCreate,
    SessionRead,
    SurveyCreate,
    SurveyRead,
)
from livesurvey.services.runtime import SessionController
from livesurvey.services.surveys import build_question, load_questions, serialize_survey

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger("admin")


def serialize_session(session: Session) -> SessionRead:
    return SessionRead(
        id=session.id,
        survey_id=session.survey_id,
        current_question_index=session.current_question_index,
        is_active=session.is_active,
        admin_identity=session.admin_identity,
        question_timer_end_time=session.question_timer_end_time,
        results_mode=session.results_mode,
        current_result_index=session.current_result_index,
    )


async def ensure_unlocked(db: AsyncSession, survey_id: str):
    """Questions of a survey cannot change while a started session runs it."""
    result = await db.execute(
        select(Session.id).where(Session.survey_id == survey_id, Session.is_active.is_(True)).limit(1)
    )
    if result.first():
        raise SurveyLocked(survey_id)


async def load_survey(db: AsyncSession, survey_id: str) -> Survey:
    survey = await db.get(Survey, survey_id)
    if not survey:
        raise SurveyNotFound(survey_id)
    return survey


async def read_survey(db: AsyncSession, survey: Survey) -> SurveyRead:
    questions = await load_questions(db, survey.id)
    return SurveyRead(id=survey.id, name=survey.name, created_at=survey.created_at, questions=questions)


@router.post("/surveys", response_model=SurveyRead)
async def create_survey(payload: SurveyCreate, db: AsyncSession = Depends(get_db_session)):
    survey = Survey(name=payload.name)
    db.add(survey)
    await db.flush()
    stamp = utc_now()
    for idx, q in enumerate(payload.questions):
        db.add(build_question(survey.id, new_question_id(idx, stamp), q))
    await db.commit()
    logger.info("Survey created id=%s questions=%s", survey.id, len(payload.questions))
    return await read_survey(db, survey)


@router.get("/surveys", response_model=List[SurveyRead])
async def list_surveys(db: AsyncSession = Depends(get_db_session)):
    result = await db.execute(select(Survey).options(selectinload(Survey.questions)).order_by(Survey.created_at))
    surveys = result.scalars().unique().all()
    return [serialize_survey(s) for s in surveys]


@router.get("/surveys/{survey_id}", response_model=SurveyRead)
async def get_survey(survey_id: str, db: AsyncSession = Depends(get_db_session)):
    survey = await load_survey(db, survey_id)
    return await read_survey(db, survey)


@router.delete("/surveys/{survey_id}")
async def delete_survey(survey_id: str, db: AsyncSession = Depends(get_db_session)):
    await load_survey(db, survey_id)
    await ensure_unlocked(db, survey_id)
    # Lobby sessions lose their survey; questions go with it
    await db.execute(update(Session).where(Session.survey_id == survey_id).values(survey_id=None))
    await db.execute(delete(Question).where(Question.survey_id == survey_id))
    await db.execute(delete(Survey).where(Survey.id == survey_id))
    await db.commit()
    logger.info("Survey deleted id=%s", survey_id)
    return {"deleted": survey_id}


@router.post("/surveys/{survey_id}/questions", response_model=SurveyRead)
async def add_question(survey_id: str, payload: QuestionCreate, db: AsyncSession = Depends(get_db_session)):
    survey = await load_survey(db, survey_id)
    await ensure_unlocked(db, survey_id)
    db.add(build_question(survey_id, new_question_id(), payload))
    await db.commit()
    logger.info("Question added survey=%s type=%s", survey_id, payload.type.value)
    return await read_survey(db, survey)


@router.patch("/surveys/{survey_id}/questions/{question_id}", response_model=SurveyRead)
async def update_question(
    survey_id: str,
    question_id: str,
    payload: QuestionUpdate,
    db: AsyncSession = Depends(get_db_session),
):
    survey = await load_survey(db, survey_id)
    question = await db.get(Question, question_id)
    if not question or question.survey_id != survey_id:
        raise QuestionNotFound(question_id)
    await ensure_unlocked(db, survey_id)

    if payload.text is not None:
        question.text = payload.text
    if payload.type is not None:
        question.type = payload.type.value
    if payload.options is not None:
        question.options = [option.model_dump(exclude_none=True) for option in payload.options]
    for field in ("category_a", "category_b"):
        value = getattr(payload, field)
        if value is not None:
            setattr(question, field, value)
    if question.type == QuestionType.BINARY_CATEGORIZATION.value:
        question.category_a = question.category_a or DEFAULT_CATEGORY_A
        question.category_b = question.category_b or DEFAULT_CATEGORY_B

    await db.commit()
    logger.info("Question updated survey=%s question=%s", survey_id, question_id)
    return await read_survey(db, survey)


@router.delete("/surveys/{survey_id}/questions/{question_id}", response_model=SurveyRead)
async def delete_question(survey_id: str, question_id: str, db: AsyncSession = Depends(get_db_session)):
    survey = await load_survey(db, survey_id)
    question = await db.get(Question, question_id)
    if not question or question.survey_id != survey_id:
        raise QuestionNotFound(question_id)
    await ensure_unlocked(db, survey_id)
    await db.delete(question)
    await db.commit()
    logger.info("Question deleted survey=%s question=%s", survey_id, question_id)
    return await read_survey(db, survey)


@router.post("/sessions", response_model=SessionRead)
async def create_session(payload: SessionCreate, runtime: SessionController = Depends(get_controller)):
    session = await runtime.provision_session(payload.id.strip(), payload.survey_id)
    logger.info("Session created id=%s survey=%s", session.id, session.survey_id)
    return serialize_session(session)


@router.get("/sessions", response_model=List[SessionRead])
async def list_sessions(db: AsyncSession = Depends(get_db_session)):
    result = await db.execute(select(Session).order_by(Session.created_at))
    return [serialize_session(s) for s in result.scalars().all()]


@router.post("/sessions/{session_id}/survey", response_model=SessionRead)
async def attach_survey(
    session_id: str,
    payload: AttachSurvey,
    runtime: SessionController = Depends(get_controller),
):
    session = await runtime.attach_survey(session_id, payload.survey_id)
    return serialize_session(session)


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, runtime: SessionController = Depends(get_controller)):
    await runtime.teardown(session_id)
    logger.info("Session deleted id=%s", session_id)
    return {"deleted": session_id}
