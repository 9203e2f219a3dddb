from typing import Optional

from fastapi import APIRouter, Depends
from sqlmodel.ext.asyncio.session import AsyncSession

from livesurvey.core.errors import SessionNotFound
from livesurvey.dependencies import get_controller, get_db_session
from livesurvey.models import ResultsSnapshot, Session
from livesurvey.schemas import ParticipantDetails, SessionResults, SessionView
from livesurvey.services.aggregator import aggregate, stats_from_json
from livesurvey.services.insights import participant_details
from livesurvey.services.runtime import SessionController
from livesurvey.services.surveys import load_questions

router = APIRouter(tags=["sessions"])


async def frozen_or_live_answers(db: AsyncSession, runtime: SessionController, session_id: str):
    """Answers frozen at results time, or the current ones before that."""
    snapshot = await db.get(ResultsSnapshot, session_id)
    if snapshot:
        return snapshot, snapshot.answers
    return None, await runtime.store.snapshot(session_id, db=db)


@router.get("/sessions/{session_id}/state", response_model=SessionView)
async def session_state(
    session_id: str,
    identity: Optional[str] = None,
    runtime: SessionController = Depends(get_controller),
):
    return await runtime.observe(session_id, identity)


@router.get("/results/{session_id}", response_model=SessionResults)
async def session_results(
    session_id: str,
    db: AsyncSession = Depends(get_db_session),
    runtime: SessionController = Depends(get_controller),
):
    session = await db.get(Session, session_id)
    if not session:
        raise SessionNotFound(session_id)
    questions = await load_questions(db, session.survey_id)
    snapshot, answers = await frozen_or_live_answers(db, runtime, session_id)
    stats = stats_from_json(snapshot.statistics) if snapshot else aggregate(questions, answers)
    return SessionResults(session_id=session_id, participant_count=len(answers), questions=stats)


@router.get("/results/{session_id}/participants", response_model=ParticipantDetails)
async def participant_results(
    session_id: str,
    db: AsyncSession = Depends(get_db_session),
    runtime: SessionController = Depends(get_controller),
):
    session = await db.get(Session, session_id)
    if not session:
        raise SessionNotFound(session_id)
    questions = await load_questions(db, session.survey_id)
    _, answers = await frozen_or_live_answers(db, runtime, session_id)
    return ParticipantDetails(session_id=session_id, participants=participant_details(questions, answers))
