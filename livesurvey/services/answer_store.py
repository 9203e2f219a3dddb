import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlmodel.ext.asyncio.session import AsyncSession

from livesurvey.core.errors import (
    InvalidAnswerShape,
    ParticipantNotFound,
    QuestionNotOpen,
    SessionNotFound,
    SpectatorForbidden,
)
from livesurvey.core.time import utc_now
from livesurvey.db import get_session
from livesurvey.models import Participant, Session
from livesurvey.services.answer_shapes import parse_answer
from livesurvey.services.phases import Lobby, ResultsPaging, derive_phase
from livesurvey.services.surveys import load_questions


class AnswerStore:
    """Per-participant answers; each participant only ever writes its own row."""

    def __init__(self):
        self.logger = logging.getLogger("runtime")

    async def submit(self, session_id: str, name: str, question_index: int, answer: Any) -> Any:
        """Validate and store an answer, replacing any earlier one for that question.

        Only questions already shown take answers. Returns the stored
        (normalized) value; nothing is written when the answer is rejected.
        """
        async with get_session() as db:
            session = await db.get(Session, session_id)
            if not session:
                raise SessionNotFound(session_id)
            participant = await db.get(Participant, (session_id, name))
            if not participant:
                raise ParticipantNotFound(name)
            if participant.is_spectator:
                raise SpectatorForbidden(name)

            questions = await load_questions(db, session.survey_id)
            if isinstance(question_index, bool) or not 0 <= question_index < len(questions):
                raise InvalidAnswerShape(f"unknown question index {question_index!r}")
            phase = derive_phase(session, len(questions), utc_now())
            if isinstance(phase, Lobby) or (not isinstance(phase, ResultsPaging) and question_index > phase.index):
                raise QuestionNotOpen(question_index)
            stored = parse_answer(questions[question_index], answer).to_json()

            # New dict so the JSON column is flagged dirty
            participant.answers = {**(participant.answers or {}), str(question_index): stored}
            await db.commit()

        self.logger.info(
            "Answer recorded session=%s participant=%s question=%s answer=%r",
            session_id,
            name,
            question_index,
            stored,
        )
        return stored

    async def snapshot(self, session_id: str, db: Optional[AsyncSession] = None) -> Dict[str, dict]:
        """Every participant's answer map, keyed and ordered by name."""
        if db is None:
            async with get_session() as own_db:
                return await self._read_answers(own_db, session_id)
        return await self._read_answers(db, session_id)

    async def _read_answers(self, db: AsyncSession, session_id: str) -> Dict[str, dict]:
        result = await db.execute(
            select(Participant).where(Participant.session_id == session_id).order_by(Participant.name)
        )
        return {p.name: p.answers for p in result.scalars().all()}
