import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlmodel.ext.asyncio.session import AsyncSession

from livesurvey.core.config import settings
from livesurvey.core.errors import (
    EmptyQuestionSet,
    NoSurveyAttached,
    SessionAlreadyExists,
    SessionAlreadyStarted,
    SessionNotFound,
    SurveyNotFound,
    UnauthorizedControl,
)
from livesurvey.core.time import as_utc, utc_now
from livesurvey.db import get_session
from livesurvey.models import Participant, ResultsSnapshot, Session, Survey
from livesurvey.models.session import LOBBY_INDEX
from livesurvey.schemas import ControlOutcome, JoinResult, ParticipantView, QuestionRead, QuestionStats, SessionView
from livesurvey.services.aggregator import aggregate, raw_answer, stats_from_json, stats_to_json
from livesurvey.services.answer_store import AnswerStore
from livesurvey.services.feed import PARTICIPANTS_CHANGED, SESSION_CHANGED, SESSION_DELETED, ChangeFeed
from livesurvey.services.phases import (
    Phase,
    Question,
    ResultsPaging,
    TransitionDelay,
    cutover_due,
    derive_phase,
    results_repair,
)
from livesurvey.services.surveys import load_questions

Apply = Callable[[AsyncSession, Session], Awaitable[Tuple[bool, bool]]]


class SessionController:
    """Single owner of phase transitions for every live session.

    Participants send intents; the controller applies them under a
    per-session lock and with conditional writes, then notifies the feed.
    Control intents from anyone but the session admin are ignored.
    """

    def __init__(
        self,
        feed: Optional[ChangeFeed] = None,
        store: Optional[AnswerStore] = None,
        transition_delay: Optional[float] = None,
    ):
        self.logger = logging.getLogger("runtime")
        self.feed = feed or ChangeFeed()
        self.store = store or AnswerStore()
        self.transition_delay = (
            settings.transition_delay_seconds if transition_delay is None else transition_delay
        )
        # One lock per live session; dropped on teardown
        self.locks: Dict[str, asyncio.Lock] = {}
        self.timer_tasks: Dict[str, asyncio.Task] = {}
        # Statistics computed once per session from the frozen snapshot
        self.results_cache: Dict[str, List[QuestionStats]] = {}

    # ------------------------------------------------------------------
    # Organizer plumbing

    async def provision_session(self, session_id: str, survey_id: Optional[str] = None) -> Session:
        async with self.locks.setdefault(session_id, asyncio.Lock()):
            async with get_session() as db:
                if await db.get(Session, session_id):
                    raise SessionAlreadyExists(session_id)
                if survey_id and not await db.get(Survey, survey_id):
                    self.locks.pop(session_id, None)
                    raise SurveyNotFound(survey_id)
            # Clear leftovers of an earlier session with the same id
            await self._delete_session_records(session_id)
            async with get_session() as db:
                session = Session(id=session_id, survey_id=survey_id)
                db.add(session)
                await db.commit()
                await db.refresh(session)
        self.logger.info("Session provisioned session=%s survey=%s", session_id, survey_id)
        return session

    async def attach_survey(self, session_id: str, survey_id: str) -> Session:
        async with await self._session_lock(session_id):
            async with get_session() as db:
                session = await self._load(db, session_id)
                if not await db.get(Survey, survey_id):
                    raise SurveyNotFound(survey_id)
                if session.is_active or session.current_question_index != LOBBY_INDEX:
                    raise SessionAlreadyStarted(session_id)
                session.survey_id = survey_id
                await db.commit()
                await db.refresh(session)
        self.logger.info("Survey attached session=%s survey=%s", session_id, survey_id)
        await self.feed.publish(session_id, SESSION_CHANGED)
        return session

    async def teardown(self, session_id: str):
        """Delete the session with its participants and snapshot; safe to retry."""
        async with self.locks.setdefault(session_id, asyncio.Lock()):
            await self._teardown_locked(session_id)
        await self.feed.publish(session_id, SESSION_DELETED)

    # ------------------------------------------------------------------
    # Participants

    async def join(self, session_id: str, name: str) -> JoinResult:
        name = (name or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="Name is required")

        claimed = False
        async with await self._session_lock(session_id):
            async with get_session() as db:
                session = await self._load(db, session_id)
                questions = await load_questions(db, session.survey_id)
                phase = derive_phase(session, len(questions), utc_now())

                participant = await db.get(Participant, (session_id, name))
                resumed = participant is not None
                if participant is None:
                    participant = Participant(
                        session_id=session_id,
                        name=name,
                        is_spectator=isinstance(phase, ResultsPaging),
                        connected=True,
                    )
                    db.add(participant)
                else:
                    participant.connected = True
                await db.commit()

                if not participant.is_spectator and not session.admin_identity:
                    claimed = await self._conditional_update(
                        db,
                        session_id,
                        [or_(Session.admin_identity.is_(None), Session.admin_identity == "")],
                        {"admin_identity": name},
                    )
                    await db.refresh(session)

                result = JoinResult(
                    session_id=session_id,
                    name=name,
                    is_admin=session.admin_identity == name,
                    is_spectator=participant.is_spectator,
                    resumed=resumed,
                )

        self.logger.info(
            "Participant joined session=%s name=%s admin=%s spectator=%s resumed=%s",
            session_id,
            name,
            result.is_admin,
            result.is_spectator,
            resumed,
        )
        await self.feed.publish(session_id, PARTICIPANTS_CHANGED)
        if claimed:
            await self.feed.publish(session_id, SESSION_CHANGED)
        return result

    async def leave(self, session_id: str, name: str) -> Optional[str]:
        """Remove a participant; returns the admin afterwards (None once the session is gone)."""
        deleted = False
        handed_over = False
        async with await self._session_lock(session_id):
            async with get_session() as db:
                session = await self._load(db, session_id)
                participant = await db.get(Participant, (session_id, name))
                if participant:
                    await db.delete(participant)
                    await db.commit()

                remaining = await self._participant_rows(db, session_id)
                admin = session.admin_identity
                if not remaining:
                    deleted = True
                elif admin == name or admin not in {p.name for p in remaining}:
                    successor = next((p for p in remaining if not p.is_spectator), remaining[0])
                    current = Session.admin_identity.is_(None) if admin is None else Session.admin_identity == admin
                    handed_over = await self._conditional_update(
                        db, session_id, [current], {"admin_identity": successor.name}
                    )
                    if handed_over:
                        admin = successor.name
                        self.logger.info(
                            "Admin handed over session=%s from=%s to=%s", session_id, name, successor.name
                        )
            if deleted:
                await self._teardown_locked(session_id)

        self.logger.info("Participant left session=%s name=%s", session_id, name)
        if deleted:
            await self.feed.publish(session_id, SESSION_DELETED)
            return None
        await self.feed.publish(session_id, PARTICIPANTS_CHANGED)
        if handed_over:
            await self.feed.publish(session_id, SESSION_CHANGED)
        return admin

    async def set_connected(self, session_id: str, name: str, connected: bool):
        async with get_session() as db:
            participant = await db.get(Participant, (session_id, name))
            if not participant:
                return
            participant.connected = connected
            await db.commit()
        await self.feed.publish(session_id, PARTICIPANTS_CHANGED)

    async def submit_answer(self, session_id: str, name: str, question_index: int, answer: Any) -> Any:
        stored = await self.store.submit(session_id, name, question_index, answer)
        await self.feed.publish(session_id, PARTICIPANTS_CHANGED)
        return stored

    # ------------------------------------------------------------------
    # Admin intents

    async def start(self, session_id: str, actor: Optional[str]) -> ControlOutcome:
        async def apply(db: AsyncSession, session: Session):
            if not session.survey_id:
                raise NoSurveyAttached(session_id)
            questions = await load_questions(db, session.survey_id)
            if not questions:
                raise EmptyQuestionSet(session_id)
            started = await self._conditional_update(
                db,
                session_id,
                [Session.current_question_index == LOBBY_INDEX],
                {
                    "current_question_index": 0,
                    "is_active": True,
                    "question_timer_end_time": None,
                    "results_mode": False,
                    "current_result_index": 0,
                },
            )
            if started:
                self.logger.info("Session started session=%s questions=%s", session_id, len(questions))
            return started, False

        return await self._control(session_id, actor, "start", apply)

    async def advance(self, session_id: str, actor: Optional[str]) -> ControlOutcome:
        async def apply(db: AsyncSession, session: Session):
            questions = await load_questions(db, session.survey_id)
            now = utc_now()
            if cutover_due(session, now):
                await self._cutover(db, session_id, session.current_question_index)
                await db.refresh(session)

            phase = derive_phase(session, len(questions), now)
            if not isinstance(phase, Question):
                # lobby, a delay already running, or results
                return False, False

            index = phase.index
            if index < len(questions) - 1:
                ends_at = now + timedelta(seconds=self.transition_delay)
                armed = await self._conditional_update(
                    db,
                    session_id,
                    [Session.current_question_index == index, Session.question_timer_end_time.is_(None)],
                    {"question_timer_end_time": ends_at},
                )
                if armed:
                    self.logger.info(
                        "Transition armed session=%s from=%s ends_at=%s", session_id, index, ends_at.isoformat()
                    )
                    self._schedule_cutover(session_id, index, ends_at)
                return armed, False

            entered = await self._conditional_update(
                db,
                session_id,
                [Session.current_question_index == index],
                {
                    "current_question_index": len(questions),
                    "results_mode": True,
                    "current_result_index": 0,
                    "question_timer_end_time": None,
                },
            )
            if entered:
                await self._freeze_results(db, session_id, questions)
                self.logger.info("Results phase entered session=%s", session_id)
            return entered, False

        return await self._control(session_id, actor, "advance", apply)

    async def next_result(self, session_id: str, actor: Optional[str]) -> ControlOutcome:
        async def apply(db: AsyncSession, session: Session):
            phase = await self._results_phase(db, session)
            if phase is None:
                return False, False
            last = await self._question_count(db, session) - 1
            if phase.result_index >= last:
                return False, True
            moved = await self._conditional_update(
                db,
                session_id,
                [Session.current_result_index == phase.result_index, Session.results_mode.is_(True)],
                {"current_result_index": phase.result_index + 1},
            )
            return moved, phase.result_index + 1 >= last

        return await self._control(session_id, actor, "next_result", apply)

    async def previous_result(self, session_id: str, actor: Optional[str]) -> ControlOutcome:
        async def apply(db: AsyncSession, session: Session):
            phase = await self._results_phase(db, session)
            if phase is None or phase.result_index <= 0:
                return False, False
            moved = await self._conditional_update(
                db,
                session_id,
                [Session.current_result_index == phase.result_index, Session.results_mode.is_(True)],
                {"current_result_index": phase.result_index - 1},
            )
            return moved, False

        return await self._control(session_id, actor, "previous_result", apply)

    async def complete_transition(self, session_id: str, from_index: int) -> bool:
        """Show question ``from_index + 1`` once the delay is over; at most once."""
        try:
            lock = await self._session_lock(session_id)
        except SessionNotFound:
            return False
        async with lock:
            async with get_session() as db:
                session = await db.get(Session, session_id)
                if not session or not cutover_due(session, utc_now()):
                    return False
                moved = await self._cutover(db, session_id, from_index)
        if moved:
            await self.feed.publish(session_id, SESSION_CHANGED)
        return moved

    # ------------------------------------------------------------------
    # Observation

    async def observe(self, session_id: str, identity: Optional[str] = None) -> SessionView:
        """Current view of a session for ``identity``.

        When the observer is the admin, pending corrections are written back:
        a missing results flag and an overdue question cutover.
        """
        repaired = False
        async with get_session() as db:
            session = await self._load(db, session_id)
            questions = await load_questions(db, session.survey_id)
            now = utc_now()
            is_admin = bool(identity) and identity == session.admin_identity

            if is_admin:
                repaired = await self._repair(db, session, len(questions), now)
                if repaired:
                    await db.refresh(session)

            phase = derive_phase(session, len(questions), now)
            rows = await self._participant_rows(db, session_id)
            results = None
            if isinstance(phase, ResultsPaging):
                stats = await self._statistics(db, session_id, questions, persist=is_admin)
                results = stats[phase.result_index] if stats else None

        if repaired:
            await self.feed.publish(session_id, SESSION_CHANGED)
        return self._build_view(session, questions, phase, rows, results, identity, now)

    # ------------------------------------------------------------------
    # Lifecycle of the service

    async def recover_timers(self):
        """Re-arm cutovers for delays that were running when the process stopped."""
        async with get_session() as db:
            result = await db.execute(select(Session).where(Session.question_timer_end_time.is_not(None)))
            sessions = result.scalars().all()
        for session in sessions:
            self._schedule_cutover(session.id, session.current_question_index, as_utc(session.question_timer_end_time))
        if sessions:
            self.logger.info("Re-armed %s transition timer(s)", len(sessions))

    async def shutdown(self):
        for task in self.timer_tasks.values():
            task.cancel()
        self.timer_tasks.clear()

    # ------------------------------------------------------------------
    # Internals

    async def _control(self, session_id: str, actor: Optional[str], intent: str, apply: Apply) -> ControlOutcome:
        async with await self._session_lock(session_id):
            async with get_session() as db:
                session = await self._load(db, session_id)
                try:
                    self._require_admin(session, actor)
                except UnauthorizedControl as exc:
                    self.logger.info("Ignored %s: %s", intent, exc)
                    applied, all_shown = False, False
                else:
                    applied, all_shown = await apply(db, session)
        if applied:
            await self.feed.publish(session_id, SESSION_CHANGED)
        view = await self.observe(session_id, actor)
        return ControlOutcome(applied=applied, all_shown=all_shown, view=view)

    def _require_admin(self, session: Session, actor: Optional[str]):
        if not actor or session.admin_identity != actor:
            raise UnauthorizedControl(session.id, actor)

    async def _load(self, db: AsyncSession, session_id: str) -> Session:
        session = await db.get(Session, session_id)
        if not session:
            raise SessionNotFound(session_id)
        return session

    async def _session_lock(self, session_id: str) -> asyncio.Lock:
        """Lock of an existing session; unknown ids never get one."""
        lock = self.locks.get(session_id)
        if lock is None:
            async with get_session() as db:
                await self._load(db, session_id)
            lock = self.locks.setdefault(session_id, asyncio.Lock())
        return lock

    async def _question_count(self, db: AsyncSession, session: Session) -> int:
        return len(await load_questions(db, session.survey_id))

    async def _participant_rows(self, db: AsyncSession, session_id: str) -> List[Participant]:
        result = await db.execute(
            select(Participant)
            .where(Participant.session_id == session_id)
            .order_by(Participant.joined_at, Participant.name)
        )
        return list(result.scalars().all())

    async def _conditional_update(self, db: AsyncSession, session_id: str, conditions: list, values: dict) -> bool:
        """UPDATE the session row only if ``conditions`` still hold; True if it did."""
        result = await db.execute(update(Session).where(Session.id == session_id, *conditions).values(**values))
        await db.commit()
        return result.rowcount > 0

    async def _cutover(self, db: AsyncSession, session_id: str, from_index: int) -> bool:
        moved = await self._conditional_update(
            db,
            session_id,
            [Session.current_question_index == from_index, Session.question_timer_end_time.is_not(None)],
            {"current_question_index": from_index + 1, "question_timer_end_time": None},
        )
        if moved:
            self.logger.info("Question cutover session=%s to=%s", session_id, from_index + 1)
        return moved

    async def _results_phase(self, db: AsyncSession, session: Session) -> Optional[ResultsPaging]:
        count = await self._question_count(db, session)
        if await self._repair(db, session, count, utc_now()):
            await db.refresh(session)
        phase = derive_phase(session, count, utc_now())
        return phase if isinstance(phase, ResultsPaging) else None

    async def _repair(self, db: AsyncSession, session: Session, question_count: int, now: datetime) -> bool:
        repaired = False
        fix = results_repair(session, question_count)
        if fix:
            repaired = await self._conditional_update(
                db, session.id, [Session.results_mode.is_(False), Session.current_question_index >= question_count], fix
            )
            if repaired:
                self.logger.warning("Restored results mode session=%s", session.id)
        elif cutover_due(session, now):
            repaired = await self._cutover(db, session.id, session.current_question_index)
        return repaired

    async def _freeze_results(
        self, db: AsyncSession, session_id: str, questions: List[QuestionRead]
    ) -> List[QuestionStats]:
        existing = await db.get(ResultsSnapshot, session_id)
        if existing:
            stats = stats_from_json(existing.statistics)
        else:
            answers = await self.store.snapshot(session_id, db=db)
            stats = aggregate(questions, answers)
            db.add(ResultsSnapshot(session_id=session_id, answers=answers, statistics=stats_to_json(stats)))
            try:
                await db.commit()
            except IntegrityError:
                # another writer froze it first; theirs wins
                await db.rollback()
                existing = await db.get(ResultsSnapshot, session_id)
                stats = stats_from_json(existing.statistics)
        self.results_cache[session_id] = stats
        return stats

    async def _statistics(
        self, db: AsyncSession, session_id: str, questions: List[QuestionRead], persist: bool
    ) -> List[QuestionStats]:
        if session_id in self.results_cache:
            return self.results_cache[session_id]
        snapshot = await db.get(ResultsSnapshot, session_id)
        if snapshot:
            stats = stats_from_json(snapshot.statistics)
            self.results_cache[session_id] = stats
            return stats
        if persist:
            return await self._freeze_results(db, session_id, questions)
        # Not frozen yet and not ours to freeze: derive from current answers
        return aggregate(questions, await self.store.snapshot(session_id, db=db))

    def _schedule_cutover(self, session_id: str, from_index: int, ends_at: datetime):
        previous = self.timer_tasks.pop(session_id, None)
        if previous:
            previous.cancel()

        async def cutover_later():
            while True:
                remaining = (ends_at - utc_now()).total_seconds()
                if remaining <= 0:
                    break
                await asyncio.sleep(remaining)
            try:
                await self.complete_transition(session_id, from_index)
            except Exception:
                self.logger.exception("Cutover failed session=%s from=%s", session_id, from_index)
            finally:
                if self.timer_tasks.get(session_id) is asyncio.current_task():
                    self.timer_tasks.pop(session_id, None)

        self.timer_tasks[session_id] = asyncio.create_task(cutover_later())

    async def _teardown_locked(self, session_id: str):
        self.locks.pop(session_id, None)
        task = self.timer_tasks.pop(session_id, None)
        if task:
            task.cancel()
        self.results_cache.pop(session_id, None)
        await self._delete_session_records(session_id)
        self.logger.info("Session removed session=%s", session_id)

    async def _delete_session_records(self, session_id: str):
        # Children first so a partial failure leaves the parent for a retry
        async with get_session() as db:
            await db.execute(delete(ResultsSnapshot).where(ResultsSnapshot.session_id == session_id))
            await db.execute(delete(Participant).where(Participant.session_id == session_id))
            await db.commit()
            await db.execute(delete(Session).where(Session.id == session_id))
            await db.commit()

    def _build_view(
        self,
        session: Session,
        questions: List[QuestionRead],
        phase: Phase,
        rows: List[Participant],
        results: Optional[QuestionStats],
        identity: Optional[str],
        now: datetime,
    ) -> SessionView:
        question_index = phase.index if isinstance(phase, (Question, TransitionDelay)) else None
        me = next((p for p in rows if p.name == identity), None)
        participants = [
            ParticipantView(
                name=p.name,
                is_admin=p.name == session.admin_identity,
                is_spectator=p.is_spectator,
                connected=p.connected,
                answered_count=len(p.answers or {}),
                answered_current=question_index is not None and raw_answer(p.answers or {}, question_index) is not None,
            )
            for p in rows
        ]
        view = SessionView(
            id=session.id,
            survey_id=session.survey_id,
            phase=phase.name,
            question_count=len(questions),
            question_index=question_index,
            question=questions[question_index] if question_index is not None else None,
            admin=session.admin_identity,
            is_admin=bool(identity) and identity == session.admin_identity,
            is_spectator=bool(me and me.is_spectator),
            my_answer=raw_answer(me.answers or {}, question_index) if me and question_index is not None else None,
            participants=participants,
            now=now,
        )
        if isinstance(phase, TransitionDelay):
            view.timer_ends_at = phase.ends_at
            view.remaining_seconds = phase.remaining_seconds(now)
        if isinstance(phase, ResultsPaging):
            view.result_index = phase.result_index
            view.results = results
            view.all_results_shown = phase.result_index >= len(questions) - 1
        return view


controller = SessionController()
