"""
Session controller: lifecycle, admin gate, transitions and recovery
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from conftest import categorization, choice, pairing, ranking, seed_survey
from livesurvey.core.errors import (
    EmptyQuestionSet,
    NoSurveyAttached,
    SessionAlreadyExists,
    SessionAlreadyStarted,
    SessionNotFound,
    SpectatorForbidden,
    SurveyNotFound,
)
from livesurvey.core.time import utc_now
from livesurvey.db import get_session
from livesurvey.models import Participant, ResultsSnapshot, Session
from livesurvey.services.feed import PARTICIPANTS_CHANGED, SESSION_CHANGED, SESSION_DELETED, ChangeFeed
from livesurvey.services.runtime import SessionController


async def load(session_id="room") -> Session:
    async with get_session() as db:
        return await db.get(Session, session_id)


async def patch_session(session_id="room", **values):
    async with get_session() as db:
        await db.execute(update(Session).where(Session.id == session_id).values(**values))
        await db.commit()


async def running(runtime, questions=None, names=("ann", "bob")):
    """Provisioned, joined and started session named "room"."""
    survey_id = await seed_survey(questions or [choice(), ranking(), pairing()])
    await runtime.provision_session("room", survey_id)
    for name in names:
        await runtime.join("room", name)
    outcome = await runtime.start("room", names[0])
    assert outcome.applied
    return survey_id


class TestProvisioning:
    @pytest.mark.asyncio
    async def test_duplicate_session(self, runtime):
        await runtime.provision_session("room")
        with pytest.raises(SessionAlreadyExists):
            await runtime.provision_session("room")

    @pytest.mark.asyncio
    async def test_attach_only_in_lobby(self, runtime):
        survey_id = await running(runtime)
        with pytest.raises(SessionAlreadyStarted):
            await runtime.attach_survey("room", survey_id)

    @pytest.mark.asyncio
    async def test_attach_in_lobby(self, runtime):
        await runtime.provision_session("room")
        survey_id = await seed_survey([choice()])
        session = await runtime.attach_survey("room", survey_id)
        assert session.survey_id == survey_id


class TestJoin:
    @pytest.mark.asyncio
    async def test_unknown_session_is_not_created(self, runtime):
        with pytest.raises(SessionNotFound):
            await runtime.join("nowhere", "ann")
        assert await load("nowhere") is None

    @pytest.mark.asyncio
    async def test_first_joiner_becomes_admin(self, runtime):
        await runtime.provision_session("room")
        first = await runtime.join("room", "ann")
        second = await runtime.join("room", "bob")
        assert first.is_admin and not second.is_admin
        assert (await load()).admin_identity == "ann"

    @pytest.mark.asyncio
    async def test_rejoin_resumes_record(self, runtime):
        survey_id = await seed_survey([choice()])
        await runtime.provision_session("room", survey_id)
        await runtime.join("room", "ann")
        await runtime.start("room", "ann")
        await runtime.submit_answer("room", "ann", 0, 1)
        again = await runtime.join("room", "ann")
        assert again.resumed and again.is_admin
        async with get_session() as db:
            assert (await db.get(Participant, ("room", "ann"))).answers == {"0": 1}

    @pytest.mark.asyncio
    async def test_concurrent_joins_elect_one_admin(self, runtime):
        await runtime.provision_session("room")
        results = await asyncio.gather(*(runtime.join("room", name) for name in ("ann", "bob", "cid", "dee")))
        admins = [r.name for r in results if r.is_admin]
        assert len(admins) == 1
        assert (await load()).admin_identity == admins[0]

    @pytest.mark.asyncio
    async def test_admin_claims_empty_slot(self, runtime):
        await runtime.provision_session("room")
        await patch_session(admin_identity="")
        assert (await runtime.join("room", "ann")).is_admin


class TestStart:
    @pytest.mark.asyncio
    async def test_requires_survey(self, runtime):
        await runtime.provision_session("room")
        await runtime.join("room", "ann")
        with pytest.raises(NoSurveyAttached):
            await runtime.start("room", "ann")

    @pytest.mark.asyncio
    async def test_requires_questions(self, runtime):
        survey_id = await seed_survey([])
        await runtime.provision_session("room", survey_id)
        await runtime.join("room", "ann")
        with pytest.raises(EmptyQuestionSet):
            await runtime.start("room", "ann")

    @pytest.mark.asyncio
    async def test_non_admin_intent_is_ignored(self, runtime):
        survey_id = await seed_survey([choice()])
        await runtime.provision_session("room", survey_id)
        await runtime.join("room", "ann")
        await runtime.join("room", "bob")
        outcome = await runtime.start("room", "bob")
        assert not outcome.applied
        assert outcome.view.phase == "lobby"
        assert (await load()).current_question_index == -1

    @pytest.mark.asyncio
    async def test_start_shows_first_question(self, runtime):
        await running(runtime)
        view = await runtime.observe("room", "bob")
        assert view.phase == "question"
        assert view.question_index == 0
        assert view.question.text == "Favourite?"
        assert not (await runtime.start("room", "ann")).applied

    @pytest.mark.asyncio
    async def test_advance_in_lobby_is_a_no_op(self, runtime):
        survey_id = await seed_survey([choice()])
        await runtime.provision_session("room", survey_id)
        await runtime.join("room", "ann")
        assert not (await runtime.advance("room", "ann")).applied


class TestAdvance:
    @pytest.mark.asyncio
    async def test_delay_then_next_question(self, runtime):
        await running(runtime)
        outcome = await runtime.advance("room", "ann")
        assert outcome.applied
        assert outcome.view.phase == "transition_delay"
        assert 0 < outcome.view.remaining_seconds <= 0.2
        # a second advance during the delay does nothing
        assert not (await runtime.advance("room", "ann")).applied

        await asyncio.sleep(0.5)
        session = await load()
        assert session.current_question_index == 1
        assert session.question_timer_end_time is None
        assert (await runtime.observe("room", "bob")).question_index == 1

    @pytest.mark.asyncio
    async def test_cutover_happens_once(self, runtime):
        await running(runtime)
        await patch_session(question_timer_end_time=utc_now() - timedelta(seconds=1))
        moved = await asyncio.gather(runtime.complete_transition("room", 0), runtime.complete_transition("room", 0))
        assert sorted(moved) == [False, True]
        assert (await load()).current_question_index == 1

    @pytest.mark.asyncio
    async def test_stale_cutover_is_rejected(self, runtime):
        await running(runtime)
        await patch_session(current_question_index=1, question_timer_end_time=utc_now() - timedelta(seconds=1))
        assert not await runtime.complete_transition("room", 0)
        assert (await load()).current_question_index == 1

    @pytest.mark.asyncio
    async def test_overdue_cutover_on_admin_observation(self, runtime):
        await running(runtime)
        await patch_session(question_timer_end_time=utc_now() - timedelta(seconds=1))
        # everyone already sees the next question
        assert (await runtime.observe("room", "bob")).question_index == 1
        assert (await load()).current_question_index == 0
        await runtime.observe("room", "ann")
        assert (await load()).current_question_index == 1

    @pytest.mark.asyncio
    async def test_question_index_never_decreases(self, runtime):
        await running(runtime)
        seen = []
        for _ in range(2):
            await runtime.advance("room", "ann")
            seen.append((await load()).current_question_index)
            await asyncio.sleep(0.35)
            seen.append((await load()).current_question_index)
        assert seen == sorted(seen)
        assert seen[-1] == 2


class TestResults:
    async def finish(self, runtime):
        await running(runtime, questions=[choice(), categorization()])
        await runtime.submit_answer("room", "ann", 0, 0)
        await runtime.submit_answer("room", "bob", 0, 0)
        await runtime.advance("room", "ann")
        await asyncio.sleep(0.35)
        await runtime.submit_answer("room", "ann", 1, {"0": 0})
        return await runtime.advance("room", "ann")

    @pytest.mark.asyncio
    async def test_last_advance_enters_results(self, runtime):
        outcome = await self.finish(runtime)
        assert outcome.applied
        assert outcome.view.phase == "results"
        assert outcome.view.result_index == 0
        assert outcome.view.results.winner == 0

        session = await load()
        assert session.results_mode and session.current_question_index == 2
        async with get_session() as db:
            snapshot = await db.get(ResultsSnapshot, "room")
        assert snapshot.answers["ann"] == {"0": 0, "1": {"0": 0}}
        assert len(snapshot.statistics) == 2

    @pytest.mark.asyncio
    async def test_frozen_results_ignore_late_writes(self, runtime):
        await self.finish(runtime)
        async with get_session() as db:
            participant = await db.get(Participant, ("room", "bob"))
            participant.answers = {"0": 1}
            await db.commit()
        view = await runtime.observe("room", "bob")
        assert view.results.votes == {0: 2}

    @pytest.mark.asyncio
    async def test_paging_is_clipped(self, runtime):
        await self.finish(runtime)
        assert not (await runtime.previous_result("room", "ann")).applied

        forward = await runtime.next_result("room", "ann")
        assert forward.applied and forward.all_shown
        assert forward.view.results.type == "categorization"

        past_end = await runtime.next_result("room", "ann")
        assert not past_end.applied and past_end.all_shown
        assert (await load()).current_result_index == 1

        back = await runtime.previous_result("room", "ann")
        assert back.applied and back.view.result_index == 0

    @pytest.mark.asyncio
    async def test_paging_needs_admin(self, runtime):
        await self.finish(runtime)
        assert not (await runtime.next_result("room", "bob")).applied
        assert (await load()).current_result_index == 0

    @pytest.mark.asyncio
    async def test_late_joiner_is_spectator(self, runtime):
        await self.finish(runtime)
        joined = await runtime.join("room", "zed")
        assert joined.is_spectator and not joined.is_admin
        with pytest.raises(SpectatorForbidden):
            await runtime.submit_answer("room", "zed", 0, 1)

    @pytest.mark.asyncio
    async def test_admin_rejoining_keeps_control(self, runtime):
        await self.finish(runtime)
        again = await runtime.join("room", "ann")
        assert again.resumed and again.is_admin and not again.is_spectator
        assert (await runtime.next_result("room", "ann")).applied


class TestSelfHealing:
    @pytest.mark.asyncio
    async def test_admin_observation_restores_results_mode(self, runtime):
        survey_id = await running(runtime, questions=[choice(), choice()])
        await patch_session(current_question_index=2, results_mode=False, current_result_index=1)
        before = await load()

        view = await runtime.observe("room", "bob")
        assert view.phase == "results" and view.result_index == 0
        assert not (await load()).results_mode

        await runtime.observe("room", "ann")
        after = await load()
        assert after.results_mode and after.current_result_index == 0
        for field in ("survey_id", "current_question_index", "is_active", "admin_identity", "question_timer_end_time"):
            assert getattr(after, field) == getattr(before, field)
        assert after.survey_id == survey_id


class TestLeave:
    @pytest.mark.asyncio
    async def test_admin_hands_over_to_remaining(self, runtime):
        await runtime.provision_session("room")
        await runtime.join("room", "ann")
        await runtime.join("room", "bob")
        assert await runtime.leave("room", "ann") == "bob"
        assert (await load()).admin_identity == "bob"

    @pytest.mark.asyncio
    async def test_earliest_joined_wins(self, runtime):
        await runtime.provision_session("room")
        for name in ("ann", "zoe", "bob"):
            await runtime.join("room", name)
        assert await runtime.leave("room", "ann") == "zoe"

    @pytest.mark.asyncio
    async def test_non_admin_leave_keeps_admin(self, runtime):
        await runtime.provision_session("room")
        await runtime.join("room", "ann")
        await runtime.join("room", "bob")
        assert await runtime.leave("room", "bob") == "ann"

    @pytest.mark.asyncio
    async def test_last_leave_removes_session(self, runtime):
        await running(runtime, names=("ann",))
        await runtime.advance("room", "ann")
        assert await runtime.leave("room", "ann") is None
        assert await load() is None
        async with get_session() as db:
            rows = (await db.execute(select(Participant).where(Participant.session_id == "room"))).scalars().all()
        assert rows == []
        assert "room" not in runtime.timer_tasks

    @pytest.mark.asyncio
    async def test_spectator_takes_over_when_alone(self, runtime):
        await running(runtime, questions=[choice()], names=("ann",))
        await runtime.advance("room", "ann")
        await runtime.join("room", "zed")
        assert await runtime.leave("room", "ann") == "zed"

    @pytest.mark.asyncio
    async def test_teardown_is_idempotent(self, runtime):
        await running(runtime)
        await runtime.advance("room", "ann")
        await runtime.teardown("room")
        await runtime.teardown("room")
        assert await load() is None
        assert runtime.timer_tasks == {}


class TestSessionLocks:
    @pytest.mark.asyncio
    async def test_unknown_sessions_get_no_lock(self, runtime):
        for i in range(20):
            with pytest.raises(SessionNotFound):
                await runtime.join(f"bogus-{i}", "ann")
            with pytest.raises(SessionNotFound):
                await runtime.leave(f"bogus-{i}", "ann")
            with pytest.raises(SessionNotFound):
                await runtime.start(f"bogus-{i}", "ann")
            assert not await runtime.complete_transition(f"bogus-{i}", 0)
        with pytest.raises(SurveyNotFound):
            await runtime.provision_session("room", "survey_missing")
        assert runtime.locks == {}

    @pytest.mark.asyncio
    async def test_last_leave_drops_lock(self, runtime):
        await runtime.provision_session("room")
        await runtime.join("room", "ann")
        assert "room" in runtime.locks
        await runtime.leave("room", "ann")
        assert "room" not in runtime.locks

    @pytest.mark.asyncio
    async def test_teardown_drops_lock(self, runtime):
        await running(runtime)
        await runtime.teardown("room")
        await runtime.teardown("room")
        assert runtime.locks == {}

    @pytest.mark.asyncio
    async def test_session_id_can_be_reused(self, runtime):
        await runtime.provision_session("room")
        await runtime.teardown("room")
        await runtime.provision_session("room")
        assert (await runtime.join("room", "bob")).is_admin


class TestFeedAndRecovery:
    @pytest.mark.asyncio
    async def test_events_are_published(self, runtime):
        survey_id = await seed_survey([choice()])
        await runtime.provision_session("room", survey_id)
        events = []

        async def listener(event):
            events.append(event)

        runtime.feed.subscribe("room", listener)
        await runtime.join("room", "ann")
        await runtime.start("room", "ann")
        await runtime.leave("room", "ann")
        assert events == [PARTICIPANTS_CHANGED, SESSION_CHANGED, SESSION_CHANGED, SESSION_DELETED]

    @pytest.mark.asyncio
    async def test_recover_timers_after_restart(self, runtime):
        await running(runtime)
        await patch_session(question_timer_end_time=utc_now() + timedelta(seconds=0.1))

        restarted = SessionController(feed=ChangeFeed(), transition_delay=0.2)
        await restarted.recover_timers()
        assert "room" in restarted.timer_tasks
        await asyncio.sleep(0.4)
        assert (await load()).current_question_index == 1
        await restarted.shutdown()
