"""Session phases derived from the persisted session record.

The record stores an index, two flags and a timestamp; everything that
decides what a client shows goes through ``derive_phase`` so that every
observer reaches the same answer from the same record and clock.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from livesurvey.core.time import as_utc
from livesurvey.models.session import LOBBY_INDEX, Session


@dataclass(frozen=True, slots=True)
class Lobby:
    name = "lobby"


@dataclass(frozen=True, slots=True)
class Question:
    index: int
    name = "question"


@dataclass(frozen=True, slots=True)
class TransitionDelay:
    """Question ``index`` is still shown; ``index + 1`` follows at ``ends_at``."""

    index: int
    ends_at: datetime
    name = "transition_delay"

    def remaining_seconds(self, now: datetime) -> float:
        return max(0.0, (self.ends_at - now).total_seconds())


@dataclass(frozen=True, slots=True)
class ResultsPaging:
    result_index: int
    name = "results"


Phase = Union[Lobby, Question, TransitionDelay, ResultsPaging]


def derive_phase(session: Session, question_count: int, now: datetime) -> Phase:
    index = session.current_question_index
    if index <= LOBBY_INDEX or question_count <= 0:
        return Lobby()
    if index >= question_count:
        # results_mode may be missing after a partial write; results start at 0 then
        if not session.results_mode:
            return ResultsPaging(result_index=0)
        return ResultsPaging(result_index=min(max(session.current_result_index, 0), question_count - 1))
    ends_at = as_utc(session.question_timer_end_time)
    if ends_at is None:
        return Question(index=index)
    if now < ends_at:
        return TransitionDelay(index=index, ends_at=ends_at)
    # Deadline passed: every observer shows the next question, cutover pending
    return Question(index=min(index + 1, question_count - 1))


def results_repair(session: Session, question_count: int) -> Optional[dict]:
    """Fields to persist when the record reached results without results_mode."""
    if question_count > 0 and session.current_question_index >= question_count and not session.results_mode:
        return {"results_mode": True, "current_result_index": 0}
    return None


def cutover_due(session: Session, now: datetime) -> bool:
    ends_at = as_utc(session.question_timer_end_time)
    return ends_at is not None and now >= ends_at
