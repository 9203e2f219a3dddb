import os
import tempfile
from pathlib import Path

# Settings and the engine are read at import time
_tmp = Path(tempfile.mkdtemp(prefix="live-survey-tests-"))
os.environ["SURVEY_DATABASE_URL"] = f"sqlite+aiosqlite:///{_tmp / 'survey.db'}"
os.environ["SURVEY_TRANSITION_DELAY_SECONDS"] = "0.2"
os.environ["SURVEY_STATE_PUSH_INTERVAL"] = "0.05"
os.environ.setdefault("LOG_DIR", str(_tmp / "logs"))

from typing import List  # noqa: E402

import pytest_asyncio  # noqa: E402

from livesurvey.db import drop_db, get_session, init_db  # noqa: E402
from livesurvey.models import Survey  # noqa: E402
from livesurvey.models.survey import QuestionType, new_question_id  # noqa: E402
from livesurvey.schemas import QuestionCreate, QuestionRead  # noqa: E402
from livesurvey.services.feed import ChangeFeed  # noqa: E402
from livesurvey.services.runtime import SessionController  # noqa: E402
from livesurvey.services.surveys import build_question  # noqa: E402


def make_question(kind: QuestionType, options: int = 3, text: str = "Question", **extra) -> QuestionRead:
    """In-memory question for the pure modules."""
    return QuestionRead(
        id=new_question_id(),
        text=text,
        type=kind,
        options=[{"text": f"Option {i}"} for i in range(options)],
        **extra,
    )


async def seed_survey(questions: List[dict], name: str = "Survey") -> str:
    async with get_session() as db:
        survey = Survey(name=name)
        db.add(survey)
        await db.flush()
        for idx, payload in enumerate(questions):
            db.add(build_question(survey.id, new_question_id(idx), QuestionCreate(**payload)))
        await db.commit()
        return survey.id


def choice(text: str = "Favourite?", options=("Red", "Green", "Blue")) -> dict:
    return {"text": text, "type": "multiple-choice", "options": list(options)}


def ranking(text: str = "Rank them", options=("Tea", "Coffee", "Juice")) -> dict:
    return {"text": text, "type": "ranking", "options": list(options)}


def pairing(text: str = "Pair them", options=("Ann", "Bob", "Cid", "Dee")) -> dict:
    return {"text": text, "type": "pairing", "options": list(options)}


def categorization(text: str = "Sort them", options=("Cat", "Dog", "Fish")) -> dict:
    return {
        "text": text,
        "type": "categorization",
        "options": list(options),
        "category_a": "Furry",
        "category_b": "Not furry",
    }


@pytest_asyncio.fixture
async def database():
    await drop_db()
    await init_db()
    yield
    await drop_db()


@pytest_asyncio.fixture
async def runtime(database):
    controller = SessionController(feed=ChangeFeed(), transition_delay=0.2)
    yield controller
    await controller.shutdown()
