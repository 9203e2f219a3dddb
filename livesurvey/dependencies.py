from livesurvey.db import get_session
from livesurvey.services.runtime import SessionController, controller


def get_controller() -> SessionController:
    return controller


async def get_db_session():
    async with get_session() as session:
        yield session
