from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from livesurvey.core.config import settings
from livesurvey import models  # noqa: F401


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # aiosqlite connections are not shared between event loops
        return {"poolclass": NullPool, "connect_args": {"check_same_thread": False}}
    return {}


engine: AsyncEngine = create_async_engine(
    settings.assembled_db_url, echo=False, future=True, **_engine_options(settings.assembled_db_url)
)


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def drop_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)


@asynccontextmanager
async def get_session():
    async_session = AsyncSession(engine, expire_on_commit=False)
    try:
        yield async_session
    finally:
        await async_session.close()
