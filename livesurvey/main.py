from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from livesurvey.api.routes import admin, results, root
from livesurvey.api.ws import router as ws_router
from livesurvey.core.config import settings
from livesurvey.core.logging import configure_logging
from livesurvey.db import init_db
from livesurvey.services.runtime import controller


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await init_db()
    # Delays that were running before a restart still need their cutover
    await controller.recover_timers()
    yield
    await controller.shutdown()

app = FastAPI(title="Live Survey", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# HTTP routes
app.include_router(root.router)
app.include_router(admin.router)
app.include_router(results.router)

# WebSocket routes
app.include_router(ws_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("livesurvey.main:app", host="0.0.0.0", port=8000, reload=True)
