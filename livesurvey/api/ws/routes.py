import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from sqlalchemy.exc import SQLAlchemyError
from starlette.websockets import WebSocketState

from livesurvey.core.config import settings
from livesurvey.core.errors import SessionNotFound
from livesurvey.schemas import AnswerMessage, ControlMessage, JoinMessage
from livesurvey.services.feed import SESSION_CHANGED, SESSION_DELETED
from livesurvey.services.runtime import SessionController, controller

router = APIRouter()
logger = logging.getLogger("runtime")

CONTROL_INTENTS = ("start", "advance", "next_result", "previous_result")


def error_message(exc: Exception) -> dict:
    if isinstance(exc, HTTPException):
        return {"type": "error", "status": exc.status_code, "detail": exc.detail}
    return {"type": "error", "status": 422, "detail": "Malformed message"}


def log_sender_failure(task: asyncio.Task, session_id: str, name: Optional[str]):
    """Retrieve the exception of a sender that stopped on its own."""
    if task.done() and not task.cancelled():
        exc = task.exception()
        if exc is not None:
            logger.warning("State push failed session=%s participant=%s: %r", session_id, name, exc)


async def push_states(
    websocket: WebSocket,
    runtime: SessionController,
    session_id: str,
    name: str,
    outbox: asyncio.Queue,
):
    """Only writer on the socket: queued messages, feed events and periodic state."""
    while True:
        try:
            item = await asyncio.wait_for(outbox.get(), timeout=settings.state_push_interval)
        except asyncio.TimeoutError:
            item = SESSION_CHANGED

        if isinstance(item, dict):
            await websocket.send_json(item)
            continue
        if item == SESSION_DELETED:
            await websocket.send_json({"type": "closed"})
            return
        try:
            view = await runtime.observe(session_id, name)
        except SessionNotFound:
            await websocket.send_json({"type": "closed"})
            return
        except SQLAlchemyError as exc:
            # client keeps its last good view
            logger.warning("State push skipped session=%s participant=%s: %s", session_id, name, exc)
            continue
        await websocket.send_json({"type": "state", "state": view.model_dump(mode="json")})


async def handle_message(runtime: SessionController, session_id: str, name: str, message, outbox: asyncio.Queue) -> bool:
    """Apply one client message; returns True once the participant has left."""
    kind = message.get("type") if isinstance(message, dict) else None
    if kind == "answer":
        answer = AnswerMessage.model_validate(message)
        stored = await runtime.submit_answer(session_id, name, answer.question_index, answer.answer)
        outbox.put_nowait({"type": "answer_recorded", "question_index": answer.question_index, "answer": stored})
    elif kind in CONTROL_INTENTS:
        ControlMessage.model_validate(message)
        outcome = await getattr(runtime, kind)(session_id, name)
        if outcome.all_shown:
            outbox.put_nowait({"type": "all_shown"})
    elif kind == "leave":
        await runtime.leave(session_id, name)
        return True
    else:
        outbox.put_nowait({"type": "error", "status": 400, "detail": f"Unknown message type {kind!r}"})
    return False


@router.websocket("/ws/session/{session_id}")
async def session_socket(websocket: WebSocket, session_id: str):
    await websocket.accept()
    runtime = controller
    name: Optional[str] = None
    left = False
    unsubscribe = None
    sender_task = None
    try:
        try:
            join = JoinMessage.model_validate(await websocket.receive_json())
            joined = await runtime.join(session_id, join.name)
        except (HTTPException, ValueError) as exc:
            await websocket.send_json(error_message(exc))
            await websocket.close()
            return
        name = joined.name
        await websocket.send_json({"type": "joined", "participant": joined.model_dump()})

        outbox: asyncio.Queue = asyncio.Queue()

        async def on_change(event: str):
            outbox.put_nowait(event)

        unsubscribe = runtime.feed.subscribe(session_id, on_change)
        outbox.put_nowait(SESSION_CHANGED)
        sender_task = asyncio.create_task(push_states(websocket, runtime, session_id, name, outbox))

        while True:
            receive = asyncio.ensure_future(websocket.receive_json())
            done, _ = await asyncio.wait({receive, sender_task}, return_when=asyncio.FIRST_COMPLETED)
            if sender_task in done:
                # session is gone
                receive.cancel()
                break
            try:
                left = await handle_message(runtime, session_id, name, receive.result(), outbox)
            except (HTTPException, ValueError) as exc:
                outbox.put_nowait(error_message(exc))
            if left:
                break
    except WebSocketDisconnect:
        pass
    finally:
        if unsubscribe:
            unsubscribe()
        if sender_task:
            sender_task.cancel()
            log_sender_failure(sender_task, session_id, name)
        if name and not left:
            await runtime.set_connected(session_id, name, False)
        if (
            websocket.application_state == WebSocketState.CONNECTED
            and websocket.client_state == WebSocketState.CONNECTED
        ):
            await websocket.close()
