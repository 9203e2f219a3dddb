"""Change notification for session records and their participant lists."""

import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List

SESSION_CHANGED = "session"
PARTICIPANTS_CHANGED = "participants"
SESSION_DELETED = "deleted"

Listener = Callable[[str], Awaitable[None]]

logger = logging.getLogger("runtime")


class ChangeFeed:
    """Fan out every write on a session to everyone watching it.

    Listeners are awaited one after another under a per-session lock, so a
    listener sees events in the order they were published, including events
    caused by its own writes.
    """

    def __init__(self):
        self.listeners: Dict[str, List[Listener]] = defaultdict(list)
        self.locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def subscribe(self, session_id: str, listener: Listener) -> Callable[[], None]:
        self.listeners[session_id].append(listener)

        def unsubscribe():
            self._remove(session_id, listener)

        return unsubscribe

    async def publish(self, session_id: str, event: str):
        async with self.locks[session_id]:
            to_remove = []
            for listener in list(self.listeners.get(session_id, [])):
                try:
                    await listener(event)
                except Exception as exc:
                    logger.warning("Dropping listener session=%s event=%s: %s", session_id, event, exc)
                    to_remove.append(listener)
            for listener in to_remove:
                self._remove(session_id, listener)
        if event == SESSION_DELETED:
            self.listeners.pop(session_id, None)
            self.locks.pop(session_id, None)

    def _remove(self, session_id: str, listener: Listener):
        listeners = self.listeners.get(session_id)
        if listeners and listener in listeners:
            listeners.remove(listener)
