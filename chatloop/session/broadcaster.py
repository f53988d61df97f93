"""
Fire-and-forget fan-out of ``ChatEvent`` objects keyed by conversation id.

Consumers either subscribe an ``asyncio.Queue`` for one conversation (the
usual shape for an SSE endpoint) or register a synchronous listener that
sees every event (logging, the CLI renderer, tests).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable

from chatloop.session.events import ChatEvent

logger = logging.getLogger(__name__)

Listener = Callable[[ChatEvent], None]


class Broadcaster:
    """Delivers events to per-conversation queues and global listeners."""

    def __init__(self) -> None:
        self._queues: dict[str, list[asyncio.Queue[ChatEvent]]] = {}
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(self, conversation_id: str) -> asyncio.Queue[ChatEvent]:
        queue: asyncio.Queue[ChatEvent] = asyncio.Queue()
        with self._lock:
            self._queues.setdefault(conversation_id, []).append(queue)
        return queue

    def unsubscribe(self, conversation_id: str, queue: asyncio.Queue[ChatEvent]) -> None:
        with self._lock:
            queues = self._queues.get(conversation_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self._queues.pop(conversation_id, None)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def emit(self, event: ChatEvent) -> None:
        """Deliver *event* without waiting on any consumer."""
        with self._lock:
            queues = list(self._queues.get(event.conversation_id, []))
        for queue in queues:
            queue.put_nowait(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Event listener failed for %s (%s)",
                    event.conversation_id,
                    event.event_type,
                )
