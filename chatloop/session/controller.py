"""
Per-conversation cancellation and timeout control.

The controller keeps at most one ``CancellationScope`` per conversation id.
Beginning a new scope cancels the previous one (single-flight, newest wins).
A scope spans one whole turn; its wall-clock deadline is armed around each
provider call.  Expiry cancels the scope through the same path as
supersession, so every await raced against the scope sees one of the two
``RequestCancelled`` flavours.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import threading
from typing import Awaitable, Callable, TypeVar

from chatloop.errors import RequestCancelled, RequestTimedOut

logger = logging.getLogger(__name__)

T = TypeVar("T")

REASON_SUPERSEDED = "superseded"
REASON_TIMEOUT = "timeout"
REASON_ENDED = "ended"
REASON_ABORTED = "aborted"

TimeoutCallback = Callable[[str, float], None]


class CancellationScope:
    """
    Cooperative cancellation token for one conversation turn.

    ``race`` wraps an awaitable so a pending network read is interrupted
    as soon as the scope is cancelled.  Long-running consumers also call
    ``raise_if_cancelled`` at each read boundary.
    """

    def __init__(
        self,
        conversation_id: str,
        on_timeout: TimeoutCallback | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.reason: str | None = None
        self._event = asyncio.Event()
        self._on_timeout = on_timeout
        self._timer: asyncio.TimerHandle | None = None
        self._timeout: float | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def timed_out(self) -> bool:
        return self.reason == REASON_TIMEOUT

    @property
    def armed(self) -> bool:
        return self._timer is not None

    def cancel(self, reason: str = REASON_ABORTED) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self.disarm()
        self._event.set()
        logger.debug("Scope for %s cancelled (%s)", self.conversation_id, reason)

    def error(self) -> RequestCancelled:
        if self.timed_out:
            return RequestTimedOut(self.conversation_id, self._timeout or 0.0)
        return RequestCancelled(self.conversation_id, self.reason or REASON_ABORTED)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise self.error()

    # ------------------------------------------------------------------
    # Deadline
    # ------------------------------------------------------------------

    def arm(self, timeout: float) -> None:
        """Start (or restart) the wall-clock deadline."""
        self.disarm()
        self._timeout = timeout
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(timeout, self._expire)

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _expire(self) -> None:
        self._timer = None
        if self.cancelled:
            return
        logger.info(
            "Request for %s exceeded %ss deadline", self.conversation_id, self._timeout
        )
        self.cancel(REASON_TIMEOUT)
        if self._on_timeout is not None:
            self._on_timeout(self.conversation_id, self._timeout or 0.0)

    # ------------------------------------------------------------------
    # Racing
    # ------------------------------------------------------------------

    async def race(self, awaitable: Awaitable[T]) -> T:
        """
        Await *awaitable* unless the scope is cancelled first.

        The awaitable runs as its own task; on cancellation that task is
        cancelled and awaited, so any ``async with`` inside it (an HTTP
        response, a tool's sub-stream) is closed before this raises.
        """
        if self.cancelled:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise self.error()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise self.error()


class SessionController:
    """
    Owns the table of in-flight scopes keyed by conversation id.

    Parameters
    ----------
    default_timeout:
        Deadline in seconds used by ``CancellationScope.arm`` callers that
        don't pass their own.
    on_timeout:
        Called with ``(conversation_id, timeout)`` when a deadline expires;
        the orchestrator uses it to report ``request_timeout`` to the client.
    """

    def __init__(
        self,
        default_timeout: float = 300.0,
        on_timeout: TimeoutCallback | None = None,
    ) -> None:
        self.default_timeout = default_timeout
        self.on_timeout = on_timeout
        self._scopes: dict[str, CancellationScope] = {}
        self._lock = threading.Lock()

    def begin(self, conversation_id: str) -> CancellationScope:
        """
        Open a new scope for *conversation_id*.

        Any scope still registered for the same conversation is cancelled
        before this returns.
        """
        scope = CancellationScope(conversation_id, on_timeout=self._handle_timeout)
        with self._lock:
            previous = self._scopes.get(conversation_id)
            self._scopes[conversation_id] = scope
        if previous is not None:
            logger.info("Superseding in-flight request for %s", conversation_id)
            previous.cancel(REASON_SUPERSEDED)
        return scope

    def end(self, conversation_id: str, scope: CancellationScope) -> bool:
        """
        Release *scope*; clears the table entry only if it is still current.

        Returns ``True`` if the entry was cleared.
        """
        scope.disarm()
        with self._lock:
            if self._scopes.get(conversation_id) is scope:
                del self._scopes[conversation_id]
                return True
        return False

    def cancel(self, conversation_id: str, reason: str = REASON_ABORTED) -> bool:
        with self._lock:
            scope = self._scopes.pop(conversation_id, None)
        if scope is None:
            return False
        scope.cancel(reason)
        return True

    def current(self, conversation_id: str) -> CancellationScope | None:
        with self._lock:
            return self._scopes.get(conversation_id)

    def __contains__(self, conversation_id: object) -> bool:
        with self._lock:
            return conversation_id in self._scopes

    def __len__(self) -> int:
        with self._lock:
            return len(self._scopes)

    def _handle_timeout(self, conversation_id: str, timeout: float) -> None:
        with self._lock:
            scope = self._scopes.get(conversation_id)
            if scope is not None and scope.timed_out:
                del self._scopes[conversation_id]
        if self.on_timeout is not None:
            self.on_timeout(conversation_id, timeout)
