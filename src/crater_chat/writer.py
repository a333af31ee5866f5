"""Debounced, per-session persistence.

UI interaction can fire image-state updates many times per second. Instead
of serializing the session on every event, each event re-arms a per-session
timer and only the last one within the window produces a write.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from .config import DEFAULT_DEBOUNCE_MS

logger = logging.getLogger(__name__)

PersistCallback = Callable[[str], Awaitable[Any]]


class Scheduler(ABC):
    """Cancelable delayed-callback source used by the writer."""

    @abstractmethod
    def schedule(self, delay: float, callback: Callable[..., None], *args: Any) -> Any:
        """Run ``callback(*args)`` after ``delay`` seconds; return a handle."""
        ...

    @abstractmethod
    def cancel(self, handle: Any) -> None:
        ...


class LoopScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def schedule(self, delay: float, callback: Callable[..., None], *args: Any) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback, *args)

    def cancel(self, handle: asyncio.TimerHandle) -> None:
        handle.cancel()


class DebouncedWriter:
    """Coalesces bursts of mutations into one persisted write per session.

    ``persist`` is awaited with the session id when a timer fires or a flush
    is requested; it reads the in-memory session itself, so the write always
    reflects the latest state. Writes for one session never overlap.
    """

    def __init__(
        self,
        persist: PersistCallback,
        delay: float = DEFAULT_DEBOUNCE_MS / 1000,
        scheduler: Scheduler | None = None,
        enabled: bool = True,
    ):
        self._persist = persist
        self.delay = delay
        self.enabled = enabled
        self._scheduler = scheduler or LoopScheduler()
        self._timers: dict[str, Any] = {}
        self._inflight: dict[str, asyncio.Future] = {}
        self._locks: dict[str, list] = {}  # session id -> [lock, holders and waiters]
        self._closed = False

    def schedule_write(self, session_id: str) -> None:
        """Arm or re-arm the write timer for a session."""
        if not self.enabled or self._closed:
            logger.debug("Persistence disabled, dropping write for %s", session_id)
            return

        handle = self._timers.pop(session_id, None)
        if handle is not None:
            self._scheduler.cancel(handle)
        self._timers[session_id] = self._scheduler.schedule(self.delay, self._on_timer, session_id)

    def has_pending(self, session_id: str) -> bool:
        return session_id in self._timers

    async def flush(self, session_id: str) -> None:
        """Write a session now if a write is pending, and wait for it."""
        handle = self._timers.pop(session_id, None)
        if handle is not None:
            self._scheduler.cancel(handle)
            await self._write(session_id)
            return

        inflight = self._inflight.get(session_id)
        if inflight is not None:
            await inflight

    async def flush_all(self) -> None:
        for session_id in list(self._timers) + list(self._inflight):
            await self.flush(session_id)

    async def wait_idle(self) -> None:
        """Wait for writes started by fired timers to complete."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()))

    async def close(self) -> None:
        """Cancel pending timers and attempt one final write for each."""
        pending = list(self._timers)
        logger.info("Closing writer with %d pending writes", len(pending))
        await self.flush_all()
        self._closed = True

    # ── Private helpers ──────────────────────────────────────────────

    def _on_timer(self, session_id: str) -> None:
        self._timers.pop(session_id, None)
        task = asyncio.ensure_future(self._write(session_id))
        self._inflight[session_id] = task
        task.add_done_callback(lambda t, sid=session_id: self._forget(sid, t))

    def _forget(self, session_id: str, task: asyncio.Future) -> None:
        if self._inflight.get(session_id) is task:
            del self._inflight[session_id]

    async def _write(self, session_id: str) -> None:
        if session_id not in self._locks:
            self._locks[session_id] = [asyncio.Lock(), 0]
        entry = self._locks[session_id]
        entry[1] += 1
        try:
            async with entry[0]:
                try:
                    await self._persist(session_id)
                except Exception as e:
                    # Memory stays authoritative; the next mutation retries
                    logger.error("Persisting session %s failed: %s", session_id, e)
        finally:
            entry[1] -= 1
            if not entry[1]:
                # Nobody holds or waits on the lock
                del self._locks[session_id]
