from __future__ import annotations

import asyncio
import logging
import math
from enum import Enum
from typing import Callable, Optional

from db import (
    ActiveSessionError,
    Clock,
    ExerciseLogRepository,
    SessionRepository,
    parse_timestamp,
    utc_now,
)
from log_service import LogReconciler

logger = logging.getLogger(__name__)

Observer = Callable[[dict], None]


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


def format_elapsed(seconds: int) -> str:
    """Return ``seconds`` as ``m:ss``."""
    mins, secs = divmod(max(0, int(seconds)), 60)
    return f"{mins}:{secs:02d}"


class ActiveSessionController:
    """Single owner of the running workout, its clock and its log buffers.

    Start, finish and cancel are serialized through one lock, and starting
    while a session is running is rejected before anything is written. The
    elapsed clock is derived from the stored start time on every tick and is
    never persisted, so :meth:`refresh` after a restart resumes it correctly.
    """

    def __init__(
        self,
        session_repo: SessionRepository,
        log_repo: ExerciseLogRepository,
        *,
        clock: Clock | None = None,
        tick_interval: float = 1.0,
        debounce: float = 0.5,
    ) -> None:
        self.sessions = session_repo
        self.log_repo = log_repo
        self._clock = clock or utc_now
        self.tick_interval = tick_interval
        self.debounce = debounce
        self.state = SessionState.IDLE
        self.active_session: Optional[dict] = None
        self.elapsed_seconds = 0
        self.logs: Optional[LogReconciler] = None
        self._ticker: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._observers: list[Observer] = []

    @property
    def is_running(self) -> bool:
        return self.state is SessionState.RUNNING

    @property
    def ticker_active(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register ``observer`` for session and tick events.

        Returns a callable that removes the observer again.
        """
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self, event: dict) -> None:
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.warning("dropping observer %r after error", observer, exc_info=True)
                if observer in self._observers:
                    self._observers.remove(observer)

    def snapshot(self) -> dict:
        data = {
            "state": self.state.value,
            "session": dict(self.active_session) if self.active_session else None,
            "elapsed": self.elapsed_seconds,
        }
        if self.logs is not None:
            data["progress"] = self.logs.summary()
        return data

    def _compute_elapsed(self) -> int:
        if self.active_session is None:
            return 0
        start = parse_timestamp(self.active_session["start_time"])
        seconds = (self._clock() - start).total_seconds()
        return max(0, math.floor(seconds))

    def tick(self, notify: bool = True) -> int:
        """Recompute the elapsed seconds and, unless ``notify`` is false, broadcast them."""
        if not self.is_running:
            self.elapsed_seconds = 0
            return 0
        self.elapsed_seconds = self._compute_elapsed()
        if notify:
            self._notify({"event": "tick", "elapsed": self.elapsed_seconds})
        return self.elapsed_seconds

    async def _run_ticker(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            self.tick()

    def _start_ticker(self) -> None:
        if self.ticker_active or not self.tick_interval:
            return
        self._ticker = asyncio.get_running_loop().create_task(self._run_ticker())

    def _stop_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    async def _enter_running(self, session: dict) -> None:
        if self.logs is not None and self.logs.session_id != session["id"]:
            self.logs.discard_all()
            self.logs = None
        self.active_session = session
        self.state = SessionState.RUNNING
        self.elapsed_seconds = self._compute_elapsed()
        if self.logs is None:
            self.logs = LogReconciler(self.log_repo, session["id"], self.debounce)
            await self.logs.load()
        self._start_ticker()
        self._notify({"event": "session", **self.snapshot()})

    def _enter_idle(self) -> None:
        self._stop_ticker()
        was_running = self.is_running
        self.state = SessionState.IDLE
        self.active_session = None
        self.elapsed_seconds = 0
        if self.logs is not None:
            self.logs.discard_all()
        self.logs = None
        if was_running:
            self._notify({"event": "session", **self.snapshot()})

    async def refresh(self) -> SessionState:
        """Re-derive the state from the store, resuming a session left running."""
        async with self._lock:
            session = await self.sessions.get_active()
            if session is None:
                self._enter_idle()
            else:
                if self.active_session is None or self.active_session["id"] != session["id"]:
                    logger.info("resuming session %s", session["id"])
                await self._enter_running(session)
            return self.state

    async def start(self, program_id: int) -> dict:
        async with self._lock:
            if self.is_running:
                raise ActiveSessionError("a workout session is already active")
            session = await self.sessions.start(program_id)
            await self._enter_running(session)
            return dict(session)

    async def finish(self) -> Optional[dict]:
        """Flush pending edits, close the session and return its final record."""
        async with self._lock:
            if not self.is_running:
                return None
            session_id = self.active_session["id"]
            if self.logs is not None:
                await self.logs.flush_all()
            await self.sessions.finish(session_id)
            self._enter_idle()
        try:
            return await self.sessions.fetch_detail(session_id)
        except ValueError:
            return None

    async def cancel(self) -> None:
        """Discard pending edits and delete the session with all of its logs."""
        async with self._lock:
            if not self.is_running:
                return
            await self.sessions.cancel(self.active_session["id"])
            self._enter_idle()

    async def close(self) -> None:
        """Stop the clock and flush buffered edits; the session stays active."""
        self._stop_ticker()
        if self.logs is not None and not self.logs.closed:
            await self.logs.flush_all()
