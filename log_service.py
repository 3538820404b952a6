from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from db import ExerciseLogRepository

logger = logging.getLogger(__name__)

_UNSET = object()


class InvalidInputError(ValueError):
    """Raised for user input that must not reach the store."""


def parse_whole_number(value, field: str = "value") -> Optional[int]:
    """Return ``value`` as a non-negative int, or ``None`` when empty."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidInputError(f"{field} must be a whole number")
    if isinstance(value, int):
        if value < 0:
            raise InvalidInputError(f"{field} must not be negative")
        return value
    text = str(value).strip()
    if not text:
        return None
    if not (text.isascii() and text.isdigit()):
        raise InvalidInputError(f"{field} must be a whole number")
    return int(text)


def parse_body_weight(value) -> float:
    try:
        weight = float(value)
    except (TypeError, ValueError):
        raise InvalidInputError("please enter a valid weight")
    if weight != weight or weight <= 0:
        raise InvalidInputError("please enter a valid weight")
    return weight


def _as_text(value) -> str:
    if value is None:
        return ""
    return str(value)


@dataclass
class PendingEdit:
    """Latest user input for one exercise, as typed."""

    weight: str = ""
    reps: str = ""
    notes: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.weight.strip()) and bool(self.reps.strip())

    def as_dict(self) -> dict:
        return {"weight": self.weight, "reps": self.reps, "notes": self.notes}


class LogReconciler:
    """Buffer per-exercise edits of one session and persist them after a quiet period.

    Every exercise owns an independent buffer and flush timer, so typing into
    one exercise never delays or merges with another. Completion counts are
    taken from the buffers, which always hold the newest input.
    """

    def __init__(
        self,
        log_repo: ExerciseLogRepository,
        session_id: int,
        debounce: float = 0.5,
    ) -> None:
        self.logs = log_repo
        self.session_id = session_id
        self.debounce = debounce
        self._views: dict[int, dict] = {}
        self._buffers: dict[int, PendingEdit] = {}
        self._dirty: set[int] = set()
        self._timers: dict[int, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._locks: dict[int, asyncio.Lock] = {}
        self.closed = False

    async def load(self) -> list[dict]:
        """Read the session's logs and last-performed values, resetting the buffers."""
        rows = await self.logs.fetch_for_session(self.session_id)
        self._views.clear()
        self._buffers.clear()
        self._dirty.clear()
        for row in rows:
            last = await self.logs.fetch_last_performed(
                row["exercise_id"], self.session_id
            )
            exercise_id = row["exercise_id"]
            self._views[exercise_id] = {
                "id": exercise_id,
                "name": row["exercise_name"],
                "notes": row["exercise_notes"],
                "last_weight": last["weight"] if last else None,
                "last_reps": last["reps"] if last else None,
                "last_notes": last["notes"] if last else None,
                "last_date": last["date"] if last else None,
                "current_log": {
                    k: row[k]
                    for k in (
                        "id",
                        "session_id",
                        "exercise_id",
                        "weight",
                        "reps",
                        "notes",
                        "completed_at",
                    )
                },
            }
            self._buffers[exercise_id] = PendingEdit(
                _as_text(row["weight"]), _as_text(row["reps"]), row["notes"] or ""
            )
        return self.views()

    def views(self) -> list[dict]:
        result = []
        for exercise_id, view in self._views.items():
            buf = self._buffers[exercise_id]
            item = dict(view)
            item["current_log"] = dict(view["current_log"])
            item["pending"] = buf.as_dict()
            item["complete"] = buf.is_complete
            item["dirty"] = exercise_id in self._dirty
            result.append(item)
        return result

    def buffer(self, exercise_id: int) -> PendingEdit:
        try:
            return self._buffers[exercise_id]
        except KeyError:
            raise ValueError("exercise not part of this session") from None

    def exercise_for_log(self, log_id: int) -> Optional[int]:
        """Return the exercise whose current log row is ``log_id``, if any."""
        for exercise_id, view in self._views.items():
            if view["current_log"]["id"] == log_id:
                return exercise_id
        return None

    def completed_count(self) -> int:
        return sum(1 for b in self._buffers.values() if b.is_complete)

    def total(self) -> int:
        return len(self._buffers)

    def summary(self) -> dict:
        return {"completed": self.completed_count(), "total": self.total()}

    def has_pending(self) -> bool:
        return bool(self._dirty)

    def edit(self, exercise_id: int, *, weight=_UNSET, reps=_UNSET, notes=_UNSET) -> PendingEdit:
        """Record input for one exercise and restart its flush timer.

        Invalid weight or reps leave the buffer untouched.
        """
        if self.closed:
            raise RuntimeError("log reconciler is closed")
        buf = self.buffer(exercise_id)
        new_weight = buf.weight if weight is _UNSET else _as_text(weight)
        new_reps = buf.reps if reps is _UNSET else _as_text(reps)
        new_notes = buf.notes if notes is _UNSET else _as_text(notes)
        parse_whole_number(new_weight, "weight")
        parse_whole_number(new_reps, "reps")

        buf.weight, buf.reps, buf.notes = new_weight, new_reps, new_notes
        self._dirty.add(exercise_id)
        self._schedule(exercise_id)
        return buf

    def _schedule(self, exercise_id: int) -> None:
        self._cancel_timer(exercise_id)
        task = asyncio.get_running_loop().create_task(
            self._delayed_flush(exercise_id)
        )
        self._timers[exercise_id] = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_timer(self, exercise_id: int) -> None:
        # timers still in the map are sleeping, never mid-write
        task = self._timers.pop(exercise_id, None)
        if task is not None:
            task.cancel()

    async def _delayed_flush(self, exercise_id: int) -> None:
        await asyncio.sleep(self.debounce)
        self._timers.pop(exercise_id, None)
        try:
            await self._write(exercise_id)
        except Exception:
            logger.exception(
                "flush failed for exercise %s in session %s",
                exercise_id,
                self.session_id,
            )

    async def _write(self, exercise_id: int) -> bool:
        lock = self._locks.setdefault(exercise_id, asyncio.Lock())
        async with lock:
            if exercise_id not in self._dirty:
                return False
            self._dirty.discard(exercise_id)
            buf = self._buffers[exercise_id]
            weight = parse_whole_number(buf.weight, "weight")
            reps = parse_whole_number(buf.reps, "reps")
            notes = buf.notes or None
            log = self._views[exercise_id]["current_log"]
            try:
                written = await self.logs.update(log["id"], weight, reps, notes)
            except Exception:
                self._dirty.add(exercise_id)
                raise
            if written is None:
                return False
            log.update(written)
            return True

    async def flush(self, exercise_id: int) -> bool:
        """Persist one exercise's buffer now instead of waiting for its timer."""
        self._cancel_timer(exercise_id)
        return await self._write(exercise_id)

    async def flush_all(self) -> None:
        for exercise_id in list(self._timers):
            self._cancel_timer(exercise_id)
        for exercise_id in list(self._dirty):
            await self._write(exercise_id)
        pending = [t for t in self._tasks if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def discard_all(self) -> None:
        for exercise_id in list(self._timers):
            self._cancel_timer(exercise_id)
        if self._dirty:
            logger.debug(
                "discarding %d pending edits for session %s",
                len(self._dirty),
                self.session_id,
            )
        self._dirty.clear()
        self.closed = True

    async def close(self) -> None:
        await self.flush_all()
        self.closed = True
