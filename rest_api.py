import asyncio
import datetime
import logging
from contextlib import asynccontextmanager
from typing import List, Optional
from fastapi import (
    FastAPI,
    HTTPException,
    Response,
    Body,
    APIRouter,
    WebSocket,
    WebSocketDisconnect,
)
from db import (
    ActiveSessionError,
    Clock,
    ConsistencyError,
    ExerciseRepository,
    ProgramRepository,
    SessionRepository,
    ExerciseLogRepository,
    WeightEntryRepository,
)
from config import APP_VERSION, load_settings
from log_service import InvalidInputError, parse_body_weight, parse_whole_number
from session_service import ActiveSessionController, format_elapsed
from seed_sample_data import seed_exercises
from stats_service import StatisticsService

logger = logging.getLogger(__name__)


async def stop_task(task: asyncio.Task) -> None:
    """Cancel ``task`` and wait for it, logging an error it died with."""
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.warning("background task failed", exc_info=True)


def _require_confirmation(confirm: bool) -> None:
    if not confirm:
        raise HTTPException(status_code=400, detail="confirmation required")


class WorkoutAPI:
    """Provides REST endpoints for running and reviewing workouts."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        yaml_path: str = "settings.yaml",
        *,
        clock: Clock | None = None,
        seed: Optional[bool] = None,
    ) -> None:
        self.settings = load_settings(yaml_path, db_path=db_path, seed_exercises=seed)
        self.db_path = self.settings.db_path
        self.exercises = ExerciseRepository(self.db_path, clock)
        self.programs = ProgramRepository(self.db_path, clock)
        self.sessions = SessionRepository(self.db_path, clock)
        self.logs = ExerciseLogRepository(self.db_path, clock)
        self.weights = WeightEntryRepository(self.db_path, clock)
        self.controller = ActiveSessionController(
            self.sessions,
            self.logs,
            clock=clock,
            tick_interval=self.settings.tick_interval,
            debounce=self.settings.debounce_ms / 1000,
        )
        self.statistics = StatisticsService(
            self.sessions,
            self.weights,
            clock,
            trend_months=self.settings.trend_months,
            weight_history_limit=self.settings.weight_history_limit,
        )
        self.app = FastAPI(
            title="Workout Logbook API",
            description="REST API for running workout sessions and reviewing history",
            version=APP_VERSION,
            lifespan=self._lifespan,
        )
        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        if self.settings.seed_exercises and not await self.exercises.has_exercises():
            added = await seed_exercises(self.exercises)
            logger.info("seeded %d exercises", added)
        await self.controller.refresh()
        try:
            yield
        finally:
            await self.controller.close()

    def _active_or_404(self) -> None:
        if not self.controller.is_running or self.controller.logs is None:
            raise HTTPException(status_code=404, detail="no active workout")

    def _setup_routes(self) -> None:
        exercises_router = APIRouter(prefix="/exercises", tags=["Exercises"])
        programs_router = APIRouter(prefix="/programs", tags=["Programs"])
        sessions_router = APIRouter(prefix="/sessions", tags=["Sessions"])
        weight_router = APIRouter(prefix="/body_weight", tags=["Body Weight"])

        @self.app.get(
            "/health",
            summary="Health check",
            description="Verify API and database connectivity.",
        )
        async def health():
            """Return API and database connection status."""
            try:
                await self.exercises.has_exercises()
                return {"status": "ok"}
            except Exception as e:  # pragma: no cover - connectivity failure
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.websocket("/ws/session")
        async def session_socket(ws: WebSocket):
            await ws.accept()
            queue: asyncio.Queue = asyncio.Queue()
            queue.put_nowait({"event": "session", **self.controller.snapshot()})
            unsubscribe = self.controller.subscribe(queue.put_nowait)

            async def pump() -> None:
                while True:
                    await ws.send_json(await queue.get())

            sender = asyncio.create_task(pump())
            try:
                while True:
                    await ws.receive_text()
            except WebSocketDisconnect:
                pass
            finally:
                unsubscribe()
                await stop_task(sender)

        @exercises_router.get("")
        async def list_exercises():
            return await self.exercises.fetch_all_exercises()

        @exercises_router.post("")
        async def add_exercise(name: str, notes: Optional[str] = None):
            try:
                eid = await self.exercises.add(name, notes)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return {"id": eid}

        @exercises_router.get("/{exercise_id}")
        async def get_exercise(exercise_id: int):
            try:
                return await self.exercises.fetch_detail(exercise_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @exercises_router.put("/{exercise_id}")
        async def update_exercise(exercise_id: int, name: str, notes: Optional[str] = None):
            try:
                await self.exercises.update(exercise_id, name, notes)
            except ValueError as e:
                code = 404 if "not found" in str(e) else 400
                raise HTTPException(status_code=code, detail=str(e))
            return {"status": "updated"}

        @exercises_router.delete("/{exercise_id}")
        async def delete_exercise(exercise_id: int, confirm: bool = False):
            _require_confirmation(confirm)
            try:
                await self.exercises.delete(exercise_id)
            except ValueError as e:
                raise HTTPException(status_code=409, detail=str(e))
            return {"status": "deleted"}

        @programs_router.get("")
        async def list_programs():
            return await self.programs.fetch_all_programs()

        @programs_router.post("")
        async def create_program(name: str, description: Optional[str] = None):
            try:
                pid = await self.programs.create(name, description)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return {"id": pid}

        @programs_router.get("/{program_id}")
        async def get_program(program_id: int):
            try:
                return await self.programs.fetch_detail(program_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @programs_router.put("/{program_id}")
        async def update_program(
            program_id: int, name: str, description: Optional[str] = None
        ):
            try:
                await self.programs.update(program_id, name, description)
            except ValueError as e:
                code = 404 if "not found" in str(e) else 400
                raise HTTPException(status_code=code, detail=str(e))
            return {"status": "updated"}

        @programs_router.delete("/{program_id}")
        async def delete_program(program_id: int, confirm: bool = False):
            _require_confirmation(confirm)
            active = self.controller.active_session
            if active is not None and active["program_id"] == program_id:
                raise HTTPException(
                    status_code=409, detail="program has an active workout"
                )
            await self.programs.delete(program_id)
            return {"status": "deleted"}

        @programs_router.get("/{program_id}/exercises")
        async def list_program_exercises(program_id: int):
            return await self.programs.fetch_exercises(program_id)

        @programs_router.put("/{program_id}/exercises")
        async def set_program_exercises(program_id: int, exercise_ids: List[int] = Body(...)):
            try:
                await self.programs.fetch_detail(program_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))
            try:
                await self.programs.set_exercises(program_id, exercise_ids)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return await self.programs.fetch_exercises(program_id)

        @sessions_router.get("/active")
        async def get_active_session():
            self.controller.tick(notify=False)
            data = self.controller.snapshot()
            data["elapsed_display"] = format_elapsed(data["elapsed"])
            return data

        @sessions_router.post("")
        async def start_session(program_id: int):
            try:
                session = await self.controller.start(program_id)
            except ActiveSessionError as e:
                raise HTTPException(status_code=409, detail=str(e))
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return session

        @sessions_router.post("/active/finish")
        async def finish_session():
            self._active_or_404()
            return await self.controller.finish()

        @sessions_router.post("/active/cancel")
        async def cancel_session(confirm: bool = False):
            _require_confirmation(confirm)
            self._active_or_404()
            await self.controller.cancel()
            return {"status": "cancelled"}

        @sessions_router.get("/active/logs")
        async def list_active_logs():
            self._active_or_404()
            return {
                "exercises": self.controller.logs.views(),
                **self.controller.logs.summary(),
            }

        @sessions_router.put("/active/logs/{exercise_id}")
        async def edit_active_log(
            exercise_id: int,
            weight: Optional[str] = None,
            reps: Optional[str] = None,
            notes: Optional[str] = None,
        ):
            self._active_or_404()
            fields = {
                k: v
                for k, v in (("weight", weight), ("reps", reps), ("notes", notes))
                if v is not None
            }
            try:
                buf = self.controller.logs.edit(exercise_id, **fields)
            except InvalidInputError as e:
                raise HTTPException(status_code=400, detail=str(e))
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return {"pending": buf.as_dict(), **self.controller.logs.summary()}

        @sessions_router.post("/active/logs/flush")
        async def flush_active_logs():
            self._active_or_404()
            await self.controller.logs.flush_all()
            return {"status": "flushed"}

        @sessions_router.get("/history")
        async def list_history(limit: Optional[int] = None):
            return await self.sessions.fetch_history(limit or self.settings.history_limit)

        @sessions_router.get("/{session_id}")
        async def get_session(session_id: int):
            try:
                return await self.sessions.fetch_detail(session_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @sessions_router.get("/{session_id}/logs")
        async def list_session_logs(session_id: int):
            return await self.sessions.fetch_logs(session_id)

        @self.app.put("/logs/{log_id}", tags=["Sessions"])
        async def update_log(
            log_id: int,
            weight: Optional[str] = None,
            reps: Optional[str] = None,
            notes: Optional[str] = None,
        ):
            reconciler = self.controller.logs if self.controller.is_running else None
            exercise_id = reconciler.exercise_for_log(log_id) if reconciler else None
            if exercise_id is not None:
                # rows of the running session go through its buffers
                try:
                    reconciler.edit(exercise_id, weight=weight, reps=reps, notes=notes)
                except InvalidInputError as e:
                    raise HTTPException(status_code=400, detail=str(e))
                written = await reconciler.flush(exercise_id)
                return {"status": "updated" if written else "skipped"}
            try:
                w = parse_whole_number(weight, "weight")
                r = parse_whole_number(reps, "reps")
            except InvalidInputError as e:
                raise HTTPException(status_code=400, detail=str(e))
            written = await self.logs.update(log_id, w, r, notes or None)
            return {"status": "updated" if written else "skipped"}

        @weight_router.post("")
        async def log_body_weight(weight: str, date: Optional[str] = None):
            try:
                value = parse_body_weight(weight)
            except InvalidInputError as e:
                raise HTTPException(status_code=400, detail=str(e))
            try:
                if date is not None:
                    datetime.date.fromisoformat(date)
            except ValueError:
                raise HTTPException(
                    status_code=400,
                    detail="date must be in YYYY-MM-DD format",
                )
            eid = await self.weights.log(value, date)
            return {"id": eid}

        @weight_router.get("")
        async def list_body_weight(
            limit: Optional[int] = None,
            start_date: Optional[str] = None,
            end_date: Optional[str] = None,
        ):
            rows = await self.weights.fetch_history(
                limit or self.settings.weight_history_limit, start_date, end_date
            )
            return [{"id": rid, "date": d, "weight": w} for rid, d, w in rows]

        @weight_router.get("/export_csv")
        async def export_body_weight_csv():
            rows = await self.weights.fetch_history(self.settings.weight_history_limit)
            lines = ["Date,Weight"]
            for _rid, d, w in reversed(rows):
                lines.append(f"{d},{w}")
            return Response(
                content="\n".join(lines),
                media_type="text/csv",
                headers={"Content-Disposition": "attachment; filename=body_weight.csv"},
            )

        @weight_router.delete("/{entry_id}")
        async def delete_body_weight(entry_id: int):
            try:
                await self.weights.delete(entry_id)
                return {"status": "deleted"}
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @weight_router.delete("")
        async def clear_body_weight(confirm: bool = False):
            _require_confirmation(confirm)
            await self.weights.clear()
            return {"status": "cleared"}

        @self.app.get("/stats/workouts", tags=["Stats"])
        async def workout_stats():
            return await self.statistics.workout_stats()

        @self.app.get("/stats/weight_trend", tags=["Stats"])
        async def weight_trend():
            data = await self.statistics.weight_trend()
            data["unit"] = self.settings.weight_unit
            return data

        @self.app.exception_handler(ConsistencyError)
        async def consistency_error(request, exc: ConsistencyError):
            logger.error("consistency error: %s", exc)
            return Response(
                content=str(exc), status_code=500, media_type="text/plain"
            )

        self.app.include_router(exercises_router)
        self.app.include_router(programs_router)
        self.app.include_router(sessions_router)
        self.app.include_router(weight_router)


def create_app(db_path: Optional[str] = None, yaml_path: str = "settings.yaml") -> FastAPI:
    return WorkoutAPI(db_path=db_path, yaml_path=yaml_path).app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app())
