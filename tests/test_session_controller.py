import os
import sys
import asyncio
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import (
    ActiveSessionError,
    ExerciseLogRepository,
    ExerciseRepository,
    ProgramRepository,
    SessionRepository,
)
from session_service import ActiveSessionController, SessionState, format_elapsed


async def make_controller(db_file, clock, **kwargs):
    exercises = ExerciseRepository(db_file, clock)
    programs = ProgramRepository(db_file, clock)
    ids = [await exercises.add(n) for n in ("Overhead Press", "Lateral Raise")]
    pid = await programs.create("Shoulders")
    await programs.set_exercises(pid, ids)
    kwargs.setdefault("tick_interval", 0.02)
    kwargs.setdefault("debounce", 10)
    controller = ActiveSessionController(
        SessionRepository(db_file, clock),
        ExerciseLogRepository(db_file, clock),
        clock=clock,
        **kwargs,
    )
    return controller, pid, ids


def test_format_elapsed():
    assert format_elapsed(0) == "0:00"
    assert format_elapsed(61) == "1:01"
    assert format_elapsed(3725) == "62:05"
    assert format_elapsed(-4) == "0:00"


@pytest.mark.asyncio
async def test_elapsed_follows_start_time(db_file, clock):
    controller, pid, _ = await make_controller(db_file, clock)
    assert await controller.refresh() is SessionState.IDLE
    assert controller.tick() == 0

    await controller.start(pid)
    assert controller.state is SessionState.RUNNING
    assert controller.elapsed_seconds == 0
    clock.advance(seconds=61, milliseconds=900)
    assert controller.tick() == 61
    assert controller.snapshot()["elapsed"] == 61

    await controller.finish()
    assert controller.state is SessionState.IDLE
    assert controller.elapsed_seconds == 0
    assert controller.tick() == 0


@pytest.mark.asyncio
async def test_ticker_broadcasts_and_stops(db_file, clock):
    controller, pid, _ = await make_controller(db_file, clock)
    events = []
    controller.subscribe(events.append)
    await controller.start(pid)
    assert controller.ticker_active
    clock.advance(seconds=61)
    await asyncio.sleep(0.1)
    ticks = [e for e in events if e["event"] == "tick"]
    assert ticks and ticks[-1]["elapsed"] == 61

    await controller.cancel()
    assert not controller.ticker_active
    count = len(events)
    await asyncio.sleep(0.1)
    assert len(events) == count
    assert events[-1]["event"] == "session"
    assert events[-1]["state"] == "idle"


@pytest.mark.asyncio
async def test_start_while_running_is_rejected(db_file, clock):
    controller, pid, _ = await make_controller(db_file, clock)
    first = await controller.start(pid)
    with pytest.raises(ActiveSessionError):
        await controller.start(pid)
    assert controller.active_session["id"] == first["id"]
    assert (await controller.sessions.get_active())["id"] == first["id"]
    await controller.cancel()


@pytest.mark.asyncio
async def test_concurrent_starts_create_one_session(db_file, clock):
    controller, pid, _ = await make_controller(db_file, clock)
    results = await asyncio.gather(
        controller.start(pid), controller.start(pid), return_exceptions=True
    )
    assert sum(isinstance(r, ActiveSessionError) for r in results) == 1
    assert len(await controller.sessions.fetch_history()) == 0
    assert (await controller.sessions.get_active()) is not None
    await controller.cancel()


@pytest.mark.asyncio
async def test_finish_flushes_pending_edits(db_file, clock):
    controller, pid, ids = await make_controller(db_file, clock)
    session = await controller.start(pid)
    controller.logs.edit(ids[0], weight="95", reps="8")
    clock.advance(minutes=42, seconds=20)
    record = await controller.finish()
    assert record["duration_minutes"] == 42
    assert record["is_active"] is False
    assert controller.logs is None
    assert not controller.ticker_active

    logs = await controller.sessions.fetch_logs(session["id"])
    press = [l for l in logs if l["exercise_id"] == ids[0]][0]
    assert (press["weight"], press["reps"]) == (95, 8)
    assert press["completed_at"] is not None


@pytest.mark.asyncio
async def test_cancel_discards_pending_edits(db_file, clock):
    controller, pid, ids = await make_controller(db_file, clock)
    session = await controller.start(pid)
    reconciler = controller.logs
    reconciler.edit(ids[0], weight="95", reps="8")
    await controller.cancel()
    assert reconciler.closed
    assert controller.state is SessionState.IDLE
    assert controller.elapsed_seconds == 0
    assert await controller.sessions.fetch_logs(session["id"]) == []
    assert await controller.finish() is None


@pytest.mark.asyncio
async def test_refresh_resumes_running_session(db_file, clock):
    controller, pid, ids = await make_controller(db_file, clock)
    session = await controller.start(pid)
    controller.logs.edit(ids[1], weight="20", reps="12")
    await controller.close()
    assert not controller.ticker_active

    clock.advance(minutes=5)
    restarted = ActiveSessionController(
        controller.sessions, controller.log_repo, clock=clock, tick_interval=0.02
    )
    assert await restarted.refresh() is SessionState.RUNNING
    assert restarted.active_session["id"] == session["id"]
    assert restarted.elapsed_seconds == 300
    assert restarted.logs.summary() == {"completed": 1, "total": 2}
    assert restarted.ticker_active
    await restarted.cancel()
    assert not restarted.ticker_active


@pytest.mark.asyncio
async def test_refresh_goes_idle_when_session_ended_elsewhere(db_file, clock):
    controller, pid, _ = await make_controller(db_file, clock)
    session = await controller.start(pid)
    await controller.sessions.finish(session["id"])
    assert await controller.refresh() is SessionState.IDLE
    assert not controller.ticker_active
    assert controller.active_session is None


@pytest.mark.asyncio
async def test_failing_observer_is_dropped(db_file, clock):
    controller, pid, _ = await make_controller(db_file, clock, tick_interval=0)

    def broken(event):
        raise RuntimeError("boom")

    events = []
    controller.subscribe(broken)
    unsubscribe = controller.subscribe(events.append)
    await controller.start(pid)
    assert not controller.ticker_active
    controller.tick()
    assert [e["event"] for e in events] == ["session", "tick"]
    assert broken not in controller._observers

    unsubscribe()
    controller.tick()
    assert len(events) == 2
    await controller.cancel()


@pytest.mark.asyncio
async def test_silent_tick_skips_observers(db_file, clock):
    controller, pid, _ = await make_controller(db_file, clock, tick_interval=0)
    await controller.start(pid)
    events = []
    controller.subscribe(events.append)
    clock.advance(seconds=5)
    assert controller.tick(notify=False) == 5
    assert controller.snapshot()["elapsed"] == 5
    assert events == []
    await controller.cancel()


class FailingCancelRepository(SessionRepository):
    async def cancel(self, session_id):
        raise OSError("disk gone")


@pytest.mark.asyncio
async def test_failed_cancel_keeps_session_usable(db_file, clock):
    controller, pid, ids = await make_controller(db_file, clock)
    controller.sessions = FailingCancelRepository(db_file, clock)
    session = await controller.start(pid)
    controller.logs.edit(ids[0], weight="95", reps="8")

    with pytest.raises(OSError):
        await controller.cancel()
    assert controller.state is SessionState.RUNNING
    assert controller.active_session["id"] == session["id"]
    assert not controller.logs.closed
    assert controller.ticker_active
    controller.logs.edit(ids[0], weight="100")
    assert controller.logs.summary() == {"completed": 1, "total": 2}

    record = await controller.finish()
    assert record["id"] == session["id"]
    logs = await controller.sessions.fetch_logs(session["id"])
    press = [l for l in logs if l["exercise_id"] == ids[0]][0]
    assert (press["weight"], press["reps"]) == (100, 8)


@pytest.mark.asyncio
async def test_snapshot_reports_progress(db_file, clock):
    controller, pid, ids = await make_controller(db_file, clock)
    assert controller.snapshot() == {"state": "idle", "session": None, "elapsed": 0}
    await controller.start(pid)
    controller.logs.edit(ids[0], weight="95", reps="8")
    snap = controller.snapshot()
    assert snap["state"] == "running"
    assert snap["session"]["program_name"] == "Shoulders"
    assert snap["progress"] == {"completed": 1, "total": 2}
    await controller.cancel()
