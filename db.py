import sqlite3
import aiosqlite
import datetime
import logging
import math
from contextlib import contextmanager, asynccontextmanager
from typing import Callable, List, Tuple, Optional, Iterable

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime.datetime]


class ActiveSessionError(ValueError):
    """Raised when a workout is started while another one is running."""


class ConsistencyError(RuntimeError):
    """Raised when the store holds more than one active workout session."""


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def parse_timestamp(value: str) -> datetime.datetime:
    """Parse a stored ISO timestamp, treating naive values as UTC."""
    ts = datetime.datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=datetime.timezone.utc)
    return ts


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class Database:
    """Provides SQLite connection management and schema initialization."""

    _TABLE_DEFINITIONS = {
        "exercises": (
            """CREATE TABLE exercises (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    notes TEXT
                );""",
            ["id", "name", "notes"],
        ),
        "programs": (
            """CREATE TABLE programs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    description TEXT
                );""",
            ["id", "name", "description"],
        ),
        "program_exercises": (
            """CREATE TABLE program_exercises (
                    program_id INTEGER NOT NULL,
                    exercise_id INTEGER NOT NULL,
                    order_index INTEGER NOT NULL,
                    PRIMARY KEY (program_id, exercise_id),
                    FOREIGN KEY(program_id) REFERENCES programs(id) ON DELETE CASCADE,
                    FOREIGN KEY(exercise_id) REFERENCES exercises(id) ON DELETE CASCADE
                );""",
            ["program_id", "exercise_id", "order_index"],
        ),
        "workout_sessions": (
            """CREATE TABLE workout_sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    program_id INTEGER NOT NULL,
                    program_name TEXT NOT NULL DEFAULT '',
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    duration_minutes INTEGER,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    FOREIGN KEY(program_id) REFERENCES programs(id)
                );""",
            [
                "id",
                "program_id",
                "program_name",
                "start_time",
                "end_time",
                "duration_minutes",
                "is_active",
            ],
        ),
        "exercise_logs": (
            """CREATE TABLE exercise_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id INTEGER NOT NULL,
                    exercise_id INTEGER NOT NULL,
                    weight INTEGER,
                    reps INTEGER,
                    notes TEXT,
                    completed_at TEXT,
                    FOREIGN KEY(session_id) REFERENCES workout_sessions(id) ON DELETE CASCADE,
                    FOREIGN KEY(exercise_id) REFERENCES exercises(id)
                );""",
            [
                "id",
                "session_id",
                "exercise_id",
                "weight",
                "reps",
                "notes",
                "completed_at",
            ],
        ),
        "weight_entries": (
            """CREATE TABLE weight_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    date TEXT NOT NULL UNIQUE,
                    weight REAL NOT NULL
                );""",
            ["id", "date", "weight"],
        ),
    }

    # at most one row may carry is_active = 1
    _INDEX_DEFINITIONS = [
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_workout_sessions_single_active "
        "ON workout_sessions(is_active) WHERE is_active = 1;",
        "CREATE INDEX IF NOT EXISTS idx_exercise_logs_session "
        "ON exercise_logs(session_id);",
        "CREATE INDEX IF NOT EXISTS idx_exercise_logs_exercise "
        "ON exercise_logs(exercise_id, completed_at);",
    ]

    def __init__(self, db_path: str = "workout.db", clock: Clock | None = None) -> None:
        self._db_path = db_path
        self._clock = clock or utc_now
        self._ensure_schema()
        self._ensure_indexes()

    @contextmanager
    def _connection(self):
        connection = sqlite3.connect(self._db_path)
        try:
            connection.execute("PRAGMA foreign_keys=on;")
            yield connection
            connection.commit()
        finally:
            connection.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA foreign_keys=off;")
            # keep foreign keys of other tables pointing at the rebuilt table
            cursor.execute("PRAGMA legacy_alter_table=on;")
            for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                self._ensure_table(conn, table, sql, columns)
            cursor.execute("PRAGMA legacy_alter_table=off;")
            cursor.execute("PRAGMA foreign_keys=on;")

    def _ensure_indexes(self) -> None:
        with self._connection() as conn:
            for sql in self._INDEX_DEFINITIONS:
                try:
                    conn.execute(sql)
                except sqlite3.IntegrityError as e:
                    raise ConsistencyError(
                        "more than one active workout session in store"
                    ) from e

    def _ensure_table(
        self, conn: sqlite3.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if cur.fetchone() is None:
            conn.execute(sql)
            return

        cur = conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in cur.fetchall()]
        if existing_cols == columns:
            return

        conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
        conn.execute(sql)

        common = [c for c in existing_cols if c in columns]
        if common:
            cols = ", ".join(common)
            missing = [c for c in columns if c not in existing_cols]
            if missing:
                def default_val(col: str) -> str:
                    if col == "program_name":
                        return "''"
                    if col == "is_active":
                        return "0"
                    return "NULL"

                defaults = ", ".join(default_val(c) for c in missing)
                conn.execute(
                    f"INSERT INTO {table} ({cols}, {', '.join(missing)}) SELECT {cols}, {defaults} FROM {table}_old;"
                )
            else:
                conn.execute(
                    f"INSERT INTO {table} ({cols}) SELECT {cols} FROM {table}_old;"
                )
        conn.execute(f"DROP TABLE {table}_old;")

    def _now(self) -> str:
        return self._clock().isoformat()

    def vacuum(self) -> None:
        """Run SQLite VACUUM to reduce database size."""
        with self._connection() as conn:
            conn.execute("VACUUM;")


class AsyncDatabase(Database):
    """Provides asynchronous connection management."""

    @asynccontextmanager
    async def _async_connection(self):
        conn = await aiosqlite.connect(self._db_path)
        try:
            await conn.execute("PRAGMA foreign_keys=on;")
            yield conn
            await conn.commit()
        finally:
            await conn.close()

    @asynccontextmanager
    async def _transaction(self):
        """Yield a connection whose statements commit or roll back together."""
        conn = await aiosqlite.connect(self._db_path, isolation_level=None)
        try:
            await conn.execute("PRAGMA foreign_keys=on;")
            await conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK;")
                raise
            await conn.execute("COMMIT;")
        finally:
            await conn.close()


class AsyncBaseRepository(AsyncDatabase):
    """Asynchronous repository helpers using aiosqlite."""

    async def execute(self, query: str, params: Tuple = ()) -> int:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.lastrowid

    async def execute_rowcount(self, query: str, params: Tuple = ()) -> int:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.rowcount

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            return list(rows)

    async def fetch_one(self, query: str, params: Tuple = ()) -> Optional[Tuple]:
        rows = await self.fetch_all(query, params)
        return rows[0] if rows else None


class ExerciseRepository(AsyncBaseRepository):
    """Exercise library."""

    async def fetch_all_exercises(self) -> list[dict]:
        rows = await self.fetch_all(
            "SELECT id, name, notes FROM exercises ORDER BY name;"
        )
        return [{"id": r[0], "name": r[1], "notes": r[2]} for r in rows]

    async def fetch_detail(self, exercise_id: int) -> dict:
        row = await self.fetch_one(
            "SELECT id, name, notes FROM exercises WHERE id = ?;", (exercise_id,)
        )
        if row is None:
            raise ValueError("exercise not found")
        return {"id": row[0], "name": row[1], "notes": row[2]}

    async def add(self, name: str, notes: Optional[str] = None) -> int:
        if not name or not name.strip():
            raise ValueError("name required")
        return await self.execute(
            "INSERT INTO exercises (name, notes) VALUES (?, ?);",
            (name.strip(), notes),
        )

    async def update(self, exercise_id: int, name: str, notes: Optional[str]) -> None:
        if not name or not name.strip():
            raise ValueError("name required")
        count = await self.execute_rowcount(
            "UPDATE exercises SET name = ?, notes = ? WHERE id = ?;",
            (name.strip(), notes, exercise_id),
        )
        if not count:
            raise ValueError("exercise not found")

    async def delete(self, exercise_id: int) -> None:
        """Remove an exercise and its program memberships.

        Exercises with logged history are kept so past sessions stay readable.
        """
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "SELECT COUNT(*) FROM exercise_logs WHERE exercise_id = ?;",
                (exercise_id,),
            )
            (count,) = await cursor.fetchone()
            if count:
                raise ValueError("exercise has logged history")
            await conn.execute(
                "DELETE FROM program_exercises WHERE exercise_id = ?;",
                (exercise_id,),
            )
            await conn.execute("DELETE FROM exercises WHERE id = ?;", (exercise_id,))

    async def has_exercises(self) -> bool:
        row = await self.fetch_one("SELECT COUNT(*) FROM exercises;")
        return bool(row and row[0])


class ProgramRepository(AsyncBaseRepository):
    """Programs and their ordered exercise membership."""

    async def fetch_all_programs(self) -> list[dict]:
        rows = await self.fetch_all(
            "SELECT id, name, description FROM programs ORDER BY name;"
        )
        return [{"id": r[0], "name": r[1], "description": r[2]} for r in rows]

    async def fetch_detail(self, program_id: int) -> dict:
        row = await self.fetch_one(
            "SELECT id, name, description FROM programs WHERE id = ?;", (program_id,)
        )
        if row is None:
            raise ValueError("program not found")
        return {"id": row[0], "name": row[1], "description": row[2]}

    async def create(self, name: str, description: Optional[str] = None) -> int:
        if not name or not name.strip():
            raise ValueError("name required")
        return await self.execute(
            "INSERT INTO programs (name, description) VALUES (?, ?);",
            (name.strip(), description),
        )

    async def update(self, program_id: int, name: str, description: Optional[str]) -> None:
        if not name or not name.strip():
            raise ValueError("name required")
        count = await self.execute_rowcount(
            "UPDATE programs SET name = ?, description = ? WHERE id = ?;",
            (name.strip(), description, program_id),
        )
        if not count:
            raise ValueError("program not found")

    async def delete(self, program_id: int) -> None:
        """Delete a program together with its sessions, logs and memberships."""
        async with self._transaction() as conn:
            await conn.execute(
                "DELETE FROM exercise_logs WHERE session_id IN "
                "(SELECT id FROM workout_sessions WHERE program_id = ?);",
                (program_id,),
            )
            await conn.execute(
                "DELETE FROM workout_sessions WHERE program_id = ?;", (program_id,)
            )
            await conn.execute(
                "DELETE FROM program_exercises WHERE program_id = ?;", (program_id,)
            )
            await conn.execute("DELETE FROM programs WHERE id = ?;", (program_id,))
        logger.info("deleted program %s", program_id)

    async def fetch_exercises(self, program_id: int) -> list[dict]:
        rows = await self.fetch_all(
            "SELECT e.id, e.name, e.notes FROM exercises e "
            "JOIN program_exercises pe ON e.id = pe.exercise_id "
            "WHERE pe.program_id = ? ORDER BY pe.order_index;",
            (program_id,),
        )
        return [{"id": r[0], "name": r[1], "notes": r[2]} for r in rows]

    async def set_exercises(self, program_id: int, exercise_ids: Iterable[int]) -> None:
        """Replace the program's membership; order_index follows ``exercise_ids``."""
        ids = list(exercise_ids)
        if len(set(ids)) != len(ids):
            raise ValueError("duplicate exercise in program")
        async with self._transaction() as conn:
            await conn.execute(
                "DELETE FROM program_exercises WHERE program_id = ?;", (program_id,)
            )
            await conn.executemany(
                "INSERT INTO program_exercises (program_id, exercise_id, order_index) VALUES (?, ?, ?);",
                [(program_id, eid, idx) for idx, eid in enumerate(ids)],
            )


class SessionRepository(AsyncBaseRepository):
    """Workout sessions and their lifecycle writes."""

    _COLUMNS = (
        "ws.id, ws.program_id, COALESCE(p.name, ws.program_name), ws.start_time, "
        "ws.end_time, ws.duration_minutes, ws.is_active"
    )

    @staticmethod
    def _row_to_session(row: Tuple) -> dict:
        return {
            "id": row[0],
            "program_id": row[1],
            "program_name": row[2],
            "start_time": row[3],
            "end_time": row[4],
            "duration_minutes": row[5],
            "is_active": bool(row[6]),
        }

    async def get_active(self) -> Optional[dict]:
        rows = await self.fetch_all(
            f"SELECT {self._COLUMNS} FROM workout_sessions ws "
            "LEFT JOIN programs p ON ws.program_id = p.id "
            "WHERE ws.is_active = 1;"
        )
        if len(rows) > 1:
            raise ConsistencyError(
                f"{len(rows)} active workout sessions found, expected at most one"
            )
        return self._row_to_session(rows[0]) if rows else None

    async def fetch_detail(self, session_id: int) -> dict:
        row = await self.fetch_one(
            f"SELECT {self._COLUMNS} FROM workout_sessions ws "
            "LEFT JOIN programs p ON ws.program_id = p.id "
            "WHERE ws.id = ?;",
            (session_id,),
        )
        if row is None:
            raise ValueError("session not found")
        return self._row_to_session(row)

    async def start(self, program_id: int) -> dict:
        """Create an active session and one empty log per program exercise."""
        start_time = self._now()
        try:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    "SELECT name FROM programs WHERE id = ?;", (program_id,)
                )
                program = await cursor.fetchone()
                if program is None:
                    raise ValueError("program not found")
                cursor = await conn.execute(
                    "INSERT INTO workout_sessions (program_id, program_name, start_time, is_active) "
                    "VALUES (?, ?, ?, 1);",
                    (program_id, program[0], start_time),
                )
                session_id = cursor.lastrowid
                cursor = await conn.execute(
                    "SELECT exercise_id FROM program_exercises WHERE program_id = ? ORDER BY order_index;",
                    (program_id,),
                )
                exercise_ids = [r[0] for r in await cursor.fetchall()]
                await conn.executemany(
                    "INSERT INTO exercise_logs (session_id, exercise_id) VALUES (?, ?);",
                    [(session_id, eid) for eid in exercise_ids],
                )
        except sqlite3.IntegrityError as e:
            if "is_active" in str(e):
                raise ActiveSessionError("a workout session is already active") from e
            raise
        logger.info(
            "started session %s for program %s with %d exercises",
            session_id,
            program_id,
            len(exercise_ids),
        )
        return {
            "id": session_id,
            "program_id": program_id,
            "program_name": program[0],
            "start_time": start_time,
            "end_time": None,
            "duration_minutes": None,
            "is_active": True,
        }

    async def finish(self, session_id: int) -> Optional[dict]:
        row = await self.fetch_one(
            "SELECT start_time FROM workout_sessions WHERE id = ? AND is_active = 1;",
            (session_id,),
        )
        if row is None:
            logger.debug("finish skipped, session %s not active", session_id)
            return None
        end = self._clock()
        elapsed = (end - parse_timestamp(row[0])).total_seconds()
        duration = round_half_up(elapsed / 60)
        count = await self.execute_rowcount(
            "UPDATE workout_sessions SET end_time = ?, duration_minutes = ?, is_active = 0 "
            "WHERE id = ? AND is_active = 1;",
            (end.isoformat(), duration, session_id),
        )
        if not count:
            return None
        logger.info("finished session %s after %d min", session_id, duration)
        return {"end_time": end.isoformat(), "duration_minutes": duration}

    async def cancel(self, session_id: int) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "DELETE FROM exercise_logs WHERE session_id = ?;", (session_id,)
            )
            cursor = await conn.execute(
                "DELETE FROM workout_sessions WHERE id = ?;", (session_id,)
            )
            removed = cursor.rowcount
        if removed:
            logger.info("cancelled session %s", session_id)
        else:
            logger.debug("cancel skipped, session %s not found", session_id)

    async def fetch_history(self, limit: int = 50) -> list[dict]:
        rows = await self.fetch_all(
            f"SELECT {self._COLUMNS} FROM workout_sessions ws "
            "LEFT JOIN programs p ON ws.program_id = p.id "
            "WHERE ws.is_active = 0 ORDER BY ws.start_time DESC LIMIT ?;",
            (limit,),
        )
        return [self._row_to_session(r) for r in rows]

    async def fetch_logs(self, session_id: int) -> list[dict]:
        rows = await self.fetch_all(
            "SELECT el.id, el.session_id, el.exercise_id, e.name, el.weight, el.reps, el.notes, el.completed_at "
            "FROM exercise_logs el JOIN exercises e ON el.exercise_id = e.id "
            "WHERE el.session_id = ? ORDER BY el.completed_at, el.id;",
            (session_id,),
        )
        return [
            {
                "id": r[0],
                "session_id": r[1],
                "exercise_id": r[2],
                "exercise_name": r[3],
                "weight": r[4],
                "reps": r[5],
                "notes": r[6],
                "completed_at": r[7],
            }
            for r in rows
        ]

    async def stats(self) -> dict:
        row = await self.fetch_one(
            "SELECT COUNT(*), AVG(duration_minutes) FROM workout_sessions WHERE is_active = 0;"
        )
        last = await self.fetch_one(
            "SELECT COALESCE(p.name, ws.program_name), ws.end_time FROM workout_sessions ws "
            "LEFT JOIN programs p ON ws.program_id = p.id "
            "WHERE ws.is_active = 0 ORDER BY ws.end_time DESC LIMIT 1;"
        )
        return {
            "total_workouts": int(row[0] or 0),
            "avg_duration_minutes": round_half_up(row[1] or 0),
            "last_workout": {"program_name": last[0], "date": last[1]} if last else None,
        }


class ExerciseLogRepository(AsyncBaseRepository):
    """Per-session exercise log rows."""

    @staticmethod
    def _row_to_log(row: Tuple) -> dict:
        return {
            "id": row[0],
            "session_id": row[1],
            "exercise_id": row[2],
            "weight": row[3],
            "reps": row[4],
            "notes": row[5],
            "completed_at": row[6],
        }

    async def fetch_for_session(self, session_id: int) -> list[dict]:
        """Return the session's log rows in the order they were materialized.

        Each row also carries ``exercise_name`` and ``exercise_notes``.
        """
        rows = await self.fetch_all(
            "SELECT el.id, el.session_id, el.exercise_id, el.weight, el.reps, el.notes, el.completed_at, "
            "e.name, e.notes FROM exercise_logs el JOIN exercises e ON el.exercise_id = e.id "
            "WHERE el.session_id = ? ORDER BY el.id;",
            (session_id,),
        )
        result = []
        for r in rows:
            log = self._row_to_log(r)
            log["exercise_name"] = r[7]
            log["exercise_notes"] = r[8]
            result.append(log)
        return result

    async def fetch_current(self, session_id: int, exercise_id: int) -> Optional[dict]:
        row = await self.fetch_one(
            "SELECT id, session_id, exercise_id, weight, reps, notes, completed_at "
            "FROM exercise_logs WHERE session_id = ? AND exercise_id = ?;",
            (session_id, exercise_id),
        )
        return self._row_to_log(row) if row else None

    async def fetch_last_performed(
        self, exercise_id: int, exclude_session_id: int
    ) -> Optional[dict]:
        """Return the latest completed log for ``exercise_id`` from finished sessions."""
        row = await self.fetch_one(
            "SELECT el.weight, el.reps, el.notes, el.completed_at "
            "FROM exercise_logs el JOIN workout_sessions ws ON el.session_id = ws.id "
            "WHERE el.exercise_id = ? AND ws.id != ? AND ws.is_active = 0 "
            "AND el.completed_at IS NOT NULL "
            "ORDER BY el.completed_at DESC LIMIT 1;",
            (exercise_id, exclude_session_id),
        )
        if row is None:
            return None
        return {"weight": row[0], "reps": row[1], "notes": row[2], "date": row[3]}

    async def update(
        self,
        log_id: int,
        weight: Optional[int],
        reps: Optional[int],
        notes: Optional[str],
    ) -> Optional[dict]:
        """Write all editable fields of a log row belonging to an active session.

        ``completed_at`` is stamped whenever both weight and reps are present
        and cleared otherwise. Returns the written values, or ``None`` when the
        row is gone or its session is no longer active.
        """
        completed_at = self._now() if weight is not None and reps is not None else None
        count = await self.execute_rowcount(
            "UPDATE exercise_logs SET weight = ?, reps = ?, notes = ?, completed_at = ? "
            "WHERE id = ? AND session_id IN (SELECT id FROM workout_sessions WHERE is_active = 1);",
            (weight, reps, notes, completed_at, log_id),
        )
        if not count:
            logger.debug("log %s not written, row missing or session closed", log_id)
            return None
        return {
            "weight": weight,
            "reps": reps,
            "notes": notes,
            "completed_at": completed_at,
        }


class WeightEntryRepository(AsyncBaseRepository):
    """Repository for body weight entries, one per calendar date."""

    async def log(self, weight: float, date: Optional[str] = None) -> int:
        if math.isnan(weight) or weight <= 0:
            raise ValueError("weight must be positive")
        day = (
            self._clock().date()
            if date is None
            else datetime.date.fromisoformat(date)
        ).isoformat()
        await self.execute(
            "INSERT INTO weight_entries (date, weight) VALUES (?, ?) "
            "ON CONFLICT(date) DO UPDATE SET weight = excluded.weight;",
            (day, float(weight)),
        )
        row = await self.fetch_one(
            "SELECT id FROM weight_entries WHERE date = ?;", (day,)
        )
        return int(row[0])

    async def fetch_history(
        self,
        limit: int = 100,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> list[tuple[int, str, float]]:
        query = "SELECT id, date, weight FROM weight_entries WHERE 1=1"
        params: list = []
        if start_date:
            query += " AND date >= ?"
            params.append(start_date)
        if end_date:
            query += " AND date <= ?"
            params.append(end_date)
        query += " ORDER BY date DESC LIMIT ?;"
        params.append(limit)
        rows = await self.fetch_all(query, tuple(params))
        return [(int(r[0]), r[1], float(r[2])) for r in rows]

    async def fetch_latest_weight(self) -> float | None:
        """Return the most recent logged body weight if available."""
        row = await self.fetch_one(
            "SELECT weight FROM weight_entries ORDER BY date DESC LIMIT 1;"
        )
        if row:
            return float(row[0])
        return None

    async def delete(self, entry_id: int) -> None:
        count = await self.execute_rowcount(
            "DELETE FROM weight_entries WHERE id = ?;", (entry_id,)
        )
        if not count:
            raise ValueError("entry not found")

    async def clear(self) -> None:
        await self.execute("DELETE FROM weight_entries;")
