import sqlite3
import sys

def migrate(db_path='workout.db'):
    conn = sqlite3.connect(db_path)
    cur = conn.cursor()
    cur.execute("PRAGMA table_info(programs);")
    cols = [r[1] for r in cur.fetchall()]
    if cols and 'description' not in cols:
        cur.execute("ALTER TABLE programs ADD COLUMN description TEXT;")
    cur.execute("PRAGMA table_info(workout_sessions);")
    cols = [r[1] for r in cur.fetchall()]
    if cols:
        if 'program_name' not in cols:
            cur.execute("ALTER TABLE workout_sessions ADD COLUMN program_name TEXT NOT NULL DEFAULT '';")
            cur.execute(
                "UPDATE workout_sessions SET program_name = "
                "COALESCE((SELECT name FROM programs WHERE programs.id = workout_sessions.program_id), '');"
            )
        active = cur.execute("SELECT COUNT(*) FROM workout_sessions WHERE is_active = 1;").fetchone()[0]
        if active > 1:
            conn.close()
            raise RuntimeError(f"{active} active workout sessions; finish or cancel all but one first")
        cur.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_workout_sessions_single_active "
            "ON workout_sessions(is_active) WHERE is_active = 1;"
        )
    conn.commit()
    conn.close()

if __name__ == '__main__':
    path = sys.argv[1] if len(sys.argv) > 1 else 'workout.db'
    migrate(path)
