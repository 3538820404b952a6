import os
import sys
import datetime
import shutil
import tempfile
import unittest
from fastapi.testclient import TestClient

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from rest_api import WorkoutAPI
from seed_sample_data import DEFAULT_EXERCISES


class StepClock:
    def __init__(self) -> None:
        self.now = datetime.datetime(2024, 3, 10, 9, 0, tzinfo=datetime.timezone.utc)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += datetime.timedelta(**kwargs)


class APITestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.tmpdir, "workout.db")
        self.yaml_path = os.path.join(self.tmpdir, "settings.yaml")
        self.clock = StepClock()
        self.api = WorkoutAPI(
            db_path=self.db_path, yaml_path=self.yaml_path, clock=self.clock, seed=False
        )
        self.client = TestClient(self.api.app)
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _make_program(self) -> int:
        self.client.post("/exercises", params={"name": "Bench Press", "notes": "Barbell"})
        self.client.post("/exercises", params={"name": "Dumbbell Row"})
        response = self.client.post("/programs", params={"name": "Push Pull"})
        pid = response.json()["id"]
        response = self.client.put(f"/programs/{pid}/exercises", json=[2, 1])
        self.assertEqual(response.status_code, 200)
        self.assertEqual([e["id"] for e in response.json()], [2, 1])
        return pid

    def test_full_workout(self) -> None:
        pid = self._make_program()

        response = self.client.get("/sessions/active")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {"state": "idle", "session": None, "elapsed": 0, "elapsed_display": "0:00"},
        )

        response = self.client.post("/sessions", params={"program_id": pid})
        self.assertEqual(response.status_code, 200)
        session = response.json()
        self.assertEqual(session["program_name"], "Push Pull")
        self.assertTrue(session["is_active"])

        response = self.client.post("/sessions", params={"program_id": pid})
        self.assertEqual(response.status_code, 409)

        self.clock.advance(seconds=61)
        data = self.client.get("/sessions/active").json()
        self.assertEqual(data["state"], "running")
        self.assertEqual(data["elapsed"], 61)
        self.assertEqual(data["elapsed_display"], "1:01")
        self.assertEqual(data["progress"], {"completed": 0, "total": 2})

        response = self.client.put(
            "/sessions/active/logs/1", params={"weight": "135", "reps": "8"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {
                "pending": {"weight": "135", "reps": "8", "notes": ""},
                "completed": 1,
                "total": 2,
            },
        )

        response = self.client.put("/sessions/active/logs/1", params={"reps": "eight"})
        self.assertEqual(response.status_code, 400)
        response = self.client.put("/sessions/active/logs/99", params={"weight": "1"})
        self.assertEqual(response.status_code, 404)

        logs = self.client.get("/sessions/active/logs").json()
        self.assertEqual([e["id"] for e in logs["exercises"]], [2, 1])
        self.assertEqual(logs["exercises"][1]["pending"]["weight"], "135")
        self.assertEqual(logs["completed"], 1)

        response = self.client.delete(f"/programs/{pid}", params={"confirm": True})
        self.assertEqual(response.status_code, 409)

        self.clock.advance(minutes=44)
        response = self.client.post("/sessions/active/finish")
        self.assertEqual(response.status_code, 200)
        record = response.json()
        self.assertEqual(record["duration_minutes"], 45)
        self.assertFalse(record["is_active"])

        self.assertEqual(self.client.post("/sessions/active/finish").status_code, 404)
        self.assertEqual(self.client.get("/sessions/active").json()["elapsed"], 0)

        history = self.client.get("/sessions/history").json()
        self.assertEqual([h["id"] for h in history], [session["id"]])

        logs = self.client.get(f"/sessions/{session['id']}/logs").json()
        bench = [l for l in logs if l["exercise_name"] == "Bench Press"][0]
        self.assertEqual((bench["weight"], bench["reps"]), (135, 8))
        self.assertIsNotNone(bench["completed_at"])

        self.assertEqual(self.client.delete("/exercises/1").status_code, 400)
        response = self.client.delete("/exercises/1", params={"confirm": True})
        self.assertEqual(response.status_code, 409)

        stats = self.client.get("/stats/workouts").json()
        self.assertEqual(stats["total_workouts"], 1)
        self.assertEqual(stats["avg_duration_minutes"], 45)
        self.assertEqual(stats["last_workout"]["program_name"], "Push Pull")

    def test_cancel_requires_confirmation(self) -> None:
        pid = self._make_program()
        session = self.client.post("/sessions", params={"program_id": pid}).json()
        self.client.put("/sessions/active/logs/2", params={"weight": "60", "reps": "10"})

        self.assertEqual(self.client.post("/sessions/active/cancel").status_code, 400)
        response = self.client.post("/sessions/active/cancel", params={"confirm": True})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get(f"/sessions/{session['id']}").status_code, 404)
        self.assertEqual(self.client.get(f"/sessions/{session['id']}/logs").json(), [])
        self.assertEqual(self.client.get("/sessions/history").json(), [])
        self.assertEqual(self.client.get("/sessions/active/logs").status_code, 404)

    def test_start_unknown_program(self) -> None:
        response = self.client.post("/sessions", params={"program_id": 42})
        self.assertEqual(response.status_code, 404)

    def test_flush_writes_immediately(self) -> None:
        pid = self._make_program()
        session = self.client.post("/sessions", params={"program_id": pid}).json()
        self.client.put("/sessions/active/logs/2", params={"weight": "60", "reps": "10"})
        response = self.client.post("/sessions/active/logs/flush")
        self.assertEqual(response.status_code, 200)
        logs = self.client.get(f"/sessions/{session['id']}/logs").json()
        row = [l for l in logs if l["exercise_id"] == 2][0]
        self.assertEqual((row["weight"], row["reps"]), (60, 10))

        response = self.client.put(f"/logs/{row['id']}", params={"weight": "65", "reps": ""})
        self.assertEqual(response.json(), {"status": "updated"})
        response = self.client.put(f"/logs/{row['id']}", params={"weight": "-1"})
        self.assertEqual(response.status_code, 400)

    def test_direct_log_write_updates_running_buffers(self) -> None:
        pid = self._make_program()
        session = self.client.post("/sessions", params={"program_id": pid}).json()
        self.client.put("/sessions/active/logs/2", params={"weight": "60", "reps": "10"})
        self.client.post("/sessions/active/logs/flush")
        logs = self.client.get(f"/sessions/{session['id']}/logs").json()
        row = [l for l in logs if l["exercise_id"] == 2][0]

        response = self.client.put(f"/logs/{row['id']}", params={"weight": "65", "reps": ""})
        self.assertEqual(response.json(), {"status": "updated"})
        active = self.client.get("/sessions/active/logs").json()
        self.assertEqual(active["completed"], 0)
        self.assertEqual(active["exercises"][0]["pending"]["weight"], "65")
        self.assertIsNone(active["exercises"][0]["current_log"]["completed_at"])

        self.client.put("/sessions/active/logs/2", params={"notes": "strap"})
        self.client.post("/sessions/active/logs/flush")
        logs = self.client.get(f"/sessions/{session['id']}/logs").json()
        row = [l for l in logs if l["exercise_id"] == 2][0]
        self.assertEqual((row["weight"], row["reps"], row["notes"]), (65, None, "strap"))

    def test_program_management(self) -> None:
        pid = self._make_program()
        response = self.client.put(f"/programs/{pid}", params={"name": "Upper"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get(f"/programs/{pid}").json()["name"], "Upper")
        response = self.client.put(f"/programs/{pid}/exercises", json=[1, 1])
        self.assertEqual(response.status_code, 400)
        response = self.client.put("/programs/99/exercises", json=[1])
        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.client.delete(f"/programs/{pid}").status_code, 400)
        response = self.client.delete(f"/programs/{pid}", params={"confirm": True})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get("/programs").json(), [])
        self.assertEqual(self.client.get(f"/programs/{pid}").status_code, 404)

    def test_exercise_management(self) -> None:
        response = self.client.post("/exercises", params={"name": " "})
        self.assertEqual(response.status_code, 400)
        eid = self.client.post("/exercises", params={"name": "Plank"}).json()["id"]
        response = self.client.put(f"/exercises/{eid}", params={"name": "Plank", "notes": "60s"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get(f"/exercises/{eid}").json()["notes"], "60s")
        self.assertEqual(self.client.put("/exercises/99", params={"name": "X"}).status_code, 404)
        response = self.client.delete(f"/exercises/{eid}", params={"confirm": True})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get("/exercises").json(), [])

    def test_body_weight(self) -> None:
        response = self.client.post("/body_weight", params={"weight": "180.5", "date": "2024-03-01"})
        self.assertEqual(response.json(), {"id": 1})
        response = self.client.post("/body_weight", params={"weight": "179", "date": "2024-03-01"})
        self.assertEqual(response.json(), {"id": 1})
        self.assertEqual(
            self.client.get("/body_weight").json(),
            [{"id": 1, "date": "2024-03-01", "weight": 179.0}],
        )
        self.assertEqual(
            self.client.post("/body_weight", params={"weight": "heavy"}).status_code, 400
        )
        self.assertEqual(
            self.client.post("/body_weight", params={"weight": "0"}).status_code, 400
        )
        self.assertEqual(
            self.client.post(
                "/body_weight", params={"weight": "170", "date": "03/01/2024"}
            ).status_code,
            400,
        )

        self.client.post("/body_weight", params={"weight": "178"})
        response = self.client.get("/body_weight/export_csv")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.text, "Date,Weight\n2024-03-01,179.0\n2024-03-10,178.0")

        trend = self.client.get("/stats/weight_trend").json()
        self.assertEqual(trend["unit"], "lbs")
        self.assertEqual(trend["latest"], 178.0)
        self.assertEqual(len(trend["points"]), 2)

        self.assertEqual(self.client.delete("/body_weight/99").status_code, 404)
        self.assertEqual(self.client.delete("/body_weight").status_code, 400)
        response = self.client.delete("/body_weight", params={"confirm": True})
        self.assertEqual(response.json(), {"status": "cleared"})
        self.assertEqual(self.client.get("/body_weight").json(), [])

    def test_session_socket(self) -> None:
        pid = self._make_program()
        with self.client.websocket_connect("/ws/session") as ws:
            first = ws.receive_json()
            self.assertEqual(first["event"], "session")
            self.assertEqual(first["state"], "idle")
            self.client.post("/sessions", params={"program_id": pid})
            event = ws.receive_json()
            self.assertEqual(event["event"], "session")
            self.assertEqual(event["state"], "running")
            self.assertEqual(event["progress"], {"completed": 0, "total": 2})

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})


class SeedOnStartupTestCase(unittest.TestCase):
    def test_seeds_empty_library_once(self) -> None:
        tmpdir = tempfile.mkdtemp()
        try:
            db_path = os.path.join(tmpdir, "workout.db")
            yaml_path = os.path.join(tmpdir, "settings.yaml")
            for _ in range(2):
                api = WorkoutAPI(db_path=db_path, yaml_path=yaml_path)
                with TestClient(api.app) as client:
                    exercises = client.get("/exercises").json()
                self.assertEqual(len(exercises), len(DEFAULT_EXERCISES))
        finally:
            shutil.rmtree(tmpdir, ignore_errors=True)

    def test_resumes_session_after_restart(self) -> None:
        tmpdir = tempfile.mkdtemp()
        try:
            db_path = os.path.join(tmpdir, "workout.db")
            yaml_path = os.path.join(tmpdir, "settings.yaml")
            clock = StepClock()
            api = WorkoutAPI(db_path=db_path, yaml_path=yaml_path, clock=clock, seed=False)
            with TestClient(api.app) as client:
                eid = client.post("/exercises", params={"name": "Squat"}).json()["id"]
                pid = client.post("/programs", params={"name": "Legs"}).json()["id"]
                client.put(f"/programs/{pid}/exercises", json=[eid])
                client.post("/sessions", params={"program_id": pid})
                client.put(f"/sessions/active/logs/{eid}", params={"weight": "225", "reps": "5"})

            clock.advance(minutes=10)
            api = WorkoutAPI(db_path=db_path, yaml_path=yaml_path, clock=clock, seed=False)
            with TestClient(api.app) as client:
                data = client.get("/sessions/active").json()
                self.assertEqual(data["state"], "running")
                self.assertEqual(data["elapsed"], 600)
                self.assertEqual(data["progress"], {"completed": 1, "total": 1})
        finally:
            shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    unittest.main()
