import requests
from typing import Optional

class WorkoutClient:
    """Simple REST client for the workout logbook API."""

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _request(self, method: str, path: str, **kwargs):
        resp = requests.request(
            method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs
        )
        resp.raise_for_status()
        return resp.json()

    def add_exercise(self, name: str, notes: Optional[str] = None) -> int:
        return self._request("POST", "/exercises", params={"name": name, "notes": notes})["id"]

    def create_program(self, name: str, description: Optional[str] = None) -> int:
        return self._request(
            "POST", "/programs", params={"name": name, "description": description}
        )["id"]

    def set_program_exercises(self, program_id: int, exercise_ids: list[int]) -> list:
        return self._request("PUT", f"/programs/{program_id}/exercises", json=exercise_ids)

    def active_session(self) -> dict:
        return self._request("GET", "/sessions/active")

    def start_session(self, program_id: int) -> dict:
        return self._request("POST", "/sessions", params={"program_id": program_id})

    def edit_log(self, exercise_id: int, **fields: str) -> dict:
        return self._request("PUT", f"/sessions/active/logs/{exercise_id}", params=fields)

    def finish_session(self) -> dict:
        return self._request("POST", "/sessions/active/finish")

    def cancel_session(self) -> dict:
        return self._request("POST", "/sessions/active/cancel", params={"confirm": True})

    def history(self, limit: Optional[int] = None) -> list:
        return self._request("GET", "/sessions/history", params={"limit": limit})

    def log_body_weight(self, weight: float, date: Optional[str] = None) -> int:
        return self._request(
            "POST", "/body_weight", params={"weight": weight, "date": date}
        )["id"]
