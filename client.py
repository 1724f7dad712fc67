import requests
from typing import Optional


class TrainingClient:
    """Simple REST client for the training log API."""

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _request(self, method: str, path: str, **kwargs):
        resp = requests.request(
            method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs
        )
        resp.raise_for_status()
        return resp.json()

    def health(self) -> dict:
        return self._request("GET", "/health")

    def list_exercises(self, category: Optional[str] = None) -> list:
        params = {"category": category} if category else None
        return self._request("GET", "/exercises", params=params)

    def add_exercise(self, name: str, category: str = "Custom", if_needed: bool = False) -> str:
        data = self._request(
            "POST",
            "/exercises",
            params={"name": name, "category": category, "if_needed": if_needed},
        )
        return data["id"]

    def start_session(
        self, name: Optional[str] = None, template_id: Optional[str] = None
    ) -> str:
        params = {k: v for k, v in {"name": name, "template_id": template_id}.items() if v}
        return self._request("POST", "/active/start", params=params)["id"]

    def active_session(self) -> Optional[dict]:
        return self._request("GET", "/active")

    def add_set(
        self,
        exercise_id: str,
        reps: Optional[int] = None,
        weight: Optional[float] = None,
        set_type: Optional[str] = None,
    ) -> str:
        params = {"exercise_id": exercise_id, "reps": reps, "weight": weight, "set_type": set_type}
        data = self._request(
            "POST", "/active/sets", params={k: v for k, v in params.items() if v is not None}
        )
        return data["id"]

    def prefill(self, exercise_id: str) -> dict:
        return self._request("GET", f"/prefill/{exercise_id}")

    def complete_session(self) -> dict:
        return self._request("POST", "/active/complete")

    def discard_session(self) -> bool:
        return self._request("POST", "/active/discard")["discarded"]

    def list_sessions(self, **params: str) -> list:
        return self._request("GET", "/sessions", params=params)

    def delete_session(self, session_id: str) -> None:
        self._request("DELETE", f"/sessions/{session_id}")

    def weekly_load(self, weeks: int = 1):
        return self._request("GET", "/stats/weekly_load", params={"weeks": weeks})

    def foreground(self) -> dict:
        return self._request("POST", "/lifecycle/foreground")
