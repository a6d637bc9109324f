"""
HTTP client for the Two Truths API.

Read calls are retried with exponential backoff on transient failures
(connection errors, timeouts, 5xx) for a bounded number of attempts; writes
are sent once. A client that reconnects its push channel should call
get_game() to rebuild its state rather than rely on missed events.
"""
import time
from typing import Any, Callable, Dict, Optional

import httpx

from .logging_utils import get_logger

logger = get_logger("twotruths.client")


class ApiError(Exception):
    def __init__(self, status_code: int, payload: Optional[dict] = None):
        self.status_code = status_code
        self.payload = payload or {}
        err = self.payload.get("error")
        self.code = err.get("code") if isinstance(err, dict) else None
        super().__init__(self.payload.get("message") or f"HTTP {status_code}")


class GameClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        user_session: Optional[str] = None,
        admin_session: Optional[str] = None,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout: float = 10.0,
    ):
        self.user_session = user_session
        self.admin_session = admin_session
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._http = httpx.Client(base_url=base_url.rstrip("/") + "/api", transport=transport, timeout=timeout)

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _headers(self, admin: bool) -> Dict[str, str]:
        if admin and self.admin_session:
            return {"Authorization": f"Bearer {self.admin_session}"}
        return {}

    @staticmethod
    def _decode(resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            data = {"message": resp.text}
        if resp.status_code >= 400:
            raise ApiError(resp.status_code, data if isinstance(data, dict) else {})
        return data

    def _send(self, method: str, path: str, json: Optional[dict] = None, admin: bool = False) -> Dict[str, Any]:
        return self._decode(self._http.request(method, path, json=json, headers=self._headers(admin)))

    def _read(self, path: str, admin: bool = False) -> Dict[str, Any]:
        """GET with bounded retry; the last failure is raised."""
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self._http.get(path, headers=self._headers(admin))
                if resp.status_code < 500:
                    return self._decode(resp)
                failure: Exception = ApiError(resp.status_code, {"message": resp.text})
            except httpx.TransportError as exc:
                failure = exc
            if attempt >= self.max_attempts:
                logger.warning("api_read_failed", extra={"path": path, "error": str(failure)})
                raise failure
            delay = self.backoff_base * (2 ** (attempt - 1))
            logger.debug("api_read_retry", extra={"path": path, "count": attempt, "error": str(failure)})
            self._sleep(delay)

    # auth

    def login(self, username: str, password: str) -> str:
        data = self._send("POST", "/auth/login", {"username": username, "password": password})
        self.admin_session = data["session"]
        return self.admin_session

    def logout(self) -> None:
        self._send("POST", "/auth/logout", {"session": self.admin_session}, admin=True)
        self.admin_session = None

    # games

    def create_game(self, **fields) -> Dict[str, Any]:
        body = dict(fields)
        body.setdefault("creator_session", self.user_session)
        return self._send("POST", "/games", body, admin=True)["game"]

    def get_game(self, game_id: str) -> Dict[str, Any]:
        return self._read(f"/games/{game_id}")["game"]

    def reveal_lie(self, game_id: str) -> Dict[str, Any]:
        return self._send("PUT", f"/games/{game_id}/reveal-lie", {"creator_session": self.user_session})

    def get_stats(self, game_id: str) -> Dict[str, Any]:
        return self._read(f"/games/{game_id}/stats")["stats"]

    # votes

    def vote(self, game_id: str, voted_statement: int) -> Dict[str, Any]:
        return self._send(
            "POST", "/votes",
            {"game_id": game_id, "voted_statement": voted_statement, "user_session": self.user_session},
        )

    def get_votes(self, game_id: str) -> Dict[str, Any]:
        return self._read(f"/votes/game/{game_id}")

    def check_vote(self, game_id: str) -> Dict[str, Any]:
        return self._read(f"/votes/check/{game_id}/{self.user_session}")

    def admin_votes(self, game_id: str) -> Dict[str, Any]:
        return self._read(f"/votes/admin/{game_id}", admin=True)

    def health(self) -> Dict[str, Any]:
        return self._read("/health")
