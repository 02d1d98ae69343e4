"""api.py: Async client for the quiz backend's REST contract.

Every call returns decoded JSON (or text for non-JSON responses) and raises
BackendError on a non-2xx status, an unreachable backend, or a body that
does not have the expected shape. Callers at the operation boundary turn
that into an Outcome; nothing here retries.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from livequiz.server.quiz_types import (
    Answer, HostInfo, LeaderboardEntry, Question, UserStats,
)

from .common import logger
from .errors import BackendError

API_PATH = "/api/quiz"


class NoMoreQuestions:
    """Marker returned by next_question() when the quiz has no further question."""

    def __repr__(self) -> str:
        return "NO_MORE_QUESTIONS"


NO_MORE_QUESTIONS = NoMoreQuestions()


class BackendClient:
    """Thin async wrapper over the backend endpoints.

    Pass `client` to reuse an existing httpx.AsyncClient (tests use one bound
    to the FastAPI app through httpx.ASGITransport).
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:49000",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def _request(self, method: str, endpoint: str, json_body: Any = None) -> Any:
        url = f"{API_PATH}{endpoint}"
        logger.debug(f"[api] {method} {url}")
        try:
            response = await self._http().request(method, url, json=json_body)
        except httpx.HTTPError as e:
            raise BackendError(f"Backend unreachable: {e}") from e

        if response.status_code >= 400:
            raise BackendError(f"HTTP error {response.status_code}: {response.text}", status=response.status_code)

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                return response.json()
            except ValueError as e:
                raise BackendError(f"Malformed JSON from {url}") from e
        return response.text

    # ---------- Host ----------

    async def start_quiz(self, host: HostInfo) -> str:
        code = await self._request("POST", "/startQuiz", host.to_dict())
        if not isinstance(code, str) or not code:
            raise BackendError(f"Unexpected session code payload: {code!r}")
        return code

    async def create_quiz(self, session_code: str, questions: List[Question]) -> Any:
        body = [{**q.to_dict(), "sessionCode": session_code} for q in questions]
        return await self._request("POST", "/create", body)

    async def broadcast_questions(self, session_code: str) -> List[Question]:
        data = await self._request("POST", f"/broadcastQuestions/{session_code}")
        try:
            return [Question.from_dict(q) for q in data]
        except (KeyError, TypeError, ValueError) as e:
            raise BackendError(f"Malformed question list: {e}") from e

    async def next_question(self, session_code: str, index: int):
        """Return (index, Question) or NO_MORE_QUESTIONS."""
        data = await self._request("POST", f"/nextQuestion/{session_code}", {"index": index})
        if not isinstance(data, dict):
            raise BackendError(f"Malformed next-question payload: {data!r}")
        if data.get("error") or data.get("noMore"):
            return NO_MORE_QUESTIONS
        try:
            return int(data["currentIndex"]), Question.from_dict(data["question"])
        except (KeyError, TypeError, ValueError) as e:
            raise BackendError(f"Malformed next-question payload: {e}") from e

    async def end_quiz(self, session_code: str) -> Any:
        return await self._request("POST", f"/endQuiz/{session_code}")

    async def get_leaderboard(self, session_code: str) -> List[LeaderboardEntry]:
        data = await self._request("POST", f"/leaderboard/{session_code}")
        try:
            return [LeaderboardEntry.from_dict(e) for e in data]
        except (KeyError, TypeError, ValueError) as e:
            raise BackendError(f"Malformed leaderboard: {e}") from e

    # ---------- Participant ----------

    async def validate_session_code(self, session_code: str, name: str) -> Any:
        return await self._request("POST", "/validate", {"sessionCode": session_code, "name": name})

    async def join_quiz(self, name: str, session_code: str) -> str:
        data = await self._request("POST", "/joinQuiz", {"name": name, "sessionCode": session_code})
        if not isinstance(data, dict) or not data.get("userId"):
            raise BackendError(f"Malformed join payload: {data!r}")
        return str(data["userId"])

    async def leave_quiz(self, name: str, session_code: str, user_id: str) -> Any:
        return await self._request(
            "POST", "/leaveQuiz", {"name": name, "sessionCode": session_code, "userId": user_id}
        )

    async def save_answers(self, session_code: str, name: str, answers: List[Answer]) -> Any:
        return await self._request("POST", "/save", [a.to_dict(session_code, name) for a in answers])

    async def get_user_leaderboard(self, session_code: str, name: str, user_id: str) -> UserStats:
        data = await self._request(
            "POST", f"/userLeaderboard/{session_code}", {"name": name, "userId": user_id}
        )
        try:
            return UserStats.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise BackendError(f"Malformed user stats: {e}") from e

    # ---------- Reconciliation ----------

    async def get_snapshot(self, session_code: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/snapshot/{session_code}")
        if not isinstance(data, dict):
            raise BackendError(f"Malformed snapshot: {data!r}")
        return data

    async def health_check(self) -> Any:
        return await self._request("GET", "/healthCheck")
