"""Tests for api.py: BackendClient error mapping and payload handling."""

import httpx
import pytest

from livequiz.client.api import NO_MORE_QUESTIONS, BackendClient
from livequiz.client.errors import BackendError
from livequiz.client.resync import Resyncer
from livequiz.client.session_state import SessionState, SessionStore
from livequiz.server.quiz_types import HostInfo

from conftest import make_question


def backend(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://testserver")
    return BackendClient(client=client)


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_http_error_status(self):
        api = backend(lambda request: httpx.Response(404, json={"detail": "Session not found"}))
        with pytest.raises(BackendError) as exc:
            await api.get_leaderboard("ABC123")
        assert exc.value.status == 404

    @pytest.mark.asyncio
    async def test_unreachable_backend(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        api = backend(refuse)
        with pytest.raises(BackendError) as exc:
            await api.health_check()
        assert exc.value.status is None

    @pytest.mark.asyncio
    async def test_malformed_payload(self):
        api = backend(lambda request: httpx.Response(200, json={"not": "a list"}))
        with pytest.raises(BackendError):
            await api.get_leaderboard("ABC123")

    @pytest.mark.asyncio
    async def test_empty_session_code(self):
        api = backend(lambda request: httpx.Response(200, json=""))
        with pytest.raises(BackendError):
            await api.start_quiz(HostInfo())


class TestPayloads:
    @pytest.mark.asyncio
    async def test_next_question(self):
        q = make_question(2)
        api = backend(lambda request: httpx.Response(200, json={"currentIndex": 1, "question": q.to_dict()}))
        assert await api.next_question("ABC123", 1) == (1, q)

    @pytest.mark.asyncio
    async def test_no_more_questions(self):
        api = backend(lambda request: httpx.Response(200, json={"error": True, "noMore": True}))
        assert await api.next_question("ABC123", 3) is NO_MORE_QUESTIONS

    @pytest.mark.asyncio
    async def test_requests_go_under_api_prefix(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path))
            return httpx.Response(200, json={"userId": "u1"})

        api = backend(handler)
        assert await api.join_quiz("Ada", "ABC123") == "u1"
        assert seen == [("POST", "/api/quiz/joinQuiz")]


class TestResyncer:
    @pytest.mark.asyncio
    async def test_failed_snapshot_leaves_state(self):
        api = backend(lambda request: httpx.Response(500, text="boom"))
        store = SessionStore(SessionState(session_code="ABC123"))
        outcome = await Resyncer(api, store).resync()
        assert not outcome.ok
        assert store.state == SessionState(session_code="ABC123")

    @pytest.mark.asyncio
    async def test_snapshot_for_abandoned_session_is_discarded(self):
        store = SessionStore(SessionState(session_code="ABC123"))

        def handler(request):
            # the client switches sessions while the snapshot is in flight
            store._state = SessionState(session_code="XYZ789")
            return httpx.Response(200, json={"phase": "QUESTION", "questions": [make_question(1).to_dict()]})

        outcome = await Resyncer(backend(handler), store).resync("ABC123")
        assert not outcome.ok
        assert store.state.questions == ()

    @pytest.mark.asyncio
    async def test_malformed_snapshot(self):
        api = backend(lambda request: httpx.Response(200, json={"phase": "NOPE"}))
        store = SessionStore(SessionState(session_code="ABC123"))
        outcome = await Resyncer(api, store).resync()
        assert not outcome.ok
        assert isinstance(outcome.error, BackendError)

    @pytest.mark.asyncio
    async def test_no_session(self):
        api = backend(lambda request: httpx.Response(200, json={}))
        assert not (await Resyncer(api, SessionStore()).resync()).ok
