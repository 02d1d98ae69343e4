"""Shared fixtures for livequiz tests.

The reference backend runs in-process through httpx.ASGITransport, and the
clients use the backend hub's LocalBus directly, so roster events published
by the server reach the clients exactly as they would over /bus.
"""

import httpx
import pytest
import pytest_asyncio

from livequiz.client.api import BackendClient
from livequiz.client.host import HostController
from livequiz.client.local_store import LocalStore
from livequiz.client.participant import ParticipantClient
from livequiz.client.timer import TimerSupervisor
from livequiz.server import app as server_app
from livequiz.server import quiz_orchestrator
from livequiz.server.hub import BusHub
from livequiz.server.quiz_types import Question, quiz_sessions


# -- Helpers ------------------------------------------------------------------


def make_question(n: int, correct: str = "option2", time_limit: int = 30) -> Question:
    return Question(
        id=f"q{n}",
        text=f"Question {n}?",
        options=(f"A{n}", f"B{n}", f"C{n}", f"D{n}"),
        correct_answer=correct,
        time_limit=time_limit,
    )


class FakeTimer:
    """Stands in for TimerCoordinator: records what the supervisor asked for."""

    def __init__(self, bus, session_code, question_index, time_limit, interval=1.0):
        self.session_code = session_code
        self.question_index = question_index
        self.time_limit = time_limit
        self.started = False
        self.cancelled = False

    @property
    def key(self):
        return (self.session_code, self.question_index)

    @property
    def running(self):
        return self.started and not self.cancelled

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True


# -- Server state -------------------------------------------------------------


@pytest.fixture(autouse=True)
def clean_server(monkeypatch):
    quiz_sessions.clear()
    quiz_orchestrator._orchestrators.clear()
    monkeypatch.setattr(server_app, "hub", BusHub())
    yield
    quiz_sessions.clear()
    quiz_orchestrator._orchestrators.clear()


@pytest.fixture
def bus(clean_server):
    return server_app.hub.bus


@pytest_asyncio.fixture
async def api():
    client = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=server_app.app),
        base_url="http://testserver",
    )
    backend = BackendClient(client=client)
    yield backend
    await client.aclose()


# -- Clients ------------------------------------------------------------------


@pytest.fixture
def questions():
    return [make_question(1), make_question(2), make_question(3)]


@pytest.fixture
def timers_started():
    return []


@pytest.fixture
def host(api, bus, tmp_path, timers_started):
    def factory(*args, **kwargs):
        timer = FakeTimer(*args, **kwargs)
        timers_started.append(timer)
        return timer

    return HostController(
        api,
        bus,
        local_store=LocalStore(tmp_path / "host"),
        timers=TimerSupervisor(bus, factory=factory),
    )


@pytest.fixture
def make_participant(api, bus, tmp_path):
    counter = {"n": 0}

    def make(store_dir=None):
        counter["n"] += 1
        store = LocalStore(store_dir or tmp_path / f"participant{counter['n']}")
        return ParticipantClient(api, bus, local_store=store)

    return make


@pytest.fixture
def participant(make_participant):
    return make_participant()
