# server/app.py
"""
Reference quiz backend: REST contract plus the message-bus hub.

Responsibilities:
- Exposes HTTP health-checks `/ping` and `/api/quiz/healthCheck`.
- Exposes the quiz REST API under `/api/quiz` (start, create, broadcast,
    next question, leaderboard, validate, join, leave, save, user stats,
    snapshot) using the typed dataclasses from `quiz_types.py` and the
    per-session `QuizOrchestrator`.
- Exposes WebSocket endpoint `/bus`, bridging clients onto the in-process
    hub (see `hub.py`). Roster changes and per-user stats are published
    from here; progression events are published by the host client.

Notes / operational caveats:
- Session state is kept in-process (see `quiz_types.py`). For multi-worker or
    multi-host deployments you must move it to an external store.
- The app starts a background ping loop at startup to emit application-level
    "ping" frames to connected bus clients; clients reply with `pong`.
"""
import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from livequiz.client.common import Channels
from livequiz.client.events import ParticipantJoined, ParticipantLeft, UserLeaderboardSnapshot
from livequiz.server.hub import BusHub
from livequiz.server.quiz_orchestrator import QuizNotStarted, discard_orchestrator, orchestrator_for
from livequiz.server.quiz_types import (
    DEFAULT_TIME_LIMIT, Answer, HostInfo, Question, QuizSession, create_session, delete_session,
    get_session, quiz_sessions,
)

import logging

# 1. Setup Log Directory
log_dir = Path("logs")
log_dir.mkdir(exist_ok=True)
log_file = log_dir / "server.log"

# 2. Configure Root Logger
# force=True ensures we override Uvicorn's default logging config
logging.basicConfig(
    filename=str(log_file),
    level=logging.INFO,
    format='%(asctime)s %(levelname)s [SERVER] %(message)s',
    force=True
)

# 3. Create Server Logger
logger = logging.getLogger("server")
logger.setLevel(logging.DEBUG)

# 4. Enable DEBUG for shared modules (quiz_types, hub, bus use 'livequiz')
logging.getLogger("livequiz").setLevel(logging.DEBUG)


# Heartbeat config
PING_INTERVAL = 20

API_PREFIX = "/api/quiz"

hub = BusHub()

# Background task reference
_ping_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """App lifespan handler."""
    global _ping_task
    logger.debug("[lifespan] starting")

    _ping_task = asyncio.create_task(ping_loop())

    try:
        yield
    finally:
        logger.debug("[lifespan] shutting down")
        if _ping_task:
            _ping_task.cancel()
            await asyncio.gather(_ping_task, return_exceptions=True)
        logger.debug("[lifespan] bye")


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class HostInfoBody(BaseModel):
    name: str = "Anonymous Host"
    id: Optional[str] = None
    email: str = ""
    quizId: str = ""
    profilePictureUrl: str = ""


class QuestionBody(BaseModel):
    id: Optional[str] = None
    questionText: str = Field(min_length=1)
    option1: str = Field(min_length=1)
    option2: str = Field(min_length=1)
    option3: Optional[str] = ""
    option4: Optional[str] = ""
    correctAnswer: str = Field(pattern=r"^option[1-4]$")
    timeLimit: int = DEFAULT_TIME_LIMIT
    sessionCode: str


class IndexBody(BaseModel):
    index: int = Field(ge=0)


class ValidateBody(BaseModel):
    sessionCode: str
    name: str = ""


class JoinBody(BaseModel):
    name: str = Field(min_length=1)
    sessionCode: str


class LeaveBody(BaseModel):
    name: str = ""
    sessionCode: str
    userId: str


class QuestionRef(BaseModel):
    id: str


class AnswerBody(BaseModel):
    userId: str
    sessionCode: str
    name: str = ""
    question: Optional[QuestionRef] = None
    questionId: Optional[str] = None
    SelectedOption: str
    isCorrect: bool = False
    submittedAt: Optional[float] = None


class UserLeaderboardBody(BaseModel):
    name: str = ""
    userId: str


def _session_or_404(code: str) -> QuizSession:
    session = get_session(code)
    if session is None:
        logger.debug(f"[api] unknown session {code}")
        raise HTTPException(status_code=404, detail="Session not found")
    return session


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/ping")
def health_check():
    """Health check endpoint."""
    return {"ok": True}


@app.get(f"{API_PREFIX}/healthCheck")
def api_health_check():
    return {"ok": True, "sessions": len(quiz_sessions)}


# ---------------------------------------------------------------------------
# Host
# ---------------------------------------------------------------------------

@app.post(f"{API_PREFIX}/startQuiz")
async def start_quiz(body: HostInfoBody):
    host = HostInfo.from_dict(body.model_dump())
    session = create_session(host)
    orchestrator_for(session)
    logger.debug(f"[session] host={host.name} ({host.id}) created session={session.code}")
    return session.code


@app.post(f"{API_PREFIX}/create")
async def create_quiz(body: List[QuestionBody]):
    if not body:
        raise HTTPException(status_code=400, detail="No questions provided")
    codes = {q.sessionCode for q in body}
    if len(codes) != 1:
        raise HTTPException(status_code=400, detail="Questions must belong to one session")
    session = _session_or_404(codes.pop())
    questions = [Question.from_dict(q.model_dump()) for q in body]
    count = orchestrator_for(session).load(questions)
    logger.debug(f"[quiz] loaded {count} questions into session={session.code}")
    return {"ok": True, "count": count}


@app.post(f"{API_PREFIX}/broadcastQuestions/{{code}}")
async def broadcast_questions(code: str):
    session = _session_or_404(code)
    try:
        questions = orchestrator_for(session).broadcast()
    except QuizNotStarted as e:
        raise HTTPException(status_code=409, detail=str(e))
    logger.debug(f"[quiz] session={code} broadcasting {len(questions)} questions")
    return [q.to_dict() for q in questions]


@app.post(f"{API_PREFIX}/nextQuestion/{{code}}")
async def next_question(code: str, body: IndexBody):
    session = _session_or_404(code)
    try:
        result = orchestrator_for(session).next_question(body.index)
    except QuizNotStarted as e:
        raise HTTPException(status_code=409, detail=str(e))
    if result is None:
        logger.debug(f"[quiz] session={code} has no question {body.index}")
        return {"error": True, "noMore": True}
    index, question = result
    logger.debug(f"[quiz] session={code} now at question {index}")
    return {"currentIndex": index, "question": question.to_dict()}


@app.post(f"{API_PREFIX}/leaderboard/{{code}}")
async def leaderboard(code: str):
    session = _session_or_404(code)
    return [e.to_dict() for e in orchestrator_for(session).get_leaderboard()]


@app.get(f"{API_PREFIX}/snapshot/{{code}}")
async def snapshot(code: str):
    session = _session_or_404(code)
    return orchestrator_for(session).snapshot()


@app.post(f"{API_PREFIX}/endQuiz/{{code}}")
async def end_quiz(code: str):
    """Drop the session and its orchestrator. Ending twice is fine."""
    if delete_session(code) is None:
        return "ok"
    discard_orchestrator(code)
    logger.debug(f"[session] session={code} ended by host")
    return "ok"


# ---------------------------------------------------------------------------
# Participant
# ---------------------------------------------------------------------------

@app.post(f"{API_PREFIX}/validate")
async def validate(body: ValidateBody):
    _session_or_404(body.sessionCode)
    return "ok"


@app.post(f"{API_PREFIX}/joinQuiz")
async def join_quiz(body: JoinBody):
    session = _session_or_404(body.sessionCode)
    participant = session.add_participant(body.name)
    if participant is None:
        raise HTTPException(status_code=409, detail="Name already taken")
    logger.debug(f"[session] {participant.name} ({participant.user_id}) joined session={session.code}")
    event = ParticipantJoined(participant=participant)
    await hub.publish(Channels.users(session.code), event.name, event.to_data(session.code))
    return {"userId": participant.user_id}


@app.post(f"{API_PREFIX}/leaveQuiz")
async def leave_quiz(body: LeaveBody):
    session = get_session(body.sessionCode)
    if session is None:
        # nothing to leave; leaving stays idempotent
        return "ok"
    removed = session.remove_participant(body.userId)
    if removed is not None:
        logger.debug(f"[session] {removed.name} left session={session.code}")
        event = ParticipantLeft(user_id=removed.user_id, display_name=removed.name)
        await hub.publish(Channels.users(session.code), event.name, event.to_data(session.code))
    return "ok"


@app.post(f"{API_PREFIX}/save")
async def save_answers(body: List[AnswerBody]):
    accepted = rejected = 0
    for item in body:
        session = _session_or_404(item.sessionCode)
        data = item.model_dump()
        if not (item.question and item.question.id) and not item.questionId:
            raise HTTPException(status_code=422, detail="Answer needs question.id or questionId")
        a, r = orchestrator_for(session).submit_answers([Answer.from_dict(data)])
        accepted += a
        rejected += r
    logger.debug(f"[answers] accepted={accepted} rejected={rejected}")
    return {"accepted": accepted, "rejected": rejected}


@app.post(f"{API_PREFIX}/userLeaderboard/{{code}}")
async def user_leaderboard(code: str, body: UserLeaderboardBody):
    session = _session_or_404(code)
    stats = orchestrator_for(session).user_stats(body.userId)
    if stats is None:
        raise HTTPException(status_code=404, detail="Participant not found")
    event = UserLeaderboardSnapshot(stats=stats)
    await hub.publish(Channels.user_leaderboard(code, body.userId), event.name, event.to_data(code))
    return stats.to_dict()


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------

@app.websocket("/bus")
async def bus_endpoint(ws: WebSocket):
    await hub.serve(ws)


async def ping_loop():
    """Send periodic, application-level pings to every bus client.

    Clients answer with `pong`; the hub keeps the round-trip per connection.
    """
    while True:
        await asyncio.sleep(PING_INTERVAL)
        count = hub.ping_all()
        logger.debug(f"[ping] sent to {count} bus clients")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=49000, log_level="debug", log_config=None)
