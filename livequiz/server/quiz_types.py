"""Quiz data types and state management."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple
import secrets
import string
import time
import uuid

from livequiz.client.common import logger


SESSION_CODE_LENGTH = 6
SESSION_CODE_ALPHABET = string.ascii_uppercase + string.digits

OPTION_KEYS = ("option1", "option2", "option3", "option4")
MIN_TIME_LIMIT = 5
MAX_TIME_LIMIT = 300
DEFAULT_TIME_LIMIT = 30


class QuizPhase(Enum):
    NOT_STARTED = "NOT_STARTED"
    QUESTION = "QUESTION"
    LEADERBOARD = "LEADERBOARD"
    ENDED = "ENDED"


def clamp_time_limit(value) -> int:
    """Coerce a time limit into [MIN_TIME_LIMIT, MAX_TIME_LIMIT]."""
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return DEFAULT_TIME_LIMIT
    return max(MIN_TIME_LIMIT, min(MAX_TIME_LIMIT, seconds))


@dataclass(frozen=True)
class Question:
    text: str
    options: Tuple[str, ...]   # 2-4 options, first two mandatory
    correct_answer: str        # option key, e.g. "option2"
    time_limit: int = DEFAULT_TIME_LIMIT
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    def option_keys(self) -> List[str]:
        return [OPTION_KEYS[i] for i, text in enumerate(self.options) if text]

    def is_correct(self, option: str) -> bool:
        return option == self.correct_answer

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "questionText": self.text,
            "correctAnswer": self.correct_answer,
            "timeLimit": self.time_limit,
        }
        for key, text in zip(OPTION_KEYS, self.options):
            data[key] = text
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Question":
        options = [data.get(key) or "" for key in OPTION_KEYS]
        # trailing empty options are dropped; the first two always stay
        while len(options) > 2 and not options[-1]:
            options.pop()
        return cls(
            id=str(data.get("id") or str(uuid.uuid4())[:8]),
            text=data["questionText"],
            options=tuple(options),
            correct_answer=data.get("correctAnswer") or "",
            time_limit=clamp_time_limit(data.get("timeLimit", DEFAULT_TIME_LIMIT)),
        )


@dataclass(frozen=True)
class Participant:
    """A participant in a quiz session."""
    user_id: str
    name: str
    joined_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {"userId": self.user_id, "name": self.name, "joinedAt": self.joined_at}

    @classmethod
    def from_dict(cls, data: dict) -> "Participant":
        joined = data.get("joinedAt")
        return cls(
            user_id=str(data["userId"]),
            name=str(data.get("name") or ""),
            joined_at=float(joined) if isinstance(joined, (int, float)) else time.time(),
        )


@dataclass(frozen=True)
class Answer:
    user_id: str
    question_id: str
    selected_option: str
    is_correct: bool = False
    submitted_at: float = field(default_factory=time.time)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.user_id, self.question_id)

    def to_dict(self, session_code: str = "", name: str = "") -> dict:
        return {
            "userId": self.user_id,
            "sessionCode": session_code,
            "name": name,
            "question": {"id": self.question_id},
            "SelectedOption": self.selected_option,
            "isCorrect": self.is_correct,
            "submittedAt": self.submitted_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Answer":
        question = data.get("question")
        if isinstance(question, dict) and question.get("id"):
            question_id = question["id"]
        else:
            question_id = data["questionId"]
        submitted = data.get("submittedAt")
        return cls(
            user_id=str(data["userId"]),
            question_id=str(question_id),
            selected_option=str(data.get("SelectedOption") or data.get("selectedOption") or ""),
            is_correct=bool(data.get("isCorrect", False)),
            submitted_at=float(submitted) if isinstance(submitted, (int, float)) else time.time(),
        )


@dataclass(frozen=True)
class TimerState:
    question_index: int
    remaining: int
    complete: bool = False


@dataclass(frozen=True)
class LeaderboardEntry:
    user_id: str
    name: str
    score: float = 0.0
    rank: int = 0

    def to_dict(self) -> dict:
        return {"userId": self.user_id, "name": self.name, "score": self.score, "rank": self.rank}

    @classmethod
    def from_dict(cls, data: dict) -> "LeaderboardEntry":
        return cls(
            user_id=str(data["userId"]),
            name=str(data.get("name") or ""),
            score=float(data.get("score") or 0),
            rank=int(data.get("rank") or 0),
        )


@dataclass(frozen=True)
class UserStats:
    """Personal leaderboard snapshot for a single participant."""
    user_id: str
    name: str
    score: float = 0.0
    rank: int = 0
    correct_count: int = 0
    total_answered: int = 0

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "name": self.name,
            "score": self.score,
            "rank": self.rank,
            "correctCount": self.correct_count,
            "totalAnswered": self.total_answered,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UserStats":
        return cls(
            user_id=str(data["userId"]),
            name=str(data.get("name") or ""),
            score=float(data.get("score") or 0),
            rank=int(data.get("rank") or 0),
            correct_count=int(data.get("correctCount") or 0),
            total_answered=int(data.get("totalAnswered") or 0),
        )


@dataclass
class HostInfo:
    name: str = "Anonymous Host"
    id: str = field(default_factory=lambda: f"host-{int(time.time() * 1000)}")
    email: str = ""
    quiz_id: str = ""
    profile_picture_url: str = ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "id": self.id,
            "email": self.email,
            "quizId": self.quiz_id,
            "profilePictureUrl": self.profile_picture_url,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HostInfo":
        info = cls(
            name=data.get("name") or "Anonymous Host",
            email=data.get("email") or "",
            quiz_id=data.get("quizId") or "",
            profile_picture_url=data.get("profilePictureUrl") or "",
        )
        if data.get("id"):
            info.id = str(data["id"])
        return info


@dataclass
class QuizSession:
    """Server-side record of one live session."""
    code: str
    host: HostInfo
    phase: QuizPhase = QuizPhase.NOT_STARTED

    questions: List[Question] = field(default_factory=list)
    current_question_idx: int = 0
    participants: Dict[str, Participant] = field(default_factory=dict)   # user_id -> Participant

    # (user_id, question_id) -> Answer
    answers: Dict[Tuple[str, str], Answer] = field(default_factory=dict)

    # ---------- Participant management ----------

    def add_participant(self, name: str) -> Optional[Participant]:
        """Add a participant. Returns None if the name is already taken."""
        for p in self.participants.values():
            if p.name == name:
                return None
        participant = Participant(user_id=uuid.uuid4().hex[:12], name=name)
        self.participants[participant.user_id] = participant
        return participant

    def remove_participant(self, user_id: str) -> Optional[Participant]:
        return self.participants.pop(user_id, None)

    # ---------- Quiz lifecycle ----------

    def load_questions(self, questions: List[Question]) -> None:
        """Replace the question list and reset per-quiz state."""
        self.questions = list(questions)
        self.current_question_idx = 0
        self.answers.clear()
        self.phase = QuizPhase.NOT_STARTED

    def get_question(self, index: int) -> Optional[Question]:
        if 0 <= index < len(self.questions):
            return self.questions[index]
        return None

    def find_question(self, question_id: str) -> Optional[Question]:
        for q in self.questions:
            if q.id == question_id:
                return q
        return None

    # ---------- Answer tracking ----------

    def record_answer(self, answer: Answer) -> bool:
        """Store an answer. A second answer for the same (user, question) is rejected."""
        if answer.user_id not in self.participants:
            return False
        question = self.find_question(answer.question_id)
        if question is None:
            return False
        if answer.key in self.answers:
            logger.debug(f"[QuizSession] duplicate answer {answer.key} in session {self.code}")
            return False
        # correctness is decided here, not trusted from the client
        self.answers[answer.key] = Answer(
            user_id=answer.user_id,
            question_id=answer.question_id,
            selected_option=answer.selected_option,
            is_correct=question.is_correct(answer.selected_option),
            submitted_at=answer.submitted_at,
        )
        return True

    def answers_for(self, user_id: str) -> List[Answer]:
        return [a for (uid, _), a in self.answers.items() if uid == user_id]


# Global state (in real app, use Redis)
quiz_sessions: Dict[str, QuizSession] = {}


def generate_session_code(length: int = SESSION_CODE_LENGTH) -> str:
    return "".join(secrets.choice(SESSION_CODE_ALPHABET) for _ in range(length))


def create_session(host: HostInfo, code: str | None = None) -> QuizSession:
    """Create a new quiz session with a unique code."""
    if code is None:
        code = generate_session_code()
        while code in quiz_sessions:
            code = generate_session_code()
    elif code in quiz_sessions:
        raise ValueError("Session code already exists.")

    session = QuizSession(code=code, host=host)
    quiz_sessions[code] = session
    return session


def get_session(code: str) -> Optional[QuizSession]:
    """Get a quiz session by code."""
    return quiz_sessions.get(code)


def delete_session(code: str) -> Optional[QuizSession]:
    """Delete a session; returns it, or None if there was none."""
    return quiz_sessions.pop(code, None)
