"""Typed session events and their JSON wire form.

parse_event() turns a BusMessage into one of the event dataclasses below.
Unknown fields are ignored and optional fields may be missing; a payload
that does not fit the schema is logged and dropped (returns None).
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any, Callable, ClassVar, Dict, Optional, Tuple, Union

from livequiz.server.quiz_types import (
    Answer, LeaderboardEntry, Participant, Question, QuizPhase, UserStats,
)

from .bus import BusMessage
from .common import Events, logger


@dataclass(frozen=True)
class ParticipantJoined:
    name: ClassVar[str] = Events.JOIN_QUIZ
    participant: Participant

    def to_data(self, session_code: str) -> dict:
        return {**self.participant.to_dict(), "sessionCode": session_code}


@dataclass(frozen=True)
class ParticipantLeft:
    name: ClassVar[str] = Events.LEAVE_QUIZ
    user_id: str
    display_name: str = ""

    def to_data(self, session_code: str) -> dict:
        return {"userId": self.user_id, "name": self.display_name, "sessionCode": session_code}


@dataclass(frozen=True)
class QuestionsBroadcast:
    name: ClassVar[str] = Events.BROADCAST_QUESTIONS
    questions: Tuple[Question, ...]
    # bus message id; a redelivery carries the same one
    message_id: Optional[Union[int, str]] = None

    def to_data(self, session_code: str) -> list:
        return [q.to_dict() for q in self.questions]


@dataclass(frozen=True)
class QuestionAdvanced:
    name: ClassVar[str] = Events.NEXT_QUESTION
    index: int
    question: Optional[Question] = None

    def to_data(self, session_code: str) -> dict:
        return {
            "currentIndex": self.index,
            "question": self.question.to_dict() if self.question else None,
            "sessionCode": session_code,
        }


@dataclass(frozen=True)
class LeaderboardSnapshot:
    name: ClassVar[str] = Events.LEADERBOARD_UPDATE
    entries: Tuple[LeaderboardEntry, ...]
    # True: backend said "no more questions". None: sender did not say (legacy list payload).
    final: Optional[bool] = None

    def to_data(self, session_code: str) -> dict:
        return {"entries": [e.to_dict() for e in self.entries], "final": self.final, "sessionCode": session_code}


@dataclass(frozen=True)
class TimerTick:
    name: ClassVar[str] = Events.TIMER_UPDATE
    remaining: int
    question_index: int

    def to_data(self, session_code: str) -> dict:
        return {"remainingTime": self.remaining, "questionIndex": self.question_index, "sessionCode": session_code}


@dataclass(frozen=True)
class TimerExpired:
    name: ClassVar[str] = Events.TIME_UP
    question_index: int

    def to_data(self, session_code: str) -> dict:
        return {"questionIndex": self.question_index, "sessionCode": session_code}


@dataclass(frozen=True)
class UserLeaderboardSnapshot:
    name: ClassVar[str] = Events.USER_LEADERBOARD_UPDATE
    stats: UserStats

    @property
    def user_id(self) -> str:
        return self.stats.user_id

    def to_data(self, session_code: str) -> dict:
        return self.stats.to_dict()


@dataclass(frozen=True)
class SessionEnded:
    name: ClassVar[str] = Events.SESSION_ENDED
    reason: str = ""

    def to_data(self, session_code: str) -> dict:
        return {"reason": self.reason, "sessionCode": session_code}


# Local-only events: never published on the bus.

@dataclass(frozen=True)
class Resync:
    """Authoritative backend snapshot, force-applied after a reconnect."""
    name: ClassVar[str] = "resync"
    phase: QuizPhase
    questions: Tuple[Question, ...] = ()
    current_index: int = 0
    roster: Tuple[Participant, ...] = ()
    leaderboard: Tuple[LeaderboardEntry, ...] = ()

    @classmethod
    def from_snapshot(cls, data: dict) -> "Resync":
        return cls(
            phase=QuizPhase(data.get("phase", QuizPhase.NOT_STARTED.value)),
            questions=tuple(Question.from_dict(q) for q in data.get("questions") or []),
            current_index=int(data.get("currentIndex") or 0),
            roster=tuple(Participant.from_dict(p) for p in data.get("participants") or []),
            leaderboard=tuple(LeaderboardEntry.from_dict(e) for e in data.get("leaderboard") or []),
        )


@dataclass(frozen=True)
class Reset:
    name: ClassVar[str] = "reset"
    session_code: str = ""


@dataclass(frozen=True)
class SessionBound:
    """The local client now belongs to `session_code` (as `local_user_id`, if a participant)."""
    name: ClassVar[str] = "bound"
    session_code: str
    local_user_id: Optional[str] = None


@dataclass(frozen=True)
class AnswerSelected:
    name: ClassVar[str] = "selected"
    question_id: str
    option: str


@dataclass(frozen=True)
class AnswerRecorded:
    name: ClassVar[str] = "recorded"
    answer: Answer


@dataclass(frozen=True)
class AnswersDelivered:
    name: ClassVar[str] = "delivered"
    keys: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)


Event = Union[
    ParticipantJoined, ParticipantLeft, QuestionsBroadcast, QuestionAdvanced,
    LeaderboardSnapshot, TimerTick, TimerExpired, UserLeaderboardSnapshot,
    SessionEnded, Resync, Reset, SessionBound, AnswerSelected, AnswerRecorded,
    AnswersDelivered,
]


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _decode(data: Any) -> Any:
    # some publishers send JSON as a string
    if isinstance(data, str) and data[:1] in ("{", "["):
        return json.loads(data)
    return data


def _participant_joined(data: dict) -> ParticipantJoined:
    if not data.get("userId") or not data.get("name"):
        raise ValueError("joinQuiz needs userId and name")
    return ParticipantJoined(participant=Participant.from_dict(data))


def _participant_left(data: dict) -> ParticipantLeft:
    if not data.get("userId"):
        raise ValueError("leaveQuiz needs userId")
    return ParticipantLeft(user_id=str(data["userId"]), display_name=str(data.get("name") or ""))


def _questions_broadcast(data: Any) -> QuestionsBroadcast:
    items = data.get("questions") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise TypeError("broadcastQuestions needs a list")
    return QuestionsBroadcast(questions=tuple(Question.from_dict(q) for q in items))


def _question_advanced(data: dict) -> QuestionAdvanced:
    if data.get("error"):
        raise ValueError(f"nextQuestion carried an error: {data.get('error')}")
    question = data.get("question")
    return QuestionAdvanced(
        index=int(data["currentIndex"]),
        question=Question.from_dict(question) if question else None,
    )


def _leaderboard(data: Any) -> LeaderboardSnapshot:
    if isinstance(data, list):
        return LeaderboardSnapshot(entries=tuple(LeaderboardEntry.from_dict(e) for e in data))
    entries = data["entries"]
    if not isinstance(entries, list):
        raise TypeError("leaderboardUpdate entries must be a list")
    return LeaderboardSnapshot(
        entries=tuple(LeaderboardEntry.from_dict(e) for e in entries),
        final=None if data.get("final") is None else bool(data["final"]),
    )


def _timer_tick(data: dict) -> TimerTick:
    return TimerTick(remaining=int(data["remainingTime"]), question_index=int(data["questionIndex"]))


def _timer_expired(data: dict) -> TimerExpired:
    return TimerExpired(question_index=int(data["questionIndex"]))


def _user_stats(data: dict) -> UserLeaderboardSnapshot:
    return UserLeaderboardSnapshot(stats=UserStats.from_dict(data))


def _session_ended(data: Any) -> SessionEnded:
    reason = data.get("reason", "") if isinstance(data, dict) else ""
    return SessionEnded(reason=str(reason or ""))


_DECODERS: Dict[str, Callable[[Any], Event]] = {
    Events.JOIN_QUIZ: _participant_joined,
    Events.LEAVE_QUIZ: _participant_left,
    Events.BROADCAST_QUESTIONS: _questions_broadcast,
    Events.NEXT_QUESTION: _question_advanced,
    Events.LEADERBOARD_UPDATE: _leaderboard,
    Events.TIMER_UPDATE: _timer_tick,
    Events.TIME_UP: _timer_expired,
    Events.USER_LEADERBOARD_UPDATE: _user_stats,
    Events.SESSION_ENDED: _session_ended,
}


def parse_event(message: BusMessage) -> Optional[Event]:
    decoder = _DECODERS.get(message.name)
    if decoder is None:
        logger.debug(f"[events] no decoder for {message.channel}:{message.name}")
        return None
    try:
        event = decoder(_decode(message.data))
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        logger.warning(f"[events] dropping malformed {message.name} on {message.channel}: {e}")
        return None
    if isinstance(event, QuestionsBroadcast) and message.id is not None:
        event = replace(event, message_id=message.id)
    return event
