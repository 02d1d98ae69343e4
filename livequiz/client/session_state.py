"""session_state.py: Session state and the reducer that applies events to it.

SessionState is immutable. apply(state, event) returns the next state and
is total: a malformed, duplicate or stale event returns the *same* object,
so "did anything change" is an identity check.

Each inbound event type only touches its own slice of state (roster events
the roster, timer events the timer, ...). The two cross-cutting transitions
are QuestionsBroadcast (resets answers) and a final LeaderboardSnapshot
(moves the phase to LEADERBOARD). That keeps the result independent of how
deliveries from different channels interleave.

SessionStore owns one state for one client; SessionRegistry maps session
codes to stores for processes that host several sessions.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple, Union

from livequiz.server.quiz_types import (
    Answer, LeaderboardEntry, Participant, Question, QuizPhase, TimerState, UserStats,
)

from .bus import BusMessage
from .common import logger
from .errors import StaleEventError
from .events import (
    AnswerRecorded, AnswerSelected, AnswersDelivered, Event, LeaderboardSnapshot,
    ParticipantJoined, ParticipantLeft, QuestionAdvanced, QuestionsBroadcast, Reset,
    Resync, SessionBound, SessionEnded, TimerExpired, TimerTick, UserLeaderboardSnapshot,
    parse_event,
)


@dataclass(frozen=True)
class SessionState:
    session_code: str = ""
    phase: QuizPhase = QuizPhase.NOT_STARTED
    # slots can be None when a catch-up advance skipped ahead of the broadcast list
    questions: Tuple[Optional[Question], ...] = ()
    current_index: int = 0
    roster: Tuple[Participant, ...] = ()
    leaderboard: Tuple[LeaderboardEntry, ...] = ()
    timer: Optional[TimerState] = None
    answers: Tuple[Answer, ...] = ()
    unsent: Tuple[Answer, ...] = ()
    pending_selection: Optional[Tuple[str, str]] = None   # (question_id, option)
    user_stats: Optional[UserStats] = None
    local_user_id: Optional[str] = None
    # bus id of the broadcast that started the current run
    broadcast_id: Optional[Union[int, str]] = None

    # ---------- Derived read-state ----------

    def question_at(self, index: int) -> Optional[Question]:
        if 0 <= index < len(self.questions):
            return self.questions[index]
        return None

    @property
    def current_question(self) -> Optional[Question]:
        if self.phase == QuizPhase.NOT_STARTED or self.phase == QuizPhase.ENDED:
            return None
        return self.question_at(self.current_index)

    @property
    def question_count(self) -> int:
        return len(self.questions)

    @property
    def is_last_question(self) -> bool:
        return self.current_index >= len(self.questions) - 1

    @property
    def remaining_time(self) -> Optional[int]:
        if self.timer is None or self.timer.question_index != self.current_index:
            return None
        return self.timer.remaining

    @property
    def standings(self) -> List[LeaderboardEntry]:
        return sorted(self.leaderboard, key=lambda e: (e.rank or len(self.leaderboard) + 1, -e.score))

    def find_question(self, question_id: str) -> Optional[Question]:
        for q in self.questions:
            if q is not None and q.id == question_id:
                return q
        return None

    def participant(self, user_id: str) -> Optional[Participant]:
        for p in self.roster:
            if p.user_id == user_id:
                return p
        return None

    def answer_for(self, user_id: str, question_id: str) -> Optional[Answer]:
        for a in self.answers:
            if a.user_id == user_id and a.question_id == question_id:
                return a
        return None

    def has_answered(self, user_id: str, question_id: str) -> bool:
        return self.answer_for(user_id, question_id) is not None


# ---------------------------------------------------------------------------
# Handlers: (state, event) -> state. Raise StaleEventError to drop.
# ---------------------------------------------------------------------------

def _on_joined(state: SessionState, event: ParticipantJoined) -> SessionState:
    if state.participant(event.participant.user_id) is not None:
        raise StaleEventError(f"{event.participant.user_id} already in roster")
    return replace(state, roster=state.roster + (event.participant,))


def _on_left(state: SessionState, event: ParticipantLeft) -> SessionState:
    if state.participant(event.user_id) is None:
        return state
    return replace(state, roster=tuple(p for p in state.roster if p.user_id != event.user_id))


def _on_broadcast(state: SessionState, event: QuestionsBroadcast) -> SessionState:
    if not event.questions:
        raise StaleEventError("empty question broadcast")
    if event.message_id is not None and event.message_id == state.broadcast_id:
        raise StaleEventError(f"broadcast {event.message_id} already applied")
    return replace(
        state,
        questions=tuple(event.questions),
        current_index=0,
        phase=QuizPhase.QUESTION,
        answers=(),
        unsent=(),
        pending_selection=None,
        timer=None,
        broadcast_id=event.message_id,
    )


def _on_advance(state: SessionState, event: QuestionAdvanced) -> SessionState:
    index = event.index
    if index < 0:
        raise StaleEventError(f"negative index {index}")
    if state.phase == QuizPhase.ENDED:
        raise StaleEventError("session ended")
    if state.phase == QuizPhase.LEADERBOARD:
        # only a broadcast, resync or reset leaves the final standings
        raise StaleEventError(f"advance to {index} after the quiz finished")
    if index < state.current_index:
        raise StaleEventError(f"advance to {index} behind {state.current_index}")

    known = state.question_at(index)
    if known is None and event.question is None:
        raise StaleEventError(f"no question known or attached for index {index}")

    if index == state.current_index and state.phase == QuizPhase.QUESTION and known is not None:
        raise StaleEventError(f"duplicate advance to {index}")

    questions = state.questions
    if known is None:
        slots = list(questions) + [None] * (index + 1 - len(questions))
        slots[index] = event.question
        questions = tuple(slots)

    moved = index != state.current_index
    return replace(
        state,
        questions=questions,
        current_index=index,
        phase=QuizPhase.QUESTION,
        pending_selection=None if moved else state.pending_selection,
        timer=None if moved else state.timer,
    )


def _on_leaderboard(state: SessionState, event: LeaderboardSnapshot) -> SessionState:
    phase = state.phase
    if phase != QuizPhase.ENDED:
        if event.final is True:
            phase = QuizPhase.LEADERBOARD
        elif event.final is None and phase == QuizPhase.QUESTION and state.is_last_question:
            phase = QuizPhase.LEADERBOARD
    entries = tuple(event.entries)
    if entries == state.leaderboard and phase == state.phase:
        return state
    return replace(state, leaderboard=entries, phase=phase)


def _check_timer_scope(state: SessionState, question_index: int) -> None:
    if state.phase != QuizPhase.QUESTION:
        raise StaleEventError(f"timer event outside QUESTION phase ({state.phase.value})")
    if question_index != state.current_index:
        raise StaleEventError(f"timer for {question_index} while viewing {state.current_index}")
    if state.timer is not None and state.timer.question_index == question_index and state.timer.complete:
        raise StaleEventError(f"timer for {question_index} already expired")


def _on_tick(state: SessionState, event: TimerTick) -> SessionState:
    _check_timer_scope(state, event.question_index)
    if event.remaining < 0:
        raise StaleEventError(f"negative remaining {event.remaining}")
    timer = state.timer
    if timer is not None and timer.question_index == event.question_index and event.remaining >= timer.remaining:
        raise StaleEventError(f"tick {event.remaining} not below {timer.remaining}")
    return replace(state, timer=TimerState(question_index=event.question_index, remaining=event.remaining))


def _on_expired(state: SessionState, event: TimerExpired) -> SessionState:
    _check_timer_scope(state, event.question_index)
    return replace(state, timer=TimerState(question_index=event.question_index, remaining=0, complete=True))


def _on_user_stats(state: SessionState, event: UserLeaderboardSnapshot) -> SessionState:
    if state.local_user_id is None or event.user_id != state.local_user_id:
        raise StaleEventError(f"user stats for {event.user_id} are not ours")
    if state.user_stats == event.stats:
        return state
    return replace(state, user_stats=event.stats)


def _on_session_ended(state: SessionState, event: SessionEnded) -> SessionState:
    if state.phase == QuizPhase.ENDED:
        return state
    return replace(state, phase=QuizPhase.ENDED, timer=None, pending_selection=None)


def _on_resync(state: SessionState, event: Resync) -> SessionState:
    question_ids = {q.id for q in event.questions}
    timer = state.timer
    if timer is not None and (timer.question_index != event.current_index or event.phase != QuizPhase.QUESTION):
        timer = None
    pending = state.pending_selection
    current = event.questions[event.current_index] if 0 <= event.current_index < len(event.questions) else None
    if pending is not None and (current is None or pending[0] != current.id):
        pending = None
    return replace(
        state,
        phase=event.phase,
        questions=tuple(event.questions),
        current_index=event.current_index,
        roster=tuple(event.roster),
        leaderboard=tuple(event.leaderboard),
        timer=timer,
        answers=tuple(a for a in state.answers if a.question_id in question_ids),
        unsent=tuple(a for a in state.unsent if a.question_id in question_ids),
        pending_selection=pending,
    )


def _on_reset(state: SessionState, event: Reset) -> SessionState:
    return SessionState(session_code=event.session_code)


def _on_bound(state: SessionState, event: SessionBound) -> SessionState:
    if state.session_code == event.session_code and state.local_user_id == event.local_user_id:
        return state
    if state.session_code and state.session_code != event.session_code:
        # a different session: nothing carries over
        return SessionState(session_code=event.session_code, local_user_id=event.local_user_id)
    return replace(state, session_code=event.session_code, local_user_id=event.local_user_id)


def _on_selected(state: SessionState, event: AnswerSelected) -> SessionState:
    current = state.current_question
    if current is None or current.id != event.question_id:
        raise StaleEventError(f"selection for {event.question_id} which is not in view")
    if state.timer is not None and state.timer.question_index == state.current_index and state.timer.complete:
        raise StaleEventError("selection after time is up")
    if state.local_user_id and state.has_answered(state.local_user_id, event.question_id):
        raise StaleEventError(f"{event.question_id} already answered")
    return replace(state, pending_selection=(event.question_id, event.option))


def _on_recorded(state: SessionState, event: AnswerRecorded) -> SessionState:
    answer = event.answer
    if state.has_answered(answer.user_id, answer.question_id):
        raise StaleEventError(f"answer {answer.key} already recorded")
    pending = state.pending_selection
    if pending is not None and pending[0] == answer.question_id:
        pending = None
    return replace(state, answers=state.answers + (answer,), unsent=state.unsent + (answer,),
                   pending_selection=pending)


def _on_delivered(state: SessionState, event: AnswersDelivered) -> SessionState:
    keys = set(event.keys)
    unsent = tuple(a for a in state.unsent if a.key not in keys)
    if len(unsent) == len(state.unsent):
        return state
    return replace(state, unsent=unsent)


_HANDLERS: Dict[type, Callable[[SessionState, Event], SessionState]] = {
    ParticipantJoined: _on_joined,
    ParticipantLeft: _on_left,
    QuestionsBroadcast: _on_broadcast,
    QuestionAdvanced: _on_advance,
    LeaderboardSnapshot: _on_leaderboard,
    TimerTick: _on_tick,
    TimerExpired: _on_expired,
    UserLeaderboardSnapshot: _on_user_stats,
    SessionEnded: _on_session_ended,
    Resync: _on_resync,
    Reset: _on_reset,
    SessionBound: _on_bound,
    AnswerSelected: _on_selected,
    AnswerRecorded: _on_recorded,
    AnswersDelivered: _on_delivered,
}


def apply(state: SessionState, event: Event) -> SessionState:
    """Apply one event. Never raises; anything invalid leaves `state` untouched."""
    handler = _HANDLERS.get(type(event))
    if handler is None:
        logger.debug(f"[reducer] ignoring unknown event {event!r}")
        return state
    try:
        return handler(state, event)
    except StaleEventError as e:
        logger.debug(f"[reducer] dropped {event.name}: {e}")
        return state
    except Exception:
        logger.exception(f"[reducer] failed applying {event.name}; state unchanged")
        return state


# ---------------------------------------------------------------------------
# Store + registry
# ---------------------------------------------------------------------------

Listener = Callable[[SessionState, SessionState, Event], None]


class SessionStore:
    """Holds the state for one session on this client and notifies listeners on change."""

    def __init__(self, state: Optional[SessionState] = None):
        self._state = state or SessionState()
        self._listeners: List[Listener] = []
        self._disposed = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def disposed(self) -> bool:
        return self._disposed

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def dispatch(self, event: Event) -> bool:
        """Apply `event`; returns True if the state changed."""
        if self._disposed:
            logger.debug(f"[store] dispatch of {event.name} after dispose ignored")
            return False
        old = self._state
        new = apply(old, event)
        if new is old:
            return False
        self._state = new
        for listener in list(self._listeners):
            try:
                listener(old, new, event)
            except Exception:
                logger.exception("[store] listener failed")
        return True

    def handle_message(self, message: BusMessage) -> bool:
        """Bus handler: decode and dispatch one inbound message."""
        event = parse_event(message)
        if event is None:
            return False
        return self.dispatch(event)

    def dispose(self) -> None:
        self._disposed = True
        self._listeners.clear()


class SessionRegistry:
    """One SessionStore per session code, created on first use and disposed on end."""

    def __init__(self):
        self._stores: Dict[str, SessionStore] = {}

    def open(self, session_code: str) -> SessionStore:
        store = self._stores.get(session_code)
        if store is None:
            store = SessionStore(SessionState(session_code=session_code))
            self._stores[session_code] = store
        return store

    def get(self, session_code: str) -> Optional[SessionStore]:
        return self._stores.get(session_code)

    def dispose(self, session_code: str) -> None:
        store = self._stores.pop(session_code, None)
        if store is not None:
            store.dispose()

    def __contains__(self, session_code: str) -> bool:
        return session_code in self._stores

    def __len__(self) -> int:
        return len(self._stores)

    @property
    def codes(self) -> List[str]:
        return list(self._stores)
