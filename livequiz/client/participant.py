# client/participant.py
"""Participant Session Client: join/leave lifecycle and answer submission.

Answers are recorded locally first and kept in the state's `unsent` buffer
until the backend acknowledges them. The buffer is flushed after every
submission and again when the timer for the question in view expires; on
that expiry a selected-but-unsubmitted option is submitted once.
"""
from __future__ import annotations

import asyncio
from typing import Optional

from livequiz.server.quiz_types import Answer, Participant, Question

from .api import BackendClient
from .bus import MessageBus
from .common import logger
from .errors import BackendError, DuplicateAnswerError, Outcome, ValidationError
from .events import (
    AnswerRecorded, AnswerSelected, AnswersDelivered, Event, ParticipantJoined,
    Reset, TimerExpired, UserLeaderboardSnapshot,
)
from .interface import SessionInterface
from .local_store import LocalStore
from .session_state import SessionRegistry, SessionState
from .utils import normalize_name, normalize_session_code, validate_name, validate_session_code


class ParticipantClient(SessionInterface):
    role = "participant"

    def __init__(
        self,
        api: BackendClient,
        bus: MessageBus,
        local_store: Optional[LocalStore] = None,
        registry: Optional[SessionRegistry] = None,
    ):
        super().__init__(api, bus, local_store=local_store, registry=registry)
        self.participant: Optional[Participant] = None
        self._flush_lock = asyncio.Lock()

    @property
    def user_id(self) -> Optional[str]:
        return self.participant.user_id if self.participant else None

    @property
    def name(self) -> Optional[str]:
        return self.participant.name if self.participant else None

    # ---------- lifecycle ----------

    async def join(self, name: str, session_code: str) -> Outcome:
        name = normalize_name(name)
        code = normalize_session_code(session_code)
        for ok, msg in (validate_name(name), validate_session_code(code)):
            if not ok:
                return self._fail(ValidationError(msg))
        if self.participant is not None:
            return self._fail(f"Already joined session {self.session_code}; leave it first")

        self.loading = True
        try:
            await self.api.validate_session_code(code, name)
            user_id = await self.api.join_quiz(name, code)
        except BackendError as e:
            if e.status == 404:
                return self._fail(e, "Invalid session code")
            if e.status == 409:
                return self._fail(e, "That name is already taken in this session")
            return self._fail(e, f"Could not join: {e}")
        finally:
            self.loading = False

        participant = Participant(user_id=user_id, name=name)
        store = self._open_session(code, user_id)
        # immediate feedback; the roster echo from the bus is deduplicated
        store.dispatch(ParticipantJoined(participant=participant))
        self.participant = participant
        self.local_store.save_user(code, {
            "name": name,
            "userId": user_id,
            "sessionCode": code,
            "joinedAt": participant.joined_at,
        })
        self.last_error = None
        logger.info(f"[participant] {name} joined {code} as {user_id}")

        # late joiners pick up the questions already broadcast
        caught_up = await self.resync()
        if not caught_up.ok:
            logger.warning(f"[participant] initial resync for {code} failed: {caught_up.message}")
        return Outcome.success(participant)

    async def leave(self) -> Outcome:
        """Leave the session. Always succeeds locally; a backend failure is only reported."""
        code = self.session_code
        participant = self.participant
        if code is None or participant is None:
            self._clear_local()
            return Outcome.success(None)

        error: Optional[BackendError] = None
        try:
            await self.api.leave_quiz(participant.name, code, participant.user_id)
        except BackendError as e:
            error = e
            logger.warning(f"[participant] backend leave for {code} failed: {e}")
        finally:
            self._clear_local()

        logger.info(f"[participant] {participant.name} left {code}")
        if error is not None:
            self.last_error = f"Left locally, but the server was not notified: {error}"
            return Outcome(ok=True, message=self.last_error, error=error)
        return Outcome.success(code)

    def reset(self) -> None:
        """Forget the session without telling the backend (e.g. after it ended)."""
        self._clear_local()

    def _clear_local(self) -> None:
        if self.store is not None:
            self.store.dispatch(Reset(session_code=self.store.state.session_code))
        self._teardown()
        self.participant = None
        self.local_store.forget_session()

    async def restore(self) -> Outcome:
        """Rejoin the session persisted by a previous run and resync it."""
        user = self.local_store.user
        code = self.local_store.session_code
        if not user or not code or not user.get("userId"):
            return Outcome.failure("No joined session to restore")

        participant = Participant.from_dict(user)
        self._open_session(code, participant.user_id)
        self.participant = participant
        outcome = await self.resync()
        if not outcome.ok:
            if isinstance(outcome.error, BackendError) and outcome.error.status == 404:
                self._clear_local()
            return self._fail(outcome.error or outcome.message, f"Could not restore session {code}: {outcome.message}")
        if self.state.participant(participant.user_id) is None:
            # the backend dropped us while we were away
            self._clear_local()
            return self._fail(f"No longer a participant of {code}")
        logger.info(f"[participant] restored {participant.name} in {code}")
        return Outcome.success(participant)

    # ---------- answering ----------

    def select(self, option: str) -> Outcome:
        """Mark `option` as chosen for the question in view without submitting it."""
        if self.store is None:
            return self._fail("Not in a session")
        question = self.state.current_question
        if question is None:
            return self._fail("No question in view")
        if option not in question.option_keys():
            return self._fail(f"Unknown option {option}")
        if not self.store.dispatch(AnswerSelected(question_id=question.id, option=option)):
            return self._fail("Selection not possible for this question")
        return Outcome.success(option)

    async def submit_answer(self, question_id: Optional[str] = None, option: Optional[str] = None) -> Outcome:
        """Record an answer for the question in view and deliver it.

        With no arguments the pending selection is submitted.
        """
        if self.store is None or self.participant is None:
            return self._fail("Not in a session")
        state = self.state
        if question_id is None or option is None:
            if state.pending_selection is None:
                return self._fail("No answer selected")
            question_id, option = state.pending_selection

        if state.has_answered(self.participant.user_id, question_id):
            # a UI bug rather than a user mistake, so nothing user-facing
            logger.debug(f"[participant] duplicate answer for {question_id} rejected")
            return Outcome.failure(DuplicateAnswerError(f"{question_id} already answered"), message="")

        current = state.current_question
        if current is None:
            return self._fail("No question in view")
        question = state.find_question(question_id)
        if question is None:
            return self._fail(f"Unknown question {question_id}")
        if question.id != current.id:
            return self._fail("That question is no longer in view")
        if state.timer is not None and state.timer.question_index == state.current_index and state.timer.complete:
            return self._fail("Time is up for this question")
        if option not in question.option_keys():
            return self._fail(f"Unknown option {option}")

        answer = self._record(question, option)
        delivered = await self.flush_pending()
        self.last_error = None
        if not delivered.ok:
            return Outcome.success(answer, message="Answer saved; delivery will be retried")
        return Outcome.success(answer)

    def _record(self, question: Question, option: str) -> Answer:
        answer = Answer(
            user_id=self.participant.user_id,
            question_id=question.id,
            selected_option=option,
            is_correct=question.is_correct(option),
        )
        self.store.dispatch(AnswerRecorded(answer=answer))
        return answer

    async def flush_pending(self) -> Outcome:
        """Send every unacknowledged answer. On failure they stay queued."""
        async with self._flush_lock:
            store = self.store
            if store is None or self.participant is None:
                return Outcome.success(0)
            unsent = list(store.state.unsent)
            if not unsent:
                return Outcome.success(0)
            code = store.state.session_code
            try:
                await self.api.save_answers(code, self.participant.name, unsent)
            except BackendError as e:
                logger.warning(f"[participant] {len(unsent)} answers for {code} not delivered: {e}")
                return Outcome.failure(e)
            store.dispatch(AnswersDelivered(keys=tuple(a.key for a in unsent)))
            logger.debug(f"[participant] delivered {len(unsent)} answers for {code}")
            return Outcome.success(len(unsent))

    async def _after_change(self, event: Event, old: SessionState, new: SessionState) -> None:
        if not isinstance(event, TimerExpired) or self.participant is None:
            return
        pending = new.pending_selection
        question = new.current_question
        if (pending is not None and question is not None and pending[0] == question.id
                and not new.has_answered(self.participant.user_id, question.id)):
            logger.debug(f"[participant] time up, submitting selection {pending[1]} for {question.id}")
            self._record(question, pending[1])
        await self.flush_pending()

    # ---------- stats ----------

    async def refresh_user_stats(self) -> Outcome:
        code = self.session_code
        if code is None or self.participant is None:
            return self._fail("Not in a session")
        try:
            stats = await self.api.get_user_leaderboard(code, self.participant.name, self.participant.user_id)
        except BackendError as e:
            return self._fail(e, f"Could not load your stats: {e}")
        self.store.dispatch(UserLeaderboardSnapshot(stats=stats))
        return Outcome.success(stats)
