# client/host.py
"""Host Controller: the only actor that authors progression events.

Each operation asks the backend first (it decides what the next question
really is), applies the result to the host's own store, then publishes it
so participants converge on the same view. The host stays subscribed to
every session channel like a participant would, so its own echoes arrive
too and are deduplicated by the reducer.

Operations return an Outcome and never raise; the reason for a failure is
also kept in `last_error`.
"""
from __future__ import annotations

from typing import Iterable, Optional

from livequiz.server.quiz_types import HostInfo, Question, QuizPhase

from .api import NO_MORE_QUESTIONS, BackendClient
from .bus import MessageBus
from .common import Channels, Settings, logger
from .errors import BackendError, Outcome, SessionCreationError, TransportError, ValidationError
from .events import LeaderboardSnapshot, QuestionAdvanced, QuestionsBroadcast, SessionEnded
from .interface import SessionInterface
from .local_store import LocalStore
from .session_state import SessionRegistry
from .timer import TimerSupervisor
from .utils import validate_questions


class HostController(SessionInterface):
    role = "host"

    def __init__(
        self,
        api: BackendClient,
        bus: MessageBus,
        local_store: Optional[LocalStore] = None,
        registry: Optional[SessionRegistry] = None,
        timers: Optional[TimerSupervisor] = None,
        tick_interval: float = 1.0,
    ):
        super().__init__(api, bus, local_store=local_store, registry=registry)
        self.timers = timers or TimerSupervisor(bus, interval=tick_interval)
        self.host_info: Optional[HostInfo] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs):
        settings = settings or Settings.from_env()
        kwargs.setdefault("tick_interval", settings.tick_interval)
        return super().from_settings(settings, **kwargs)

    async def _publish(self, channel: str, event) -> None:
        await self.bus.publish(channel, event.name, event.to_data(self.session_code))

    # ---------- session lifecycle ----------

    async def start_session(self, host_info: Optional[HostInfo] = None) -> Outcome:
        """Create a session on the backend and start mirroring its channels."""
        host_info = host_info or HostInfo()
        self.loading = True
        try:
            code = await self.api.start_quiz(host_info)
        except BackendError as e:
            err = SessionCreationError(f"Could not create session: {e}", status=e.status)
            return self._fail(err)
        finally:
            self.loading = False

        self._open_session(code)
        self.host_info = host_info
        self.local_store.save_host(code, host_info.to_dict())
        self.last_error = None
        logger.info(f"[host] session {code} started by {host_info.name}")
        return Outcome.success(code)

    async def publish_quiz(self, questions: Iterable[Question]) -> Outcome:
        """Validate, persist and broadcast the question list, then start timing question 0."""
        questions = list(questions)
        try:
            validate_questions(questions)
        except ValidationError as e:
            return self._fail(e)

        code = self.session_code
        if code is None:
            return self._fail("No active session")

        self.loading = True
        try:
            await self.api.create_quiz(code, questions)
            published = await self.api.broadcast_questions(code)
        except BackendError as e:
            return self._fail(e, f"Could not publish quiz: {e}")
        finally:
            self.loading = False

        if not published:
            return self._fail("Backend returned no questions")

        event = QuestionsBroadcast(questions=tuple(published))
        self.store.dispatch(event)
        try:
            await self._publish(Channels.questions(code), event)
        except TransportError as e:
            return self._fail(e, f"Quiz saved but participants were not notified: {e}")

        # a republish restarts question 0 from its full time limit
        self.timers.cancel(code)
        self.timers.start(code, 0, published[0].time_limit)
        self.last_error = None
        logger.info(f"[host] published {len(published)} questions to {code}")
        return Outcome.success(len(published))

    async def advance(self) -> Outcome:
        """Move to the next question, or to the final leaderboard when there is none."""
        code = self.session_code
        if code is None:
            return self._fail("No active session")
        state = self.state
        if state.phase == QuizPhase.NOT_STARTED:
            return self._fail("Quiz has not started")
        if state.phase == QuizPhase.ENDED:
            return self._fail("Session has ended")

        next_index = state.current_index + 1
        self.loading = True
        try:
            result = await self.api.next_question(code, next_index)
        except BackendError as e:
            return self._fail(e, f"Could not advance: {e}")
        finally:
            self.loading = False

        if result is NO_MORE_QUESTIONS:
            return await self._finish(code)

        index, question = result
        event = QuestionAdvanced(index=index, question=question)
        self.store.dispatch(event)
        try:
            await self._publish(Channels.questions(code), event)
        except TransportError as e:
            return self._fail(e, f"Advanced to question {index + 1} but participants were not notified: {e}")

        self.timers.start(code, index, question.time_limit)
        self.last_error = None
        logger.info(f"[host] {code} advanced to question {index}")
        return Outcome.success(index)

    async def _finish(self, code: str) -> Outcome:
        """Backend said there are no more questions: publish the final standings."""
        self.timers.cancel(code)
        try:
            entries = await self.api.get_leaderboard(code)
        except BackendError as e:
            return self._fail(e, f"Quiz finished but the leaderboard is unavailable: {e}")

        event = LeaderboardSnapshot(entries=tuple(entries), final=True)
        self.store.dispatch(event)
        try:
            await self._publish(Channels.leaderboard(code), event)
        except TransportError as e:
            return self._fail(e, f"Quiz finished but participants were not notified: {e}")
        logger.info(f"[host] {code} finished with {len(entries)} ranked participants")
        self.last_error = None
        return Outcome.success(list(entries), message="Quiz complete")

    async def request_leaderboard(self) -> Outcome:
        """Fetch the current standings and publish them to everyone."""
        code = self.session_code
        if code is None:
            return self._fail("No active session")
        try:
            entries = await self.api.get_leaderboard(code)
        except BackendError as e:
            return self._fail(e, f"Could not load leaderboard: {e}")

        event = LeaderboardSnapshot(entries=tuple(entries), final=False)
        self.store.dispatch(event)
        try:
            await self._publish(Channels.leaderboard(code), event)
        except TransportError as e:
            return self._fail(e)
        return Outcome.success(list(entries))

    async def end_session(self, notify: bool = True, reason: str = "Host ended the session") -> Outcome:
        """Stop timing, tell participants (optionally) and drop every local trace of the session."""
        code = self.session_code
        if code is None:
            self.local_store.forget_host()
            return Outcome.success(None)

        self.timers.cancel(code)
        event = SessionEnded(reason=reason)
        if notify:
            try:
                await self._publish(Channels.session(code), event)
            except TransportError as e:
                logger.warning(f"[host] could not announce end of {code}: {e}")
            try:
                await self.api.end_quiz(code)
            except BackendError as e:
                logger.warning(f"[host] backend did not drop {code}: {e}")
        self.store.dispatch(event)
        self._teardown()
        self.local_store.forget_host()
        self.host_info = None
        logger.info(f"[host] session {code} ended")
        return Outcome.success(code)

    async def restore(self) -> Outcome:
        """Re-attach to the session persisted by a previous run and resync it."""
        code = self.local_store.session_code
        host = self.local_store.host
        if not code or not host:
            return Outcome.failure("No hosted session to restore")

        self.host_info = HostInfo.from_dict(host)
        self._open_session(code)
        outcome = await self.resync()
        if not outcome.ok:
            if isinstance(outcome.error, BackendError) and outcome.error.status == 404:
                # session is gone on the backend
                self._teardown()
                self.local_store.forget_host()
            return self._fail(outcome.error or outcome.message, f"Could not restore session {code}: {outcome.message}")

        question = self.state.current_question
        if self.state.phase == QuizPhase.QUESTION and question is not None:
            self.timers.start(code, self.state.current_index, question.time_limit)
        logger.info(f"[host] restored session {code}")
        return Outcome.success(code)
