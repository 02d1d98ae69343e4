"""Shared plumbing for the host and participant sides of a session.

A SessionInterface owns, for the session it is currently in:
  - the SessionStore (opened from a SessionRegistry),
  - the SubscriptionSet mirroring every channel into that store,
  - the Resyncer hooked to bus reconnects.
Teardown releases all of it in one step. While a resync is in flight, live
messages are held and replayed once the snapshot has been applied.
"""
from __future__ import annotations

from typing import List, Optional

from .api import BackendClient
from .bus import BusMessage, MessageBus, SubscriptionSet
from .common import Channels, Events, Settings, configure_logging, logger
from .errors import Outcome
from .events import Event, SessionBound, parse_event
from .local_store import LocalStore
from .resync import Resyncer
from .session_state import SessionRegistry, SessionState, SessionStore
from .ws_client import WSBus


class SessionInterface:
    role = "session"

    def __init__(
        self,
        api: BackendClient,
        bus: MessageBus,
        local_store: Optional[LocalStore] = None,
        registry: Optional[SessionRegistry] = None,
    ):
        self.api = api
        self.bus = bus
        self.local_store = local_store or LocalStore()
        self.registry = registry or SessionRegistry()
        self.store: Optional[SessionStore] = None
        self.subscriptions = SubscriptionSet()
        self.resyncer: Optional[Resyncer] = None
        self.last_error: Optional[str] = None
        self.loading = False
        self._remove_reconnect = None
        self._resyncing = 0
        self._held: List[BusMessage] = []

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs):
        """Build a client wired to the real backend and hub from `settings` (env by default)."""
        settings = settings or Settings.from_env()
        configure_logging(settings.log_file)
        api = BackendClient(settings.api_url, timeout=settings.request_timeout)
        bus = WSBus(settings.bus_url, max_retries=settings.max_retries)
        kwargs.setdefault("local_store", LocalStore(settings.state_dir))
        logger.info(f"[{cls.role}] backend {settings.api_url}, bus {settings.bus_url}")
        return cls(api, bus, **kwargs)

    async def connect(self, timeout: float = 5.0) -> bool:
        """Open the bus transport. In-process buses are always connected."""
        if isinstance(self.bus, WSBus):
            return await self.bus.start(timeout=timeout)
        return True

    async def close(self) -> None:
        self._teardown()
        await self.api.close()
        if isinstance(self.bus, WSBus):
            await self.bus.close()

    # ---------- read-state ----------

    @property
    def session_code(self) -> Optional[str]:
        if self.store is None:
            return None
        return self.store.state.session_code or None

    @property
    def state(self) -> SessionState:
        if self.store is None:
            return SessionState()
        return self.store.state

    @property
    def reconnecting(self) -> bool:
        """True while the transport is re-establishing the connection."""
        return self.bus.reconnecting

    # ---------- lifecycle ----------

    def _open_session(self, session_code: str, local_user_id: Optional[str] = None) -> SessionStore:
        if self.store is not None and self.session_code != session_code:
            self._teardown()
        store = self.registry.open(session_code)
        store.dispatch(SessionBound(session_code=session_code, local_user_id=local_user_id))
        self.store = store
        self.resyncer = Resyncer(self.api, store)
        if self._remove_reconnect is None:
            self._remove_reconnect = self.bus.on_reconnect(self._on_reconnect)
        self._subscribe(session_code, local_user_id)
        return store

    def _channel_bindings(self, session_code: str, local_user_id: Optional[str]) -> List[tuple]:
        bindings = [
            (Channels.users(session_code), Events.JOIN_QUIZ),
            (Channels.users(session_code), Events.LEAVE_QUIZ),
            (Channels.questions(session_code), Events.BROADCAST_QUESTIONS),
            (Channels.questions(session_code), Events.NEXT_QUESTION),
            (Channels.leaderboard(session_code), Events.LEADERBOARD_UPDATE),
            (Channels.timer(session_code), Events.ALL_EVENTS),
            (Channels.session(session_code), Events.SESSION_ENDED),
        ]
        if local_user_id:
            bindings.append((Channels.user_leaderboard(session_code, local_user_id), Events.USER_LEADERBOARD_UPDATE))
        return bindings

    def _subscribe(self, session_code: str, local_user_id: Optional[str]) -> None:
        self.subscriptions.release_all()
        for channel, event in self._channel_bindings(session_code, local_user_id):
            self.subscriptions.add(self.bus.subscribe(channel, event, self._on_message))
        logger.debug(f"[{self.role}] subscribed {len(self.subscriptions)} handlers for {session_code}")

    async def _on_message(self, message: BusMessage) -> None:
        if self.store is None:
            return
        if self._resyncing or self._held:
            # applied after the snapshot so it cannot roll them back
            self._held.append(message)
            return
        await self._apply_message(message)

    async def _apply_message(self, message: BusMessage) -> None:
        store = self.store
        if store is None:
            return
        event = parse_event(message)
        if event is None:
            return
        before = store.state
        if store.dispatch(event):
            await self._after_change(event, before, store.state)

    async def _after_change(self, event: Event, old: SessionState, new: SessionState) -> None:
        """Hook for subclasses that react to applied events."""

    async def _on_reconnect(self) -> None:
        outcome = await self.resync()
        if not outcome.ok:
            self.last_error = outcome.message

    def _teardown(self) -> None:
        """Release every subscription and drop the session store. Idempotent."""
        self.subscriptions.release_all()
        if self._remove_reconnect is not None:
            self._remove_reconnect()
            self._remove_reconnect = None
        code = self.session_code
        if code:
            self.registry.dispose(code)
        self.store = None
        self.resyncer = None
        self._held.clear()

    async def resync(self) -> Outcome:
        """Apply the backend snapshot, then the live messages that arrived meanwhile."""
        if self.resyncer is None:
            return Outcome.failure("No active session")
        self._resyncing += 1
        try:
            outcome = await self.resyncer.resync()
        finally:
            self._resyncing -= 1
        if not self._resyncing:
            await self._replay_held()
        return outcome

    async def _replay_held(self) -> None:
        if self._held:
            logger.debug(f"[{self.role}] replaying {len(self._held)} messages held during resync")
        # messages arriving while we replay queue up behind the rest
        while self._held and not self._resyncing:
            message = self._held.pop(0)
            try:
                await self._apply_message(message)
            except Exception:
                logger.exception(f"[{self.role}] replaying {message.channel}:{message.name} failed")

    def _fail(self, error: Exception | str, message: str | None = None) -> Outcome:
        outcome = Outcome.failure(error, message)
        self.last_error = outcome.message or None
        logger.warning(f"[{self.role}] {outcome.message}")
        return outcome
