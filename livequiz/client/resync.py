"""Reconciliation after a (re)connect.

The bus only delivers what is published while we are subscribed. After a
reconnect (or a process restart with a persisted session code) the client
fetches the backend's snapshot and feeds it through the reducer as a Resync
event, which force-sets question list, index, phase, roster and leaderboard.
Live events that arrive while the snapshot is in flight are applied as
usual; the later of the two wins for the slices they share.
"""
from __future__ import annotations

from .api import BackendClient
from .common import logger
from .errors import BackendError, Outcome
from .events import Resync
from .session_state import SessionStore


class Resyncer:
    def __init__(self, api: BackendClient, store: SessionStore):
        self.api = api
        self.store = store
        self.resync_count = 0

    async def resync(self, session_code: str | None = None) -> Outcome:
        code = session_code or self.store.state.session_code
        if not code:
            return Outcome.failure("No active session to resync")
        try:
            snapshot = await self.api.get_snapshot(code)
            event = Resync.from_snapshot(snapshot)
        except BackendError as e:
            logger.warning(f"[resync] snapshot for {code} failed: {e}")
            return Outcome.failure(e)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[resync] malformed snapshot for {code}: {e}")
            return Outcome.failure(BackendError(f"Malformed snapshot: {e}"))

        if self.store.state.session_code != code:
            # the client moved on (left or switched) while we were fetching
            logger.debug(f"[resync] discarding snapshot for {code}")
            return Outcome.failure("Session changed during resync")

        changed = self.store.dispatch(event)
        self.resync_count += 1
        logger.info(f"[resync] session={code} index={event.current_index} phase={event.phase.value} changed={changed}")
        return Outcome.success(changed)
