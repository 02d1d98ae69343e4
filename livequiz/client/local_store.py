# client/local_store.py
# =============================================================================
# Persisted client-local state
#
# - One JSON file per client under the state dir: <state_dir>/client_state.json
# - Keys:
#     session_code : last joined/hosted session
#     user         : local participant identity {name, userId, sessionCode, joinedAt}
#     host         : local host identity (HostInfo dict)
#
# Survives a process restart so a client can rejoin and resync; cleared on
# explicit leave / reset / end. Unreadable files are treated as empty.
# =============================================================================

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

from .common import logger

STATE_FILE_NAME = "client_state.json"

SESSION_CODE = "session_code"
USER_DATA = "user"
HOST_DATA = "host"


class LocalStore:
    """Small key/value store backed by a JSON file."""

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self.base_dir = Path(base_dir) if base_dir is not None else Path.cwd() / ".livequiz"
        self.path = self.base_dir / STATE_FILE_NAME

    # ---- low-level ----------------------------------------------------------

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"[local_store] could not read {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            tmp.replace(self.path)
        except OSError as e:
            logger.error(f"[local_store] could not write {self.path}: {e}")

    def get(self, key: str) -> Any:
        return self._read().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._read()
        if value is None:
            data.pop(key, None)
        else:
            data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        self.set(key, None)

    def clear(self) -> None:
        if self.path.exists():
            try:
                self.path.unlink()
            except OSError as e:
                logger.error(f"[local_store] could not clear {self.path}: {e}")

    # ---- high-level --------------------------------------------------------

    @property
    def session_code(self) -> Optional[str]:
        return self.get(SESSION_CODE)

    @property
    def user(self) -> Optional[dict]:
        return self.get(USER_DATA)

    @property
    def host(self) -> Optional[dict]:
        return self.get(HOST_DATA)

    def save_user(self, session_code: str, user: dict) -> None:
        data = self._read()
        data[SESSION_CODE] = session_code
        data[USER_DATA] = user
        self._write(data)

    def save_host(self, session_code: str, host: dict) -> None:
        data = self._read()
        data[SESSION_CODE] = session_code
        data[HOST_DATA] = host
        self._write(data)

    def forget_session(self) -> None:
        """Drop session code and participant identity (explicit leave)."""
        data = self._read()
        data.pop(SESSION_CODE, None)
        data.pop(USER_DATA, None)
        self._write(data)

    def forget_host(self) -> None:
        """Drop session code and host identity (session ended)."""
        data = self._read()
        data.pop(SESSION_CODE, None)
        data.pop(HOST_DATA, None)
        self._write(data)

    def is_host(self) -> bool:
        return bool(self.host)

    def is_participant(self) -> bool:
        return bool(self.user)
