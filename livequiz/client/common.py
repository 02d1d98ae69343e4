# client/common.py
"""Shared client constants: logger, channel names, event names, settings."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("livequiz")
logger.setLevel(logging.DEBUG)


def configure_logging(log_file: str | Path = "logs/client.log", level: int = logging.INFO) -> logging.Logger:
    """Send log records to `log_file` and return the package logger.

    force=True so we override whatever the embedding app configured.
    """
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=str(log_path),
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        force=True,
    )
    logger.debug("Logger configured from common.")
    return logger


# ---------------------------------------------------------------------------
# Channels (must match the backend's naming)
# ---------------------------------------------------------------------------

class Channels:
    @staticmethod
    def users(code: str) -> str:
        return f"quiz:users:{code}"

    @staticmethod
    def questions(code: str) -> str:
        return f"quiz:questions:{code}"

    @staticmethod
    def leaderboard(code: str) -> str:
        return f"quiz:leaderboard:{code}"

    @staticmethod
    def user_leaderboard(code: str, user_id: str) -> str:
        return f"quiz:leaderboard:{code}:{user_id}"

    @staticmethod
    def timer(code: str) -> str:
        return f"quiz:{code}:timer"

    @staticmethod
    def session(code: str) -> str:
        return f"quiz:session:{code}"


class Events:
    JOIN_QUIZ = "joinQuiz"
    LEAVE_QUIZ = "leaveQuiz"
    BROADCAST_QUESTIONS = "broadcastQuestions"
    NEXT_QUESTION = "nextQuestion"
    LEADERBOARD_UPDATE = "leaderboardUpdate"
    USER_LEADERBOARD_UPDATE = "userLeaderboardUpdate"
    TIMER_UPDATE = "timerUpdate"
    TIME_UP = "timeUp"
    SESSION_ENDED = "sessionEnded"
    ALL_EVENTS = "*"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://127.0.0.1:49000"
DEFAULT_BUS_URL = "ws://127.0.0.1:49000/bus"


@dataclass
class Settings:
    api_url: str = DEFAULT_API_URL
    bus_url: str = DEFAULT_BUS_URL
    state_dir: Path = Path(".livequiz")
    log_file: Path = Path("logs/client.log")
    tick_interval: float = 1.0
    max_retries: int = 8
    request_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            api_url=os.environ.get("LIVEQUIZ_API_URL") or DEFAULT_API_URL,
            bus_url=os.environ.get("LIVEQUIZ_BUS_URL") or DEFAULT_BUS_URL,
            state_dir=Path(os.environ.get("LIVEQUIZ_STATE_DIR") or ".livequiz"),
            log_file=Path(os.environ.get("LIVEQUIZ_LOG_FILE") or "logs/client.log"),
            tick_interval=float(os.environ.get("LIVEQUIZ_TICK_INTERVAL", "1.0")),
            max_retries=int(os.environ.get("LIVEQUIZ_MAX_RETRIES", "8")),
            request_timeout=float(os.environ.get("LIVEQUIZ_REQUEST_TIMEOUT", "10.0")),
        )
