from __future__ import annotations

"""Environment-driven settings for the chat orchestration service.

Env vars:
- CHAT_PLACEHOLDER_TITLE (default "New Chat")
- CHAT_TITLE_MAX_CHARS (default 50)
- CHAT_HISTORY_WINDOW (default 8)
- CHAT_WATCH_POLL_SECONDS (default 1.0, Mongo live feed only)
"""

from dataclasses import dataclass
import os


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        return value if value > 0 else default
    except ValueError:
        return default


@dataclass(frozen=True)
class ChatSettings:
    placeholder_title: str = "New Chat"
    title_max_chars: int = 50
    history_window: int = 8
    watch_poll_seconds: float = 1.0

    @staticmethod
    def from_env() -> "ChatSettings":
        return ChatSettings(
            placeholder_title=os.getenv("CHAT_PLACEHOLDER_TITLE") or "New Chat",
            title_max_chars=_env_int("CHAT_TITLE_MAX_CHARS", 50),
            history_window=_env_int("CHAT_HISTORY_WINDOW", 8),
            watch_poll_seconds=_env_float("CHAT_WATCH_POLL_SECONDS", 1.0),
        )


_settings: ChatSettings | None = None


def get_settings() -> ChatSettings:
    global _settings
    if _settings is None:
        _settings = ChatSettings.from_env()
    return _settings
