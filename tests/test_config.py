from chatstream.config import ChatSettings


def test_defaults():
    settings = ChatSettings.from_env()
    assert settings.placeholder_title == "New Chat"
    assert settings.title_max_chars == 50
    assert settings.history_window == 8


def test_env_overrides_and_invalid_values(monkeypatch):
    monkeypatch.setenv("CHAT_PLACEHOLDER_TITLE", "Untitled")
    monkeypatch.setenv("CHAT_TITLE_MAX_CHARS", "30")
    monkeypatch.setenv("CHAT_HISTORY_WINDOW", "not-a-number")
    monkeypatch.setenv("CHAT_WATCH_POLL_SECONDS", "-2")

    settings = ChatSettings.from_env()

    assert settings.placeholder_title == "Untitled"
    assert settings.title_max_chars == 30
    assert settings.history_window == 8
    assert settings.watch_poll_seconds == 1.0
