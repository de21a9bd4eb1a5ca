import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
src_str = str(ROOT / "src")
if src_str not in sys.path:
    sys.path.insert(0, src_str)


@pytest.fixture(autouse=True)
def _isolate_singletons(monkeypatch):
    """Fresh store/orchestrator/breaker per test and no real provider keys."""
    from chatstream.infrastructure import events, message_store
    from chatstream.services import generation, orchestrator

    monkeypatch.setattr(message_store, "_store", None, raising=False)
    monkeypatch.setattr(orchestrator, "_orchestrator", None, raising=False)
    monkeypatch.setattr(events, "_publisher", None, raising=False)
    monkeypatch.setattr(generation, "_BREAKER_STATE", {"fails": 0, "opened_at": 0.0}, raising=False)
    for key in (
        "OPENAI_API_KEY",
        "GEMINI_API_KEY",
        "XAI_API_KEY",
        "CHAT_MODEL_PROVIDER",
        "CHAT_ENABLE_LOCAL_PROVIDER",
        "CHAT_STORE_IMPL",
        "CHAT_PUBLIC_MODE",
        "REDIS_URL",
    ):
        monkeypatch.delenv(key, raising=False)
