from fastapi.testclient import TestClient

from chatstream.api.main import app
from chatstream.observability.metrics import TURNS, record_turn, sanitize_path


client = TestClient(app)


def test_metrics_endpoint_exposes_histogram():
    # Trigger a request to ensure histogram has an observation
    r = client.get("/health")
    assert r.status_code == 200

    m = client.get("/metrics")
    assert m.status_code == 200
    body = m.text

    assert "# HELP chatstream_request_latency_seconds" in body
    assert "# TYPE chatstream_request_latency_seconds histogram" in body
    assert "chatstream_request_latency_seconds_count" in body
    assert "chatstream_turns_total" in body


def test_sanitize_path_collapses_ids():
    assert sanitize_path("") == "/"
    assert sanitize_path("/") == "/"
    assert sanitize_path("/chat/conversations/abc123/messages?x=1") == "/chat/conversations"
    assert sanitize_path("/health") == "/health"


def test_record_turn_increments_outcome_counter():
    before = TURNS.labels(outcome="quota_exceeded")._value.get()
    record_turn("quota_exceeded")
    assert TURNS.labels(outcome="quota_exceeded")._value.get() == before + 1
