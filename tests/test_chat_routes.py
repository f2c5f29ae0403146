import json
from datetime import date, datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from expense_chat.client.events import parse_sse_chunk
from expense_chat.main import app
from expense_chat.services.auth import issue_scoped_token
from expense_chat.services.llm import LLMError

client = TestClient(app)

TRIP_ID = "6f1c2d3e-4a5b-4c6d-8e9f-0a1b2c3d4e5f"
USER_ID = "11111111-2222-4333-8444-555555555555"
PLAN = {
    "intent": "ranking",
    "since": "2025-03-01",
    "until": "2025-03-31",
    "order": [{"by": "amount", "direction": "DESC"}],
    "sql": "SELECT merchant, amount, currency FROM ai_expenses ORDER BY amount DESC LIMIT 1",
}
ROWS = [{"date": date(2025, 3, 9), "amount": 420, "currency": "USD", "category": "hotel", "merchant": "Inn", "notes": None}]


class _DummyLLM:
    model = "primary-model"
    fallback_model = "fallback-model"

    def __init__(self, plan=PLAN, tokens=("You spent ", "420 USD."), answer_error=None):
        self.plan = plan
        self.tokens = list(tokens)
        self.answer_error = answer_error

    async def complete(self, messages, *, model=None, temperature=0.0, json_mode=False):
        if json_mode:
            return json.dumps(self.plan) if isinstance(self.plan, dict) else self.plan
        if self.answer_error is not None:
            raise self.answer_error
        return "".join(self.tokens)

    async def stream(self, messages, *, model=None, temperature=0.2):
        if self.answer_error is not None:
            raise self.answer_error
        for token in self.tokens:
            yield token


class _FakeStore:
    def __init__(self, rows=ROWS, error=None):
        self.rows = rows
        self.error = error
        self.calls = []

    async def fetch(self, sql, values):
        self.calls.append((sql, tuple(values)))
        if self.error is not None:
            raise self.error
        return list(self.rows)


@pytest.fixture(autouse=True)
def _env(monkeypatch):
    monkeypatch.setenv("AI_CHAT_AUTH_MODE", "anonymous")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setattr(app.state, "expense_store", None, raising=False)
    monkeypatch.setattr(app.state, "llm_client", None, raising=False)


def _use(store=None, llm=None):
    store = store or _FakeStore()
    llm = llm or _DummyLLM()
    app.state.expense_store = store
    app.state.llm_client = llm
    return store, llm


def _events(text):
    messages, rest = parse_sse_chunk(text)
    assert rest == ""
    return messages


def _stream_params(**extra):
    params = {"q": "What was my highest expense?", "tripId": TRIP_ID, "since": "2025-03-01", "until": "2025-03-31", "tz": "UTC"}
    params.update(extra)
    return {key: value for key, value in params.items() if value is not None}


# ---------------------------------------------------------------------------
# POST /api/chat
# ---------------------------------------------------------------------------
def test_chat_returns_grounded_answer():
    store, _llm = _use()
    resp = client.post("/api/chat", json={"question": "What was my highest expense?", "tripId": TRIP_ID, "since": "2025-03-01", "until": "2025-03-31"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["answer"] == "You spent 420 USD."
    assert body["model"] == "primary-model"
    assert body["usedFallback"] is False
    assert body["timeRange"]["since"] == "2025-03-01"
    assert body["rows"][0]["merchant"] == "Inn"
    assert store.calls[0][1][0] == TRIP_ID
    assert "trip_id = $1" in store.calls[0][0]


def test_chat_uses_fallback_when_planner_fails():
    store, _llm = _use(llm=_DummyLLM(plan="not json"))
    resp = client.post("/api/chat", json={"q": "What was my highest expense?", "userId": USER_ID})

    assert resp.status_code == 200
    body = resp.json()
    assert body["usedFallback"] is True
    assert body["fallbackReason"] == "planner_error"
    assert body["plan"] is None
    assert "user_id = $1" in store.calls[0][0]


@pytest.mark.parametrize(
    "body,message",
    [
        ({"tripId": TRIP_ID}, "Question is required"),
        ({"question": "hi"}, "tripId or userId required"),
        ({"question": "hi", "tripId": "not-a-uuid"}, "Invalid id format"),
        ({"question": "hi", "tripId": TRIP_ID, "since": "2025-03-10", "until": "2025-03-01"}, None),
    ],
)
def test_chat_input_errors(body, message):
    _use()
    resp = client.post("/api/chat", json=body)
    assert resp.status_code == 400
    assert resp.json()["code"] == "AI-400"
    if message:
        assert resp.json()["message"] == message


def test_chat_rejects_invalid_json():
    _use()
    resp = client.post("/api/chat", content=b"{not json", headers={"content-type": "application/json"})
    assert resp.status_code == 400
    assert resp.json() == {"code": "AI-400", "message": "Invalid JSON body"}


def test_chat_answer_failure_is_502():
    _use(llm=_DummyLLM(answer_error=LLMError("provider error 500", 500)))
    resp = client.post("/api/chat", json={"question": "hi", "tripId": TRIP_ID})
    assert resp.status_code == 502
    assert resp.json() == {"code": "AI-502", "message": "Unable to generate answer"}


def test_chat_requires_token_in_jwt_mode(monkeypatch):
    monkeypatch.setenv("AI_CHAT_AUTH_MODE", "jwt")
    _use()
    resp = client.post("/api/chat", json={"question": "hi", "tripId": TRIP_ID})
    assert resp.status_code == 401
    assert resp.json()["code"] == "RLS-401"


def test_chat_token_scope_wins_over_explicit_ids(monkeypatch):
    monkeypatch.setenv("AI_CHAT_AUTH_MODE", "jwt")
    store, _llm = _use()
    token = issue_scoped_token(USER_ID, trip_id=TRIP_ID)
    resp = client.post("/api/chat", json={"question": "hi", "token": token, "userId": USER_ID})
    assert resp.status_code == 200
    assert store.calls[0][1][0] == TRIP_ID


# ---------------------------------------------------------------------------
# GET|POST /api/chat/stream
# ---------------------------------------------------------------------------
def test_stream_emits_meta_tokens_then_result():
    _use()
    with client.stream("GET", "/api/chat/stream", params=_stream_params(), headers={"x-request-id": "req-stream-1"}) as resp:
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["x-request-id"] == "req-stream-1"
        payload = "".join(resp.iter_text())

    events = _events(payload)
    names = [m.event for m in events if m.event != "ping"]
    assert names == ["meta", "token", "token", "result"]
    assert events[0].json() == {"timeRange": {"since": "2025-03-01", "until": "2025-03-31"}, "tz": "UTC", "userId_last4": "4e5f"}
    assert [m.data for m in events if m.event == "token"] == ["You spent ", "420 USD."]
    result = events[-1].json()
    assert result["answer"] == "You spent 420 USD."
    assert result["aggregates"]["max"]["merchant"] == "Inn"


def test_stream_with_expired_token_sends_one_error_event():
    _use()
    expired = issue_scoped_token(
        USER_ID, trip_id=TRIP_ID, ttl_seconds=60, now=datetime.now(timezone.utc) - timedelta(hours=1)
    )
    resp = client.get("/api/chat/stream", params=_stream_params(token=expired))

    assert resp.status_code == 401
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = _events(resp.text)
    assert len(events) == 1
    assert events[0].event == "error"
    assert events[0].json() == {"code": "RLS-401", "message": "Invalid or expired token"}


def test_stream_input_error_is_reported_before_streaming():
    _use()
    resp = client.get("/api/chat/stream", params=_stream_params(since="xyzzy plugh"))
    assert resp.status_code == 400
    events = _events(resp.text)
    assert [m.event for m in events] == ["error"]
    assert events[0].json() == {"code": "AI-400", "message": "Unable to parse 'since': xyzzy plugh"}


def _without_database(monkeypatch):
    for key in ("DATABASE_URL", "SUPABASE_DB_URL", "SUPABASE_DB_CONNECTION_STRING", "POSTGRES_URL"):
        monkeypatch.delenv(key, raising=False)


def test_stream_auth_error_wins_over_missing_database(monkeypatch):
    _without_database(monkeypatch)
    expired = issue_scoped_token(
        USER_ID, trip_id=TRIP_ID, ttl_seconds=60, now=datetime.now(timezone.utc) - timedelta(hours=1)
    )
    resp = client.get("/api/chat/stream", params=_stream_params(token=expired))

    assert resp.status_code == 401
    events = _events(resp.text)
    assert [(m.event, m.json()["code"]) for m in events] == [("error", "RLS-401")]


def test_stream_missing_database_is_a_single_error_event(monkeypatch):
    _without_database(monkeypatch)
    resp = client.post("/api/chat/stream", json={"question": "What was my highest expense?", "tripId": TRIP_ID})

    assert resp.status_code == 500
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = _events(resp.text)
    assert len(events) == 1
    assert events[0].event == "error"
    assert events[0].json() == {"code": "SQL-500", "message": "Database is not configured"}


def test_stream_reports_query_failure_after_meta():
    _use(store=_FakeStore(error=RuntimeError("db down")))
    resp = client.get("/api/chat/stream", params=_stream_params())
    assert resp.status_code == 200
    events = [m for m in _events(resp.text) if m.event != "ping"]
    assert [m.event for m in events] == ["meta", "error"]
    assert events[-1].json() == {"code": "SQL-500", "message": "Unable to run expense query"}


def test_stream_reports_answer_failure():
    _use(llm=_DummyLLM(answer_error=LLMError("provider error 500", 500)))
    resp = client.get("/api/chat/stream", params=_stream_params())
    events = [m for m in _events(resp.text) if m.event != "ping"]
    assert [m.event for m in events] == ["meta", "error"]
    assert events[-1].json()["code"] == "AI-502"


def test_stream_post_accepts_json_body():
    _use()
    resp = client.post("/api/chat/stream", json={"question": "What was my highest expense?", "tripId": TRIP_ID})
    assert resp.status_code == 200
    events = [m for m in _events(resp.text) if m.event != "ping"]
    assert events[0].event == "meta"
    assert events[-1].event == "result"


def test_stream_post_rejects_invalid_json():
    _use()
    resp = client.post("/api/chat/stream", content=b"[1, 2", headers={"content-type": "application/json"})
    assert resp.status_code == 400
    events = _events(resp.text)
    assert [(m.event, m.json()["code"]) for m in events] == [("error", "AI-400")]


def test_api_health():
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
