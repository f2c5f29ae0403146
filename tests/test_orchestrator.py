import asyncio
import json
import logging
from datetime import date

import pytest

from expense_chat.services import orchestrator
from expense_chat.services.errors import ChatQueryError
from expense_chat.services.llm import LLMError, ModelUnavailableError
from expense_chat.services.scope import Scope
from expense_chat.services.time_window import TimeWindow

TRIP_ID = "6f1c2d3e-4a5b-4c6d-8e9f-0a1b2c3d4e5f"
SCOPE = Scope("trip_id", TRIP_ID)
WINDOW = TimeWindow(since=date(2025, 3, 1), until=date(2025, 3, 31), tz="Asia/Seoul")

ROW = {"date": date(2025, 3, 9), "amount": 420, "currency": "USD", "category": "hotel", "merchant": "Inn", "notes": None}


def _plan_json(sql="SELECT merchant, amount, currency FROM ai_expenses ORDER BY amount DESC LIMIT 5", intent="ranking"):
    return json.dumps({"intent": intent, "since": "2025-03-01", "until": "2025-03-31", "sql": sql})


class _DummyLLM:
    model = "primary-model"
    fallback_model = "fallback-model"

    def __init__(self, responses=(), streams=None):
        self.responses = list(responses)
        self.streams = streams or {}
        self.calls = []

    async def complete(self, messages, *, model=None, temperature=0.0, json_mode=False):
        self.calls.append(model or self.model)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def stream(self, messages, *, model=None, temperature=0.2):
        script = self.streams[model]
        if isinstance(script, Exception):
            raise script
        for token in script:
            if isinstance(token, Exception):
                raise token
            yield token


class _FakeStore:
    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    async def fetch(self, sql, values):
        self.calls.append(sql)
        item = self.results.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _prepare(question, llm, store):
    return asyncio.run(orchestrator.prepare_chat(question, SCOPE, WINDOW, llm=llm, store=store))


def test_plan_path_returns_plan_rows():
    store = _FakeStore([[ROW]])
    computation = _prepare("What was my highest expense?", _DummyLLM([_plan_json()]), store)

    assert computation.used_fallback is False
    assert computation.fallback_reason is None
    assert computation.plan.intent == "ranking"
    assert len(computation.execution.rows) == 1
    assert len(store.calls) == 1


def test_planner_failure_uses_highest_template():
    store = _FakeStore([[ROW]])
    computation = _prepare("What was my highest expense?", _DummyLLM(["garbage", "still garbage"]), store)

    assert computation.used_fallback is True
    assert computation.fallback_reason == "planner_error"
    assert computation.plan is None
    assert "ORDER BY amount DESC\nLIMIT 1" in store.calls[0]
    assert computation.execution.rows[0].merchant == "Inn"


def test_unsafe_plan_falls_back_without_running_it():
    store = _FakeStore([[ROW]])
    llm = _DummyLLM([_plan_json(sql="SELECT * FROM ai_expenses", intent="lookup")])
    computation = _prepare("show my expenses", llm, store)

    assert computation.fallback_reason == "db_error"
    assert len(store.calls) == 1
    assert "ORDER BY date DESC" in store.calls[0]


def test_database_error_falls_back_to_template():
    store = _FakeStore([RuntimeError("connection reset"), [ROW]])
    computation = _prepare("spending per category", _DummyLLM([_plan_json(intent="lookup")]), store)

    assert computation.used_fallback is True
    assert computation.fallback_reason == "db_error"
    assert len(store.calls) == 2
    assert "GROUP BY category, currency" in store.calls[1]


def test_database_error_messages_are_not_logged(caplog):
    caplog.set_level(logging.INFO)
    leaked = RuntimeError(f"invalid input for query argument $1: '{TRIP_ID}'")
    store = _FakeStore([leaked, [ROW]])

    computation = _prepare("show my expenses", _DummyLLM([_plan_json()]), store)

    assert computation.fallback_reason == "db_error"
    assert "chat_execution_failed" in caplog.text
    assert "QueryExecutionError" in caplog.text
    assert TRIP_ID not in caplog.text
    assert "invalid input for query argument" not in caplog.text


def test_error_details_keep_validation_messages():
    details = orchestrator._error_details(orchestrator.UnsafePlanError("Subqueries are not permitted"))
    assert details == {"error_type": "UnsafePlanError", "error": "Subqueries are not permitted"}
    assert orchestrator._error_details(RuntimeError("password=hunter2")) == {"error_type": "RuntimeError"}


def test_failing_fallback_ends_the_request():
    store = _FakeStore([RuntimeError("down"), RuntimeError("still down")])
    with pytest.raises(ChatQueryError) as exc:
        _prepare("show my expenses", _DummyLLM([_plan_json()]), store)
    assert exc.value.status == 500
    assert exc.value.code == "SQL-500"


def test_answer_messages_are_grounded_in_results():
    store = _FakeStore([[ROW]])
    computation = _prepare("What was my highest expense?", _DummyLLM([_plan_json()]), store)
    messages = orchestrator.build_answer_messages("What was my highest expense?", computation, WINDOW)

    assert "never add them together" in messages[0].content
    payload = json.loads(messages[-1].content)
    assert payload["timeRange"] == {"since": "2025-03-01", "until": "2025-03-31", "tz": "Asia/Seoul"}
    assert payload["preview"][0]["merchant"] == "Inn"
    assert payload["totalsByCurrency"][0]["currency"] == "USD"


def test_stream_answer_forwards_tokens():
    seen = []

    async def _on_token(token):
        seen.append(token)

    llm = _DummyLLM(streams={"primary-model": ["You spent ", "420 USD", " at Inn."]})
    answer = asyncio.run(orchestrator.stream_answer(llm, [], on_token=_on_token))
    assert answer.answer == "You spent 420 USD at Inn."
    assert answer.model == "primary-model"
    assert seen == ["You spent ", "420 USD", " at Inn."]


def test_stream_answer_falls_back_when_primary_model_is_unavailable():
    llm = _DummyLLM(streams={
        "primary-model": ModelUnavailableError("decommissioned", 400),
        "fallback-model": ["ok"],
    })
    answer = asyncio.run(orchestrator.stream_answer(llm, []))
    assert answer.model == "fallback-model"


@pytest.mark.parametrize(
    "script",
    [LLMError("provider error 500", 500), ["  "], ["partial", LLMError("reset", None)]],
)
def test_stream_answer_failures(script):
    llm = _DummyLLM(streams={"primary-model": script, "fallback-model": ["unused"]})
    with pytest.raises(orchestrator.AnswerGenerationError):
        asyncio.run(orchestrator.stream_answer(llm, []))


def test_answer_error_maps_to_502():
    error = orchestrator.answer_error(orchestrator.AnswerGenerationError("boom"))
    assert (error.status, error.code, error.message) == (502, "AI-502", "Unable to generate answer")


def test_result_payload_shape():
    store = _FakeStore([[ROW]])
    computation = _prepare("highest?", _DummyLLM([_plan_json()]), store)
    answer = orchestrator.AnswerResult(answer="420 USD at Inn", model="primary-model")
    payload = orchestrator.build_result_payload(answer, computation, WINDOW).to_payload()

    assert payload["answer"] == "420 USD at Inn"
    assert payload["provider"] == "groq"
    assert payload["usedFallback"] is False
    assert payload["fallbackReason"] is None
    assert payload["timeRange"] == {"since": "2025-03-01", "until": "2025-03-31", "tz": "Asia/Seoul"}
    assert payload["sql"].startswith("SELECT date, amount")
    assert payload["rows"][0]["amount"] == 420.0
    assert "params" not in payload
    assert payload["plan"]["intent"] == "ranking"


def test_meta_masks_the_scope_id():
    assert orchestrator.build_meta(SCOPE, WINDOW) == {
        "timeRange": {"since": "2025-03-01", "until": "2025-03-31"},
        "tz": "Asia/Seoul",
        "userId_last4": "4e5f",
    }
