"""Chat routes: single-shot JSON answer and the SSE answer stream."""
import json
import logging
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import StreamingResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from expense_chat.routes.deps import get_llm, get_store
from expense_chat.services.db import ExpenseStore
from expense_chat.services.errors import ChatQueryError, input_error
from expense_chat.services.llm import LLMClient
from expense_chat.services.orchestrator import (
    AnswerGenerationError,
    answer_error,
    build_answer_messages,
    build_meta,
    build_result_payload,
    collect_answer,
    prepare_chat,
    stream_answer,
)
from expense_chat.services.runtime import get_request_id, log_event, set_request_id, set_scope_hint
from expense_chat.services.scope import Scope, resolve_scope
from expense_chat.services.sse import SSE_HEADERS, EventChannel, format_event
from expense_chat.services.time_window import TimeWindow, TimeWindowError, resolve_time_window

router = APIRouter(prefix="/api/chat", tags=["chat"])
logger = logging.getLogger("chat_route")


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------
class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    question: str = Field(default="", validation_alias=AliasChoices("question", "q"))
    since: Optional[str] = None
    until: Optional[str] = None
    timezone: Optional[str] = Field(default=None, validation_alias=AliasChoices("timezone", "tz"))
    trip_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("tripId", "trip_id"))
    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("userId", "user_id"))
    token: Optional[str] = None


async def _parse_body(request: Request) -> ChatRequest:
    raw = await request.body()
    try:
        payload = json.loads(raw or b"{}")
    except ValueError as exc:
        raise input_error("Invalid JSON body") from exc
    if not isinstance(payload, dict):
        raise input_error("Invalid JSON body")
    try:
        return ChatRequest.model_validate(payload)
    except ValidationError as exc:
        raise input_error("Invalid request body") from exc


def _parse_query(request: Request) -> ChatRequest:
    try:
        return ChatRequest.model_validate(dict(request.query_params))
    except ValidationError as exc:
        raise input_error("Invalid query parameters") from exc


def _resolve_inputs(req: ChatRequest, authorization: Optional[str]) -> Tuple[str, Scope, TimeWindow]:
    question = (req.question or "").strip()
    if not question:
        raise input_error("Question is required")
    scope = resolve_scope(
        token=req.token,
        authorization=authorization,
        trip_id=req.trip_id,
        user_id=req.user_id,
    )
    set_scope_hint(scope.column, scope.id)
    try:
        window = resolve_time_window(req.since, req.until, req.timezone)
    except TimeWindowError as exc:
        raise input_error(str(exc)) from exc
    return question, scope, window


# ---------------------------------------------------------------------------
# POST /api/chat
# ---------------------------------------------------------------------------
@router.post("")
async def chat(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    store: ExpenseStore = Depends(get_store),
    llm: LLMClient = Depends(get_llm),
):
    req = await _parse_body(request)
    question, scope, window = _resolve_inputs(req, authorization)
    computation = await prepare_chat(question, scope, window, llm=llm, store=store)
    messages = build_answer_messages(question, computation, window)
    try:
        answer = await collect_answer(llm, messages)
    except AnswerGenerationError as exc:
        raise answer_error(exc) from exc
    return build_result_payload(answer, computation, window).to_payload()


# ---------------------------------------------------------------------------
# GET|POST /api/chat/stream  (SSE)
# ---------------------------------------------------------------------------
def _error_stream(exc: ChatQueryError) -> StreamingResponse:
    async def _single_error():
        yield format_event("error", exc.to_dict())

    return StreamingResponse(
        _single_error(),
        status_code=exc.status,
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


async def _open_stream(request: Request, req: ChatRequest, authorization: Optional[str]) -> StreamingResponse:
    # input and auth errors take precedence over service configuration errors
    try:
        question, scope, window = _resolve_inputs(req, authorization)
        store = await get_store(request)
        llm = await get_llm(request)
    except ChatQueryError as exc:
        log_event(logger, logging.WARNING, "chat_stream_rejected", code=exc.code, status=exc.status)
        return _error_stream(exc)

    request_id = get_request_id()

    async def _produce(channel: EventChannel) -> None:
        set_request_id(request_id)
        set_scope_hint(scope.column, scope.id)
        await channel.send("meta", build_meta(scope, window))
        try:
            computation = await prepare_chat(question, scope, window, llm=llm, store=store)
        except ChatQueryError as exc:
            await channel.send("error", exc.to_dict())
            return

        async def _emit_token(token: str) -> None:
            await channel.send("token", token)

        messages = build_answer_messages(question, computation, window)
        try:
            answer = await stream_answer(llm, messages, on_token=_emit_token)
        except AnswerGenerationError as exc:
            await channel.send("error", answer_error(exc).to_dict())
            return
        await channel.send("result", build_result_payload(answer, computation, window).to_payload())

    channel = EventChannel()
    return StreamingResponse(channel.stream(_produce), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/stream")
async def chat_stream_get(
    request: Request,
    authorization: Optional[str] = Header(default=None),
):
    try:
        req = _parse_query(request)
    except ChatQueryError as exc:
        return _error_stream(exc)
    return await _open_stream(request, req, authorization)


@router.post("/stream")
async def chat_stream_post(
    request: Request,
    authorization: Optional[str] = Header(default=None),
):
    try:
        req = await _parse_body(request)
    except ChatQueryError as exc:
        return _error_stream(exc)
    return await _open_stream(request, req, authorization)
