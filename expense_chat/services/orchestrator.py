"""
Chat request lifecycle shared by the single-shot and streaming endpoints:

plan -> execute (or fallback template) -> grounded answer -> result payload.

Planning and execution failures are expected and recovered here; only a
failing fallback template or a failing answer ends the request with an error.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from langchain_core.prompts import ChatPromptTemplate

from expense_chat.config import LLM_PROVIDER
from expense_chat.services.db import ExpenseStore
from expense_chat.services.errors import ANSWER_FAILED, QUERY_FAILED, ChatQueryError
from expense_chat.services.executor import ExecutionContext, QueryExecutionError, execute_plan
from expense_chat.services.llm import LLMClient, LLMError, ModelUnavailableError, complete_with_fallback
from expense_chat.services.plan_validator import UnsafePlanError
from expense_chat.services.planner import PlanningError, generate_sql_plan
from expense_chat.services.runtime import log_event
from expense_chat.services.schema import ChatResultPayload, ExecutionResult, FallbackReason, QueryPlan, TimeRange
from expense_chat.services.scope import Scope
from expense_chat.services.sql_guard import SqlPreparationError
from expense_chat.services.templates import run_fallback_template, select_fallback_template
from expense_chat.services.time_window import TimeWindow

logger = logging.getLogger(__name__)

PREVIEW_ROWS = 20
TOP_SUMMARY = 5
OWN_MESSAGE_ERRORS = (PlanningError, UnsafePlanError, SqlPreparationError)
ANSWER_TEMPERATURE = 0.2

ANSWER_SYSTEM_PROMPT = (
    "You are Tripay's financial analyst. Answer using only the provided data. "
    "Mention the currency with every amount. If totals include multiple currencies, "
    "list each currency separately and never add them together. "
    "If the data is empty, say that no matching expenses were found. "
    "Keep the tone concise and professional."
)
ANSWER_PROMPT = ChatPromptTemplate.from_messages(
    [("system", ANSWER_SYSTEM_PROMPT), ("human", "{payload}")]
)


class AnswerGenerationError(RuntimeError):
    pass


@dataclass
class ChatComputation:
    plan: Optional[QueryPlan]
    execution: ExecutionResult
    used_fallback: bool = False
    fallback_reason: Optional[FallbackReason] = None


@dataclass(frozen=True)
class AnswerResult:
    answer: str
    model: str


def _error_details(exc: BaseException) -> Dict[str, Any]:
    # driver messages can echo bound values, so only messages composed here are logged
    details: Dict[str, Any] = {"error_type": exc.__class__.__name__}
    if isinstance(exc, OWN_MESSAGE_ERRORS):
        details["error"] = str(exc)[:300]
    if isinstance(exc, QueryExecutionError):
        details["sql"] = exc.sql
        details["params"] = exc.sanitized_values
    elif isinstance(exc, SqlPreparationError):
        details["sql"] = exc.query
        details["params"] = exc.sanitized_params
    return details


async def prepare_chat(
    question: str,
    scope: Scope,
    window: TimeWindow,
    *,
    llm: LLMClient,
    store: ExpenseStore,
) -> ChatComputation:
    started = time.perf_counter()
    context = ExecutionContext(scope=scope, since=window.since, until=window.until)
    plan: Optional[QueryPlan] = None
    reason: Optional[FallbackReason] = None

    try:
        plan = await generate_sql_plan(question, window.since, window.until, window.tz, scope, llm=llm)
    except PlanningError as exc:
        reason = "planner_error"
        log_event(logger, logging.WARNING, "chat_planner_failed", **_error_details(exc))

    if plan is not None:
        try:
            execution = await execute_plan(plan, context, store=store)
            log_event(
                logger,
                logging.INFO,
                "chat_plan_path_ok",
                rows=len(execution.rows),
                elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            return ChatComputation(plan=plan, execution=execution)
        except Exception as exc:
            reason = "db_error"
            log_event(logger, logging.WARNING, "chat_execution_failed", **_error_details(exc))

    template = select_fallback_template(question, plan)
    try:
        execution = await run_fallback_template(template, context, store=store)
    except Exception as exc:
        log_event(logger, logging.ERROR, "chat_fallback_failed", template=template.value, **_error_details(exc))
        raise ChatQueryError(500, QUERY_FAILED, "Unable to run expense query") from exc

    log_event(
        logger,
        logging.INFO,
        "chat_fallback_used",
        template=template.value,
        reason=reason,
        rows=len(execution.rows),
        elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return ChatComputation(plan=plan, execution=execution, used_fallback=True, fallback_reason=reason)


def build_answer_messages(question: str, computation: ChatComputation, window: TimeWindow) -> List[Any]:
    aggregates = computation.execution.aggregates.to_payload()
    payload = {
        "question": question,
        "plan": computation.plan.to_payload() if computation.plan else None,
        "timeRange": window.as_dict(),
        "aggregates": aggregates,
        "topMerchants": aggregates["byMerchant"][:TOP_SUMMARY],
        "topCategories": aggregates["byCategory"][:TOP_SUMMARY],
        "totalsByCurrency": aggregates["totalsByCurrency"],
        "preview": [row.to_payload() for row in computation.execution.rows[:PREVIEW_ROWS]],
    }
    return ANSWER_PROMPT.format_messages(payload=json.dumps(payload, ensure_ascii=False))


async def stream_answer(
    llm: LLMClient,
    messages: List[Any],
    on_token: Optional[Callable[[str], Awaitable[None]]] = None,
) -> AnswerResult:
    """Stream the answer, forwarding each token. Falls back once on a 400/404 before any token."""
    models = [llm.model] + ([llm.fallback_model] if llm.fallback_model else [])
    last_error: Optional[Exception] = None
    for model in models:
        parts: List[str] = []
        try:
            async for token in llm.stream(messages, model=model, temperature=ANSWER_TEMPERATURE):
                parts.append(token)
                if on_token is not None:
                    await on_token(token)
        except ModelUnavailableError as exc:
            last_error = exc
            if parts:
                break
            log_event(logger, logging.WARNING, "answer_model_unavailable", model=model, status_code=exc.status_code)
            continue
        except LLMError as exc:
            raise AnswerGenerationError(str(exc)) from exc
        answer = "".join(parts).strip()
        if not answer:
            raise AnswerGenerationError(f"model {model} returned an empty answer")
        return AnswerResult(answer=answer, model=model)
    raise AnswerGenerationError(f"no answer model available: {last_error}") from last_error


async def collect_answer(llm: LLMClient, messages: List[Any]) -> AnswerResult:
    try:
        text, model = await complete_with_fallback(llm, messages, temperature=ANSWER_TEMPERATURE)
    except LLMError as exc:
        raise AnswerGenerationError(str(exc)) from exc
    answer = (text or "").strip()
    if not answer:
        raise AnswerGenerationError(f"model {model} returned an empty answer")
    return AnswerResult(answer=answer, model=model)


def answer_error(exc: AnswerGenerationError) -> ChatQueryError:
    log_event(logger, logging.ERROR, "chat_answer_failed", error=str(exc)[:300])
    return ChatQueryError(502, ANSWER_FAILED, "Unable to generate answer")


def build_meta(scope: Scope, window: TimeWindow) -> Dict[str, Any]:
    return {
        "timeRange": {"since": window.since.isoformat(), "until": window.until.isoformat()},
        "tz": window.tz,
        "userId_last4": scope.last4,
    }


def build_result_payload(answer: AnswerResult, computation: ChatComputation, window: TimeWindow) -> ChatResultPayload:
    execution = computation.execution
    return ChatResultPayload(
        answer=answer.answer,
        model=answer.model,
        provider=LLM_PROVIDER,
        plan=computation.plan,
        used_fallback=computation.used_fallback,
        fallback_reason=computation.fallback_reason,
        sql=execution.sql,
        time_range=TimeRange(**window.as_dict()),
        aggregates=execution.aggregates,
        rows=execution.rows[:PREVIEW_ROWS],
        currency_note=execution.aggregates.currency_note,
    )
