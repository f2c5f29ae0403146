"""
NL -> SQL planner.

Stages:
1) Optional translation of non-Latin questions to English (best effort)
2) JSON-mode plan request against the primary model (fallback model on 400/404)
3) Field-wise plan validation; one corrective retry when the JSON is unusable
"""
from __future__ import annotations

import json
import logging
import re
import time
import unicodedata
from datetime import date
from typing import Any, Dict, Optional

from langchain_core.prompts import ChatPromptTemplate
from pydantic import ValidationError

from expense_chat.config import EXPENSES_TABLE, MAX_LIMIT
from expense_chat.services.llm import LLMClient, LLMError, complete_with_fallback
from expense_chat.services.plan_validator import UnsafePlanError, parse_select
from expense_chat.services.runtime import log_event
from expense_chat.services.schema import QueryPlan, describe_schema
from expense_chat.services.scope import Scope

logger = logging.getLogger(__name__)

MAX_PLAN_ATTEMPTS = 2
JSON_REMINDER = "\nRemember: return valid JSON only."


# ---------------------------
# Prompt constants
# ---------------------------

PLANNER_SYSTEM_PROMPT = """You are a senior SQL planner for a personal finance assistant.
Return JSON only, matching exactly this shape:
{{
  "intent": "aggregation" | "lookup" | "ranking",
  "since": "YYYY-MM-DD",
  "until": "YYYY-MM-DD",
  "dimensions": ["category" | "merchant" | "date"],
  "metrics": ["sum" | "avg" | "max" | "min" | "count"],
  "filters": [{{"column": "category|merchant|currency|amount|notes", "op": "=|!=|>|<|>=|<=|ILIKE", "value": "..."}}],
  "order": [{{"by": "...", "direction": "ASC" | "DESC"}}],
  "limit": 50,
  "sql": "SELECT ..."
}}

Schema:
{schema}

Rules:
- Only SELECT from {table}. No joins, subqueries, CTEs, DDL or DML.
- Allowed clauses: SELECT, WHERE, GROUP BY, ORDER BY, LIMIT.
- List columns explicitly, never use *.
- Never filter on trip_id or user_id; access scope is applied by the server.
- LIMIT must not exceed {max_limit}.
- Aggregates allowed: SUM, AVG, MIN, MAX, COUNT(column).
- Any aggregate must also select and GROUP BY currency.
- Respect the since/until window from the context.
- Never convert or add together amounts in different currencies.
- Rankings sort DESC with LIMIT <= 50.
- Output valid JSON only, no prose and no code fences.
"""

TRANSLATE_SYSTEM_PROMPT = (
    "Translate the user's question about their expenses into English. "
    "Keep merchant names, amounts and dates unchanged. Return only the translated question."
)

PLANNER_PROMPT = ChatPromptTemplate.from_messages(
    [("system", PLANNER_SYSTEM_PROMPT), ("human", "{request}")]
)
TRANSLATE_PROMPT = ChatPromptTemplate.from_messages(
    [("system", TRANSLATE_SYSTEM_PROMPT), ("human", "{question}")]
)


class PlanningError(RuntimeError):
    pass


class PlanParseError(ValueError):
    pass


def _strip_fence(text: str) -> str:
    raw = (text or "").strip()
    m = re.search(r"```(?:json)?\s*(.*?)```", raw, flags=re.IGNORECASE | re.DOTALL)
    return m.group(1).strip() if m else raw


def _extract_json(text: str) -> Optional[Dict[str, Any]]:
    raw = _strip_fence(text)
    try:
        obj = json.loads(raw)
        return obj if isinstance(obj, dict) else None
    except ValueError:
        pass
    i = raw.find("{")
    j = raw.rfind("}")
    if i != -1 and j > i:
        try:
            obj = json.loads(raw[i:j + 1])
            return obj if isinstance(obj, dict) else None
        except ValueError:
            return None
    return None


def needs_translation(text: str) -> bool:
    """True when the text contains letters from a non-Latin script (Hebrew, Cyrillic, ...)."""
    for ch in text or "":
        if ch.isalpha() and not unicodedata.name(ch, "").startswith("LATIN"):
            return True
    return False


def parse_plan(raw: str) -> QueryPlan:
    payload = _extract_json(raw)
    if payload is None:
        raise PlanParseError("planner returned invalid JSON")
    try:
        plan = QueryPlan.model_validate(payload)
    except ValidationError as exc:
        raise PlanParseError(f"planner returned an invalid plan: {exc.error_count()} error(s)") from exc
    try:
        parse_select(plan.sql)
    except UnsafePlanError as exc:
        raise PlanParseError(f"planner returned invalid SQL: {exc}") from exc
    return plan


async def translate_question(question: str, llm: LLMClient) -> str:
    if not needs_translation(question):
        return question
    try:
        translated, _model = await complete_with_fallback(
            llm, TRANSLATE_PROMPT.format_messages(question=question), temperature=0.0
        )
    except LLMError:
        logger.warning("planner_translation_failed", exc_info=True)
        return question
    translated = (translated or "").strip()
    if not translated:
        return question
    log_event(logger, logging.INFO, "planner_translated", source_chars=len(question), target_chars=len(translated))
    return translated


async def generate_sql_plan(
    question: str,
    since: date,
    until: date,
    timezone: str,
    scope: Scope,
    *,
    llm: LLMClient,
) -> QueryPlan:
    started = time.perf_counter()
    text = await translate_question(question, llm)
    context = {
        "since": since.isoformat(),
        "until": until.isoformat(),
        "timezone": timezone,
        "scope": scope.column,
    }
    last_error: Optional[Exception] = None

    for attempt in range(MAX_PLAN_ATTEMPTS):
        prompt_question = text if attempt == 0 else text + JSON_REMINDER
        messages = PLANNER_PROMPT.format_messages(
            schema=describe_schema(),
            table=EXPENSES_TABLE,
            max_limit=MAX_LIMIT,
            request=json.dumps({"question": prompt_question, "context": context}, ensure_ascii=False),
        )
        try:
            raw, model = await complete_with_fallback(llm, messages, temperature=0.0, json_mode=True)
        except LLMError as exc:
            raise PlanningError(f"planner request failed: {exc}") from exc
        try:
            plan = parse_plan(raw)
        except PlanParseError as exc:
            last_error = exc
            log_event(logger, logging.WARNING, "planner_parse_failed", attempt=attempt + 1, error=str(exc))
            continue
        log_event(
            logger,
            logging.INFO,
            "planner_ok",
            attempt=attempt + 1,
            model=model,
            intent=plan.intent,
            filters=len(plan.filters),
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return plan

    raise PlanningError(f"planner failed after {MAX_PLAN_ATTEMPTS} attempts: {last_error}") from last_error
