"""
Hand-written fallback queries used when planning or plan execution fails.
They bypass the planner and the plan validator and bind only scope and dates.
"""
from __future__ import annotations

import enum
import logging
import re
from typing import Any, Dict, List, Optional

from expense_chat.config import EXPENSES_TABLE
from expense_chat.services.db import ExpenseStore
from expense_chat.services.executor import (
    ROW_COLUMNS,
    ExecutionContext,
    base_params,
    compute_aggregates,
    fetch_named,
    normalize_row,
    scope_predicate,
)
from expense_chat.services.runtime import log_event
from expense_chat.services.schema import ExecutionResult, ExpenseRow, QueryPlan

logger = logging.getLogger(__name__)

TOTALS_LIMIT = 200
CATEGORY_LIMIT = 20
MERCHANT_LIMIT = 10

RANKING_RE = re.compile(r"highest|largest|biggest|\bmax|most expensive|יקר|הכי")
CATEGORY_RE = re.compile(r"categor|\btype|קטגור")
MERCHANT_RE = re.compile(r"merchant|vendor|store|shop|ספק|חנות")


class FallbackTemplate(str, enum.Enum):
    HIGHEST = "highest"
    CATEGORY = "category"
    MERCHANT = "merchant"
    TOTALS = "totals"


def select_fallback_template(question: str, plan: Optional[QueryPlan] = None) -> FallbackTemplate:
    """Pick a template from the plan intent and question keywords.

    Precedence: ranking > category > merchant > totals.
    """
    intent = plan.intent if plan is not None else ""
    text = f"{intent} {question or ''}".lower()
    if intent == "ranking" or RANKING_RE.search(text):
        return FallbackTemplate.HIGHEST
    if CATEGORY_RE.search(text):
        return FallbackTemplate.CATEGORY
    if MERCHANT_RE.search(text):
        return FallbackTemplate.MERCHANT
    return FallbackTemplate.TOTALS


def _rows_sql(order: str, limit: int, scope_sql: str) -> str:
    return (
        f"SELECT {ROW_COLUMNS}\n"
        f"FROM {EXPENSES_TABLE}\n"
        f"WHERE {scope_sql}\n"
        f"ORDER BY {order}\n"
        f"LIMIT {int(limit)}"
    )


def _grouped_sql(group_column: str, limit: int, scope_sql: str, extra_where: str = "") -> str:
    return (
        f"SELECT {group_column}, currency, SUM(amount) AS amount, COUNT(*) AS entries, MAX(date) AS date\n"
        f"FROM {EXPENSES_TABLE}\n"
        f"WHERE {scope_sql}{extra_where}\n"
        f"GROUP BY {group_column}, currency\n"
        f"ORDER BY amount DESC\n"
        f"LIMIT {int(limit)}"
    )


def template_sql(template: FallbackTemplate, context: ExecutionContext) -> str:
    scope_sql = scope_predicate(context.scope)
    if template is FallbackTemplate.HIGHEST:
        return _rows_sql("amount DESC", 1, scope_sql)
    if template is FallbackTemplate.CATEGORY:
        return _grouped_sql("category", CATEGORY_LIMIT, scope_sql)
    if template is FallbackTemplate.MERCHANT:
        return _grouped_sql("merchant", MERCHANT_LIMIT, scope_sql, " AND merchant IS NOT NULL")
    limit = min(context.preview_limit or TOTALS_LIMIT, TOTALS_LIMIT)
    return _rows_sql("date DESC", limit, scope_sql)


def _grouped_rows(raw_rows: List[Dict[str, Any]], template: FallbackTemplate, context: ExecutionContext) -> List[ExpenseRow]:
    rows = []
    for raw in raw_rows:
        row = normalize_row(raw, context.until)
        if template is FallbackTemplate.MERCHANT:
            row = row.model_copy(update={"merchant": row.merchant or "Unknown"})
        rows.append(row)
    return rows


async def run_fallback_template(
    template: FallbackTemplate,
    context: ExecutionContext,
    *,
    store: ExpenseStore,
) -> ExecutionResult:
    sql = template_sql(template, context)
    raw_rows, prepared = await fetch_named(store, sql, base_params(context))

    if template in (FallbackTemplate.CATEGORY, FallbackTemplate.MERCHANT):
        rows = _grouped_rows(raw_rows, template, context)
        counts = [int(raw.get("entries") or 0) for raw in raw_rows]
        aggregates = compute_aggregates(rows, counts)
    else:
        rows = [normalize_row(raw, context.until) for raw in raw_rows]
        aggregates = compute_aggregates(rows)

    log_event(logger, logging.INFO, "fallback_template_ok", template=template.value, rows=len(rows))
    return ExecutionResult(rows=rows, aggregates=aggregates, sql=prepared.sql, params=list(prepared.values))
