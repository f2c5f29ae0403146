"""
Plan execution.

The planner's SQL text is only validated, never run. The statement sent to the
database is rebuilt here from typed plan fields, with the scope and date
predicates always injected by the server.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from expense_chat.config import EXPENSES_TABLE, MAX_LIMIT
from expense_chat.services.db import ExpenseStore
from expense_chat.services.plan_validator import ensure_safe
from expense_chat.services.runtime import log_event
from expense_chat.services.schema import (
    Aggregates,
    CategoryTotal,
    CurrencyTotal,
    ExecutionResult,
    ExpenseRow,
    FILTER_COLUMNS,
    MaxExpense,
    MerchantTotal,
    PlanFilter,
    QueryPlan,
)
from expense_chat.services.scope import Scope
from expense_chat.services.sql_guard import PreparedStatement, prepare, sanitize_values

logger = logging.getLogger(__name__)

ROW_COLUMNS = "date, amount, currency, category, merchant, notes"
SCOPE_COLUMNS = frozenset({"trip_id", "user_id"})
AMOUNT_ORDER_HINTS = ("amount", "sum", "max", "total", "avg")
TOP_GROUPS = 20
UNCATEGORIZED = "Uncategorized"


class QueryExecutionError(RuntimeError):
    """A database failure, carrying the statement and values that were sent."""

    def __init__(self, message: str, sql: str, values: Sequence[Any]):
        super().__init__(message)
        self.sql = sql
        self.values = list(values)

    @property
    def sanitized_values(self) -> List[Any]:
        return sanitize_values(self.values)


@dataclass(frozen=True)
class ExecutionContext:
    scope: Scope
    since: date
    until: date
    preview_limit: Optional[int] = None


# ---------------------------------------------------------------------------
# Row mapping & aggregates
# ---------------------------------------------------------------------------
def _date_text(value: Any, fallback: date) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    if value:
        return str(value)[:10]
    return fallback.isoformat()


def _amount(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_row(raw: Mapping[str, Any], fallback_date: date) -> ExpenseRow:
    return ExpenseRow(
        date=_date_text(raw.get("date"), fallback_date),
        amount=_amount(raw.get("amount")),
        currency=str(raw.get("currency") or "").strip(),
        category=_optional_text(raw.get("category")),
        merchant=_optional_text(raw.get("merchant")),
        notes=_optional_text(raw.get("notes")),
    )


def compute_aggregates(rows: Sequence[ExpenseRow], counts: Optional[Sequence[int]] = None) -> Aggregates:
    """Currency-partitioned summary of a result set.

    `counts` weights each row when rows are pre-grouped (template results);
    the max expense is only reported for ungrouped rows.
    """
    weights = list(counts) if counts is not None else [1] * len(rows)
    currencies: Dict[str, List[float]] = {}
    categories: Dict[Tuple[str, str], List[float]] = {}
    merchants: Dict[Tuple[str, str], List[float]] = {}
    top: Optional[ExpenseRow] = None

    for row, weight in zip(rows, weights):
        bucket = currencies.setdefault(row.currency, [0.0, 0])
        bucket[0] += row.amount
        bucket[1] += weight

        cat = categories.setdefault((row.currency, row.category or UNCATEGORIZED), [0.0, 0])
        cat[0] += row.amount
        cat[1] += weight

        if row.merchant:
            merch = merchants.setdefault((row.currency, row.merchant), [0.0, 0])
            merch[0] += row.amount
            merch[1] += weight

        if top is None or row.amount > top.amount:
            top = row

    totals = [
        CurrencyTotal(
            currency=currency,
            total=round(total, 2),
            avg=round(total / count, 2) if count else 0.0,
            count=int(count),
        )
        for currency, (total, count) in currencies.items()
    ]
    by_category = sorted(
        (CategoryTotal(category=name, currency=currency, total=round(total, 2), count=int(count))
         for (currency, name), (total, count) in categories.items()),
        key=lambda item: item.total,
        reverse=True,
    )[:TOP_GROUPS]
    by_merchant = sorted(
        (MerchantTotal(merchant=name, currency=currency, total=round(total, 2), count=int(count))
         for (currency, name), (total, count) in merchants.items()),
        key=lambda item: item.total,
        reverse=True,
    )[:TOP_GROUPS]

    single = totals[0] if len(totals) == 1 else None
    note = None
    if len(totals) > 1:
        names = ", ".join(t.currency for t in totals)
        note = f"Found {len(totals)} currencies ({names}). Totals are reported per currency."

    max_row = None
    if counts is None and top is not None:
        max_row = MaxExpense(amount=top.amount, currency=top.currency, merchant=top.merchant, date=top.date)

    return Aggregates(
        total=single.total if single else None,
        avg=single.avg if single else None,
        count=int(sum(weights)),
        max=max_row,
        totals_by_currency=totals,
        by_category=by_category,
        by_merchant=by_merchant,
        currency_note=note,
    )


# ---------------------------------------------------------------------------
# Statement building
# ---------------------------------------------------------------------------
def scope_predicate(scope: Scope) -> str:
    if scope.column not in SCOPE_COLUMNS:
        raise ValueError(f"unsupported scope column: {scope.column}")
    return f"{scope.column} = :scope_id AND date BETWEEN :since AND :until"


def base_params(context: ExecutionContext) -> Dict[str, Any]:
    return {"scope_id": context.scope.id, "since": context.since, "until": context.until}


def _filter_value(item: PlanFilter) -> Optional[Any]:
    value = item.value
    if item.column == "amount":
        if item.op == "ILIKE":
            return None
        try:
            number = Decimal(str(value))
        except InvalidOperation:
            return None
        return number if number.is_finite() else None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    if not text:
        return None
    if item.op == "ILIKE":
        return text if "%" in text else f"%{text}%"
    if item.column == "currency":
        return text.upper()
    return text


def resolve_order(plan: QueryPlan) -> str:
    if plan.order:
        entry = plan.order[0]
        by = entry.by.lower()
        if any(hint in by for hint in AMOUNT_ORDER_HINTS):
            return f"amount {entry.direction}"
        if "date" in by:
            return f"date {entry.direction}"
    return "amount DESC" if plan.intent == "ranking" else "date DESC"


def effective_limit(plan: QueryPlan, validator_limit: int, preview_limit: Optional[int] = None) -> int:
    return max(1, min(plan.limit or validator_limit, validator_limit, preview_limit or MAX_LIMIT, MAX_LIMIT))


def build_plan_query(plan: QueryPlan, context: ExecutionContext, limit: int) -> Tuple[str, Dict[str, Any]]:
    params = base_params(context)
    clauses = [scope_predicate(context.scope)]
    for item in plan.filters:
        if item.column not in FILTER_COLUMNS:
            continue
        value = _filter_value(item)
        if value is None:
            continue
        name = f"filter_{len(params) - 3}"
        params[name] = value
        clauses.append(f"{item.column} {item.op} :{name}")
    sql = (
        f"SELECT {ROW_COLUMNS}\n"
        f"FROM {EXPENSES_TABLE}\n"
        f"WHERE {' AND '.join(clauses)}\n"
        f"ORDER BY {resolve_order(plan)}\n"
        f"LIMIT {int(limit)}"
    )
    return sql, params


async def fetch_named(
    store: ExpenseStore, sql: str, params: Mapping[str, Any]
) -> Tuple[List[Dict[str, Any]], PreparedStatement]:
    prepared = prepare(sql, params)
    try:
        rows = await store.fetch(prepared.sql, prepared.values)
    except Exception as exc:
        raise QueryExecutionError(str(exc) or exc.__class__.__name__, prepared.sql, prepared.values) from exc
    return rows, prepared


async def execute_plan(plan: QueryPlan, context: ExecutionContext, *, store: ExpenseStore) -> ExecutionResult:
    safety = ensure_safe(plan.sql)
    limit = effective_limit(plan, safety.limit, context.preview_limit)
    sql, params = build_plan_query(plan, context, limit)
    raw_rows, prepared = await fetch_named(store, sql, params)
    rows = [normalize_row(raw, context.until) for raw in raw_rows]
    log_event(
        logger,
        logging.INFO,
        "plan_executed",
        intent=plan.intent,
        limit=limit,
        rows=len(rows),
        params=sanitize_values(prepared.values),
    )
    return ExecutionResult(
        rows=rows,
        aggregates=compute_aggregates(rows),
        sql=prepared.sql,
        params=list(prepared.values),
    )
