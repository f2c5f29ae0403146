"""Typed shapes shared by the planner, executor, templates and the API payloads."""
from __future__ import annotations

import math
from datetime import date
from typing import Any, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from expense_chat.config import EXPENSES_TABLE, MAX_LIMIT

EXPENSE_COLUMNS = (
    ("id", "uuid"),
    ("user_id", "uuid"),
    ("trip_id", "uuid"),
    ("date", "date"),
    ("amount", "numeric"),
    ("currency", "text"),
    ("category", "text"),
    ("merchant", "text"),
    ("notes", "text"),
    ("created_at", "timestamptz"),
)
DIMENSIONS = ("category", "merchant", "date")
METRICS = ("sum", "avg", "max", "min", "count")
FILTER_COLUMNS = ("category", "merchant", "currency", "amount", "notes")
FILTER_OPERATORS = ("=", "!=", ">", "<", ">=", "<=", "ILIKE")

Intent = Literal["aggregation", "lookup", "ranking"]
FallbackReason = Literal["planner_error", "db_error"]


def describe_schema() -> str:
    cols = "\n".join(f"  {name} {sql_type}" for name, sql_type in EXPENSE_COLUMNS)
    return f"{EXPENSES_TABLE}(\n{cols}\n)"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# ---------------------------------------------------------------------------
# Query plan
# ---------------------------------------------------------------------------
class PlanFilter(CamelModel):
    column: Literal["category", "merchant", "currency", "amount", "notes"]
    op: Literal["=", "!=", ">", "<", ">=", "<=", "ILIKE"] = Field(validation_alias=AliasChoices("op", "operator"))
    value: Union[str, float]

    @field_validator("op", mode="before")
    @classmethod
    def _upper_op(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("value", mode="before")
    @classmethod
    def _scalar_value(cls, value: Any) -> Any:
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise ValueError("filter value must be a string or number")
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError("filter value must be finite")
        return value


class PlanOrder(CamelModel):
    by: str = Field(min_length=1)
    direction: Literal["ASC", "DESC"] = Field(validation_alias=AliasChoices("direction", "dir"))

    @field_validator("by", mode="before")
    @classmethod
    def _strip_by(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("direction", mode="before")
    @classmethod
    def _upper_direction(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


def _keep_valid(model: type, items: Any) -> list:
    if not isinstance(items, list):
        return []
    kept = []
    for item in items:
        try:
            kept.append(model.model_validate(item))
        except ValidationError:
            continue
    return kept


class QueryPlan(CamelModel):
    intent: Intent
    since: date
    until: date
    sql: str = Field(min_length=1)
    dimensions: List[str] = Field(default_factory=list)
    metrics: List[str] = Field(default_factory=list)
    filters: List[PlanFilter] = Field(default_factory=list)
    order: List[PlanOrder] = Field(default_factory=list)
    limit: int = MAX_LIMIT

    @field_validator("intent", mode="before")
    @classmethod
    def _lower_intent(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("since", "until", mode="before")
    @classmethod
    def _iso_only(cls, value: Any) -> Any:
        if isinstance(value, str):
            return date.fromisoformat(value.strip()[:10])
        return value

    @field_validator("dimensions", mode="before")
    @classmethod
    def _known_dimensions(cls, value: Any) -> List[str]:
        return _known_values(value, DIMENSIONS)

    @field_validator("metrics", mode="before")
    @classmethod
    def _known_metrics(cls, value: Any) -> List[str]:
        return _known_values(value, METRICS)

    @field_validator("filters", mode="before")
    @classmethod
    def _valid_filters(cls, value: Any) -> list:
        return _keep_valid(PlanFilter, value)

    @field_validator("order", mode="before")
    @classmethod
    def _valid_order(cls, value: Any) -> list:
        return _keep_valid(PlanOrder, value)

    @field_validator("limit", mode="before")
    @classmethod
    def _clamp_limit(cls, value: Any) -> int:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return MAX_LIMIT
        if isinstance(value, bool) or not math.isfinite(number) or number < 1:
            return MAX_LIMIT
        return min(int(number), MAX_LIMIT)

    @model_validator(mode="after")
    def _ordered_bounds(self) -> "QueryPlan":
        if self.since > self.until:
            raise ValueError("plan since is after until")
        return self


def _known_values(value: Any, allowed: tuple) -> List[str]:
    if not isinstance(value, list):
        return []
    out: List[str] = []
    for item in value:
        if isinstance(item, str) and item.strip().lower() in allowed and item.strip().lower() not in out:
            out.append(item.strip().lower())
    return out


# ---------------------------------------------------------------------------
# Execution results
# ---------------------------------------------------------------------------
class ExpenseRow(CamelModel):
    date: str
    amount: float
    currency: str
    category: Optional[str] = None
    merchant: Optional[str] = None
    notes: Optional[str] = None


class MaxExpense(CamelModel):
    amount: float
    currency: str
    merchant: Optional[str] = None
    date: str


class CurrencyTotal(CamelModel):
    currency: str
    total: float
    avg: float
    count: int


class CategoryTotal(CamelModel):
    category: str
    currency: str
    total: float
    count: int


class MerchantTotal(CamelModel):
    merchant: str
    currency: str
    total: float
    count: int


class Aggregates(CamelModel):
    total: Optional[float] = None
    avg: Optional[float] = None
    count: int = 0
    max: Optional[MaxExpense] = None
    totals_by_currency: List[CurrencyTotal] = Field(default_factory=list)
    by_category: List[CategoryTotal] = Field(default_factory=list)
    by_merchant: List[MerchantTotal] = Field(default_factory=list)
    currency_note: Optional[str] = None


class ExecutionResult(CamelModel):
    rows: List[ExpenseRow]
    aggregates: Aggregates
    sql: str
    params: List[Any] = Field(default_factory=list, exclude=True)


class TimeRange(CamelModel):
    since: str
    until: str
    tz: str


class ChatResultPayload(CamelModel):
    answer: str
    model: str
    provider: str
    plan: Optional[QueryPlan] = None
    used_fallback: bool
    fallback_reason: Optional[FallbackReason] = None
    sql: str
    time_range: TimeRange
    aggregates: Aggregates
    rows: List[ExpenseRow]
    currency_note: Optional[str] = None
