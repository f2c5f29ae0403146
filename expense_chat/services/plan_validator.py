"""
AST allow-list for planner-proposed SQL.

The planner's SQL text is never executed. It is parsed here only to prove the
plan has a safe shape (single SELECT over ai_expenses, known columns, plain
aggregates, no params or subqueries) and to learn its LIMIT. Anything this
walker does not recognise is rejected.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Set

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

from expense_chat.config import EXPENSES_TABLE, MAX_LIMIT

ALLOWED_COLUMNS = frozenset({"date", "amount", "currency", "category", "merchant", "notes"})
ALLOWED_CLAUSES = frozenset({"expressions", "from", "from_", "where", "group", "order", "limit"})
AGGREGATES = (exp.Sum, exp.Avg, exp.Max, exp.Min, exp.Count)
PARAMETERS = (exp.Placeholder, exp.Parameter)
NESTED_QUERIES = tuple(
    cls for cls in (exp.Subquery, exp.Select, exp.Exists, getattr(exp, "SetOperation", None), exp.Union) if cls
)
LEAVES = (exp.Literal, exp.Boolean, exp.Null)
WRAPPERS = (exp.Not, exp.Paren, exp.Neg, exp.Ordered, exp.Alias)


class UnsafePlanError(ValueError):
    pass


@dataclass(frozen=True)
class SafetyResult:
    limit: int


@dataclass
class _WalkState:
    aliases: Set[str] = field(default_factory=set)
    qualifiers: Set[str] = field(default_factory=set)
    has_aggregate: bool = False


def parse_select(sql: str) -> exp.Select:
    """Parse exactly one SELECT statement or raise UnsafePlanError."""
    text = (sql or "").strip()
    if not text:
        raise UnsafePlanError("SQL is required")
    try:
        statements = [s for s in sqlglot.parse(text, read="postgres") if s is not None]
    except SqlglotError as exc:
        raise UnsafePlanError(f"Unable to parse SQL: {exc}") from exc
    if len(statements) != 1:
        raise UnsafePlanError("Exactly one statement is allowed")
    statement = statements[0]
    if not isinstance(statement, exp.Select):
        raise UnsafePlanError("Only SELECT statements are allowed")
    return statement


def _is_empty(value: Any) -> bool:
    return value is None or value is False or (isinstance(value, list) and not value)


def _check_source(select: exp.Select, state: _WalkState) -> None:
    from_node = select.args.get("from") or select.args.get("from_")
    if not isinstance(from_node, exp.From) or from_node.expressions:
        raise UnsafePlanError("Single FROM source required")
    source = from_node.this
    if not isinstance(source, exp.Table) or not isinstance(source.this, exp.Identifier):
        raise UnsafePlanError("Single FROM source required")
    for key in ("joins", "laterals", "pivots"):
        if not _is_empty(source.args.get(key)):
            raise UnsafePlanError("Single FROM source required")
    if source.db or source.catalog or source.name.lower() != EXPENSES_TABLE:
        raise UnsafePlanError(f"Only the {EXPENSES_TABLE} table may be queried")
    state.qualifiers.add(source.name.lower())
    if source.alias:
        state.qualifiers.add(source.alias.lower())


def _check_column(name: str, table: str, state: _WalkState) -> None:
    lowered = name.lower()
    if table and table.lower() not in state.qualifiers:
        raise UnsafePlanError(f"Column {table}.{name} is not allowed")
    if lowered not in ALLOWED_COLUMNS and lowered not in state.aliases:
        raise UnsafePlanError(f"Column {name} is not allowed")


def _inspect(node: Any, state: _WalkState) -> None:
    if node is None:
        return
    if isinstance(node, list):
        for item in node:
            _inspect(item, state)
        return
    if isinstance(node, exp.Star):
        raise UnsafePlanError("Wildcard selects are not permitted")
    if isinstance(node, PARAMETERS):
        raise UnsafePlanError("Parameterized statements are not supported in generated SQL")
    if isinstance(node, NESTED_QUERIES):
        raise UnsafePlanError("Subqueries are not permitted")
    if isinstance(node, exp.Column):
        if isinstance(node.this, exp.Star):
            raise UnsafePlanError("Wildcard selects are not permitted")
        _check_column(node.name, node.table, state)
        return
    if isinstance(node, exp.Var):
        _check_column(node.name, "", state)
        return
    if isinstance(node, AGGREGATES):
        state.has_aggregate = True
        target = node.this
        if isinstance(target, exp.Distinct):
            _inspect(target.expressions, state)
        else:
            _inspect(target, state)
        _inspect(node.expressions, state)
        return
    # AND/OR are also Func subclasses in recent sqlglot releases
    if isinstance(node, exp.Connector) or (isinstance(node, exp.Binary) and not isinstance(node, (exp.Dot, exp.Func))):
        _inspect(node.left, state)
        _inspect(node.right, state)
        return
    if isinstance(node, exp.Func):
        name = node.name if isinstance(node, exp.Anonymous) else node.key
        raise UnsafePlanError(f"Function {str(name).upper()} is not permitted")
    if isinstance(node, exp.Between):
        _inspect(node.this, state)
        _inspect(node.args.get("low"), state)
        _inspect(node.args.get("high"), state)
        return
    if isinstance(node, exp.In):
        if not _is_empty(node.args.get("query")) or not _is_empty(node.args.get("unnest")):
            raise UnsafePlanError("Subqueries are not permitted")
        _inspect(node.this, state)
        _inspect(node.expressions, state)
        return
    if isinstance(node, WRAPPERS):
        _inspect(node.this, state)
        return
    if isinstance(node, LEAVES):
        return
    raise UnsafePlanError(f"Unsupported expression type: {node.key}")


def _projects_currency(projection: exp.Expression) -> bool:
    if projection.alias_or_name.lower() == "currency":
        return True
    inner = projection.this if isinstance(projection, exp.Alias) else projection
    return isinstance(inner, exp.Column) and inner.name.lower() == "currency"


def _resolve_limit(select: exp.Select) -> int:
    node = select.args.get("limit")
    if node is None:
        return MAX_LIMIT
    if not isinstance(node, exp.Limit):
        raise UnsafePlanError("Unsupported LIMIT clause")
    value = node.args.get("expression") or node.this
    if isinstance(value, PARAMETERS):
        raise UnsafePlanError("Parameterized statements are not supported in generated SQL")
    if isinstance(value, exp.Literal) and value.is_int:
        requested = int(value.this)
        return min(requested, MAX_LIMIT) if requested > 0 else MAX_LIMIT
    return MAX_LIMIT


def ensure_safe(plan_or_sql: Any) -> SafetyResult:
    """Validate a plan's SQL shape and return the limit it implies (clamped)."""
    sql = plan_or_sql if isinstance(plan_or_sql, str) else getattr(plan_or_sql, "sql", "")
    select = parse_select(sql)

    for key, value in select.args.items():
        if key not in ALLOWED_CLAUSES and not _is_empty(value):
            raise UnsafePlanError(f"Unsupported clause: {key}")

    state = _WalkState()
    _check_source(select, state)

    projections = list(select.expressions)
    if not projections:
        raise UnsafePlanError("At least one column must be selected")
    for projection in projections:
        if isinstance(projection, exp.Alias) and projection.alias:
            state.aliases.add(projection.alias.lower())

    _inspect(projections, state)
    where = select.args.get("where")
    if where is not None:
        _inspect(where.this, state)
    group = select.args.get("group")
    if group is not None:
        _inspect(group.expressions, state)
    order = select.args.get("order")
    if order is not None:
        _inspect(order.expressions, state)

    if state.has_aggregate and not any(_projects_currency(p) for p in projections):
        raise UnsafePlanError("Aggregations must include currency column")

    return SafetyResult(limit=_resolve_limit(select))
