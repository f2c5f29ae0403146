"""
Named-placeholder SQL -> positional (`$1`, `$2`, ...) statements for asyncpg,
plus redaction helpers for logging parameters.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

# A string literal (kept verbatim) or a `:name` placeholder that is not part of a `::type` cast.
_TOKEN_RE = re.compile(r"'(?:''|[^'])*'|(?<!:):([A-Za-z_][A-Za-z0-9_]*)")
_LITERAL_RE = re.compile(r"'(?:''|[^'])*'")
_SENSITIVE_KEY_RE = re.compile(r"id|token|secret", re.IGNORECASE)
MAX_LOGGED_STRING = 160
MASK = "***"


class SqlPreparationError(ValueError):
    def __init__(self, message: str, query: str, params: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.query = query
        self.params = dict(params or {})

    @property
    def sanitized_params(self) -> Dict[str, Any]:
        return sanitize_params(self.params)


@dataclass(frozen=True)
class PreparedStatement:
    sql: str
    values: Tuple[Any, ...]


def _strip_literals(sql: str) -> str:
    return _LITERAL_RE.sub("''", sql)


def prepare(sql: str, params_by_name: Mapping[str, Any]) -> PreparedStatement:
    """Convert `:name` placeholders to positional ones in first-seen order.

    Repeated names reuse the same index. Raises SqlPreparationError on `?`
    placeholders, missing or None values, or any unresolved `:name`.
    """
    if "?" in _strip_literals(sql):
        raise SqlPreparationError("Positional '?' placeholders are not supported", sql, params_by_name)

    indexes: Dict[str, int] = {}
    values: List[Any] = []

    def _replace(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name is None:
            return match.group(0)
        if name not in indexes:
            if name not in params_by_name:
                raise SqlPreparationError(f"Missing value for parameter :{name}", sql, params_by_name)
            value = params_by_name[name]
            if value is None:
                raise SqlPreparationError(f"Parameter :{name} is undefined", sql, params_by_name)
            values.append(value)
            indexes[name] = len(values)
        return f"${indexes[name]}"

    text = _TOKEN_RE.sub(_replace, sql)

    leftover = [m.group(1) for m in _TOKEN_RE.finditer(text) if m.group(1)]
    if leftover:
        raise SqlPreparationError(f"Unresolved parameter :{leftover[0]}", sql, params_by_name)
    return PreparedStatement(sql=text, values=tuple(values))


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, str):
        if len(value) > MAX_LOGGED_STRING:
            return value[: MAX_LOGGED_STRING - 3] + "..."
        return value
    if isinstance(value, float):
        return round(value, 6) if math.isfinite(value) else str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, int):
        return value
    return _sanitize_value(str(value))


def sanitize_params(params: Mapping[str, Any]) -> Dict[str, Any]:
    """Mask id/token/secret-like keys and shorten long strings. Diagnostics only."""
    out: Dict[str, Any] = {}
    for key, value in (params or {}).items():
        out[key] = MASK if _SENSITIVE_KEY_RE.search(str(key)) else _sanitize_value(value)
    return out


def sanitize_values(values: Sequence[Any]) -> List[Any]:
    """Positional variant: the first value is always the scope id and is masked."""
    return [MASK if idx == 0 else _sanitize_value(value) for idx, value in enumerate(values or [])]
