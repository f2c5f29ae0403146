"""
Request context for structured logs:
- request id propagated from / echoed to `x-request-id`
- masked scope hint (last 4 chars of the trip/user id) once the scope is known
"""
from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

_REQUEST_ID: ContextVar[str] = ContextVar("request_id", default="-")
_SCOPE_HINT: ContextVar[str] = ContextVar("scope_hint", default="-")


def get_request_id() -> str:
    return _REQUEST_ID.get() or "-"


def get_scope_hint() -> str:
    return _SCOPE_HINT.get() or "-"


def set_request_id(request_id: Optional[str]) -> str:
    rid = (request_id or "").strip() or str(uuid.uuid4())
    _REQUEST_ID.set(rid)
    return rid


def set_scope_hint(column: str, scope_id: str) -> str:
    hint = f"{column}:...{(scope_id or '')[-4:]}" if scope_id else "-"
    _SCOPE_HINT.set(hint)
    return hint


def clear_context() -> None:
    _REQUEST_ID.set("-")
    _SCOPE_HINT.set("-")


def structured_fields(**extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "request_id": get_request_id(),
        "scope": get_scope_hint(),
    }
    payload.update(extra)
    return payload


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    payload = structured_fields(event=event, **fields)
    logger.log(level, json.dumps(payload, default=str, ensure_ascii=True))
