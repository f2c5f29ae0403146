"""Execution scope: the single trip_id / user_id predicate every query is pinned to."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Literal, Optional

from expense_chat.config import get_auth_mode
from expense_chat.services.auth import GUEST_SUBJECT, TokenError, VerifiedToken, verify_and_extract_user_id, verify_scoped_token
from expense_chat.services.errors import auth_error, input_error
from expense_chat.services.runtime import log_event

logger = logging.getLogger(__name__)

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
ScopeColumn = Literal["trip_id", "user_id"]


@dataclass(frozen=True)
class Scope:
    column: ScopeColumn
    id: str

    @property
    def last4(self) -> str:
        return self.id[-4:]


def normalize_uuid(value: Optional[str]) -> Optional[str]:
    text = (value or "").strip()
    if not text:
        return None
    if not UUID_RE.match(text):
        raise input_error("Invalid id format")
    return text.lower()


def scope_from_token(verified: VerifiedToken) -> Optional[Scope]:
    if verified.trip_id:
        return Scope("trip_id", verified.trip_id)
    if verified.user_id:
        return Scope("user_id", verified.user_id)
    if verified.subject and verified.subject != GUEST_SUBJECT:
        return Scope("user_id", verified.subject)
    return None


def _token_scope(token: str) -> tuple:
    try:
        verified = verify_scoped_token(token)
    except TokenError as exc:
        log_event(logger, logging.WARNING, "scope_token_rejected", reason=str(exc))
        raise auth_error("Invalid or expired token") from exc
    scope = scope_from_token(verified)
    if scope is not None and not UUID_RE.match(scope.id):
        raise auth_error("Invalid or expired token")
    return verified, scope


def _bearer_scope(authorization: str) -> Scope:
    if not authorization.startswith("Bearer "):
        raise auth_error("Invalid authorization header")
    try:
        user_id = verify_and_extract_user_id(authorization[7:].strip())
    except TokenError as exc:
        log_event(logger, logging.WARNING, "scope_bearer_rejected", reason=str(exc))
        raise auth_error("Invalid or expired token") from exc
    if not UUID_RE.match(user_id):
        raise auth_error("Invalid or expired token")
    return Scope("user_id", user_id.lower())


def resolve_scope(
    *,
    token: Optional[str] = None,
    authorization: Optional[str] = None,
    trip_id: Optional[str] = None,
    user_id: Optional[str] = None,
    auth_mode: Optional[str] = None,
) -> Scope:
    """Pick the request scope: scoped token, then bearer header, then explicit ids.

    Explicit ids are only honoured in anonymous mode or alongside a verified token.
    """
    mode = auth_mode or get_auth_mode()
    token = (token or "").strip()
    authorization = (authorization or "").strip()

    verified = None
    if token:
        verified, scope = _token_scope(token)
        if scope is not None:
            return scope
    if authorization:
        return _bearer_scope(authorization)

    if mode == "jwt" and verified is None:
        raise auth_error("Authentication token required")

    trip = normalize_uuid(trip_id)
    if trip:
        return Scope("trip_id", trip)
    user = normalize_uuid(user_id)
    if user:
        return Scope("user_id", user)

    if mode == "jwt":
        raise auth_error("Token does not grant a trip or user scope")
    raise input_error("tripId or userId required")
