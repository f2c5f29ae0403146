"""HS256 scoped chat tokens (python-jose). Only the verify side is used by requests."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError

from expense_chat.config import TOKEN_TTL_DEFAULT_S, TOKEN_TTL_MAX_S, get_jwt_secret

TOKEN_SCOPE = "ai_chat"
ALGORITHM = "HS256"
GUEST_SUBJECT = "guest"


class TokenError(Exception):
    pass


@dataclass(frozen=True)
class VerifiedToken:
    subject: str
    trip_id: Optional[str] = None
    user_id: Optional[str] = None


def _secret() -> str:
    secret = get_jwt_secret()
    if not secret:
        raise TokenError("JWT_SECRET is not configured")
    return secret


def issue_scoped_token(
    subject: str,
    *,
    trip_id: Optional[str] = None,
    user_id: Optional[str] = None,
    ttl_seconds: int = TOKEN_TTL_DEFAULT_S,
    now: Optional[datetime] = None,
) -> str:
    ttl = max(1, min(int(ttl_seconds), TOKEN_TTL_MAX_S))
    issued = int((now or datetime.now(timezone.utc)).timestamp())
    claims: Dict[str, Any] = {
        "sub": subject or GUEST_SUBJECT,
        "scope": TOKEN_SCOPE,
        "iat": issued,
        "exp": issued + ttl,
    }
    if trip_id:
        claims["tripId"] = trip_id
    if user_id:
        claims["userId"] = user_id
    return jwt.encode(claims, _secret(), algorithm=ALGORITHM)


def _decode(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, _secret(), algorithms=[ALGORITHM], options={"verify_aud": False})
    except ExpiredSignatureError as exc:
        raise TokenError("token expired") from exc
    except JWTError as exc:
        raise TokenError("invalid token") from exc


def verify_scoped_token(token: str) -> VerifiedToken:
    claims = _decode(token)
    if claims.get("scope") != TOKEN_SCOPE:
        raise TokenError("token scope mismatch")
    subject = str(claims.get("sub") or "")
    if not subject:
        raise TokenError("token subject missing")
    return VerifiedToken(
        subject=subject,
        trip_id=str(claims["tripId"]) if claims.get("tripId") else None,
        user_id=str(claims["userId"]) if claims.get("userId") else None,
    )


def verify_and_extract_user_id(token: str) -> str:
    """Verify an app session bearer token and return its user id (`sub` or `user_id`)."""
    claims = _decode(token)
    user_id = claims.get("sub") or claims.get("user_id")
    if not user_id:
        raise TokenError("token has no user id")
    return str(user_id)
