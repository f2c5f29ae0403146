from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from expense_chat.services.auth import (
    TokenError,
    issue_scoped_token,
    verify_and_extract_user_id,
    verify_scoped_token,
)
from expense_chat.services.errors import ChatQueryError
from expense_chat.services.runtime import get_scope_hint, set_scope_hint
from expense_chat.services.scope import Scope, resolve_scope

TRIP_ID = "6f1c2d3e-4a5b-4c6d-8e9f-0a1b2c3d4e5f"
USER_ID = "11111111-2222-4333-8444-555555555555"
SECRET = "test-secret"


@pytest.fixture(autouse=True)
def _secret(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("AI_CHAT_AUTH_MODE", "anonymous")


def _expect(status, code, message, **kwargs):
    with pytest.raises(ChatQueryError) as exc:
        resolve_scope(**kwargs)
    assert (exc.value.status, exc.value.code, exc.value.message) == (status, code, message)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------
def test_scoped_token_round_trip():
    token = issue_scoped_token(USER_ID, trip_id=TRIP_ID)
    verified = verify_scoped_token(token)
    assert verified.subject == USER_ID
    assert verified.trip_id == TRIP_ID
    assert verified.user_id is None


def test_token_ttl_is_capped():
    issued = datetime(2025, 3, 1, tzinfo=timezone.utc)
    token = issue_scoped_token("guest", ttl_seconds=86400, now=issued)
    claims = jwt.get_unverified_claims(token)
    assert claims["exp"] - claims["iat"] == 900
    assert claims["scope"] == "ai_chat"


def test_expired_token_is_rejected():
    token = issue_scoped_token(USER_ID, ttl_seconds=1, now=datetime.now(timezone.utc) - timedelta(minutes=5))
    with pytest.raises(TokenError, match="expired"):
        verify_scoped_token(token)


def test_token_with_other_scope_is_rejected():
    token = jwt.encode({"sub": USER_ID, "scope": "admin"}, SECRET, algorithm="HS256")
    with pytest.raises(TokenError, match="scope"):
        verify_scoped_token(token)


def test_token_signed_with_other_secret_is_rejected():
    token = jwt.encode({"sub": USER_ID, "scope": "ai_chat"}, "other-secret", algorithm="HS256")
    with pytest.raises(TokenError):
        verify_scoped_token(token)


def test_missing_secret_fails_closed(monkeypatch):
    monkeypatch.delenv("JWT_SECRET")
    with pytest.raises(TokenError):
        issue_scoped_token(USER_ID)


def test_bearer_user_id_claims():
    assert verify_and_extract_user_id(jwt.encode({"sub": USER_ID}, SECRET, algorithm="HS256")) == USER_ID
    assert verify_and_extract_user_id(jwt.encode({"user_id": USER_ID}, SECRET, algorithm="HS256")) == USER_ID
    with pytest.raises(TokenError):
        verify_and_extract_user_id(jwt.encode({"role": "x"}, SECRET, algorithm="HS256"))


# ---------------------------------------------------------------------------
# Scope resolution
# ---------------------------------------------------------------------------
def test_explicit_ids_in_anonymous_mode():
    assert resolve_scope(trip_id=TRIP_ID.upper()) == Scope("trip_id", TRIP_ID)
    assert resolve_scope(user_id=USER_ID) == Scope("user_id", USER_ID)
    assert resolve_scope(trip_id=TRIP_ID, user_id=USER_ID).column == "trip_id"


def test_token_scope_takes_priority_over_ids():
    token = issue_scoped_token("guest", user_id=USER_ID)
    assert resolve_scope(token=token, trip_id=TRIP_ID) == Scope("user_id", USER_ID)


def test_token_subject_is_used_when_no_scope_claim():
    token = issue_scoped_token(USER_ID)
    assert resolve_scope(token=token) == Scope("user_id", USER_ID)


def test_guest_token_without_scope_falls_back_to_ids_in_jwt_mode():
    token = issue_scoped_token("guest")
    assert resolve_scope(token=token, trip_id=TRIP_ID, auth_mode="jwt") == Scope("trip_id", TRIP_ID)
    _expect(401, "RLS-401", "Token does not grant a trip or user scope", token=token, auth_mode="jwt")


def test_bearer_header_scope():
    bearer = jwt.encode({"sub": USER_ID}, SECRET, algorithm="HS256")
    assert resolve_scope(authorization=f"Bearer {bearer}", auth_mode="jwt") == Scope("user_id", USER_ID)
    _expect(401, "RLS-401", "Invalid authorization header", authorization="Basic abc")


def test_invalid_token_is_unauthorized():
    _expect(401, "RLS-401", "Invalid or expired token", token="not-a-jwt", trip_id=TRIP_ID)


def test_jwt_mode_requires_a_token():
    _expect(401, "RLS-401", "Authentication token required", trip_id=TRIP_ID, auth_mode="jwt")


def test_missing_and_malformed_ids():
    _expect(400, "AI-400", "tripId or userId required")
    _expect(400, "AI-400", "Invalid id format", trip_id="12345")


def test_scope_hint_masks_the_id():
    assert set_scope_hint("trip_id", TRIP_ID) == "trip_id:...4e5f"
    assert get_scope_hint() == "trip_id:...4e5f"
