"""Bearer token verification."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from usagecredits.auth.jwt import _load_private_key, create_access_token, verify_token


def _sign(payload: dict) -> str:
    return jwt.encode(payload, _load_private_key(), algorithm="RS256")


def test_round_trip_carries_subject_and_role():
    payload = verify_token(create_access_token("user-42", role="admin"))
    assert payload["sub"] == "user-42"
    assert payload["role"] == "admin"


def test_expired_token_rejected():
    now = datetime.now(timezone.utc)
    token = _sign({
        "sub": "u", "type": "access", "iss": "usagecredits",
        "iat": now - timedelta(hours=2), "exp": now - timedelta(hours=1),
    })
    with pytest.raises(jwt.InvalidTokenError, match="expired"):
        verify_token(token)


def test_wrong_issuer_rejected():
    now = datetime.now(timezone.utc)
    token = _sign({"sub": "u", "type": "access", "iss": "someone-else", "exp": now + timedelta(minutes=5)})
    with pytest.raises(jwt.InvalidTokenError):
        verify_token(token)


def test_refresh_token_rejected_as_access():
    now = datetime.now(timezone.utc)
    token = _sign({"sub": "u", "type": "refresh", "iss": "usagecredits", "exp": now + timedelta(minutes=5)})
    with pytest.raises(jwt.InvalidTokenError, match="token type"):
        verify_token(token)


def test_missing_subject_rejected():
    now = datetime.now(timezone.utc)
    token = _sign({"type": "access", "iss": "usagecredits", "exp": now + timedelta(minutes=5)})
    with pytest.raises(jwt.InvalidTokenError):
        verify_token(token)
