import asyncio
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from chatstream.security.auth import (
    GUEST_USER_ID,
    JwtConfig,
    User,
    create_access_token,
    decode_token,
    get_current_user,
)
from chatstream.security.identity import InMemoryIdentityProvider


def _creds(token):
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def test_token_round_trip_keeps_profile():
    cfg = JwtConfig(secret="unit-test-secret")
    user = User(user_id="u-42", email="ada@example.com", display_name="Ada", photo_url="https://img/ada.png")

    decoded = decode_token(create_access_token(user, cfg), cfg)

    assert decoded == user


def test_decode_token_expired():
    cfg = JwtConfig(secret="unit-test-secret", expires_min=1)
    now = datetime.now(timezone.utc)
    payload = {
        "sub": "u-1",
        "iat": int((now - timedelta(minutes=10)).timestamp()),
        "exp": int((now - timedelta(minutes=5)).timestamp()),
    }
    token = jwt.encode(payload, cfg.secret, algorithm=cfg.algorithm)

    with pytest.raises(HTTPException) as info:
        decode_token(token, cfg)
    assert info.value.status_code == 401
    assert info.value.detail == "Token expired"


def test_missing_token_rejected_outside_public_mode(monkeypatch):
    monkeypatch.setenv("CHAT_PUBLIC_MODE", "false")
    with pytest.raises(HTTPException) as info:
        get_current_user(None)
    assert info.value.status_code == 401


def test_public_mode_tolerates_missing_and_invalid_tokens(monkeypatch):
    monkeypatch.setenv("CHAT_PUBLIC_MODE", "1")
    assert get_current_user(None).user_id == GUEST_USER_ID
    assert get_current_user(_creds("not-a-real-token")).user_id == GUEST_USER_ID


def test_valid_token_resolves_user(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "api-secret")
    token = create_access_token(User(user_id="u-7"))
    assert get_current_user(_creds(token)).user_id == "u-7"


@pytest.mark.asyncio
async def test_identity_provider_streams_auth_changes():
    identity = InMemoryIdentityProvider()
    changes = identity.auth_state_changes()

    assert await changes.__anext__() is None
    identity.sign_in(User(user_id="u-1"))
    assert (await asyncio.wait_for(changes.__anext__(), timeout=1)).user_id == "u-1"
    identity.sign_out()
    assert await asyncio.wait_for(changes.__anext__(), timeout=1) is None
    assert identity.current_user is None
    await changes.aclose()


@pytest.mark.asyncio
async def test_identity_subscriber_sees_current_user_first():
    identity = InMemoryIdentityProvider(User(user_id="u-9"))
    changes = identity.auth_state_changes()
    assert (await changes.__anext__()).user_id == "u-9"
    await changes.aclose()
