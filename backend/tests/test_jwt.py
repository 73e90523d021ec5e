"""Tests for JWT signing and verification"""
from datetime import datetime, timezone

import pytest
from jose import jwt

from app.config import settings
from app.exceptions import InvalidToken
from app.models.user import User
from app.utils.jwt_utils import (
    build_user_claims,
    create_user_token,
    decode_user_token,
    get_private_key,
)


@pytest.fixture
def user() -> User:
    user = User(email="Carol@Example.com", password="hash", roles=["ROLE_ADMIN"])
    user.id = 42
    return user


def test_claims_carry_user_identity(user: User):
    claims = build_user_claims(user, now=1000, expires_in=60)

    assert claims["sub"] == "42"
    assert claims["user_id"] == 42
    assert claims["email"] == "carol@example.com"
    assert claims["roles"] == ["ROLE_ADMIN", "ROLE_USER"]
    assert claims["iat"] == 1000
    assert claims["exp"] == 1060
    assert claims["jti"]
    assert "username" not in claims


def test_tokens_are_unique_per_issue(user: User):
    first, _ = create_user_token(user)
    second, _ = create_user_token(user)
    assert first != second


def test_decode_round_trip(user: User):
    token, expires_in = create_user_token(user)

    claims = decode_user_token(token)
    assert claims["user_id"] == 42
    assert expires_in == settings.JWT_ACCESS_EXPIRE_SECONDS


def test_decode_rejects_expired_token(user: User):
    past = int(datetime.now(timezone.utc).timestamp()) - 7200
    claims = build_user_claims(user, now=past, expires_in=60)
    token = jwt.encode(claims, get_private_key(), algorithm=settings.JWT_ALGORITHM)

    with pytest.raises(InvalidToken):
        decode_user_token(token)


def test_decode_rejects_tampered_token(user: User):
    token, _ = create_user_token(user)
    header, payload, signature = token.split(".")
    tampered = ".".join([header, payload, signature[::-1]])

    with pytest.raises(InvalidToken):
        decode_user_token(tampered)


def test_decode_rejects_missing_claims():
    now = int(datetime.now(timezone.utc).timestamp())
    token = jwt.encode({"sub": "1", "exp": now + 60}, get_private_key(), algorithm=settings.JWT_ALGORITHM)

    with pytest.raises(InvalidToken) as exc_info:
        decode_user_token(token)
    assert "user_id" in exc_info.value.message
