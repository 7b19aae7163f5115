from datetime import timedelta

import jwt
import pytest

from auth import authenticate, bearer_from_header, create_access_token, decode_token
from config import settings
from errors import AuthenticationFailure


def test_token_round_trip():
    token = create_access_token("abc123")

    assert decode_token(token) == "abc123"


@pytest.mark.parametrize(
    "token",
    [
        None,
        "",
        "not-a-jwt",
        jwt.encode({"sub": "abc123"}, "some-other-secret", algorithm="HS256"),
        jwt.encode({"exp": 4102444800}, settings.jwt_secret, algorithm="HS256"),
    ],
)
def test_bad_tokens_are_rejected(token):
    with pytest.raises(AuthenticationFailure):
        decode_token(token)


def test_token_without_expiry_is_rejected():
    token = jwt.encode({"sub": "abc123"}, settings.jwt_secret, algorithm="HS256")

    with pytest.raises(AuthenticationFailure):
        decode_token(token)


def test_expired_token_is_rejected():
    token = create_access_token("abc123", expires_delta=timedelta(seconds=-5))

    with pytest.raises(AuthenticationFailure):
        decode_token(token)


@pytest.mark.asyncio
async def test_authenticate_resolves_existing_user(store, users):
    user = await authenticate(create_access_token(users["Alice"]["_id"]), store)

    assert user["name"] == "Alice"


@pytest.mark.asyncio
async def test_authenticate_rejects_unknown_subject(store):
    with pytest.raises(AuthenticationFailure):
        await authenticate(create_access_token("0123456789abcdef01234567"), store)


def test_bearer_from_header():
    assert bearer_from_header("Bearer abc") == "abc"
    assert bearer_from_header("bearer  abc ") == "abc"
    assert bearer_from_header("Basic abc") is None
    assert bearer_from_header(None) is None
