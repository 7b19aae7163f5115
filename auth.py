import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from jwt import PyJWTError

from config import settings
from errors import AuthenticationFailure
from store import ChatStore

logger = logging.getLogger(__name__)


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a signed bearer token for a user.

    The HTTP login endpoint and the socket handshake share this scheme: HS256
    with the configured secret, ``sub`` = user id, ``exp`` enforced on decode.
    """
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode: Dict[str, Any] = {"sub": str(user_id), "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: Optional[str]) -> str:
    """Verify signature and expiry and return the subject. Tokens without ``exp`` are rejected."""
    if not token:
        raise AuthenticationFailure("Authentication token missing")
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "sub"]},
        )
    except PyJWTError as exc:
        logger.warning(f"Rejected bearer token: {exc}")
        raise AuthenticationFailure("Authentication error") from exc
    subject = payload.get("sub")
    if not subject:
        raise AuthenticationFailure("Authentication error")
    return str(subject)


async def authenticate(token: Optional[str], store: ChatStore) -> Dict[str, Any]:
    """Resolve a bearer token to an existing user record."""
    user_id = decode_token(token)
    user = await store.get_user(user_id)
    if not user:
        raise AuthenticationFailure("User not found")
    return user


def bearer_from_header(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    scheme, _, credentials = value.partition(" ")
    if scheme.lower() != "bearer" or not credentials:
        return None
    return credentials.strip()
