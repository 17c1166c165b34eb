"""Bearer-token authentication for WebSocket handshakes and REST calls.

Tokens are HS256 JWTs carrying the user ID in an ``id`` claim. Every failure
mode (missing token, bad signature, expired, unknown claim shape, user no
longer stored) surfaces as the same ``AuthenticationError`` so a client
cannot tell a forged token from a deleted account.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from jwt import PyJWTError

from app.config import get_config
from app.users.schemas import UserPublic
from app.users.service import UserStore

logger = logging.getLogger(__name__)

AUTH_FAILED = "Authentication error"


class AuthenticationError(Exception):
    """Generic credential failure; the message never says why."""

    def __init__(self) -> None:
        super().__init__(AUTH_FAILED)


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Sign a token for ``user_id``.

    Args:
        user_id: ID placed in the ``id`` claim.
        expires_delta: Lifetime; defaults to ``auth.token_expire_minutes``.
    """
    config = get_config()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=config.auth.token_expire_minutes)
    )
    return jwt.encode(
        {"id": user_id, "exp": expire},
        config.secrets.jwt.secret_key,
        algorithm=config.secrets.jwt.algorithm,
    )


def decode_access_token(token: str) -> Dict[str, Any]:
    """Verify signature and expiry. Raises ``jwt.PyJWTError`` on failure."""
    jwt_secrets = get_config().secrets.jwt
    return jwt.decode(token, jwt_secrets.secret_key, algorithms=[jwt_secrets.algorithm])


def extract_bearer(header_value: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not header_value:
        return None
    scheme, _, credentials = header_value.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


async def authenticate_token(token: Optional[str], users: UserStore) -> UserPublic:
    """Resolve a bearer token to a stored user.

    Raises:
        AuthenticationError: for any missing, invalid or expired token, or a
            token whose user no longer exists.
    """
    if not token:
        raise AuthenticationError()

    try:
        claims = decode_access_token(token)
    except PyJWTError as e:
        logger.info(f"[Auth] Token rejected: {type(e).__name__}")
        raise AuthenticationError() from e

    user_id = claims.get("id")
    if not isinstance(user_id, str) or not user_id:
        logger.info("[Auth] Token rejected: missing id claim")
        raise AuthenticationError()

    user = await users.get_by_id(user_id)
    if user is None:
        logger.info(f"[Auth] Token for unknown user {user_id}")
        raise AuthenticationError()
    return user
