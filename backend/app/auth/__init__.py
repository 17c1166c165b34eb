"""Bearer-token authentication for the chat socket and REST routes."""

from .router import get_current_user, router
from .service import (
    AuthenticationError,
    authenticate_token,
    create_access_token,
    decode_access_token,
)

__all__ = [
    "AuthenticationError",
    "authenticate_token",
    "create_access_token",
    "decode_access_token",
    "get_current_user",
    "router",
]
