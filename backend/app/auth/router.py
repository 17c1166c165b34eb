"""Auth router and the bearer dependency shared by REST endpoints.

Endpoints:
    GET /auth/me - The authenticated user's public record
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.users.schemas import UserPublic
from app.users.service import get_user_store

from .service import AUTH_FAILED, AuthenticationError, authenticate_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> UserPublic:
    """FastAPI dependency resolving the Bearer token to a user, or 401."""
    token = credentials.credentials if credentials else None
    try:
        return await authenticate_token(token, get_user_store())
    except AuthenticationError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=AUTH_FAILED,
            headers={"WWW-Authenticate": "Bearer"},
        )


@router.get("/me", response_model=UserPublic)
async def me(user: UserPublic = Depends(get_current_user)) -> UserPublic:
    """Return the caller's identity (never includes credential fields)."""
    return user
