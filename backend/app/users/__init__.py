"""User identity lookups used by authentication and chat."""

from .schemas import UserPublic, UserSummary
from .service import UserStore, get_user_store

__all__ = [
    "UserPublic",
    "UserSummary",
    "UserStore",
    "get_user_store",
]
