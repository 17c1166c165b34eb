"""Process-wide online presence.

Maps a user ID to the one connection currently tracked for that user plus a
snapshot of the user's public identity. A second connection for the same
user overwrites the entry: the earlier connection keeps receiving room
traffic, but lookups return the newest one.

Presence is advisory. It lives only in this process and is cleared on
shutdown. Mutations go through a single ``asyncio.Lock`` that is never held
across an await on anything but the lock itself, so a slow store call
elsewhere cannot stall connect or disconnect handling.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from app.users.schemas import UserPublic

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PresenceEntry:
    handle: Any
    user: UserPublic


class PresenceRegistry:
    """Single-writer map of user ID -> PresenceEntry."""

    def __init__(self) -> None:
        self._entries: Dict[str, PresenceEntry] = {}
        self._lock = asyncio.Lock()

    async def register(self, user_id: str, handle: Any, snapshot: UserPublic) -> None:
        async with self._lock:
            if user_id in self._entries:
                logger.info("[Presence] %s reconnected; tracking newest connection", user_id)
            self._entries[user_id] = PresenceEntry(handle=handle, user=snapshot)

    async def unregister(self, user_id: str, handle: Any = None) -> Optional[PresenceEntry]:
        """Drop the entry for ``user_id``. Duplicate calls are harmless.

        When ``handle`` is given, the entry is only dropped if it still
        tracks that connection, so closing a superseded connection leaves
        the newer one registered.
        """
        async with self._lock:
            entry = self._entries.get(user_id)
            if entry is None or (handle is not None and entry.handle is not handle):
                return None
            return self._entries.pop(user_id)

    def find_by_user_id(self, user_id: Optional[str]) -> Optional[PresenceEntry]:
        if not user_id:
            return None
        return self._entries.get(user_id)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._entries

    def online_user_ids(self) -> List[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
        self._lock = asyncio.Lock()


# Global singleton shared by every WebSocket handler
presence = PresenceRegistry()
