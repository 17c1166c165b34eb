"""WebSocket connection manager and room router.

This module tracks every authenticated WebSocket and the rooms it belongs to,
and fans events out to room members.

Key features:
    - Personal room (``user-<id>``) joined automatically on connect and kept
      for the connection's lifetime
    - Conversation rooms joined and left on client request (idempotent)
    - Room broadcast, broadcast excluding the sender, and global broadcast
    - Concurrent delivery with asyncio.gather(); a failing member is logged,
      dropped from a conversation room, and never aborts delivery to the others
    - ``apply()`` delivers the explicit Effect list handlers return

Thread Safety:
    Designed for a single event loop. Membership changes are plain dict/set
    operations with no await in between, so each one is atomic with respect
    to other connection handlers.
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from app.users.schemas import UserPublic

from .schemas import Effect, ServerEvent, Target, is_personal_room, personal_room

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Routes events to authenticated connections grouped by room key.

    Note:
        This is a singleton-style global instance. All WebSocket handlers
        share the same ConnectionManager to maintain consistent state.
    """

    def __init__(self) -> None:
        """Initialize empty connection manager."""
        # room key -> set of member connections
        self.rooms: Dict[str, Set[WebSocket]] = {}

        # connection -> room keys it belongs to (for disconnect cleanup)
        self.memberships: Dict[WebSocket, Set[str]] = {}

        # connection -> authenticated user
        self.connection_users: Dict[WebSocket, UserPublic] = {}

    async def connect(self, websocket: WebSocket, user: UserPublic) -> None:
        """Accept an authenticated connection and join its personal room."""
        await websocket.accept()
        self.connection_users[websocket] = user
        self.memberships.setdefault(websocket, set())
        self.join(websocket, personal_room(user.id))
        logger.info(
            f"[Manager] {user.id} connected ({len(self.connection_users)} connections)"
        )

    def disconnect(self, websocket: WebSocket) -> Optional[UserPublic]:
        """Remove a connection from every room it joined.

        Returns:
            The user the connection belonged to, or None if it was unknown.
        """
        for room in self.memberships.pop(websocket, set()):
            members = self.rooms.get(room)
            if members is None:
                continue
            members.discard(websocket)
            if not members:
                del self.rooms[room]
        return self.connection_users.pop(websocket, None)

    def get_user(self, websocket: WebSocket) -> Optional[UserPublic]:
        return self.connection_users.get(websocket)

    # =========================================================================
    # Membership
    # =========================================================================

    def join(self, websocket: WebSocket, room: str) -> None:
        self.rooms.setdefault(room, set()).add(websocket)
        self.memberships.setdefault(websocket, set()).add(room)

    def leave(self, websocket: WebSocket, room: str) -> None:
        members = self.rooms.get(room)
        if members is not None:
            members.discard(websocket)
            if not members:
                del self.rooms[room]
        if websocket in self.memberships:
            self.memberships[websocket].discard(room)

    def is_member(self, websocket: WebSocket, room: str) -> bool:
        return websocket in self.rooms.get(room, set())

    def get_room_size(self, room: str) -> int:
        """Get the number of active connections in a room."""
        return len(self.rooms.get(room, set()))

    def connection_count(self) -> int:
        return len(self.connection_users)

    # =========================================================================
    # Delivery
    # =========================================================================

    async def broadcast(self, room: str, event: ServerEvent, payload: dict) -> None:
        """Deliver an event to every member of a room concurrently."""
        await self._deliver(self.rooms.get(room, set()), event, payload, room=room)

    async def broadcast_except(
        self, websocket: WebSocket, room: str, event: ServerEvent, payload: dict
    ) -> None:
        """Deliver to every room member except ``websocket``.

        Useful for typing indicators where sender shouldn't see their own.
        """
        members = [conn for conn in self.rooms.get(room, set()) if conn is not websocket]
        await self._deliver(members, event, payload, room=room)

    async def broadcast_global_except(
        self, websocket: Optional[WebSocket], event: ServerEvent, payload: dict
    ) -> None:
        """Deliver to every authenticated connection except ``websocket``."""
        others = [conn for conn in self.connection_users if conn is not websocket]
        await self._deliver(others, event, payload)

    async def send_personal(self, websocket: WebSocket, event: ServerEvent, payload: dict) -> None:
        """Deliver to a single connection."""
        await self._deliver([websocket], event, payload)

    async def apply(self, effects: Iterable[Effect], origin: WebSocket) -> None:
        """Deliver handler effects in order, relative to the originating connection."""
        for effect in effects:
            if effect.target is Target.ROOM:
                await self.broadcast(effect.room, effect.event, effect.payload)
            elif effect.target is Target.ROOM_EXCEPT_ORIGIN:
                await self.broadcast_except(origin, effect.room, effect.event, effect.payload)
            elif effect.target is Target.ORIGIN:
                await self.send_personal(origin, effect.event, effect.payload)

    async def _deliver(
        self,
        connections: Iterable[WebSocket],
        event: ServerEvent,
        payload: dict,
        room: Optional[str] = None,
    ) -> None:
        targets: List[WebSocket] = list(connections)
        if not targets:
            return

        frame: Dict[str, Any] = {"type": event.value, **payload}
        results = await asyncio.gather(
            *[self._safe_send(conn, frame) for conn in targets],
            return_exceptions=True
        )

        failed = [
            conn for conn, success in zip(targets, results)
            if success is not True
        ]
        # Personal rooms last as long as the connection; disconnect() drops them.
        if failed and room is not None and not is_personal_room(room):
            self._cleanup_connections(room, failed)

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_connections(self, room: str, failed_connections: List[WebSocket]) -> None:
        """Remove failed connections from a room."""
        for conn in failed_connections:
            if self.is_member(conn, room):
                self.leave(conn, room)
                logger.debug(f"Removed dead connection from room {room}")

    def clear(self) -> None:
        """Forget all connections and rooms (process shutdown)."""
        self.rooms.clear()
        self.memberships.clear()
        self.connection_users.clear()


# Global singleton instance used by all WebSocket handlers
manager = ConnectionManager()
