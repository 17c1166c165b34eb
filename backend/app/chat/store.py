"""Conversation and message persistence.

The messaging core talks to the backing store only through this adapter.
Consistency contract:

    - One conversation per unordered participant pair. Participants are
      sorted before every lookup and insert, and the table carries a
      UNIQUE (participant_a, participant_b) constraint. ``find_or_create``
      reads, conditionally inserts, and re-reads on a constraint conflict,
      so two racing callers end up with the same row.
    - A message is only inserted if its sender is a participant of the
      conversation at insert time (checked in the same cursor call).
    - The message insert and the conversation's lastMessage update are two
      separate writes. The message is the durable record; the conversation
      metadata is an index for list ordering and may lag briefly.
    - Read flags only ever move from false to true.
"""
import logging
import threading
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

import duckdb

from app.database import Database, utcnow

from .schemas import ChatMessage, Conversation

logger = logging.getLogger(__name__)

_CONVERSATION_COLUMNS = "id, participant_a, participant_b, last_message_id, last_message_at, created_at"
_MESSAGE_COLUMNS = "id, conversation_id, sender_id, body, is_read, read_at, created_at"

# Serializes check-then-insert within this process; the UNIQUE constraint
# covers writers in other processes.
_create_lock = threading.Lock()


class NotAParticipantError(Exception):
    """Raised when a write names a sender outside the conversation."""


def canonical_pair(user_a: str, user_b: str) -> Tuple[str, str]:
    """Sort two participant IDs; rejects a pair of identical IDs."""
    if user_a == user_b:
        raise ValueError("a conversation needs two distinct participants")
    first, second = sorted((user_a, user_b))
    return first, second


def _row_to_conversation(row) -> Conversation:
    return Conversation(
        id=row[0],
        participants=[row[1], row[2]],
        lastMessageId=row[3],
        lastMessageAt=row[4],
        createdAt=row[5],
    )


def _row_to_message(row) -> ChatMessage:
    return ChatMessage(
        id=row[0],
        conversationId=row[1],
        senderId=row[2],
        text=row[3],
        read=row[4],
        readAt=row[5],
        createdAt=row[6],
    )


class ConversationStore:
    """Async adapter over the ``conversations`` and ``messages`` tables."""

    def __init__(self, db: Database, max_message_length: int = 2000) -> None:
        self.db = db
        self.max_message_length = max_message_length

    # =========================================================================
    # Conversations
    # =========================================================================

    async def find_by_id(self, conversation_id: str) -> Optional[Conversation]:
        if not conversation_id:
            return None

        def _select(cur: duckdb.DuckDBPyConnection):
            return cur.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
                [conversation_id],
            ).fetchone()

        row = await self.db.run(_select)
        return _row_to_conversation(row) if row else None

    async def find_or_create(self, user_a: str, user_b: str) -> Conversation:
        """Return the single conversation for this pair, creating it if needed.

        Argument order does not matter: (A, B) and (B, A) resolve to the
        same conversation.
        """
        first, second = canonical_pair(user_a, user_b)

        def _find(cur: duckdb.DuckDBPyConnection):
            return cur.execute(
                f"""
                SELECT {_CONVERSATION_COLUMNS} FROM conversations
                WHERE participant_a = ? AND participant_b = ?
                """,
                [first, second],
            ).fetchone()

        def _find_or_insert(cur: duckdb.DuckDBPyConnection):
            with _create_lock:
                row = _find(cur)
                if row:
                    return row
                now = utcnow()
                try:
                    cur.execute(
                        """
                        INSERT INTO conversations
                            (id, participant_a, participant_b, last_message_id, last_message_at, created_at)
                        VALUES (?, ?, ?, NULL, ?, ?)
                        """,
                        [uuid.uuid4().hex, first, second, now, now],
                    )
                except (duckdb.ConstraintException, duckdb.TransactionException):
                    # Lost the race to another process; its row wins.
                    logger.debug("Conversation %s/%s created concurrently", first, second)
                return _find(cur)

        row = await self.db.run(_find_or_insert)
        return _row_to_conversation(row)

    async def list_for_user(self, user_id: str) -> List[Conversation]:
        """All conversations the user takes part in, most recent activity first."""

        def _select(cur: duckdb.DuckDBPyConnection):
            return cur.execute(
                f"""
                SELECT {_CONVERSATION_COLUMNS} FROM conversations
                WHERE participant_a = ? OR participant_b = ?
                ORDER BY last_message_at DESC
                """,
                [user_id, user_id],
            ).fetchall()

        rows = await self.db.run(_select)
        return [_row_to_conversation(row) for row in rows]

    async def touch_last_message(
        self, conversation_id: str, message_id: str, at: Optional[datetime] = None
    ) -> None:
        at = at or utcnow()

        def _update(cur: duckdb.DuckDBPyConnection) -> None:
            cur.execute(
                """
                UPDATE conversations
                SET last_message_id = ?, last_message_at = ?
                WHERE id = ?
                """,
                [message_id, at, conversation_id],
            )

        await self.db.run(_update)

    # =========================================================================
    # Messages
    # =========================================================================

    def clean_text(self, text: str) -> str:
        """Trim and bound a message body. Raises ValueError when unusable."""
        cleaned = (text or "").strip()
        if not cleaned:
            raise ValueError("message text required")
        if len(cleaned) > self.max_message_length:
            raise ValueError("message text too long")
        return cleaned

    async def create_message(
        self, conversation_id: str, sender_id: str, text: str
    ) -> ChatMessage:
        """Persist an unread message authored by a participant.

        Raises:
            ValueError: empty or oversized text.
            NotAParticipantError: the conversation is missing or the sender
                is not one of its participants.
        """
        message = ChatMessage(
            id=uuid.uuid4().hex,
            conversationId=conversation_id,
            senderId=sender_id,
            text=self.clean_text(text),
            read=False,
            createdAt=utcnow(),
        )

        def _insert(cur: duckdb.DuckDBPyConnection) -> bool:
            allowed = cur.execute(
                """
                SELECT 1 FROM conversations
                WHERE id = ? AND (participant_a = ? OR participant_b = ?)
                """,
                [conversation_id, sender_id, sender_id],
            ).fetchone()
            if not allowed:
                return False
            cur.execute(
                """
                INSERT INTO messages (id, conversation_id, sender_id, body, is_read, read_at, created_at)
                VALUES (?, ?, ?, ?, FALSE, NULL, ?)
                """,
                [message.id, conversation_id, sender_id, message.text, message.createdAt],
            )
            return True

        if not await self.db.run(_insert):
            raise NotAParticipantError(
                f"user {sender_id} is not a participant of conversation {conversation_id}"
            )
        return message

    async def get_message(self, message_id: str) -> Optional[ChatMessage]:
        def _select(cur: duckdb.DuckDBPyConnection):
            return cur.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", [message_id]
            ).fetchone()

        row = await self.db.run(_select)
        return _row_to_message(row) if row else None

    async def get_messages(self, conversation_id: str, limit: int = 100) -> List[ChatMessage]:
        """The most recent ``limit`` messages, returned oldest first."""

        def _select(cur: duckdb.DuckDBPyConnection):
            return cur.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM (
                    SELECT {_MESSAGE_COLUMNS}, seq FROM messages
                    WHERE conversation_id = ?
                    ORDER BY seq DESC
                    LIMIT ?
                ) ORDER BY seq ASC
                """,
                [conversation_id, limit],
            ).fetchall()

        rows = await self.db.run(_select)
        return [_row_to_message(row) for row in rows]

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        """Mark every unread message the *other* participant wrote as read.

        Messages authored by ``reader_id`` are never touched.

        Returns:
            Number of messages that transitioned to read.
        """
        read_at = utcnow()

        unread_filter = "conversation_id = ? AND sender_id <> ? AND is_read = FALSE"

        def _update(cur: duckdb.DuckDBPyConnection) -> int:
            cur.execute("BEGIN TRANSACTION")
            try:
                count = cur.execute(
                    f"SELECT COUNT(*) FROM messages WHERE {unread_filter}",
                    [conversation_id, reader_id],
                ).fetchone()[0]
                cur.execute(
                    f"UPDATE messages SET is_read = TRUE, read_at = ? WHERE {unread_filter}",
                    [read_at, conversation_id, reader_id],
                )
                cur.execute("COMMIT")
            except Exception:
                cur.execute("ROLLBACK")
                raise
            return count

        return await self.db.run(_update)

    async def count_unread(self, conversation_id: str, reader_id: str) -> int:
        def _count(cur: duckdb.DuckDBPyConnection) -> int:
            return cur.execute(
                """
                SELECT COUNT(*) FROM messages
                WHERE conversation_id = ? AND sender_id <> ? AND is_read = FALSE
                """,
                [conversation_id, reader_id],
            ).fetchone()[0]

        return await self.db.run(_count)


def get_conversation_store() -> ConversationStore:
    """Return a store bound to the process-wide database and chat settings."""
    from app.config import get_config

    return ConversationStore(
        Database.get_instance(),
        max_message_length=get_config().chat.max_message_length,
    )
