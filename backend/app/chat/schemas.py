"""Data models and wire protocol for real-time messaging.

Every WebSocket frame is a JSON object whose ``type`` field names the event;
the remaining fields are the payload. Event names are closed enums so an
unrecognized inbound event is rejected at the boundary instead of silently
passing through.

Room keys:
    - ``user-<userId>``: personal room, joined for the connection's lifetime
    - ``conversation-<conversationId>``: joined and left on client request
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.users.schemas import UserPublic, UserSummary


# =============================================================================
# Events
# =============================================================================


class ClientEvent(str, Enum):
    """Events a client may send over an authenticated connection."""
    JOIN_CONVERSATION = "join-conversation"
    LEAVE_CONVERSATION = "leave-conversation"
    SEND_MESSAGE = "send-message"
    TYPING = "typing"
    MARK_READ = "mark-read"


class ServerEvent(str, Enum):
    """Events the server emits."""
    USER_ONLINE = "user-online"
    USER_OFFLINE = "user-offline"
    NEW_MESSAGE = "new-message"
    MESSAGE_NOTIFICATION = "message-notification"
    USER_TYPING = "user-typing"
    MESSAGES_READ = "messages-read"
    ERROR = "error"


def personal_room(user_id: str) -> str:
    return f"user-{user_id}"


def is_personal_room(room: str) -> bool:
    return room.startswith("user-")


def conversation_room(conversation_id: str) -> str:
    return f"conversation-{conversation_id}"


# =============================================================================
# Stored entities
# =============================================================================


class Conversation(BaseModel):
    """A two-party thread.

    ``participants`` is always sorted so that one unordered pair maps to a
    single row.
    """
    id: str = Field(..., description="Conversation ID")
    participants: List[str] = Field(..., min_length=2, max_length=2)
    lastMessageId: Optional[str] = Field(default=None, description="Most recent message")
    lastMessageAt: datetime = Field(..., description="Most recent activity")
    createdAt: datetime = Field(..., description="Creation time")

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participants

    def other_participant(self, user_id: str) -> Optional[str]:
        if user_id not in self.participants:
            return None
        return next((p for p in self.participants if p != user_id), None)


class ChatMessage(BaseModel):
    """One persisted chat utterance.

    ``sender`` is only populated on broadcast and history payloads.
    """
    id: str = Field(..., description="Message ID")
    conversationId: str = Field(..., description="Owning conversation")
    senderId: str = Field(..., description="Author user ID")
    text: str = Field(..., description="Trimmed, non-empty body")
    read: bool = Field(default=False)
    readAt: Optional[datetime] = Field(default=None)
    createdAt: datetime = Field(...)
    sender: Optional[UserSummary] = Field(default=None)


# =============================================================================
# Inbound payloads
# =============================================================================


class SendMessagePayload(BaseModel):
    conversationId: str = ""
    text: str = ""
    receiverId: Optional[str] = None


class TypingPayload(BaseModel):
    conversationId: str
    isTyping: bool = True


class ConversationPayload(BaseModel):
    """Payload for join-conversation, leave-conversation and mark-read."""
    conversationId: str

    @field_validator("conversationId")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("conversationId is required")
        return value


# =============================================================================
# Outbound effects
# =============================================================================


class Target(str, Enum):
    """Who an effect is delivered to."""
    ROOM = "room"                  # every member of ``room``
    ROOM_EXCEPT_ORIGIN = "room_except_origin"
    ORIGIN = "origin"              # only the connection that sent the event


@dataclass(frozen=True)
class Effect:
    """An outbound event produced by a handler, delivered by the room router."""
    target: Target
    event: ServerEvent
    payload: Dict[str, Any]
    room: Optional[str] = None


def error_effect(message: str) -> Effect:
    return Effect(Target.ORIGIN, ServerEvent.ERROR, {"message": message})


def dump_user(user: UserPublic) -> Dict[str, Any]:
    return user.model_dump(mode="json")
