"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Real-time messaging for an authenticated user
    - GET /chat/conversations: The caller's conversations, newest first
    - GET /chat/conversations/{user_id}: Find or create a conversation with a contact
    - GET /chat/conversations/{conversation_id}/messages: Recent message history
    - PUT /chat/conversations/{conversation_id}/read: Mark incoming messages read

The WebSocket protocol supports:
    - Bearer-token authentication at handshake (``?token=`` or Authorization header)
    - Global online/offline presence events
    - Conversation rooms joined and left on demand
    - Message send with persistence and room fan-out
    - Out-of-conversation notifications on the receiver's personal room
    - Typing indicators
    - Read receipts

Protocol Message Types (client -> server):
    - join-conversation / leave-conversation: {conversationId}
    - send-message: {conversationId, text, receiverId}
    - typing: {conversationId, isTyping}
    - mark-read: {conversationId}
"""
import json
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from pydantic import BaseModel, Field

from app.auth.router import get_current_user
from app.auth.service import AUTH_FAILED, AuthenticationError, authenticate_token, extract_bearer
from app.config import get_config
from app.users.schemas import UserPublic
from app.users.service import UserStore, get_user_store

from .dispatch import INVALID_PAYLOAD, MessageDispatcher, parse_payload
from .manager import manager
from .presence import presence
from .schemas import (
    ChatMessage,
    ClientEvent,
    ConversationPayload,
    Effect,
    ServerEvent,
    conversation_room,
    error_effect,
)
from .store import ConversationStore, get_conversation_store

logger = logging.getLogger(__name__)

router = APIRouter()

UNKNOWN_EVENT = "unknown event"
INTERNAL_ERROR = "internal error"


# =============================================================================
# Response Models
# =============================================================================


class ConversationSummary(BaseModel):
    """One row of the caller's conversation list."""
    id: str
    otherParticipant: Optional[UserPublic] = None
    lastMessage: Optional[ChatMessage] = None
    lastMessageAt: datetime
    unreadCount: int = Field(default=0, ge=0)


class ConversationDetail(BaseModel):
    id: str
    otherParticipant: UserPublic
    participants: List[UserPublic]


class MarkReadResponse(BaseModel):
    message: str
    updated: int


# =============================================================================
# REST Endpoints
# =============================================================================


@router.get("/chat/conversations", response_model=List[ConversationSummary])
async def list_conversations(
    user: UserPublic = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
    users: UserStore = Depends(get_user_store),
) -> List[ConversationSummary]:
    """List the caller's conversations, most recent activity first."""
    conversations = await store.list_for_user(user.id)
    others = await users.get_many(
        c.other_participant(user.id) for c in conversations
    )

    summaries = []
    for conversation in conversations:
        last_message = None
        if conversation.lastMessageId:
            last_message = await store.get_message(conversation.lastMessageId)
        summaries.append(
            ConversationSummary(
                id=conversation.id,
                otherParticipant=others.get(conversation.other_participant(user.id)),
                lastMessage=last_message,
                lastMessageAt=conversation.lastMessageAt,
                unreadCount=await store.count_unread(conversation.id, user.id),
            )
        )
    return summaries


@router.get("/chat/conversations/{user_id}", response_model=ConversationDetail)
async def get_or_create_conversation(
    user_id: str,
    user: UserPublic = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
    users: UserStore = Depends(get_user_store),
) -> ConversationDetail:
    """Find or create the conversation between the caller and a contact.

    Example:
        GET /chat/conversations/5f2c...
    """
    if user_id == user.id:
        raise HTTPException(status_code=400, detail="Cannot create conversation with yourself")

    other = await users.get_by_id(user_id)
    if other is None:
        raise HTTPException(status_code=404, detail="User not found")

    if not await users.are_connected(user.id, user_id):
        raise HTTPException(status_code=403, detail="You must be connected to message this user")

    conversation = await store.find_or_create(user.id, user_id)
    by_id = {user.id: user, other.id: other}
    return ConversationDetail(
        id=conversation.id,
        otherParticipant=other,
        participants=[by_id[p] for p in conversation.participants],
    )


async def _participant_conversation(
    conversation_id: str, user: UserPublic, store: ConversationStore
):
    conversation = await store.find_by_id(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if not conversation.has_participant(user.id):
        raise HTTPException(status_code=403, detail="Access denied")
    return conversation


@router.get(
    "/chat/conversations/{conversation_id}/messages",
    response_model=List[ChatMessage],
)
async def get_messages(
    conversation_id: str,
    user: UserPublic = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
    users: UserStore = Depends(get_user_store),
) -> List[ChatMessage]:
    """Most recent messages of a conversation, oldest first, with sender fields."""
    await _participant_conversation(conversation_id, user, store)

    messages = await store.get_messages(conversation_id, limit=get_config().chat.history_limit)
    senders = await users.get_summaries(m.senderId for m in messages)
    for message in messages:
        message.sender = senders.get(message.senderId)
    return messages


@router.put(
    "/chat/conversations/{conversation_id}/read",
    response_model=MarkReadResponse,
)
async def mark_conversation_read(
    conversation_id: str,
    user: UserPublic = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
) -> MarkReadResponse:
    """Mark every unread message from the other participant as read."""
    await _participant_conversation(conversation_id, user, store)
    updated = await store.mark_read(conversation_id, user.id)
    return MarkReadResponse(message="Messages marked as read", updated=updated)


# =============================================================================
# WebSocket
# =============================================================================


async def handle_event(
    websocket: WebSocket,
    user: UserPublic,
    dispatcher: MessageDispatcher,
    data: object,
) -> List[Effect]:
    """Route one inbound frame and return the effects to deliver."""
    if not isinstance(data, dict):
        return [error_effect(INVALID_PAYLOAD)]

    try:
        event = ClientEvent(data.get("type"))
    except ValueError:
        logger.debug("[WS] Unknown event from %s: %r", user.id, data.get("type"))
        return [error_effect(UNKNOWN_EVENT)]

    if event in (ClientEvent.JOIN_CONVERSATION, ClientEvent.LEAVE_CONVERSATION):
        payload = parse_payload(ConversationPayload, data)
        if payload is None:
            return [error_effect(INVALID_PAYLOAD)]
        room = conversation_room(payload.conversationId)
        if event is ClientEvent.JOIN_CONVERSATION:
            manager.join(websocket, room)
            logger.info(f"[WS] User {user.id} joined {room}")
        else:
            manager.leave(websocket, room)
            logger.info(f"[WS] User {user.id} left {room}")
        return []

    if event is ClientEvent.SEND_MESSAGE:
        return await dispatcher.send_message(user, data)
    if event is ClientEvent.TYPING:
        return await dispatcher.typing(user, data)
    return await dispatcher.mark_read(user, data)


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token (JWT)"),
) -> None:
    """WebSocket endpoint for real-time messaging.

    Protocol Flow:
        1. Client connects with a token -> server verifies it before accepting.
           Any failure closes the socket with 1008 and creates no state.
        2. Server joins the connection to ``user-<id>``, registers presence,
           and sends {type: "user-online", userId} to every other connection.
        3. Client sends events; each is fully processed before the next frame
           is read, so one connection's events are handled in order.
        4. On disconnect -> presence is dropped and every other connection
           receives {type: "user-offline", userId}.

    Args:
        websocket: The WebSocket connection.
        token: Token from the query string; falls back to the Authorization header.
    """
    token = token or extract_bearer(websocket.headers.get("authorization"))
    try:
        user = await authenticate_token(token, get_user_store())
    except AuthenticationError:
        logger.warning("[WS] Rejected connection: authentication failed")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=AUTH_FAILED)
        return

    await manager.connect(websocket, user)
    await presence.register(user.id, websocket, user)
    await manager.broadcast_global_except(websocket, ServerEvent.USER_ONLINE, {"userId": user.id})

    dispatcher = MessageDispatcher(get_conversation_store(), presence)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await manager.apply([error_effect(INVALID_PAYLOAD)], websocket)
                continue

            logger.debug("[WS] %s sent: type=%s", user.id, data.get("type", "?") if isinstance(data, dict) else "?")
            try:
                effects = await handle_event(websocket, user, dispatcher, data)
            except Exception:
                logger.exception(f"[WS] Unhandled error processing event from {user.id}")
                effects = [error_effect(INTERNAL_ERROR)]
            await manager.apply(effects, websocket)

    except WebSocketDisconnect:
        logger.info(f"[WS] User {user.id} disconnected")
    finally:
        manager.disconnect(websocket)
        # A newer connection for the same user keeps the user online.
        if await presence.unregister(user.id, websocket) is not None:
            await manager.broadcast_global_except(
                websocket, ServerEvent.USER_OFFLINE, {"userId": user.id}
            )
