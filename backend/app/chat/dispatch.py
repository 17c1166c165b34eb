"""Message dispatch, typing and read-receipt handling.

Handlers here never touch sockets. Each one takes the authenticated user and
the raw inbound payload and returns the list of ``Effect`` values the room
router should deliver, in order. That keeps the send-message state machine
testable without a transport:

    received -> validated -> authorized -> persisted -> broadcast-complete
                    |             |
                    +-> rejected  +-> rejected

A rejection before ``persisted`` yields a single ``error`` effect for the
originating connection and writes nothing.
"""
import logging
from typing import Any, List, Optional

from pydantic import BaseModel, ValidationError

from app.users.schemas import UserPublic

from .presence import PresenceRegistry
from .schemas import (
    ConversationPayload,
    Effect,
    SendMessagePayload,
    ServerEvent,
    Target,
    TypingPayload,
    conversation_room,
    dump_user,
    error_effect,
    personal_room,
)
from .store import ConversationStore, NotAParticipantError

logger = logging.getLogger(__name__)

INVALID_PAYLOAD = "invalid payload"
ACCESS_DENIED = "conversation not found or access denied"
SEND_FAILED = "failed to send message"
MARK_READ_FAILED = "failed to mark messages as read"


def parse_payload(model: type, data: Any) -> Optional[BaseModel]:
    """Validate an inbound payload, returning None when it is malformed."""
    if not isinstance(data, dict):
        return None
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        logger.debug("Rejected %s payload: %s", model.__name__, exc.errors())
        return None


class MessageDispatcher:
    """Validates, authorizes, persists and fans out inbound chat events."""

    def __init__(self, store: ConversationStore, presence: PresenceRegistry) -> None:
        self.store = store
        self.presence = presence

    async def send_message(self, user: UserPublic, data: Any) -> List[Effect]:
        payload = parse_payload(SendMessagePayload, data)
        if payload is None:
            return [error_effect(INVALID_PAYLOAD)]

        # validated
        try:
            text = self.store.clean_text(payload.text)
        except ValueError as exc:
            return [error_effect(str(exc))]

        conversation_id = payload.conversationId
        try:
            # authorized
            conversation = await self.store.find_by_id(conversation_id)
            if conversation is None or not conversation.has_participant(user.id):
                logger.info(f"[Dispatch] {user.id} denied send to {conversation_id!r}")
                return [error_effect(ACCESS_DENIED)]

            # persisted
            message = await self.store.create_message(conversation_id, user.id, text)
        except NotAParticipantError:
            return [error_effect(ACCESS_DENIED)]
        except Exception:
            logger.exception(f"[Dispatch] Error sending message in {conversation_id}")
            return [error_effect(SEND_FAILED)]

        try:
            await self.store.touch_last_message(conversation_id, message.id, message.createdAt)
        except Exception:
            # The message is durable; list ordering catches up on the next send.
            logger.exception(f"[Dispatch] Could not update lastMessage for {conversation_id}")

        # broadcast-complete
        message.sender = user.summary()
        message_data = message.model_dump(mode="json")
        effects = [
            Effect(
                Target.ROOM,
                ServerEvent.NEW_MESSAGE,
                message_data,
                room=conversation_room(conversation_id),
            )
        ]

        receiver_id = self._resolve_receiver(user, conversation.other_participant(user.id), payload.receiverId)
        if receiver_id and self.presence.find_by_user_id(receiver_id):
            effects.append(
                Effect(
                    Target.ROOM,
                    ServerEvent.MESSAGE_NOTIFICATION,
                    {
                        "conversationId": conversation_id,
                        "message": message_data,
                        "sender": dump_user(user),
                    },
                    room=personal_room(receiver_id),
                )
            )

        logger.info(f"[Dispatch] Message {message.id} sent in {conversation_id} by {user.id}")
        return effects

    def _resolve_receiver(
        self, user: UserPublic, other_participant: Optional[str], requested: Optional[str]
    ) -> Optional[str]:
        """Pick whose personal room gets the out-of-conversation notification.

        The client-supplied receiverId is honoured only when it names the
        other participant; otherwise any online user could be sent a copy of
        the message.
        """
        if not requested:
            return other_participant
        if requested != other_participant:
            logger.warning(
                f"[Dispatch] {user.id} named receiver {requested} outside the conversation; "
                "skipping notification"
            )
            return None
        return requested

    async def typing(self, user: UserPublic, data: Any) -> List[Effect]:
        """Ephemeral typing signal; nothing is stored or queued."""
        payload = parse_payload(TypingPayload, data)
        if payload is None:
            return [error_effect(INVALID_PAYLOAD)]
        return [
            Effect(
                Target.ROOM_EXCEPT_ORIGIN,
                ServerEvent.USER_TYPING,
                {"userId": user.id, "userName": user.name, "isTyping": payload.isTyping},
                room=conversation_room(payload.conversationId),
            )
        ]

    async def mark_read(self, user: UserPublic, data: Any) -> List[Effect]:
        """Mark the other participant's messages read and tell the room.

        A non-participant request is a silent no-op.
        """
        payload = parse_payload(ConversationPayload, data)
        if payload is None:
            return [error_effect(INVALID_PAYLOAD)]

        conversation_id = payload.conversationId
        try:
            conversation = await self.store.find_by_id(conversation_id)
            if conversation is None or not conversation.has_participant(user.id):
                return []
            updated = await self.store.mark_read(conversation_id, user.id)
        except Exception:
            logger.exception(f"[Dispatch] Error marking messages read in {conversation_id}")
            return [error_effect(MARK_READ_FAILED)]

        logger.debug(f"[Dispatch] {user.id} read {updated} messages in {conversation_id}")
        return [
            Effect(
                Target.ROOM_EXCEPT_ORIGIN,
                ServerEvent.MESSAGES_READ,
                {"conversationId": conversation_id, "userId": user.id},
                room=conversation_room(conversation_id),
            )
        ]
