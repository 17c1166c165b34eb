"""Tests for the conversation store adapter backed by in-memory DuckDB."""
import asyncio
from datetime import timedelta

import pytest

from app.chat.store import ConversationStore, NotAParticipantError, canonical_pair
from app.database import utcnow


class TestCanonicalPair:
    def test_sorted(self):
        assert canonical_pair("b", "a") == ("a", "b")
        assert canonical_pair("a", "b") == ("a", "b")

    def test_same_user_rejected(self):
        with pytest.raises(ValueError):
            canonical_pair("a", "a")


class TestFindOrCreate:
    @pytest.mark.asyncio
    async def test_argument_order_is_irrelevant(self, conversation_store, users):
        first = await conversation_store.find_or_create(users.alice.id, users.bob.id)
        second = await conversation_store.find_or_create(users.bob.id, users.alice.id)

        assert first.id == second.id
        assert first.participants == sorted([users.alice.id, users.bob.id])
        assert first.lastMessageId is None

    @pytest.mark.asyncio
    async def test_concurrent_creators_share_one_row(self, conversation_store, users):
        results = await asyncio.gather(
            *[
                conversation_store.find_or_create(users.alice.id, users.carol.id)
                if i % 2
                else conversation_store.find_or_create(users.carol.id, users.alice.id)
                for i in range(8)
            ]
        )

        assert len({c.id for c in results}) == 1
        listed = await conversation_store.list_for_user(users.carol.id)
        assert [c.id for c in listed] == [results[0].id]

    @pytest.mark.asyncio
    async def test_self_conversation_rejected(self, conversation_store, users):
        with pytest.raises(ValueError):
            await conversation_store.find_or_create(users.alice.id, users.alice.id)

    @pytest.mark.asyncio
    async def test_find_by_id(self, conversation_store, conversation):
        found = await conversation_store.find_by_id(conversation.id)
        assert found.id == conversation.id
        assert await conversation_store.find_by_id("missing") is None
        assert await conversation_store.find_by_id("") is None


class TestCleanText:
    def test_trims(self, conversation_store):
        assert conversation_store.clean_text("  hi there \n") == "hi there"

    @pytest.mark.parametrize("text", ["", "   ", "\n\t", None])
    def test_blank_rejected(self, conversation_store, text):
        with pytest.raises(ValueError, match="message text required"):
            conversation_store.clean_text(text)

    def test_length_bound(self, db):
        store = ConversationStore(db, max_message_length=5)
        assert store.clean_text("12345") == "12345"
        with pytest.raises(ValueError, match="message text too long"):
            store.clean_text("123456")


class TestMessages:
    @pytest.mark.asyncio
    async def test_create_message_persists_unread(self, conversation_store, conversation, users):
        message = await conversation_store.create_message(conversation.id, users.alice.id, "  hello ")

        assert message.text == "hello"
        assert message.read is False
        assert message.readAt is None

        stored = await conversation_store.get_message(message.id)
        assert stored.text == "hello"
        assert stored.senderId == users.alice.id
        assert stored.conversationId == conversation.id

    @pytest.mark.asyncio
    async def test_non_participant_cannot_write(self, conversation_store, conversation, users):
        with pytest.raises(NotAParticipantError):
            await conversation_store.create_message(conversation.id, users.carol.id, "sneaky")

        assert await conversation_store.get_messages(conversation.id) == []

    @pytest.mark.asyncio
    async def test_missing_conversation_rejected(self, conversation_store, users):
        with pytest.raises(NotAParticipantError):
            await conversation_store.create_message("nope", users.alice.id, "hi")

    @pytest.mark.asyncio
    async def test_history_is_last_n_oldest_first(self, conversation_store, conversation, users):
        for i in range(5):
            await conversation_store.create_message(conversation.id, users.alice.id, f"m{i}")

        history = await conversation_store.get_messages(conversation.id, limit=3)
        assert [m.text for m in history] == ["m2", "m3", "m4"]

        full = await conversation_store.get_messages(conversation.id)
        assert [m.text for m in full] == ["m0", "m1", "m2", "m3", "m4"]


class TestMarkRead:
    @pytest.mark.asyncio
    async def test_marks_only_incoming(self, conversation_store, conversation, users):
        from_alice = await conversation_store.create_message(conversation.id, users.alice.id, "hi bob")
        from_bob = await conversation_store.create_message(conversation.id, users.bob.id, "hi alice")

        updated = await conversation_store.mark_read(conversation.id, users.bob.id)

        assert updated == 1
        assert (await conversation_store.get_message(from_alice.id)).read is True
        assert (await conversation_store.get_message(from_alice.id)).readAt is not None
        # The reader's own message is untouched
        assert (await conversation_store.get_message(from_bob.id)).read is False

    @pytest.mark.asyncio
    async def test_is_idempotent(self, conversation_store, conversation, users):
        message = await conversation_store.create_message(conversation.id, users.alice.id, "hi")

        assert await conversation_store.mark_read(conversation.id, users.bob.id) == 1
        first_read_at = (await conversation_store.get_message(message.id)).readAt

        assert await conversation_store.mark_read(conversation.id, users.bob.id) == 0
        again = await conversation_store.get_message(message.id)
        assert again.read is True
        assert again.readAt == first_read_at

    @pytest.mark.asyncio
    async def test_count_unread(self, conversation_store, conversation, users):
        for text in ("one", "two"):
            await conversation_store.create_message(conversation.id, users.alice.id, text)
        await conversation_store.create_message(conversation.id, users.bob.id, "three")

        assert await conversation_store.count_unread(conversation.id, users.bob.id) == 2
        assert await conversation_store.count_unread(conversation.id, users.alice.id) == 1

        await conversation_store.mark_read(conversation.id, users.bob.id)
        assert await conversation_store.count_unread(conversation.id, users.bob.id) == 0


class TestListForUser:
    @pytest.mark.asyncio
    async def test_most_recent_activity_first(self, conversation_store, conversation, users):
        with_carol = await conversation_store.find_or_create(users.alice.id, users.carol.id)
        now = utcnow()

        message = await conversation_store.create_message(conversation.id, users.bob.id, "old")
        await conversation_store.touch_last_message(conversation.id, message.id, now - timedelta(hours=1))
        message = await conversation_store.create_message(with_carol.id, users.carol.id, "new")
        await conversation_store.touch_last_message(with_carol.id, message.id, now)

        listed = await conversation_store.list_for_user(users.alice.id)
        assert [c.id for c in listed] == [with_carol.id, conversation.id]
        assert listed[0].lastMessageId == message.id

        assert [c.id for c in await conversation_store.list_for_user(users.bob.id)] == [conversation.id]
