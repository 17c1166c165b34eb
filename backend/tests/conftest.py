"""Shared test fixtures and configuration for backend tests.

Every test gets a fresh config pointing at an in-memory DuckDB database and a
known JWT secret. Users are seeded through the real ``UserStore``.
"""
import asyncio
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from app.auth.service import create_access_token
from app.chat.manager import manager
from app.chat.presence import presence
from app.chat.store import ConversationStore
from app.config import AppConfig, DatabaseSettings, reset_config, set_config
from app.database import Database
from app.users.service import UserStore


@pytest.fixture(autouse=True)
def test_config():
    """In-memory database and a fixed signing secret for every test."""
    config = AppConfig(database=DatabaseSettings(path=":memory:"))
    config.secrets.jwt.secret_key = "test-secret"
    set_config(config)
    yield config
    reset_config()


@pytest.fixture(autouse=True)
def reset_realtime_state():
    """Presence and room membership are process-wide; isolate tests."""
    presence.clear()
    manager.clear()
    yield
    presence.clear()
    manager.clear()


@pytest.fixture
def db(test_config):
    Database.reset_instance()
    database = Database.get_instance(test_config.database.path)
    yield database
    Database.reset_instance()


@pytest.fixture
def user_store(db):
    return UserStore(db)


@pytest.fixture
def conversation_store(db, test_config):
    return ConversationStore(db, max_message_length=test_config.chat.max_message_length)


@pytest.fixture
def users(user_store):
    """Alice and Bob are contacts; Carol knows nobody."""

    async def _seed():
        alice = await user_store.create_user("Alice", "alice@example.com", profile_picture="a.png")
        bob = await user_store.create_user("Bob", "bob@example.com")
        carol = await user_store.create_user("Carol", "carol@example.com")
        await user_store.add_connection(alice.id, bob.id)
        return SimpleNamespace(alice=alice, bob=bob, carol=carol)

    return asyncio.run(_seed())


@pytest.fixture
def conversation(conversation_store, users):
    """The Alice/Bob conversation."""
    return asyncio.run(conversation_store.find_or_create(users.alice.id, users.bob.id))


@pytest.fixture
def tokens(users):
    return SimpleNamespace(
        alice=create_access_token(users.alice.id),
        bob=create_access_token(users.bob.id),
        carol=create_access_token(users.carol.id),
    )


@pytest.fixture
def api_client(db):
    """Provide a TestClient for the main FastAPI app with lifespan running.

    Using the client as a context manager keeps every WebSocket session on
    one event loop, as in production.
    """
    from app.main import app

    with TestClient(app) as client:
        yield client
