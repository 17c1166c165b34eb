"""User store over the shared DuckDB database.

Lookups return ``UserPublic``; the ``password_hash`` column is written on
create but never selected by any read path here.
"""
import logging
import uuid
from typing import Dict, Iterable, List, Optional

import duckdb

from app.database import Database, utcnow

from .schemas import UserPublic, UserSummary

logger = logging.getLogger(__name__)

_PUBLIC_COLUMNS = "id, name, email, profile_picture"


class UserAlreadyExistsError(ValueError):
    """Raised when creating a user whose email is already registered."""


def _row_to_user(row) -> UserPublic:
    return UserPublic(id=row[0], name=row[1], email=row[2], profilePicture=row[3])


class UserStore:
    """Async facade over the ``users`` and ``user_connections`` tables."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def create_user(
        self,
        name: str,
        email: str,
        password_hash: str = "",
        profile_picture: str = "",
    ) -> UserPublic:
        user = UserPublic(
            id=uuid.uuid4().hex,
            name=name.strip(),
            email=email.strip().lower(),
            profilePicture=profile_picture,
        )

        def _insert(cur: duckdb.DuckDBPyConnection) -> None:
            cur.execute(
                """
                INSERT INTO users (id, name, email, password_hash, profile_picture, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [user.id, user.name, user.email, password_hash, user.profilePicture, utcnow()],
            )

        try:
            await self.db.run(_insert)
        except duckdb.ConstraintException as exc:
            raise UserAlreadyExistsError(f"email already registered: {user.email}") from exc
        logger.info("Created user %s", user.id)
        return user

    async def get_by_id(self, user_id: str) -> Optional[UserPublic]:
        def _select(cur: duckdb.DuckDBPyConnection):
            return cur.execute(
                f"SELECT {_PUBLIC_COLUMNS} FROM users WHERE id = ?", [user_id]
            ).fetchone()

        row = await self.db.run(_select)
        return _row_to_user(row) if row else None

    async def get_by_email(self, email: str) -> Optional[UserPublic]:
        def _select(cur: duckdb.DuckDBPyConnection):
            return cur.execute(
                f"SELECT {_PUBLIC_COLUMNS} FROM users WHERE email = ?",
                [email.strip().lower()],
            ).fetchone()

        row = await self.db.run(_select)
        return _row_to_user(row) if row else None

    async def get_many(self, user_ids: Iterable[str]) -> Dict[str, UserPublic]:
        """Batch lookup keyed by ID; unknown IDs are simply absent."""
        ids: List[str] = sorted(set(user_ids))
        if not ids:
            return {}

        def _select(cur: duckdb.DuckDBPyConnection):
            placeholders = ", ".join("?" for _ in ids)
            return cur.execute(
                f"SELECT {_PUBLIC_COLUMNS} FROM users WHERE id IN ({placeholders})", ids
            ).fetchall()

        rows = await self.db.run(_select)
        return {row[0]: _row_to_user(row) for row in rows}

    async def get_summaries(self, user_ids: Iterable[str]) -> Dict[str, UserSummary]:
        users = await self.get_many(user_ids)
        return {user_id: user.summary() for user_id, user in users.items()}

    async def add_connection(self, user_id: str, contact_id: str) -> None:
        """Record a mutual contact link between two users (idempotent)."""
        if user_id == contact_id:
            raise ValueError("a user cannot connect to themselves")

        def _insert(cur: duckdb.DuckDBPyConnection) -> None:
            for a, b in ((user_id, contact_id), (contact_id, user_id)):
                exists = cur.execute(
                    "SELECT 1 FROM user_connections WHERE user_id = ? AND contact_id = ?",
                    [a, b],
                ).fetchone()
                if not exists:
                    cur.execute(
                        "INSERT INTO user_connections (user_id, contact_id) VALUES (?, ?)",
                        [a, b],
                    )

        await self.db.run(_insert)

    async def are_connected(self, user_id: str, contact_id: str) -> bool:
        def _select(cur: duckdb.DuckDBPyConnection):
            return cur.execute(
                "SELECT 1 FROM user_connections WHERE user_id = ? AND contact_id = ?",
                [user_id, contact_id],
            ).fetchone()

        return (await self.db.run(_select)) is not None


def get_user_store() -> UserStore:
    """Return a store bound to the process-wide database."""
    return UserStore(Database.get_instance())
