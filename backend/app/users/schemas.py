"""Pydantic schemas for user identities.

The messaging core references users but does not own them. Only the public
projection ever leaves the store: the password hash stays in the table.
"""
from pydantic import BaseModel, Field


class UserSummary(BaseModel):
    """Sender fields denormalized onto broadcast messages."""
    id: str = Field(..., description="User ID")
    name: str = Field(..., description="Display name")
    profilePicture: str = Field(default="", description="Avatar reference")


class UserPublic(UserSummary):
    """A user record minus secret credential fields.

    Attributes:
        id: Opaque unique user ID.
        name: Display name shown in the UI.
        email: Login email (lowercased).
        profilePicture: Avatar reference (URL or upload path).
    """
    email: str = Field(..., description="Login email")

    def summary(self) -> UserSummary:
        return UserSummary(id=self.id, name=self.name, profilePicture=self.profilePicture)
