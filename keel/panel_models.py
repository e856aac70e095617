"""
Domain models for KEEL

Users and sessions are the two persisted record types; FileEntry is computed
from filesystem metadata on every listing and never stored.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """User role"""
    ADMIN = "admin"
    USER = "user"


class EntryType(str, Enum):
    """Kind of directory entry"""
    FILE = "file"
    DIRECTORY = "directory"


class User(BaseModel):
    """User record, including the password hash"""
    id: int
    identifier: str
    password_hash: str
    role: Role = Role.USER
    created_at: datetime = Field(default_factory=utcnow)

    def public(self) -> "PublicUser":
        return PublicUser(
            id=self.id,
            identifier=self.identifier,
            role=self.role,
            created_at=self.created_at,
        )


class PublicUser(BaseModel):
    """User as returned to clients"""
    id: int
    identifier: str
    role: Role
    created_at: datetime


class Session(BaseModel):
    """Login session bound to a user id"""
    token: str
    user_id: int
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class FileEntry(BaseModel):
    """Directory entry built from filesystem metadata"""
    name: str
    type: EntryType
    size_bytes: Optional[int] = None  # files only
    modified_at: datetime
