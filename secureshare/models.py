"""Database models for SecureShare."""

from sqlmodel import SQLModel, Field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Visibility(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"


class LogCategory(str, Enum):
    AUTH = "auth"
    FILE = "file"
    ADMIN = "admin"
    SECURITY = "security"
    SYSTEM = "system"


class User(SQLModel, table=True):
    """User model for authentication."""
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(unique=True, index=True)
    email: str = Field(unique=True, index=True)
    password_hash: str
    role: Role = Field(default=Role.USER)
    status: UserStatus = Field(default=UserStatus.ACTIVE, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    password_changed_at: datetime = Field(default_factory=utcnow)
    last_login: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


class Session(SQLModel, table=True):
    """Session model for user sessions."""
    token: str = Field(primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(index=True)
    last_accessed_at: datetime = Field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class FileRecord(SQLModel, table=True):
    """Metadata for an uploaded file; the bytes live under the upload root."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    mime_type: str = "application/octet-stream"
    size: int
    owner_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    visibility: Visibility = Field(default=Visibility.PRIVATE, index=True)
    storage_path: str = Field(unique=True)
    uploaded_at: datetime = Field(default_factory=utcnow)


class Setting(SQLModel, table=True):
    """Runtime setting, editable by administrators."""
    key: str = Field(primary_key=True)
    value: Optional[str] = None


class LogEntry(SQLModel, table=True):
    """Audit ledger row. Written once, never updated."""
    id: Optional[int] = Field(default=None, primary_key=True)
    timestamp: datetime = Field(default_factory=utcnow, index=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    ip_address: Optional[str] = None
    action: str = Field(index=True)
    details: Optional[str] = None
    category: LogCategory = Field(index=True)
    resource_id: Optional[int] = None
