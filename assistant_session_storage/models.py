"""
Session data model.

Sessions are conversation threads holding an ordered list of messages.
Timestamps are millisecond epoch integers; ``updated_at`` never goes
backwards and is the only signal used when merging a remote copy.

Serialized form (flat-file backend and remote index) uses camelCase keys:

    {"id": ..., "title": ..., "mode": "chat", "projectPath": null,
     "createdAt": 1700000000000, "updatedAt": 1700000000000,
     "messages": [...], "plan": null}
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

TITLE_MAX_AUTO = 60
TITLE_MAX_RENAME = 100


class SessionMode(str, Enum):
    """Purpose of a session. Fixed at creation."""

    NEW_APP = "new-app"
    EXISTING_PROJECT = "existing-project"
    CHAT = "chat"

    @property
    def label(self) -> str:
        return _MODE_LABELS[self]


_MODE_LABELS = {
    SessionMode.NEW_APP: "New App",
    SessionMode.EXISTING_PROJECT: "Project Work",
    SessionMode.CHAT: "Chat",
}


class MessageRole(str, Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class PullResult(str, Enum):
    """Outcome of pulling the remote database into the local one."""

    MERGED = "merged"
    REPLACED = "replaced"
    SKIPPED = "skipped"


def now_ms() -> int:
    """Current time as a millisecond epoch."""
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


def truncate_title(text: str, limit: int = TITLE_MAX_AUTO) -> str:
    """Collapse newlines and shorten to ``limit`` characters with an ellipsis."""
    cleaned = text.replace("\r", " ").replace("\n", " ").strip()
    if len(cleaned) > limit:
        return cleaned[: limit - 3] + "..."
    return cleaned


def default_title(mode: SessionMode, now: int | None = None) -> str:
    """Auto-generated title, e.g. ``Chat - Mar 04, 14:05``."""
    moment = datetime.fromtimestamp((now if now is not None else now_ms()) / 1000)
    return f"{SessionMode(mode).label} - {moment.strftime('%b %d, %H:%M')}"


@dataclass
class Message:
    """One turn in a session.

    ``type`` and ``metadata`` are opaque to storage; they belong to the
    renderer that produced the message.
    """

    id: str
    role: MessageRole
    content: str
    timestamp: int
    type: str = "text"
    metadata: Any = None

    def __post_init__(self) -> None:
        self.role = MessageRole(self.role)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "type": self.type,
            "timestamp": self.timestamp,
        }
        if self.metadata is not None:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            id=data["id"],
            role=MessageRole(data["role"]),
            content=data.get("content", ""),
            timestamp=int(data.get("timestamp", 0)),
            type=data.get("type") or "text",
            metadata=data.get("metadata"),
        )


@dataclass
class SessionSummary:
    """Listing entry for a session; never carries message bodies."""

    id: str
    title: str
    mode: SessionMode
    created_at: int
    updated_at: int
    message_count: int = 0

    def __post_init__(self) -> None:
        self.mode = SessionMode(self.mode)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "mode": self.mode.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "messageCount": self.message_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionSummary:
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            mode=SessionMode(data.get("mode", SessionMode.CHAT.value)),
            created_at=int(data.get("createdAt", 0)),
            updated_at=int(data.get("updatedAt", 0)),
            message_count=int(data.get("messageCount", 0)),
        )


@dataclass
class Session:
    """A conversation thread.

    Attributes:
        id: Unique, immutable identifier
        title: Human label (auto-generated, then first user message or rename)
        mode: Session purpose, immutable after creation
        created_at: Creation time (ms epoch)
        updated_at: Last modification time (ms epoch), non-decreasing
        messages: Messages in conversation order
        project_path: Optional filesystem path the session works on
        plan: Optional opaque structured payload
    """

    id: str
    title: str
    mode: SessionMode
    created_at: int
    updated_at: int
    messages: list[Message] = field(default_factory=list)
    project_path: str | None = None
    plan: Any = None

    def __post_init__(self) -> None:
        self.mode = SessionMode(self.mode)

    def touch(self, now: int | None = None) -> int:
        """Bump updated_at to ``now`` without ever moving it backwards."""
        self.updated_at = max(self.updated_at, now if now is not None else now_ms())
        return self.updated_at

    def summary(self) -> SessionSummary:
        return SessionSummary(
            id=self.id,
            title=self.title,
            mode=self.mode,
            created_at=self.created_at,
            updated_at=self.updated_at,
            message_count=len(self.messages),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "mode": self.mode.value,
            "projectPath": self.project_path,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "messages": [m.to_dict() for m in self.messages],
            "plan": self.plan,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            mode=SessionMode(data.get("mode", SessionMode.CHAT.value)),
            created_at=int(data.get("createdAt", 0)),
            updated_at=int(data.get("updatedAt", 0)),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            project_path=data.get("projectPath"),
            plan=data.get("plan"),
        )


@dataclass
class Credential:
    """Named secret value (API key, OAuth token) kept in the database.

    Settings share this shape; see ``Setting``.
    """

    name: str
    value: str
    updated_at: int


Setting = Credential


@dataclass
class AuthStatus:
    """Remote account state as reported to the application."""

    is_signed_in: bool
    user_email: str | None = None
    user_name: str | None = None

    @property
    def storage_type(self) -> str:
        return "remote" if self.is_signed_in else "local"

    def to_dict(self) -> dict[str, Any]:
        return {
            "isSignedIn": self.is_signed_in,
            "userEmail": self.user_email,
            "userName": self.user_name,
            "storageType": self.storage_type,
        }


@dataclass
class StorageStats:
    """Size counters for the active backend."""

    session_count: int
    message_count: int
    db_size_bytes: int
    backend: str
