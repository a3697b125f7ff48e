"""
Shared test configuration and fixtures.

Provides temporary storage configs, an in-memory secret store, an
in-memory remote blob store standing in for the account's app folder,
and helpers to build session databases "from another device".
"""

import logging
from pathlib import Path

import aiosqlite
import pytest

from assistant_session_storage.backends import SQLiteSessionStore
from assistant_session_storage.config import StorageConfig
from assistant_session_storage.exceptions import RemoteStorageError
from assistant_session_storage.identity import MemorySecretStore
from assistant_session_storage.identity.secrets import (
    ACCESS_TOKEN_KEY,
    CLIENT_ID_KEY,
    CLIENT_SECRET_KEY,
    REFRESH_TOKEN_KEY,
    TOKEN_EXPIRY_KEY,
    USER_EMAIL_KEY,
    USER_NAME_KEY,
)
from assistant_session_storage.models import Message, MessageRole, Session, SessionMode, now_ms
from assistant_session_storage.sync import RemoteBlobStore

logger = logging.getLogger(__name__)


class InMemoryBlobStore(RemoteBlobStore):
    """
    Remote blob store kept in a dict, for sync tests without network access.

    Records every upload so tests can count pushes.
    """

    def __init__(self):
        self.blobs: dict[str, tuple[str, bytes]] = {}
        self.uploads: list[tuple[str, str | None]] = []
        self.fail_with: Exception | None = None
        self.closed = False

    def put(self, name: str, content: bytes) -> None:
        self.blobs[name] = (f"id-{name}", content)

    def content(self, name: str) -> bytes | None:
        entry = self.blobs.get(name)
        return entry[1] if entry else None

    def upload_count(self, name: str) -> int:
        return sum(1 for uploaded, _ in self.uploads if uploaded == name)

    async def find(self, name: str) -> str | None:
        if self.fail_with is not None:
            raise self.fail_with
        entry = self.blobs.get(name)
        return entry[0] if entry else None

    async def download(self, file_id: str) -> bytes:
        for blob_id, content in self.blobs.values():
            if blob_id == file_id:
                return content
        raise RemoteStorageError("download", 404, "not found")

    async def upload(self, name, content, mime_type, file_id=None) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        blob_id = file_id or f"id-{name}"
        self.blobs[name] = (blob_id, bytes(content))
        self.uploads.append((name, file_id))
        return blob_id

    async def aclose(self) -> None:
        self.closed = True


def make_session(
    session_id: str,
    updated_at: int | None = None,
    title: str | None = None,
    messages: int = 2,
    mode: SessionMode = SessionMode.CHAT,
) -> Session:
    """Build a session with alternating user/assistant messages."""
    updated = updated_at if updated_at is not None else now_ms()
    return Session(
        id=session_id,
        title=title or f"Session {session_id}",
        mode=mode,
        created_at=updated - 1000,
        updated_at=updated,
        messages=[
            Message(
                id=f"{session_id}-m{i}",
                role=MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT,
                content=f"message {i} of {session_id}",
                timestamp=updated - 1000 + i,
            )
            for i in range(messages)
        ],
    )


async def build_database(path: Path, sessions: list[Session]) -> bytes:
    """Create a session database file elsewhere and return its bytes."""
    store = await SQLiteSessionStore.create(db_path=path)
    try:
        for session in sessions:
            await store.save_session(session)
        await store.checkpoint()
    finally:
        await store.close()
    return path.read_bytes()


async def force_session_mode(path: Path, session_id: str, mode: str) -> bytes:
    """Write a raw mode value no current model accepts, as a newer client might."""
    async with aiosqlite.connect(path) as conn:
        await conn.execute("UPDATE sessions SET mode = ? WHERE id = ?", (mode, session_id))
        await conn.commit()
    return path.read_bytes()


def signed_in_secrets(expires_in_ms: int = 3_600_000) -> MemorySecretStore:
    return MemorySecretStore(
        {
            ACCESS_TOKEN_KEY: "access-123",
            REFRESH_TOKEN_KEY: "refresh-456",
            TOKEN_EXPIRY_KEY: str(now_ms() + expires_in_ms),
            USER_EMAIL_KEY: "user@example.com",
            USER_NAME_KEY: "Test User",
            CLIENT_ID_KEY: "client-id",
            CLIENT_SECRET_KEY: "client-secret",
        }
    )


@pytest.fixture
def config(tmp_path):
    """Storage config rooted in a temp directory with short debounce delays."""
    return StorageConfig(
        storage_dir=tmp_path / "data",
        push_debounce_seconds=0.05,
        rename_debounce_seconds=0.02,
        oauth_timeout_seconds=2.0,
    )


@pytest.fixture
def secret_store():
    return MemorySecretStore()


@pytest.fixture
def remote():
    return InMemoryBlobStore()


@pytest.fixture
async def sqlite_store(config):
    """Initialized SQLite store on a temp file."""
    store = await SQLiteSessionStore.create(config)
    yield store
    await store.close()
