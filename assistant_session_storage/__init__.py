"""
Assistant Session Storage

Local-first conversation history for a desktop assistant, with optional
sync of the whole database to a private remote folder.

Provides:
- SQLite session store with a flat-file JSON fallback
- Credential and setting tables that travel with the database
- OAuth2 sign-in with transparent token refresh
- Debounced push and newest-wins merge on pull

Usage:

    >>> from assistant_session_storage import HistoryManager, StorageConfig, SessionMode
    >>> manager = HistoryManager(StorageConfig.load())
    >>> await manager.initialize()
    >>> manager.create_session(SessionMode.CHAT)
    >>> await manager.add_message("user", "Explain this stack trace")
    >>> await manager.list_sessions()

Backends can also be used directly:

    from assistant_session_storage.backends import SQLiteSessionStore

    async with SQLiteSessionStore(config) as store:
        await store.save_session(session)
"""

from .backends import FileSessionStore, SessionStore, SQLiteSessionStore
from .config import StorageConfig
from .exceptions import (
    AuthenticationError,
    AuthenticationRequiredError,
    BackendNotInitializedError,
    CredentialsUnavailableError,
    NoActiveSessionError,
    RemoteStorageError,
    SessionNotFoundError,
    SessionStorageError,
    SessionValidationError,
    StorageConnectionError,
    StorageIOError,
    SyncError,
)
from .history import HistoryManager
from .identity import FileSecretStore, MemorySecretStore, OAuthTokenManager, SecretStore
from .models import (
    AuthStatus,
    Credential,
    Message,
    MessageRole,
    PullResult,
    Session,
    SessionMode,
    SessionSummary,
    Setting,
    StorageStats,
)
from .sync import BlobSyncEngine, DriveAppDataStore, RemoteBlobStore

__all__ = [
    # Facade
    "HistoryManager",
    "StorageConfig",
    # Models
    "Session",
    "SessionSummary",
    "SessionMode",
    "Message",
    "MessageRole",
    "Credential",
    "Setting",
    "AuthStatus",
    "StorageStats",
    "PullResult",
    # Backends
    "SessionStore",
    "SQLiteSessionStore",
    "FileSessionStore",
    # Identity
    "OAuthTokenManager",
    "SecretStore",
    "FileSecretStore",
    "MemorySecretStore",
    # Sync
    "BlobSyncEngine",
    "RemoteBlobStore",
    "DriveAppDataStore",
    # Exceptions
    "SessionStorageError",
    "SessionNotFoundError",
    "SessionValidationError",
    "NoActiveSessionError",
    "StorageIOError",
    "BackendNotInitializedError",
    "StorageConnectionError",
    "CredentialsUnavailableError",
    "SyncError",
    "RemoteStorageError",
    "AuthenticationError",
    "AuthenticationRequiredError",
]

__version__ = "0.1.0"
