"""
History manager: the storage facade used by the application layer.

Picks the backend once at startup (SQLite, or the flat-file fallback if
SQLite cannot open), owns the current session, writes every mutation
through to the backend and, when signed in, schedules a debounced push.

Error policy:
- Explicit user actions (sign_in, sync_now) raise.
- Background bookkeeping (startup pull, debounced push) only logs.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from .backends import FileSessionStore, SessionStore, SQLiteSessionStore
from .config import StorageConfig
from .exceptions import (
    AuthenticationRequiredError,
    CredentialsUnavailableError,
    NoActiveSessionError,
    SyncError,
)
from .identity import FileSecretStore, OAuthTokenManager, SecretStore
from .logging_utils import StorageLoggerAdapter
from .models import (
    TITLE_MAX_RENAME,
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
    default_title,
    new_id,
    now_ms,
    truncate_title,
)
from .sync import BlobSyncEngine, DriveAppDataStore, RemoteBlobStore
from .sync.remote import TokenProvider

logger = logging.getLogger(__name__)

RemoteFactory = Callable[[TokenProvider], RemoteBlobStore]


class HistoryManager:
    """Session storage facade with optional remote sync.

    Example:
        >>> manager = HistoryManager(StorageConfig.load())
        >>> await manager.initialize()
        >>> manager.create_session(SessionMode.CHAT)
        >>> await manager.add_message(MessageRole.USER, "Build me a todo app")
    """

    def __init__(
        self,
        config: StorageConfig | None = None,
        secret_store: SecretStore | None = None,
        token_manager: OAuthTokenManager | None = None,
        remote_factory: RemoteFactory | None = None,
    ) -> None:
        self.config = config or StorageConfig.from_env()
        self.sqlite = SQLiteSessionStore(self.config)
        self.fallback = FileSessionStore(self.config)
        self.auth = token_manager or OAuthTokenManager(
            secret_store or FileSecretStore(self.config.resolved_secrets_path),
            self.config,
        )
        self._remote_factory: RemoteFactory = remote_factory or DriveAppDataStore
        self._sqlite_ready = False
        self._sync: BlobSyncEngine | None = None
        self._current: Session | None = None
        self._startup_pull: asyncio.Task[None] | None = None
        self._log = StorageLoggerAdapter(logger, {"storage_dir": str(self.config.storage_dir)})

    # =========================================================================
    # Startup and backend selection
    # =========================================================================

    async def initialize(self) -> None:
        """Select the backend and, if signed in, start a background pull."""
        self._sqlite_ready = await self.sqlite.initialize()
        if not self._sqlite_ready:
            self._log.warning("SQLite unavailable; using flat-file session storage")
            await self.fallback.initialize()

        self._log.info(f"Session storage ready (backend={self.backend_name})")

        status = await self.auth.get_auth_status()
        if status.is_signed_in and self._attach_sync():
            self._startup_pull = asyncio.create_task(self._background_pull("startup"))

    @property
    def store(self) -> SessionStore:
        return self.sqlite if self._sqlite_ready else self.fallback

    @property
    def backend_name(self) -> str:
        return self.store.name

    @property
    def sync_engine(self) -> BlobSyncEngine | None:
        return self._sync

    def _attach_sync(self) -> bool:
        """Create the sync engine. Only the SQLite database can be synced."""
        if not self._sqlite_ready:
            self._log.info("Remote sync disabled: flat-file backend is active")
            return False
        if self._sync is None:
            remote = self._remote_factory(self.auth.get_access_token)
            self._sync = BlobSyncEngine(self.sqlite, remote, self.config.push_debounce_seconds)
        return True

    async def _detach_sync(self) -> None:
        if self._startup_pull is not None and not self._startup_pull.done():
            self._startup_pull.cancel()
            await asyncio.gather(self._startup_pull, return_exceptions=True)
        self._startup_pull = None
        if self._sync is not None:
            await self._sync.aclose()
            await self._sync.remote.aclose()
            self._sync = None

    async def _background_pull(self, reason: str) -> None:
        if self._sync is None:
            return
        try:
            result = await self._sync.pull()
            self._log.info(f"Remote pull on {reason}: {result.value}")
        except Exception as e:
            self._log.warning(f"Remote pull on {reason} failed: {e}", exc_info=True)

    def _schedule_push(self, delay: float | None = None) -> None:
        if self._sync is not None:
            self._sync.schedule_push(delay)

    async def wait_for_startup_pull(self) -> None:
        """Await the background pull started by initialize(), if any."""
        if self._startup_pull is not None:
            await asyncio.gather(self._startup_pull, return_exceptions=True)

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    def create_session(self, mode: SessionMode | str, project_path: str | None = None) -> Session:
        """Start a new conversation and make it current.

        The session is persisted with its first message.
        """
        mode = SessionMode(mode)
        now = now_ms()
        session = Session(
            id=new_id(),
            title=default_title(mode, now),
            mode=mode,
            created_at=now,
            updated_at=now,
            project_path=project_path,
        )
        self._current = session
        return session

    async def add_message(
        self,
        role: MessageRole | str,
        content: str,
        type: str = "text",
        metadata: Any = None,
        timestamp: int | None = None,
    ) -> Message:
        """Append a message to the current session and persist the session.

        The first user message becomes the title (60 chars max).

        Raises:
            NoActiveSessionError: If no session was created or loaded
        """
        session = self._current
        if session is None:
            raise NoActiveSessionError()

        now = now_ms()
        message = Message(
            id=new_id(),
            role=MessageRole(role),
            content=content,
            type=type,
            timestamp=timestamp if timestamp is not None else now,
            metadata=metadata,
        )
        session.messages.append(message)
        session.touch(now)

        if message.role is MessageRole.USER:
            user_messages = sum(1 for m in session.messages if m.role is MessageRole.USER)
            if user_messages == 1:
                session.title = truncate_title(content) or session.title

        await self.save_current_session()
        return message

    async def save_current_session(self) -> None:
        if self._current is None:
            return
        await self.store.save_session(self._current)
        self._schedule_push()

    def get_current_session(self) -> Session | None:
        return self._current

    def set_current_session(self, session: Session | None) -> None:
        self._current = session

    async def load_session(self, session_id: str) -> Session | None:
        """Load a session from the backend and make it current if found."""
        session = await self.store.load_session(session_id)
        if session is not None:
            self._current = session
        return session

    async def list_sessions(self) -> list[SessionSummary]:
        return await self.store.list_sessions()

    async def delete_session(self, session_id: str) -> None:
        if self._current is not None and self._current.id == session_id:
            self._current = None
        await self.store.delete_session(session_id)
        self._schedule_push()

    async def rename_session(self, session_id: str, title: str) -> Session | None:
        """Retitle a session (trimmed, 100 chars max). Blank titles are ignored.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        trimmed = title.strip()[:TITLE_MAX_RENAME]
        if not trimmed:
            return None

        renamed = await self.store.rename_session(session_id, trimmed)
        if self._current is not None and self._current.id == session_id:
            self._current.title = renamed.title
            self._current.touch(renamed.updated_at)

        self._schedule_push(self.config.rename_debounce_seconds)
        return renamed

    async def clear_all(self) -> None:
        """Delete every session. Credentials are kept."""
        self._current = None
        await self.store.clear_all()
        self._schedule_push()

    async def full_reset(self) -> None:
        """Delete every session and every stored credential."""
        self._current = None
        await self.store.clear_all()
        if self._sqlite_ready:
            await self.sqlite.clear_credentials()
        self._schedule_push()

    # =========================================================================
    # Credentials and settings (SQLite only)
    # =========================================================================

    async def save_credential(self, name: str, value: str) -> None:
        """Store a credential in the database so it survives a reinstall via sync.

        Raises:
            CredentialsUnavailableError: If the flat-file backend is active
        """
        if not self._sqlite_ready:
            raise CredentialsUnavailableError(name)
        await self.sqlite.save_credential(name, value)
        self._schedule_push()

    async def get_credential(self, name: str) -> str | None:
        if not self._sqlite_ready:
            return None
        return await self.sqlite.get_credential(name)

    async def delete_credential(self, name: str) -> None:
        if not self._sqlite_ready:
            return
        await self.sqlite.delete_credential(name)
        self._schedule_push()

    async def list_credentials(self) -> list[Credential]:
        if not self._sqlite_ready:
            return []
        return await self.sqlite.list_credentials()

    async def save_setting(self, key: str, value: str) -> None:
        if not self._sqlite_ready:
            raise CredentialsUnavailableError(key)
        await self.sqlite.save_setting(key, value)
        self._schedule_push()

    async def get_setting(self, key: str) -> str | None:
        if not self._sqlite_ready:
            return None
        return await self.sqlite.get_setting(key)

    async def list_settings(self) -> list[Setting]:
        if not self._sqlite_ready:
            return []
        return await self.sqlite.list_settings()

    # =========================================================================
    # Remote account
    # =========================================================================

    async def get_auth_status(self) -> AuthStatus:
        return await self.auth.get_auth_status()

    async def sign_in(self) -> AuthStatus:
        """Interactive sign-in followed by a pull.

        Authorization failures propagate; the follow-up pull only logs.
        """
        await self.auth.sign_in()
        if self._attach_sync():
            await self._background_pull("sign-in")
        return await self.auth.get_auth_status()

    async def sign_out(self) -> None:
        """Push once more (best effort), then delete the stored tokens."""
        if self._sync is not None:
            try:
                await self._sync.flush()
            except Exception as e:
                self._log.warning(f"Final push before sign-out failed: {e}")
        await self._detach_sync()
        await self.auth.sign_out()

    async def sync_now(self) -> PullResult:
        """Explicit sync: pull newer remote sessions, then push the result.

        Raises:
            AuthenticationRequiredError: If not signed in
            SyncError: If the flat-file backend is active or the remote fails
        """
        if not (await self.auth.get_auth_status()).is_signed_in:
            raise AuthenticationRequiredError()
        if not self._attach_sync():
            raise SyncError("Remote sync requires the SQLite backend")

        result = await self._sync.pull()
        await self._sync.flush()
        return result

    def get_last_sync_time(self) -> int:
        return self._sync.last_sync_time if self._sync is not None else 0

    # =========================================================================
    # Misc
    # =========================================================================

    async def get_storage_stats(self) -> StorageStats:
        return await self.store.get_stats()

    def get_message_history(self) -> list[Message]:
        return list(self._current.messages) if self._current is not None else []

    def get_ai_messages(self) -> list[dict[str, str]]:
        """Conversation as role/content pairs for a model call, system turns excluded."""
        return [
            {"role": m.role.value, "content": m.content}
            for m in self.get_message_history()
            if m.role is not MessageRole.SYSTEM
        ]

    async def close(self) -> None:
        """Flush a pending push (best effort) and close everything."""
        if self._sync is not None and self._sync.pending:
            try:
                await self._sync.flush()
            except Exception as e:
                self._log.warning(f"Push on close failed: {e}")
        await self._detach_sync()
        await self.sqlite.close()
        await self.fallback.close()
