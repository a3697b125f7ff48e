"""
Abstract session store interface.

Defines the contract both local backends implement. Callers must not
depend on which backend is active.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from types import TracebackType

from ..exceptions import SessionNotFoundError
from ..models import TITLE_MAX_RENAME, Session, SessionSummary, StorageStats, now_ms


class SessionStore(ABC):
    """Abstract interface for durable session storage.

    ``save_session`` must be atomic with respect to the session's own
    message list: a reader never observes a partially rewritten list.
    """

    name: str = "abstract"

    @abstractmethod
    async def initialize(self) -> bool:
        """Open the backend.

        Returns:
            True when the backend is usable. Failures are reported by
            returning False, never by raising.
        """
        ...

    @abstractmethod
    async def save_session(self, session: Session) -> None:
        """Insert or replace a session together with its full message list.

        Raises:
            StorageIOError: If the write fails
        """
        ...

    @abstractmethod
    async def load_session(self, session_id: str) -> Session | None:
        """Load a session with its messages in conversation order.

        Returns:
            The session, or None if it does not exist
        """
        ...

    @abstractmethod
    async def list_sessions(self) -> list[SessionSummary]:
        """List session summaries, most recently updated first."""
        ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Delete a session and all its messages. Unknown ids are a no-op."""
        ...

    @abstractmethod
    async def clear_all(self) -> None:
        """Delete every session and message."""
        ...

    @abstractmethod
    async def get_stats(self) -> StorageStats:
        """Return size counters for this backend."""
        ...

    async def close(self) -> None:
        """Release resources held by the backend."""
        return None

    async def rename_session(self, session_id: str, title: str, now: int | None = None) -> Session:
        """Retitle a session and bump its updated_at.

        Backends with cheaper in-place updates override this.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        session = await self.load_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        session.title = title.strip()[:TITLE_MAX_RENAME]
        session.touch(now if now is not None else now_ms())
        await self.save_session(session)
        return session

    async def __aenter__(self) -> SessionStore:
        await self.initialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
