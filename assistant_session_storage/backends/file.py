"""
Flat-file session store.

Degraded-path backend used when the SQLite database cannot be opened.
No transactions and no credential tables; just JSON documents on disk.

Directory structure:
    {storage_dir}/
      sessions/
        {session_id}.json      full session document
      sessions-index.json      summaries, most recent first, capped
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from ..config import StorageConfig
from ..exceptions import SessionValidationError, StorageIOError
from ..file_ops import (
    ensure_directory,
    file_exists,
    list_files,
    read_json,
    remove_file,
    write_json_atomic,
)
from ..models import Session, SessionSummary, StorageStats
from .base import SessionStore

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9._-]+$")


class FileSessionStore(SessionStore):
    """JSON-file session store with a summary index."""

    name = "json"

    def __init__(self, config: StorageConfig | None = None) -> None:
        self.config = config or StorageConfig()
        self.sessions_dir = self.config.sessions_dir
        self.index_path = self.config.index_path

    async def initialize(self) -> bool:
        try:
            await ensure_directory(self.sessions_dir)
            if not await file_exists(self.index_path):
                await write_json_atomic(self.index_path, [])
        except StorageIOError as e:
            logger.error(f"Flat-file store initialization failed: {e}")
            return False
        return True

    def _session_file(self, session_id: str) -> Path:
        if not _SAFE_ID.match(session_id) or session_id in (".", ".."):
            raise SessionValidationError(f"Invalid session id: {session_id!r}", field="id")
        return self.sessions_dir / f"{session_id}.json"

    async def save_session(self, session: Session) -> None:
        """Write the session file, then update its summary in the index."""
        await write_json_atomic(self._session_file(session.id), session.to_dict())

        index = await self._read_index()
        summary = session.summary()
        for i, existing in enumerate(index):
            if existing.id == session.id:
                index[i] = summary
                break
        else:
            index.insert(0, summary)

        # Stable sort keeps prepend order among equal timestamps
        index.sort(key=lambda s: s.updated_at, reverse=True)
        await self._write_index(index[: self.config.fallback_index_limit])

    async def load_session(self, session_id: str) -> Session | None:
        try:
            data = await read_json(self._session_file(session_id))
        except StorageIOError as e:
            logger.warning(f"Unreadable session file for {session_id}: {e}")
            return None
        if not data:
            return None
        return Session.from_dict(data)

    async def list_sessions(self) -> list[SessionSummary]:
        """Summaries in index order (most recent first)."""
        return await self._read_index()

    async def delete_session(self, session_id: str) -> None:
        await remove_file(self._session_file(session_id))
        index = await self._read_index()
        await self._write_index([s for s in index if s.id != session_id])

    async def clear_all(self) -> None:
        for path in await list_files(self.sessions_dir, suffix=".json"):
            await remove_file(path)
        await self._write_index([])

    async def get_stats(self) -> StorageStats:
        index = await self._read_index()
        return StorageStats(
            session_count=len(index),
            message_count=sum(s.message_count for s in index),
            db_size_bytes=0,
            backend=self.name,
        )

    async def _read_index(self) -> list[SessionSummary]:
        try:
            data = await read_json(self.index_path)
        except StorageIOError as e:
            logger.warning(f"Session index unreadable, treating as empty: {e}")
            return []
        if not isinstance(data, list):
            return []
        return [SessionSummary.from_dict(item) for item in data]

    async def _write_index(self, index: list[SessionSummary]) -> None:
        await write_json_atomic(self.index_path, [s.to_dict() for s in index])
