"""
Blob synchronization engine.

Syncs the local SQLite database with the remote account as a whole file:
- Push: checkpoint, upload the database bytes, then a small JSON index
- Pull: download the remote database and merge it into the local one
- Debounce: bursts of writes collapse into one push

Merge rule: a remote session is imported only if it is absent locally
or its updated_at is strictly newer. Local sessions are never deleted.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from ..backends.sqlite import SIDECAR_SUFFIXES, SQLiteSessionStore, read_sessions_from_file
from ..exceptions import StorageIOError
from ..file_ops import file_exists, remove_file, write_bytes_atomic
from ..models import PullResult, now_ms
from .remote import RemoteBlobStore

logger = logging.getLogger(__name__)

DB_BLOB_NAME = "sessions.db"
INDEX_BLOB_NAME = "sessions-index.json"
DB_MIME_TYPE = "application/octet-stream"
INDEX_MIME_TYPE = "application/json"
INDEX_LIMIT = 200

SQLITE_HEADER = b"SQLite format 3\x00"


class BlobSyncEngine:
    """Push/pull the session database against a remote blob store.

    Push and pull are serialized by a lock, so they never run against the
    local file at the same time. At most one debounce timer is pending.
    """

    def __init__(
        self,
        store: SQLiteSessionStore,
        remote: RemoteBlobStore,
        debounce_seconds: float = 3.0,
    ) -> None:
        self.store = store
        self.remote = remote
        self.debounce_seconds = debounce_seconds

        self._lock = asyncio.Lock()
        self._debounce_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._last_sync_at = 0

    @property
    def last_sync_time(self) -> int:
        """Millisecond epoch of the last successful push or changing pull (0 if never)."""
        return self._last_sync_at

    @property
    def pending(self) -> bool:
        """True while a debounced push is waiting to fire."""
        return self._debounce_task is not None and not self._debounce_task.done()

    # =========================================================================
    # Debounce
    # =========================================================================

    def schedule_push(self, delay: float | None = None) -> None:
        """Push after ``delay`` seconds unless rescheduled first.

        Each call cancels the pending timer and starts a new one. Must be
        called from a running event loop.
        """
        self.cancel()
        wait = self.debounce_seconds if delay is None else delay
        task = asyncio.create_task(self._delayed_push(wait), name="session-sync-push")
        self._debounce_task = task
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _delayed_push(self, delay: float) -> None:
        await asyncio.sleep(delay)

        # Detach so a reschedule during the upload cannot cancel it
        if self._debounce_task is asyncio.current_task():
            self._debounce_task = None

        try:
            await self.push()
        except Exception as e:
            logger.warning(f"Background push failed: {e}", exc_info=True)

    def cancel(self) -> None:
        """Drop the pending debounced push, if any."""
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = None

    async def flush(self) -> None:
        """Cancel the pending timer and push immediately. Errors propagate."""
        self.cancel()
        await self.push()

    async def aclose(self) -> None:
        """Cancel pending work and wait for in-flight pushes to finish."""
        self.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # =========================================================================
    # Push
    # =========================================================================

    async def push(self) -> None:
        """Upload the database file, then the session index.

        Raises:
            SyncError: If the remote store rejects or fails a request
        """
        async with self._lock:
            content = await self.store.export_bytes()
            if content is None:
                logger.debug("No local database file yet; nothing to push")
                return

            existing_id = await self.remote.find(DB_BLOB_NAME)
            await self.remote.upload(DB_BLOB_NAME, content, DB_MIME_TYPE, existing_id)
            await self._push_index()

            self._last_sync_at = now_ms()
            logger.info(f"Pushed database ({len(content)} bytes)")

    async def _push_index(self) -> None:
        summaries = await self.store.list_sessions(limit=INDEX_LIMIT)
        index = [
            {"id": s.id, "title": s.title, "mode": s.mode.value, "updatedAt": s.updated_at}
            for s in summaries
        ]
        payload = json.dumps(index).encode("utf-8")
        existing_id = await self.remote.find(INDEX_BLOB_NAME)
        await self.remote.upload(INDEX_BLOB_NAME, payload, INDEX_MIME_TYPE, existing_id)

    async def fetch_remote_index(self) -> list[dict[str, Any]]:
        """Download the remote session index without fetching the database."""
        file_id = await self.remote.find(INDEX_BLOB_NAME)
        if file_id is None:
            return []
        data = json.loads((await self.remote.download(file_id)).decode("utf-8"))
        return data if isinstance(data, list) else []

    # =========================================================================
    # Pull
    # =========================================================================

    async def pull(self) -> PullResult:
        """Bring the remote database into the local one.

        Returns:
            SKIPPED if there is no remote copy or nothing was newer,
            REPLACED if the remote copy became the local database,
            MERGED if at least one session was imported.

        Raises:
            SyncError: If finding or downloading the remote blob fails
        """
        async with self._lock:
            remote_id = await self.remote.find(DB_BLOB_NAME)
            if remote_id is None:
                logger.debug("No remote database; pull skipped")
                return PullResult.SKIPPED

            remote_bytes = await self.remote.download(remote_id)
            if not remote_bytes.startswith(SQLITE_HEADER):
                logger.warning("Remote blob is not a SQLite database; pull skipped")
                return PullResult.SKIPPED

            if not await file_exists(self.store.db_path):
                await self._replace_local(remote_bytes)
                self._last_sync_at = now_ms()
                return PullResult.REPLACED

            result = await self._merge_from(remote_bytes)
            if result is PullResult.MERGED:
                self._last_sync_at = now_ms()
            return result

    async def _replace_local(self, remote_bytes: bytes) -> None:
        """Fresh install: the remote copy becomes the local database."""
        if not await self.store.replace_with(remote_bytes):
            logger.error(f"Could not reopen database after replacing it: {self.store.db_path}")
        logger.info(f"Local database replaced from remote ({len(remote_bytes)} bytes)")

    async def _merge_from(self, remote_bytes: bytes) -> PullResult:
        """Import newer remote sessions via a temporary read-only copy.

        Failures are logged, never raised. Each import commits on its own,
        so a merge that stops partway still reports MERGED for what it
        already imported. The temp file is always removed.
        """
        db_path = self.store.db_path
        tmp_path = db_path.with_name(db_path.name + ".remote-tmp")
        imported = 0

        try:
            await write_bytes_atomic(tmp_path, remote_bytes)
            local_timestamps = await self.store.get_session_timestamps()

            async for session in read_sessions_from_file(tmp_path):
                local_updated = local_timestamps.get(session.id)
                if local_updated is not None and local_updated >= session.updated_at:
                    continue
                await self.store.save_session(session)
                imported += 1
        except Exception as e:
            logger.error(
                f"Merge from remote copy failed after {imported} import(s): {e}", exc_info=True
            )
            return PullResult.MERGED if imported else PullResult.SKIPPED
        finally:
            await _remove_quietly(tmp_path)

        logger.info(f"Merged {imported} session(s) from remote")
        return PullResult.MERGED if imported else PullResult.SKIPPED


async def _remove_quietly(path: Path) -> None:
    for candidate in (path, *(Path(f"{path}{s}") for s in SIDECAR_SUFFIXES)):
        try:
            await remove_file(candidate)
        except StorageIOError as e:
            logger.warning(f"Could not remove temporary file {candidate}: {e}")
