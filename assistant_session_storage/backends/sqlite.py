"""
SQLite session store.

Primary backend. Sessions, messages, credentials and settings live in a
single WAL-mode database file, which is also the unit the sync engine
uploads and merges.

The column set of ``sessions`` and ``messages`` is read back by
``read_sessions_from_file`` when merging a downloaded copy, so columns
may be added but never renamed or removed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import aiosqlite

from ..config import StorageConfig
from ..exceptions import (
    BackendNotInitializedError,
    SessionNotFoundError,
    StorageConnectionError,
    StorageIOError,
)
from ..file_ops import file_size, read_bytes, remove_file, write_bytes_atomic
from ..models import (
    TITLE_MAX_RENAME,
    Credential,
    Message,
    Session,
    SessionSummary,
    Setting,
    StorageStats,
    now_ms,
)
from .base import SessionStore

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Files SQLite may keep next to the database
SIDECAR_SUFFIXES = ("-wal", "-shm", "-journal")

SESSION_COLUMNS = (
    "id",
    "title",
    "mode",
    "project_path",
    "created_at",
    "updated_at",
    "plan_json",
)

MESSAGE_COLUMNS = (
    "id",
    "session_id",
    "role",
    "content",
    "type",
    "timestamp",
    "metadata_json",
    "seq",
)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id            TEXT PRIMARY KEY,
    title         TEXT NOT NULL DEFAULT 'Untitled',
    mode          TEXT NOT NULL DEFAULT 'chat',
    project_path  TEXT,
    created_at    INTEGER NOT NULL,
    updated_at    INTEGER NOT NULL,
    plan_json     TEXT
);

CREATE TABLE IF NOT EXISTS messages (
    id             TEXT PRIMARY KEY,
    session_id     TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    role           TEXT NOT NULL,
    content        TEXT NOT NULL,
    type           TEXT NOT NULL DEFAULT 'text',
    timestamp      INTEGER NOT NULL,
    metadata_json  TEXT,
    seq            INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, seq);
CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(updated_at DESC);

CREATE TABLE IF NOT EXISTS credentials (
    name        TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_meta (
    key    TEXT PRIMARY KEY,
    value  TEXT
);
"""


class SQLiteSessionStore(SessionStore):
    """
    SQLite-backed session store.

    Features:
    - Single database file, WAL journal, foreign keys enforced
    - Transactional save: upsert session, replace its messages, commit
    - Listing by recency via one aggregate query, no message bodies loaded
    - Credential and setting tables that travel with the database file

    All tasks share one connection, so every statement runs under
    ``self._lock``; a transaction is never interleaved with another
    task's writes or reads.
    """

    name = "sqlite"

    def __init__(self, config: StorageConfig | None = None, db_path: Path | str | None = None):
        """
        Initialize SQLite store.

        Args:
            config: Storage configuration
            db_path: Overrides config.db_path (":memory:" is accepted for tests)
        """
        self.config = config or StorageConfig()
        self._db_path = str(db_path) if db_path is not None else str(self.config.db_path)
        self.conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        return Path(self._db_path)

    @property
    def initialized(self) -> bool:
        return self.conn is not None

    @classmethod
    async def create(
        cls, config: StorageConfig | None = None, db_path: Path | str | None = None
    ) -> SQLiteSessionStore:
        """Create and initialize a store, raising if the database cannot be opened."""
        store = cls(config, db_path)
        if not await store.initialize():
            raise StorageConnectionError(store._db_path)
        return store

    async def initialize(self) -> bool:
        """Open the database and ensure the schema exists.

        Returns:
            False (and logs) when the database cannot be opened, so the caller
            can fall back to the flat-file store.
        """
        async with self._lock:
            return await self._open()

    async def _open(self) -> bool:
        if self.conn is not None:
            return True

        conn = None
        try:
            if self._db_path != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(self._db_path)
            async with conn.execute("PRAGMA journal_mode = WAL") as cursor:
                await cursor.fetchone()
            await conn.execute("PRAGMA foreign_keys = ON")
            await conn.executescript(_SCHEMA_SQL)
            await conn.execute(
                """
                INSERT INTO schema_meta (key, value) VALUES ('version', ?)
                ON CONFLICT (key) DO NOTHING
                """,
                (str(SCHEMA_VERSION),),
            )
            await conn.commit()
        except Exception as e:
            logger.error(f"SQLite initialization failed for {self._db_path}: {e}")
            if conn is not None:
                try:
                    await conn.close()
                except Exception:
                    logger.debug("Ignoring close failure after failed init", exc_info=True)
            return False

        self.conn = conn
        logger.info(f"SQLite store initialized: {self._db_path}")
        return True

    async def close(self) -> None:
        """Close the connection once in-flight statements have finished."""
        async with self._lock:
            await self._close()

    async def _close(self) -> None:
        if self.conn is not None:
            await self.conn.close()
            self.conn = None

    def _require_conn(self, operation: str) -> aiosqlite.Connection:
        if self.conn is None:
            raise BackendNotInitializedError(operation, self._db_path)
        return self.conn

    # =========================================================================
    # Sessions
    # =========================================================================

    async def save_session(self, session: Session) -> None:
        """Upsert the session row and replace its messages in one transaction."""
        async with self._lock:
            conn = self._require_conn("save_session")
            try:
                await conn.execute("BEGIN")
                await conn.execute(
                    """
                    INSERT INTO sessions (
                        id, title, mode, project_path, created_at, updated_at, plan_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (id) DO UPDATE SET
                        title = excluded.title,
                        mode = excluded.mode,
                        project_path = excluded.project_path,
                        updated_at = excluded.updated_at,
                        plan_json = excluded.plan_json
                    """,
                    _session_row(session),
                )
                await conn.execute("DELETE FROM messages WHERE session_id = ?", (session.id,))
                await conn.executemany(
                    """
                    INSERT INTO messages (
                        id, session_id, role, content, type, timestamp, metadata_json, seq
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    _message_rows(session),
                )
                await conn.commit()
            except Exception as e:
                await conn.rollback()
                raise StorageIOError("save_session", self._db_path, e) from e

    async def load_session(self, session_id: str) -> Session | None:
        async with self._lock:
            return await _load_session(self._require_conn("load_session"), session_id)

    async def list_sessions(self, limit: int | None = None) -> list[SessionSummary]:
        """List sessions by updated_at descending with message counts."""
        async with self._lock:
            conn = self._require_conn("list_sessions")
            async with conn.execute(
                """
                SELECT s.id, s.title, s.mode, s.created_at, s.updated_at, COUNT(m.id)
                FROM sessions s
                LEFT JOIN messages m ON m.session_id = s.id
                GROUP BY s.id
                ORDER BY s.updated_at DESC
                LIMIT ?
                """,
                (limit or self.config.list_limit,),
            ) as cursor:
                rows = await cursor.fetchall()

        return [
            SessionSummary(
                id=row[0],
                title=row[1],
                mode=row[2],
                created_at=row[3],
                updated_at=row[4],
                message_count=row[5],
            )
            for row in rows
        ]

    async def get_session_timestamps(self) -> dict[str, int]:
        """Map every session id to its updated_at, without the listing cap."""
        async with self._lock:
            conn = self._require_conn("get_session_timestamps")
            async with conn.execute("SELECT id, updated_at FROM sessions") as cursor:
                rows = await cursor.fetchall()
        return {row[0]: row[1] for row in rows}

    async def delete_session(self, session_id: str) -> None:
        """Delete messages, then the session row, in one transaction.

        Messages are deleted explicitly so the result does not depend on
        foreign key enforcement being enabled.
        """
        async with self._lock:
            conn = self._require_conn("delete_session")
            try:
                await conn.execute("BEGIN")
                cursor = await conn.execute(
                    "DELETE FROM messages WHERE session_id = ?", (session_id,)
                )
                deleted_messages = cursor.rowcount
                await conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
                await conn.commit()
            except Exception as e:
                await conn.rollback()
                raise StorageIOError("delete_session", self._db_path, e) from e

        logger.debug(f"Deleted session {session_id} with {deleted_messages} messages")

    async def clear_all(self) -> None:
        """Delete all sessions and messages. Credentials and settings survive."""
        async with self._lock:
            conn = self._require_conn("clear_all")
            try:
                await conn.execute("BEGIN")
                await conn.execute("DELETE FROM messages")
                await conn.execute("DELETE FROM sessions")
                await conn.commit()
            except Exception as e:
                await conn.rollback()
                raise StorageIOError("clear_all", self._db_path, e) from e

    async def rename_session(self, session_id: str, title: str, now: int | None = None) -> Session:
        timestamp = now if now is not None else now_ms()

        async with self._lock:
            conn = self._require_conn("rename_session")
            cursor = await conn.execute(
                "UPDATE sessions SET title = ?, updated_at = MAX(updated_at, ?) WHERE id = ?",
                (title.strip()[:TITLE_MAX_RENAME], timestamp, session_id),
            )
            await conn.commit()
            if cursor.rowcount == 0:
                raise SessionNotFoundError(session_id)
            session = await _load_session(conn, session_id)

        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def get_stats(self) -> StorageStats:
        async with self._lock:
            conn = self._require_conn("get_stats")
            async with conn.execute(
                "SELECT (SELECT COUNT(*) FROM sessions), (SELECT COUNT(*) FROM messages)"
            ) as cursor:
                row = await cursor.fetchone()

        size = 0
        if self._db_path != ":memory:":
            for suffix in ("", "-wal"):
                size += await file_size(Path(self._db_path + suffix))

        return StorageStats(
            session_count=row[0] if row else 0,
            message_count=row[1] if row else 0,
            db_size_bytes=size,
            backend=self.name,
        )

    # =========================================================================
    # Whole-file access for sync
    # =========================================================================

    async def checkpoint(self) -> None:
        """Fold the WAL into the main file so the file alone holds all commits."""
        async with self._lock:
            await self._checkpoint()

    async def _checkpoint(self) -> None:
        conn = self._require_conn("checkpoint")
        async with conn.execute("PRAGMA wal_checkpoint(TRUNCATE)") as cursor:
            busy, _, _ = await cursor.fetchone()
        if busy:
            logger.warning("WAL checkpoint incomplete; database busy")

    async def export_bytes(self) -> bytes | None:
        """Checkpoint and read the database file with no write in between.

        Returns:
            The file contents, or None if the file does not exist yet
        """
        async with self._lock:
            if self.conn is not None:
                await self._checkpoint()
            return await read_bytes(self.db_path)

    async def replace_with(self, content: bytes) -> bool:
        """Swap the database file for ``content`` and reopen it.

        Pending statements finish first; WAL, SHM and journal files of the
        old database are removed so they cannot be applied to the new one.

        Returns:
            True if the new file could be opened
        """
        async with self._lock:
            await self._close()
            for suffix in SIDECAR_SUFFIXES:
                await remove_file(Path(self._db_path + suffix))
            await write_bytes_atomic(self.db_path, content)
            return await self._open()

    # =========================================================================
    # Credentials and settings
    # =========================================================================

    async def save_credential(self, name: str, value: str) -> None:
        await self._put("credentials", "name", name, value)

    async def get_credential(self, name: str) -> str | None:
        return await self._get("credentials", "name", name)

    async def delete_credential(self, name: str) -> None:
        await self._delete("credentials", "name", name)

    async def list_credentials(self) -> list[Credential]:
        return [Credential(*row) for row in await self._all("credentials", "name")]

    async def clear_credentials(self) -> None:
        async with self._lock:
            conn = self._require_conn("clear_credentials")
            await conn.execute("DELETE FROM credentials")
            await conn.commit()

    async def save_setting(self, key: str, value: str) -> None:
        await self._put("settings", "key", key, value)

    async def get_setting(self, key: str) -> str | None:
        return await self._get("settings", "key", key)

    async def delete_setting(self, key: str) -> None:
        await self._delete("settings", "key", key)

    async def list_settings(self) -> list[Setting]:
        return [Setting(*row) for row in await self._all("settings", "key")]

    # Table and key names below are module constants, never caller input.

    async def _put(self, table: str, key_column: str, key: str, value: str) -> None:
        async with self._lock:
            conn = self._require_conn(f"save_{table}")
            await conn.execute(
                f"""
                INSERT INTO {table} ({key_column}, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT ({key_column}) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, now_ms()),
            )
            await conn.commit()

    async def _get(self, table: str, key_column: str, key: str) -> str | None:
        async with self._lock:
            conn = self._require_conn(f"get_{table}")
            async with conn.execute(
                f"SELECT value FROM {table} WHERE {key_column} = ?", (key,)
            ) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else None

    async def _delete(self, table: str, key_column: str, key: str) -> None:
        async with self._lock:
            conn = self._require_conn(f"delete_{table}")
            await conn.execute(f"DELETE FROM {table} WHERE {key_column} = ?", (key,))
            await conn.commit()

    async def _all(self, table: str, key_column: str) -> list[tuple[Any, ...]]:
        async with self._lock:
            conn = self._require_conn(f"list_{table}")
            async with conn.execute(
                f"SELECT {key_column}, value, updated_at FROM {table} ORDER BY {key_column}"
            ) as cursor:
                return [tuple(row) for row in await cursor.fetchall()]


# =============================================================================
# Row mapping
# =============================================================================


def _dump_opaque(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _load_opaque(value: str | None) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Stored payload is not valid JSON; returning raw text")
        return value


def _session_row(session: Session) -> tuple[Any, ...]:
    return (
        session.id,
        session.title,
        session.mode.value,
        session.project_path,
        session.created_at,
        session.updated_at,
        _dump_opaque(session.plan),
    )


def _message_rows(session: Session) -> list[tuple[Any, ...]]:
    return [
        (
            message.id,
            session.id,
            message.role.value,
            message.content,
            message.type,
            message.timestamp,
            _dump_opaque(message.metadata),
            seq,
        )
        for seq, message in enumerate(session.messages)
    ]


async def _load_session(conn: aiosqlite.Connection, session_id: str) -> Session | None:
    async with conn.execute(
        f"SELECT {', '.join(SESSION_COLUMNS)} FROM sessions WHERE id = ?", (session_id,)
    ) as cursor:
        row = await cursor.fetchone()
    if row is None:
        return None

    async with conn.execute(
        f"SELECT {', '.join(MESSAGE_COLUMNS)} FROM messages WHERE session_id = ? ORDER BY seq ASC",
        (session_id,),
    ) as cursor:
        message_rows = await cursor.fetchall()

    session_data = dict(zip(SESSION_COLUMNS, row, strict=True))
    messages = []
    for message_row in message_rows:
        m = dict(zip(MESSAGE_COLUMNS, message_row, strict=True))
        messages.append(
            Message(
                id=m["id"],
                role=m["role"],
                content=m["content"],
                type=m["type"] or "text",
                timestamp=m["timestamp"],
                metadata=_load_opaque(m["metadata_json"]),
            )
        )

    return Session(
        id=session_data["id"],
        title=session_data["title"],
        mode=session_data["mode"],
        created_at=session_data["created_at"],
        updated_at=session_data["updated_at"],
        messages=messages,
        project_path=session_data["project_path"],
        plan=_load_opaque(session_data["plan_json"]),
    )


async def read_sessions_from_file(path: Path) -> AsyncIterator[Session]:
    """Yield every session stored in a database file, opened read-only.

    Used to merge a downloaded copy without touching the live database.
    The file is opened immutable, so no journal or WAL files are written
    next to it. Rows whose values do not map onto the models (an unknown
    mode or role) are logged and skipped.

    Raises:
        StorageIOError: If the file is not a readable session database
    """
    uri = f"{Path(path).resolve().as_uri()}?mode=ro&immutable=1"
    try:
        conn = await aiosqlite.connect(uri, uri=True)
    except Exception as e:
        raise StorageIOError("open_readonly", str(path), e) from e

    try:
        async with conn.execute("SELECT id FROM sessions ORDER BY updated_at DESC") as cursor:
            session_ids = [row[0] for row in await cursor.fetchall()]
        for session_id in session_ids:
            try:
                session = await _load_session(conn, session_id)
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping unreadable session {session_id} in {path}: {e}")
                continue
            if session is not None:
                yield session
    except StorageIOError:
        raise
    except Exception as e:
        raise StorageIOError("read_sessions", str(path), e) from e
    finally:
        await conn.close()
