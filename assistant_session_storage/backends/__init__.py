"""
Local session store backends.

Two interchangeable implementations of ``SessionStore``:

- ``SQLiteSessionStore``: primary, transactional, also stores credentials
- ``FileSessionStore``: JSON-file fallback used when SQLite cannot open
"""

from .base import SessionStore
from .file import FileSessionStore
from .sqlite import SQLiteSessionStore, read_sessions_from_file

__all__ = [
    "SessionStore",
    "SQLiteSessionStore",
    "FileSessionStore",
    "read_sessions_from_file",
]
