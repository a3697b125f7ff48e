"""
Storage configuration.

Configuration can be provided directly, from environment variables, or
from a YAML settings file:

```yaml
storage:
  storage_dir: ~/.assistant-sessions
  db_filename: sessions.db
  list_limit: 200
  push_debounce_seconds: 3
  oauth_callback_port: 9876
```

Environment Variables:
    ASSISTANT_STORAGE_DIR: Directory holding the database and fallback files
    ASSISTANT_DB_FILENAME: Database file name (default: sessions.db)
    ASSISTANT_LIST_LIMIT: Maximum sessions returned by a listing (default: 200)
    ASSISTANT_PUSH_DEBOUNCE: Seconds to coalesce writes before a push (default: 3)
    ASSISTANT_OAUTH_PORT: Fixed loopback port for the OAuth callback (default: 9876)
    ASSISTANT_OAUTH_TIMEOUT: Seconds to wait for the OAuth callback (default: 300)
    ASSISTANT_SECRETS_PATH: File used by the default secret store
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_DIR = Path.home() / ".assistant-sessions"

# env var -> (field name, converter)
_ENV_FIELDS: dict[str, tuple[str, Any]] = {
    "ASSISTANT_STORAGE_DIR": ("storage_dir", Path),
    "ASSISTANT_DB_FILENAME": ("db_filename", str),
    "ASSISTANT_LIST_LIMIT": ("list_limit", int),
    "ASSISTANT_PUSH_DEBOUNCE": ("push_debounce_seconds", float),
    "ASSISTANT_OAUTH_PORT": ("oauth_callback_port", int),
    "ASSISTANT_OAUTH_TIMEOUT": ("oauth_timeout_seconds", float),
    "ASSISTANT_SECRETS_PATH": ("secrets_path", Path),
}


@dataclass
class StorageConfig:
    """Configuration for local storage, sync and authorization.

    Attributes:
        storage_dir: Root directory for all local data
        db_filename: SQLite database file name inside storage_dir
        sessions_dirname: Directory for per-session JSON files (fallback backend)
        index_filename: Summary index file name (fallback backend)
        list_limit: Cap on sessions returned by list_sessions()
        fallback_index_limit: Cap on summaries kept in the fallback index
        push_debounce_seconds: Delay before a scheduled push fires
        rename_debounce_seconds: Shorter delay used after a rename
        oauth_callback_port: Loopback port of the OAuth redirect listener
        oauth_timeout_seconds: Hard timeout for the interactive sign-in
        secrets_path: File backing the default secret store
    """

    storage_dir: Path = DEFAULT_STORAGE_DIR
    db_filename: str = "sessions.db"
    sessions_dirname: str = "sessions"
    index_filename: str = "sessions-index.json"
    list_limit: int = 200
    fallback_index_limit: int = 100
    push_debounce_seconds: float = 3.0
    rename_debounce_seconds: float = 1.0
    oauth_callback_port: int = 9876
    oauth_timeout_seconds: float = 300.0
    secrets_path: Path | None = None

    def __post_init__(self) -> None:
        self.storage_dir = Path(self.storage_dir).expanduser()
        if self.secrets_path is not None:
            self.secrets_path = Path(self.secrets_path).expanduser()

    @property
    def db_path(self) -> Path:
        return self.storage_dir / self.db_filename

    @property
    def sessions_dir(self) -> Path:
        return self.storage_dir / self.sessions_dirname

    @property
    def index_path(self) -> Path:
        return self.storage_dir / self.index_filename

    @property
    def resolved_secrets_path(self) -> Path:
        return self.secrets_path or self.storage_dir / ".secrets.json"

    @classmethod
    def from_env(cls, base: StorageConfig | None = None) -> StorageConfig:
        """Create config from environment variables.

        Args:
            base: Config whose values are used where no variable is set

        Returns:
            StorageConfig populated from environment variables
        """
        overrides: dict[str, Any] = {}
        for env_name, (field_name, convert) in _ENV_FIELDS.items():
            raw = os.environ.get(env_name)
            if raw is None or raw == "":
                continue
            try:
                overrides[field_name] = convert(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid value for {env_name}: {raw!r}")
        return replace(base or cls(), **overrides)

    @classmethod
    def from_file(cls, path: Path) -> StorageConfig:
        """Create config from the ``storage`` section of a YAML settings file.

        Missing or unreadable files yield the defaults.
        """
        section = _load_yaml_section(path, "storage")
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in section.items() if k in known}
        unknown = set(section) - known
        if unknown:
            logger.warning(f"Ignoring unknown storage settings in {path}: {sorted(unknown)}")
        return cls(**values)

    @classmethod
    def load(cls, settings_path: Path | None = None) -> StorageConfig:
        """Settings file values, overridden by environment variables."""
        base = cls.from_file(settings_path) if settings_path else cls()
        return cls.from_env(base)


def _load_yaml_section(path: Path, section: str) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Could not read settings file {path}: {e}")
        return {}
    value = data.get(section) if isinstance(data, dict) else None
    return value if isinstance(value, dict) else {}
