"""
Secret storage for OAuth tokens and client credentials.

The host application normally injects its own keychain-backed store;
``FileSecretStore`` is the standalone default and keeps secrets in a
JSON file readable only by the current user.
"""

from __future__ import annotations

import asyncio
import stat
from abc import ABC, abstractmethod
from pathlib import Path

from ..file_ops import read_json, write_json_atomic

# Secret names
ACCESS_TOKEN_KEY = "assistant.remote-access-token"
REFRESH_TOKEN_KEY = "assistant.remote-refresh-token"
TOKEN_EXPIRY_KEY = "assistant.remote-token-expiry"
USER_EMAIL_KEY = "assistant.remote-email"
USER_NAME_KEY = "assistant.remote-name"
CLIENT_ID_KEY = "assistant.oauth-client-id"
CLIENT_SECRET_KEY = "assistant.oauth-client-secret"

SESSION_SECRET_KEYS = (
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    TOKEN_EXPIRY_KEY,
    USER_EMAIL_KEY,
    USER_NAME_KEY,
)


class SecretStore(ABC):
    """Minimal async key/value interface for secrets."""

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def store(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...


class MemorySecretStore(SecretStore):
    """Process-local secret store (tests, ephemeral sessions)."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def store(self, key: str, value: str) -> None:
        self._values[key] = value

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)


class FileSecretStore(SecretStore):
    """Secrets in a JSON file with 0600 permissions."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def _load(self) -> dict[str, str]:
        data = await read_json(self.path)
        return data if isinstance(data, dict) else {}

    async def get(self, key: str) -> str | None:
        return (await self._load()).get(key)

    async def store(self, key: str, value: str) -> None:
        async with self._lock:
            data = await self._load()
            data[key] = value
            await write_json_atomic(self.path, data, mode=stat.S_IRUSR | stat.S_IWUSR)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = await self._load()
            if data.pop(key, None) is not None:
                await write_json_atomic(self.path, data, mode=stat.S_IRUSR | stat.S_IWUSR)
