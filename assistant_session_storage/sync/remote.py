"""
Remote object storage for synced blobs.

Blobs live in the account's application-data folder, which is private
to this app and not visible in the user's file browser. Only three
operations are needed: find a blob by name, download its bytes, and
create-or-update it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

from ..exceptions import RemoteStorageError, SyncError

logger = logging.getLogger(__name__)

API_ROOT = "https://www.googleapis.com"
APP_FOLDER = "appDataFolder"

TokenProvider = Callable[[], Awaitable[str]]


class RemoteBlobStore(ABC):
    """Named-blob storage scoped to the signed-in account."""

    @abstractmethod
    async def find(self, name: str) -> str | None:
        """Return the remote id of the blob called ``name``, or None."""
        ...

    @abstractmethod
    async def download(self, file_id: str) -> bytes:
        """Fetch a blob's raw bytes."""
        ...

    @abstractmethod
    async def upload(
        self,
        name: str,
        content: bytes,
        mime_type: str,
        file_id: str | None = None,
    ) -> str:
        """Create a blob (``file_id`` None) or overwrite an existing one.

        Content must be stored byte-for-byte.

        Returns:
            The blob's remote id
        """
        ...

    async def aclose(self) -> None:
        return None


class DriveAppDataStore(RemoteBlobStore):
    """Google Drive v3 application-data folder accessed with aiohttp.

    A bearer token is requested from ``token_provider`` for every call, so
    refreshes happen transparently between requests. The HTTP session is
    created lazily inside the running event loop unless one is injected.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        session: aiohttp.ClientSession | None = None,
        timeout: float = 60.0,
        api_root: str = API_ROOT,
    ) -> None:
        self._token_provider = token_provider
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self.files_url = f"{api_root.rstrip('/')}/drive/v3/files"
        self.upload_url = f"{api_root.rstrip('/')}/upload/drive/v3/files"

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        data: bytes | None = None,
    ) -> bytes:
        request_headers = {"Authorization": f"Bearer {await self._token_provider()}"}
        request_headers.update(headers or {})
        try:
            async with self._client().request(
                method, url, params=params, headers=request_headers, data=data
            ) as response:
                body = await response.read()
                if response.status >= 300:
                    raise RemoteStorageError(
                        operation, response.status, body.decode("utf-8", errors="replace")
                    )
                return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SyncError(f"Remote {operation} request failed: {e}", cause=e) from e

    async def find(self, name: str) -> str | None:
        body = await self._request(
            "list",
            "GET",
            self.files_url,
            params={
                "q": f"name='{name}' and trashed=false",
                "spaces": APP_FOLDER,
                "fields": "files(id,name)",
            },
        )
        for item in _parse_json(body).get("files", []):
            if item.get("name") == name:
                return item["id"]
        return None

    async def download(self, file_id: str) -> bytes:
        return await self._request(
            "download", "GET", f"{self.files_url}/{file_id}", params={"alt": "media"}
        )

    async def upload(
        self,
        name: str,
        content: bytes,
        mime_type: str,
        file_id: str | None = None,
    ) -> str:
        """Multipart upload; POST creates in the app folder, PATCH updates."""
        if file_id is None:
            method, url = "POST", self.upload_url
            metadata: dict[str, Any] = {"name": name, "parents": [APP_FOLDER]}
        else:
            method, url = "PATCH", f"{self.upload_url}/{file_id}"
            metadata = {}

        boundary = f"blob{secrets.token_hex(12)}"
        body = await self._request(
            "upload",
            method,
            url,
            params={"uploadType": "multipart"},
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            data=build_multipart_body(boundary, metadata, content, mime_type),
        )
        return _parse_json(body).get("id") or file_id or ""

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


def build_multipart_body(boundary: str, metadata: dict, content: bytes, mime_type: str) -> bytes:
    """Assemble a multipart/related body from bytes so binary content is untouched."""
    head = (
        f"--{boundary}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        f"{json.dumps(metadata)}\r\n"
        f"--{boundary}\r\n"
        f"Content-Type: {mime_type}\r\n\r\n"
    ).encode("utf-8")
    tail = f"\r\n--{boundary}--".encode("utf-8")
    return head + content + tail


def _parse_json(body: bytes) -> dict[str, Any]:
    try:
        data = json.loads(body)
    except ValueError:
        logger.warning("Remote response was not JSON")
        return {}
    return data if isinstance(data, dict) else {}
