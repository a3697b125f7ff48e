"""
Tests for secret stores.
"""

import json
import stat

import pytest

from assistant_session_storage.identity import FileSecretStore, MemorySecretStore


class TestFileSecretStore:
    """Tests for the JSON-file secret store."""

    @pytest.mark.asyncio
    async def test_store_get_delete(self, tmp_path):
        store = FileSecretStore(tmp_path / "secrets.json")

        assert await store.get("token") is None
        await store.store("token", "abc")
        await store.store("other", "xyz")
        assert await store.get("token") == "abc"

        await store.delete("token")
        assert await store.get("token") is None
        assert await store.get("other") == "xyz"

    @pytest.mark.asyncio
    async def test_file_readable_by_owner_only(self, tmp_path):
        path = tmp_path / "secrets.json"
        await FileSecretStore(path).store("token", "abc")

        mode = stat.S_IMODE(path.stat().st_mode)
        assert mode == 0o600
        assert json.loads(path.read_text()) == {"token": "abc"}

    @pytest.mark.asyncio
    async def test_delete_missing_key_is_noop(self, tmp_path):
        path = tmp_path / "secrets.json"
        store = FileSecretStore(path)
        await store.delete("nothing")
        assert not path.exists()


class TestMemorySecretStore:
    """Tests for the in-process secret store."""

    @pytest.mark.asyncio
    async def test_initial_values(self):
        store = MemorySecretStore({"a": "1"})
        assert await store.get("a") == "1"
        await store.delete("a")
        await store.delete("a")
        assert await store.get("a") is None
