"""
Tests for the history manager facade.

Covers backend selection, the session lifecycle, credentials, and the
interaction with sign-in and sync.
"""

import asyncio

import pytest
from conftest import build_database, make_session, signed_in_secrets

from assistant_session_storage.config import StorageConfig
from assistant_session_storage.exceptions import (
    AuthenticationError,
    AuthenticationRequiredError,
    CredentialsUnavailableError,
    NoActiveSessionError,
    SessionNotFoundError,
    SyncError,
)
from assistant_session_storage.history import HistoryManager
from assistant_session_storage.identity import MemorySecretStore, OAuthTokenManager
from assistant_session_storage.identity.secrets import REFRESH_TOKEN_KEY
from assistant_session_storage.models import AuthStatus, MessageRole, PullResult, SessionMode
from assistant_session_storage.sync import DB_BLOB_NAME


def broken_connect(*args, **kwargs):
    raise OSError("disk I/O error")


class FakeTokenManager(OAuthTokenManager):
    """Token manager whose interactive sign-in succeeds (or fails) immediately."""

    def __init__(self, secret_store, config, fail: bool = False):
        super().__init__(secret_store, config, browser_opener=lambda url: None)
        self.fail = fail

    async def sign_in(self) -> AuthStatus:
        if self.fail:
            raise AuthenticationError("oauth", "Authorization denied: access_denied")
        await self.secrets.store(REFRESH_TOKEN_KEY, "refresh")
        return await self.get_auth_status()

    async def get_access_token(self) -> str:
        return "token"


@pytest.fixture
async def manager(config):
    manager = HistoryManager(config, secret_store=MemorySecretStore())
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
async def synced_manager(config, remote):
    manager = HistoryManager(
        config,
        token_manager=OAuthTokenManager(signed_in_secrets(), config),
        remote_factory=lambda token_provider: remote,
    )
    await manager.initialize()
    await manager.wait_for_startup_pull()
    yield manager
    await manager.close()


class TestBackendSelection:
    """Tests for choosing the backend at startup."""

    @pytest.mark.asyncio
    async def test_sqlite_by_default(self, manager, config):
        assert manager.backend_name == "sqlite"
        assert config.db_path.exists()

    @pytest.mark.asyncio
    async def test_fallback_when_sqlite_unavailable(self, config, monkeypatch):
        monkeypatch.setattr("aiosqlite.connect", broken_connect)
        manager = HistoryManager(config, secret_store=MemorySecretStore())
        await manager.initialize()

        assert manager.backend_name == "json"
        manager.create_session(SessionMode.CHAT)
        await manager.add_message(MessageRole.USER, "hello")
        assert len(await manager.list_sessions()) == 1
        assert (config.sessions_dir / f"{manager.get_current_session().id}.json").exists()
        await manager.close()

    @pytest.mark.asyncio
    async def test_fallback_has_no_credentials(self, config, monkeypatch):
        monkeypatch.setattr("aiosqlite.connect", broken_connect)
        manager = HistoryManager(config, secret_store=MemorySecretStore())
        await manager.initialize()

        with pytest.raises(CredentialsUnavailableError):
            await manager.save_credential("openai", "key")
        assert await manager.get_credential("openai") is None
        assert await manager.list_credentials() == []
        await manager.close()


class TestSessionLifecycle:
    """Tests for creating, messaging, listing and deleting sessions."""

    @pytest.mark.asyncio
    async def test_add_message_requires_session(self, manager):
        with pytest.raises(NoActiveSessionError):
            await manager.add_message(MessageRole.USER, "hi")

    @pytest.mark.asyncio
    async def test_new_session_has_mode_title(self, manager):
        session = manager.create_session(SessionMode.NEW_APP, project_path="/tmp/app")
        assert session.title.startswith("New App - ")
        assert session.project_path == "/tmp/app"
        assert manager.get_current_session() is session

    @pytest.mark.asyncio
    async def test_first_user_message_becomes_title(self, manager):
        manager.create_session(SessionMode.CHAT)
        await manager.add_message(MessageRole.ASSISTANT, "Welcome!")
        assert manager.get_current_session().title.startswith("Chat - ")

        await manager.add_message(MessageRole.USER, "Build a habit tracker with reminders " * 3)
        title = manager.get_current_session().title
        assert len(title) == 60
        assert title.endswith("...")

        await manager.add_message(MessageRole.USER, "Second request")
        assert manager.get_current_session().title == title

    @pytest.mark.asyncio
    async def test_messages_persist_across_restart(self, config):
        first = HistoryManager(config, secret_store=MemorySecretStore())
        await first.initialize()
        session = first.create_session(SessionMode.CHAT)
        await first.add_message(MessageRole.USER, "one")
        await first.add_message(MessageRole.ASSISTANT, "two", type="code", metadata={"lang": "py"})
        await first.close()

        second = HistoryManager(config, secret_store=MemorySecretStore())
        await second.initialize()
        loaded = await second.load_session(session.id)
        await second.close()

        assert [m.content for m in loaded.messages] == ["one", "two"]
        assert loaded.messages[1].type == "code"
        assert loaded.messages[1].metadata == {"lang": "py"}

    @pytest.mark.asyncio
    async def test_load_sets_current(self, manager):
        session = manager.create_session(SessionMode.CHAT)
        await manager.add_message(MessageRole.USER, "hello")
        manager.set_current_session(None)

        await manager.load_session(session.id)
        assert manager.get_current_session().id == session.id
        assert await manager.load_session("missing") is None
        assert manager.get_current_session().id == session.id

    @pytest.mark.asyncio
    async def test_list_most_recent_first(self, manager):
        first = manager.create_session(SessionMode.CHAT)
        await manager.add_message(MessageRole.USER, "first")
        await asyncio.sleep(0.01)
        second = manager.create_session(SessionMode.CHAT)
        await manager.add_message(MessageRole.USER, "second")

        assert [s.id for s in await manager.list_sessions()] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_delete_current_session(self, manager):
        session = manager.create_session(SessionMode.CHAT)
        await manager.add_message(MessageRole.USER, "doomed")
        await manager.add_message(MessageRole.ASSISTANT, "indeed")

        await manager.delete_session(session.id)

        assert manager.get_current_session() is None
        assert await manager.load_session(session.id) is None
        stats = await manager.get_storage_stats()
        assert stats.session_count == 0
        assert stats.message_count == 0

    @pytest.mark.asyncio
    async def test_ai_messages_exclude_system(self, manager):
        manager.create_session(SessionMode.CHAT)
        await manager.add_message(MessageRole.SYSTEM, "context")
        await manager.add_message(MessageRole.USER, "question")
        await manager.add_message(MessageRole.ASSISTANT, "answer")

        assert manager.get_ai_messages() == [
            {"role": "user", "content": "question"},
            {"role": "assistant", "content": "answer"},
        ]
        assert len(manager.get_message_history()) == 3


class TestRename:
    """Tests for renaming sessions."""

    @pytest.mark.asyncio
    async def test_rename_trims_and_updates_current(self, manager):
        session = manager.create_session(SessionMode.CHAT)
        await manager.add_message(MessageRole.USER, "hello")
        before = session.updated_at

        renamed = await manager.rename_session(session.id, "   Sprint planning   ")

        assert renamed.title == "Sprint planning"
        assert manager.get_current_session().title == "Sprint planning"
        assert manager.get_current_session().updated_at >= before
        assert (await manager.list_sessions())[0].title == "Sprint planning"

    @pytest.mark.asyncio
    async def test_blank_rename_ignored(self, manager):
        session = manager.create_session(SessionMode.CHAT)
        await manager.add_message(MessageRole.USER, "keep me")

        assert await manager.rename_session(session.id, "   ") is None
        assert (await manager.list_sessions())[0].title == "keep me"

    @pytest.mark.asyncio
    async def test_rename_unknown_raises(self, manager):
        with pytest.raises(SessionNotFoundError):
            await manager.rename_session("missing", "Title")


class TestCredentialsAndReset:
    """Tests for credential storage and resets."""

    @pytest.mark.asyncio
    async def test_credentials_round_trip(self, manager):
        await manager.save_credential("openai", "sk-1")
        assert await manager.get_credential("openai") == "sk-1"
        assert [c.name for c in await manager.list_credentials()] == ["openai"]

        await manager.delete_credential("openai")
        assert await manager.get_credential("openai") is None

    @pytest.mark.asyncio
    async def test_settings_round_trip(self, manager):
        await manager.save_setting("model", "large")
        assert await manager.get_setting("model") == "large"
        assert [s.name for s in await manager.list_settings()] == ["model"]

    @pytest.mark.asyncio
    async def test_clear_all_keeps_credentials(self, manager):
        manager.create_session(SessionMode.CHAT)
        await manager.add_message(MessageRole.USER, "hi")
        await manager.save_credential("openai", "sk-1")

        await manager.clear_all()

        assert manager.get_current_session() is None
        assert await manager.list_sessions() == []
        assert await manager.get_credential("openai") == "sk-1"

    @pytest.mark.asyncio
    async def test_full_reset_removes_credentials(self, manager):
        manager.create_session(SessionMode.CHAT)
        await manager.add_message(MessageRole.USER, "hi")
        await manager.save_credential("openai", "sk-1")

        await manager.full_reset()

        assert await manager.list_sessions() == []
        assert await manager.list_credentials() == []


class TestSync:
    """Tests for sign-in, sign-out and sync through the facade."""

    @pytest.mark.asyncio
    async def test_signed_out_has_no_sync(self, manager):
        assert manager.sync_engine is None
        assert manager.get_last_sync_time() == 0
        assert (await manager.get_auth_status()).storage_type == "local"

    @pytest.mark.asyncio
    async def test_sync_now_requires_sign_in(self, manager):
        with pytest.raises(AuthenticationRequiredError):
            await manager.sync_now()

    @pytest.mark.asyncio
    async def test_mutation_schedules_push(self, synced_manager, remote):
        synced_manager.create_session(SessionMode.CHAT)
        await synced_manager.add_message(MessageRole.USER, "sync me")

        await asyncio.sleep(0.3)

        assert remote.content(DB_BLOB_NAME) is not None
        assert synced_manager.get_last_sync_time() > 0

    @pytest.mark.asyncio
    async def test_message_burst_pushes_once(self, synced_manager, remote):
        synced_manager.sync_engine.debounce_seconds = 0.2
        synced_manager.create_session(SessionMode.CHAT)
        for i in range(4):
            await synced_manager.add_message(MessageRole.USER, f"message {i}")

        await asyncio.sleep(0.6)

        assert remote.upload_count(DB_BLOB_NAME) == 1

    @pytest.mark.asyncio
    async def test_sync_now_pulls_then_pushes(self, synced_manager, remote, tmp_path):
        remote.put(
            DB_BLOB_NAME,
            await build_database(tmp_path / "other.db", [make_session("from-laptop")]),
        )

        assert await synced_manager.sync_now() is PullResult.MERGED

        ids = {s.id for s in await synced_manager.list_sessions()}
        assert "from-laptop" in ids
        assert remote.upload_count(DB_BLOB_NAME) == 1

    @pytest.mark.asyncio
    async def test_sync_now_propagates_remote_failure(self, synced_manager, remote):
        remote.fail_with = SyncError("offline")
        with pytest.raises(SyncError):
            await synced_manager.sync_now()

    @pytest.mark.asyncio
    async def test_startup_pull_merges_remote_sessions(self, config, remote, tmp_path):
        remote.put(
            DB_BLOB_NAME,
            await build_database(tmp_path / "other.db", [make_session("remote-1")]),
        )
        manager = HistoryManager(
            config,
            token_manager=OAuthTokenManager(signed_in_secrets(), config),
            remote_factory=lambda token_provider: remote,
        )
        await manager.initialize()
        await manager.wait_for_startup_pull()

        assert [s.id for s in await manager.list_sessions()] == ["remote-1"]
        await manager.close()

    @pytest.mark.asyncio
    async def test_messages_added_during_startup_pull(self, config, remote, tmp_path, caplog):
        remote_sessions = [make_session(f"remote-{i}", updated_at=1_000 + i) for i in range(30)]
        remote.put(DB_BLOB_NAME, await build_database(tmp_path / "other.db", remote_sessions))
        manager = HistoryManager(
            config,
            token_manager=OAuthTokenManager(signed_in_secrets(), config),
            remote_factory=lambda token_provider: remote,
        )
        await manager.initialize()

        session = manager.create_session(SessionMode.CHAT)
        for i in range(30):
            await manager.add_message(MessageRole.USER, f"message {i}")
        await manager.wait_for_startup_pull()

        assert "Merge from remote copy failed" not in caplog.text
        loaded = await manager.store.load_session(session.id)
        assert len(loaded.messages) == 30
        ids = {s.id for s in await manager.list_sessions()}
        assert {s.id for s in remote_sessions} <= ids
        await manager.close()

    @pytest.mark.asyncio
    async def test_startup_pull_failure_is_logged(self, config, remote, caplog):
        remote.fail_with = SyncError("offline")
        manager = HistoryManager(
            config,
            token_manager=OAuthTokenManager(signed_in_secrets(), config),
            remote_factory=lambda token_provider: remote,
        )
        await manager.initialize()
        await manager.wait_for_startup_pull()

        assert "Remote pull on startup failed" in caplog.text
        assert manager.backend_name == "sqlite"
        remote.fail_with = None
        await manager.close()

    @pytest.mark.asyncio
    async def test_sign_out_survives_push_failure(self, synced_manager, remote):
        synced_manager.create_session(SessionMode.CHAT)
        await synced_manager.add_message(MessageRole.USER, "unsynced")
        remote.fail_with = SyncError("offline")

        await synced_manager.sign_out()

        assert (await synced_manager.get_auth_status()).is_signed_in is False
        assert synced_manager.sync_engine is None
        assert remote.closed
        assert len(await synced_manager.list_sessions()) == 1

    @pytest.mark.asyncio
    async def test_sign_in_attaches_sync(self, config, remote):
        manager = HistoryManager(
            config,
            token_manager=FakeTokenManager(MemorySecretStore(), config),
            remote_factory=lambda token_provider: remote,
        )
        await manager.initialize()
        assert manager.sync_engine is None

        status = await manager.sign_in()

        assert status.is_signed_in is True
        assert manager.sync_engine is not None
        await manager.close()

    @pytest.mark.asyncio
    async def test_sign_in_failure_propagates(self, config, remote):
        manager = HistoryManager(
            config,
            token_manager=FakeTokenManager(MemorySecretStore(), config, fail=True),
            remote_factory=lambda token_provider: remote,
        )
        await manager.initialize()

        with pytest.raises(AuthenticationError, match="denied"):
            await manager.sign_in()
        assert manager.sync_engine is None
        await manager.close()

    @pytest.mark.asyncio
    async def test_fallback_backend_cannot_sync(self, tmp_path, remote, monkeypatch):
        monkeypatch.setattr("aiosqlite.connect", broken_connect)
        config = StorageConfig(storage_dir=tmp_path / "fallback")
        manager = HistoryManager(
            config,
            token_manager=OAuthTokenManager(signed_in_secrets(), config),
            remote_factory=lambda token_provider: remote,
        )
        await manager.initialize()

        assert manager.sync_engine is None
        with pytest.raises(SyncError):
            await manager.sync_now()
        await manager.close()
