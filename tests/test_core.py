"""End-to-end tests: Memgate facade wired by build_context against the fake Memory API."""

import sys
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from jose import jwt

from memgate.__main__ import _status, main
from memgate.config import EndpointConfig, MemgateConfig, MemoryConfig, TransportConfig
from memgate.context import build_context
from memgate.core import Memgate
from memgate.credentials.base import CREDENTIAL_KEY, InMemoryCredentialStore
from memgate.errors import AuthError, InvalidTransition
from memgate.lifecycle.backend import ToolMemoryBackend
from memgate.lifecycle.models import MemoryState
from memgate.transport.base import ConnectionState

from conftest import VALID_TOKEN, record

USER_TOKEN = jwt.encode({"sub": "user-7", "exp": 4102444800}, "secret", algorithm="HS256")


def make_config(service, *, endpoints=(), backend="api", tmp_path=None, **transport):
    transport.setdefault("heartbeat_interval", 3600)
    transport.setdefault("max_attempts_per_endpoint", 1)
    config = MemgateConfig(
        api_url=service.base_url,
        transport=TransportConfig(endpoints=list(endpoints), **transport),
        memory=MemoryConfig(backend=backend),
    )
    if tmp_path is not None:
        config.credentials_file = tmp_path / "credentials.json"
    return config


@pytest_asyncio.fixture
async def gate(memory_service):
    memory_service.valid_tokens.add(USER_TOKEN)
    memory_service.records.update({"A": record("A"), "B": record("B", "archived")})
    context = build_context(make_config(memory_service), credential_store=InMemoryCredentialStore())
    async with Memgate(context) as g:
        yield g


class TestSession:
    @pytest.mark.asyncio
    async def test_login_and_status(self, gate):
        assert (await gate.is_authenticated()).state == "missing"

        result = await gate.login(VALID_TOKEN)
        assert result.valid
        assert await gate.context.credentials.get(CREDENTIAL_KEY) == VALID_TOKEN

        status = await gate.is_authenticated()
        assert status.authenticated and status.cached

    @pytest.mark.asyncio
    async def test_rejected_login(self, gate):
        with pytest.raises(AuthError):
            await gate.login("tok_not_known")
        assert await gate.context.credentials.get(CREDENTIAL_KEY) is None
        assert gate.context.session.failure_count == 1

    @pytest.mark.asyncio
    async def test_revoked_credential_is_invalid(self, gate, memory_service):
        await gate.login(VALID_TOKEN)
        memory_service.valid_tokens.discard(VALID_TOKEN)
        gate.context.session.invalidate_cache()

        status = await gate.is_authenticated()
        assert status.state == "invalid"
        assert not status.authenticated

    @pytest.mark.asyncio
    async def test_api_401_drops_cache(self, gate, memory_service):
        await gate.login(VALID_TOKEN)
        memory_service.valid_tokens.discard(VALID_TOKEN)

        with pytest.raises(AuthError):
            await gate.update_memory_state("A", "paused")
        assert gate.context.session.snapshot().cached_validation is None

    @pytest.mark.asyncio
    async def test_file_credentials(self, memory_service, tmp_path):
        config = make_config(memory_service, tmp_path=tmp_path)
        async with Memgate.from_config(config) as g:
            await g.login(VALID_TOKEN)
        assert (tmp_path / "credentials.json").exists()

        async with Memgate.from_config(config) as g:
            assert (await g.is_authenticated()).authenticated


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_update_bulk_restore_history(self, gate, memory_service):
        await gate.login(USER_TOKEN)

        transition = await gate.update_memory_state("A", MemoryState.ARCHIVED, reason="done")
        assert transition.actor_id == "user-7"
        assert memory_service.records["A"]["state"] == "archived"

        [restored] = await gate.restore(["A"])
        assert restored.success and memory_service.records["A"]["state"] == "active"

        results = await gate.bulk_update_state(["A", "B", "C"], "delete")
        assert [r.success for r in results] == [True, True, False]
        assert results[2].error == "not found"

        history = gate.get_history("A")
        assert [t.to_state for t in history] == [MemoryState.DELETED, MemoryState.ACTIVE, MemoryState.ARCHIVED]
        assert history[0].reason == "Bulk delete operation"

    @pytest.mark.asyncio
    async def test_invalid_transition_not_written(self, gate, memory_service):
        await gate.login(VALID_TOKEN)
        with pytest.raises(InvalidTransition):
            await gate.update_memory_state("B", "paused")
        assert ("PUT", "/api/v1/memory/B") not in memory_service.requests

    @pytest.mark.asyncio
    async def test_archive_older_than(self, gate, memory_service):
        await gate.login(VALID_TOKEN)
        memory_service.records["new"] = record("new", created_at="2030-01-01T00:00:00Z")

        results = await gate.archive_older_than(datetime(2025, 1, 1, tzinfo=timezone.utc))
        assert [r.memory_id for r in results] == ["A"]
        assert memory_service.records["new"]["state"] == "active"


class TestTransport:
    @pytest.mark.asyncio
    async def test_connect_remote_and_logout(self, memory_service):
        memory_service.records["A"] = record("A")
        endpoint = EndpointConfig(uri=f"{memory_service.origin}/mcp", kind="remote")
        config = make_config(memory_service, endpoints=[endpoint], backend="protocol")

        async with Memgate(build_context(config, credential_store=InMemoryCredentialStore())) as g:
            assert isinstance(g.context.lifecycle.backend, ToolMemoryBackend)
            await g.login(VALID_TOKEN)

            result = await g.connect()
            assert result.mode == "remote" and result.transport_active
            assert g.connection_status().state is ConnectionState.CONNECTED

            await g.update_memory_state("A", "paused")
            assert memory_service.records["A"]["state"] == "paused"
            assert ("POST", "/mcp") in memory_service.requests
            assert ("PUT", "/api/v1/memory/A") not in memory_service.requests

            await g.logout()
            assert g.connection_status().state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_direct_fallback(self, memory_service):
        memory_service.records["A"] = record("A")
        endpoint = EndpointConfig(uri="http://127.0.0.1:9/mcp", kind="remote")
        config = make_config(memory_service, endpoints=[endpoint], backend="protocol", connect_timeout=2)

        async with Memgate(build_context(config, credential_store=InMemoryCredentialStore())) as g:
            await g.login(VALID_TOKEN)
            result = await g.connect()
            assert result.direct_api and not result.transport_active
            assert g.connection_status().state is ConnectionState.FAILED

            await g.update_memory_state("A", "archived")
            assert ("PUT", "/api/v1/memory/A") in memory_service.requests


class TestEntryPoint:
    def test_usage(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["memgate", "bogus"])
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 1
        assert "Usage" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_status_without_credential(self, memory_service, monkeypatch, tmp_path, capsys):
        for name in ("MEMGATE_CACHE_TTL", "MEMGATE_MCP_PREFERENCE", "MEMGATE_LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("MEMGATE_HOME", str(tmp_path))
        monkeypatch.setenv("MEMGATE_API_URL", memory_service.base_url)
        monkeypatch.chdir(tmp_path)

        assert await _status() == 1
        out = capsys.readouterr().out
        assert "Auth:        missing" in out
        assert "Connection:  disconnected" in out
