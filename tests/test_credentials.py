"""Tests for credential stores."""

import json
import stat

import pytest

from memgate.credentials.base import CredentialStore, InMemoryCredentialStore, redact
from memgate.credentials.file import FileCredentialStore


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_store_get_delete(self):
        store = InMemoryCredentialStore()
        assert await store.get("credential") is None
        await store.store("credential", "secret")
        assert await store.get("credential") == "secret"
        assert await store.delete("credential") is True
        assert await store.delete("credential") is False
        assert await store.get("credential") is None

    def test_satisfies_protocol(self, tmp_path):
        assert isinstance(InMemoryCredentialStore(), CredentialStore)
        assert isinstance(FileCredentialStore(tmp_path / "c.json"), CredentialStore)


class TestFileStore:
    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        path = tmp_path / "nested" / "credentials.json"
        store = FileCredentialStore(path)
        await store.store("credential", "abc")
        await store.store("refresh", "def")

        assert json.loads(path.read_text()) == {"credential": "abc", "refresh": "def"}
        assert await FileCredentialStore(path).get("refresh") == "def"

    @pytest.mark.asyncio
    async def test_owner_only_permissions(self, tmp_path):
        path = tmp_path / "credentials.json"
        await FileCredentialStore(path).store("credential", "abc")
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    @pytest.mark.asyncio
    async def test_delete_last_key_removes_file(self, tmp_path):
        path = tmp_path / "credentials.json"
        store = FileCredentialStore(path)
        await store.store("credential", "abc")
        assert await store.delete("credential") is True
        assert not path.exists()
        assert await store.delete("credential") is False

    @pytest.mark.asyncio
    async def test_corrupt_file_reads_empty(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text("{not json")
        store = FileCredentialStore(path)
        assert await store.get("credential") is None
        await store.store("credential", "fresh")
        assert await store.get("credential") == "fresh"


class TestRedact:
    def test_long_secret(self):
        shown = redact("pk_abcdef.sk_123456")
        assert shown.startswith("pk_")
        assert shown.endswith("456")
        assert "abcdef" not in shown

    def test_short_secret(self):
        assert "abc" not in redact("abc123")

    def test_missing(self):
        assert redact(None) == "Not configured"
