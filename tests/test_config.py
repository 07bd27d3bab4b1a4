"""Tests for configuration loading."""

import pytest
from pathlib import Path

from memgate.config import load_config

ENV_KEYS = [
    "MEMGATE_API_URL",
    "MEMGATE_CACHE_TTL",
    "MEMGATE_MCP_PREFERENCE",
    "MEMGATE_ALLOW_DIRECT_API",
    "MEMGATE_BULK_CONCURRENCY",
    "MEMGATE_LOG_LEVEL",
]


@pytest.fixture
def clean_env(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MEMGATE_HOME", str(tmp_path / "home"))
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return tmp_path


class TestConfig:
    def test_defaults(self, clean_env):
        config = load_config()
        assert config.api_url == "https://api.memgate.dev/api/v1"
        assert config.auth.cache_ttl == 300
        assert config.auth.backoff_base == 0.25
        assert config.auth.delay_threshold == 3
        assert config.transport.preference == "auto"
        assert config.transport.max_attempts_per_endpoint == 4
        assert config.transport.heartbeat_failure_threshold == 3
        assert config.transport.allow_direct_api is True
        assert config.transport.endpoints == []
        assert config.memory.bulk_concurrency == 5
        assert config.memory.history_file is None
        assert config.credentials_file == clean_env / "home" / "credentials.json"

    def test_env_override(self, clean_env, monkeypatch):
        monkeypatch.setenv("MEMGATE_API_URL", "http://localhost:8000/api/v1/")
        monkeypatch.setenv("MEMGATE_CACHE_TTL", "60")
        monkeypatch.setenv("MEMGATE_MCP_PREFERENCE", "local")
        monkeypatch.setenv("MEMGATE_ALLOW_DIRECT_API", "false")
        monkeypatch.setenv("MEMGATE_BULK_CONCURRENCY", "2")

        config = load_config()
        assert config.api_url == "http://localhost:8000/api/v1"
        assert config.auth.cache_ttl == 60
        assert config.transport.preference == "local"
        assert config.transport.allow_direct_api is False
        assert config.memory.bulk_concurrency == 2

    def test_toml_file(self, clean_env):
        toml_path = clean_env / "memgate.toml"
        toml_path.write_text("""
api_url = "https://memory.example.com/api/v1"

[auth]
cache_ttl = 120

[transport]
preference = "remote"
heartbeat_interval = 10

[[transport.endpoints]]
uri = "https://mcp.example.com/mcp"

[[transport.endpoints]]
uri = "memory-mcp --stdio"
kind = "local"
priority = 5

[memory]
backend = "protocol"
history_file = "history.jsonl"
""")
        config = load_config(toml_path)
        assert config.api_url == "https://memory.example.com/api/v1"
        assert config.auth.cache_ttl == 120
        assert config.transport.preference == "remote"
        assert config.transport.heartbeat_interval == 10
        assert [(e.uri, e.kind, e.priority) for e in config.transport.endpoints] == [
            ("https://mcp.example.com/mcp", "remote", 0),
            ("memory-mcp --stdio", "local", 5),
        ]
        assert config.memory.backend == "protocol"
        assert config.memory.history_file == Path("history.jsonl")

    def test_env_overrides_toml(self, clean_env, monkeypatch):
        monkeypatch.setenv("MEMGATE_CACHE_TTL", "30")
        toml_path = clean_env / "memgate.toml"
        toml_path.write_text("""
[auth]
cache_ttl = 120
""")
        config = load_config(toml_path)
        assert config.auth.cache_ttl == 30  # env wins

    def test_finds_file_in_cwd(self, clean_env):
        (clean_env / "memgate.toml").write_text('log_level = "DEBUG"\n')
        config = load_config()
        assert config.log_level == "DEBUG"

    def test_finds_file_in_home(self, clean_env):
        home = clean_env / "home"
        home.mkdir()
        (home / "memgate.toml").write_text("[memory]\nbulk_concurrency = 9\n")
        config = load_config()
        assert config.memory.bulk_concurrency == 9
