"""Configuration loading from environment variables and memgate.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_DEFAULT_HOME = Path.home() / ".memgate"
_CONFIG_FILENAME = "memgate.toml"
_DEFAULT_API_URL = "https://api.memgate.dev/api/v1"


@dataclass
class EndpointConfig:
    """One protocol endpoint. ``kind`` is "local" (subprocess) or "remote" (HTTP)."""

    uri: str
    kind: str = "remote"
    priority: int = 0


@dataclass
class AuthConfig:
    """Session verification and failure backoff."""

    verify_path: str = "/auth/verify"
    cache_ttl: float = 300.0
    verify_timeout: float = 10.0
    verify_attempts: int = 2
    backoff_base: float = 0.25
    backoff_max: float = 30.0
    backoff_jitter: float = 0.1
    delay_threshold: int = 3


@dataclass
class TransportConfig:
    """Protocol endpoint selection, retry and health monitoring."""

    preference: str = "auto"  # local | remote | auto
    endpoints: list[EndpointConfig] = field(default_factory=list)
    allow_direct_api: bool = True
    connect_timeout: float = 10.0
    request_timeout: float = 30.0
    max_attempts_per_endpoint: int = 4
    backoff_base: float = 1.0
    backoff_max: float = 10.0
    backoff_jitter: float = 0.25
    heartbeat_interval: float = 30.0
    heartbeat_timeout: float = 5.0
    heartbeat_failure_threshold: int = 3
    reconnect_wait: float = 15.0


@dataclass
class MemoryConfig:
    """Memory API access and lifecycle behaviour."""

    backend: str = "api"  # api | protocol
    request_timeout: float = 15.0
    bulk_concurrency: int = 5
    history_file: Path | None = None


@dataclass
class MemgateConfig:
    """Top-level memgate configuration."""

    api_url: str = _DEFAULT_API_URL
    auth: AuthConfig = field(default_factory=AuthConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    home: Path = _DEFAULT_HOME
    credentials_file: Path = _DEFAULT_HOME / "credentials.json"
    log_level: str = "INFO"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_config(config_path: Path | None = None) -> MemgateConfig:
    """Load configuration from environment variables and optional memgate.toml.

    Priority: environment variables > memgate.toml > defaults.
    """
    home = Path(os.getenv("MEMGATE_HOME", str(_DEFAULT_HOME)))

    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and the memgate home
        for candidate in [Path.cwd() / _CONFIG_FILENAME, home / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    auth_data = file_data.get("auth", {})
    transport_data = file_data.get("transport", {})
    memory_data = file_data.get("memory", {})

    endpoints = [
        EndpointConfig(
            uri=ep["uri"],
            kind=ep.get("kind", "remote"),
            priority=int(ep.get("priority", index)),
        )
        for index, ep in enumerate(transport_data.get("endpoints", []))
    ]

    history_file = memory_data.get("history_file")

    config = MemgateConfig(
        api_url=os.getenv("MEMGATE_API_URL", file_data.get("api_url", _DEFAULT_API_URL)).rstrip("/"),
        auth=AuthConfig(
            verify_path=auth_data.get("verify_path", "/auth/verify"),
            cache_ttl=float(os.getenv("MEMGATE_CACHE_TTL", auth_data.get("cache_ttl", 300.0))),
            verify_timeout=float(auth_data.get("verify_timeout", 10.0)),
            verify_attempts=int(auth_data.get("verify_attempts", 2)),
            backoff_base=float(auth_data.get("backoff_base", 0.25)),
            backoff_max=float(auth_data.get("backoff_max", 30.0)),
            backoff_jitter=float(auth_data.get("backoff_jitter", 0.1)),
            delay_threshold=int(auth_data.get("delay_threshold", 3)),
        ),
        transport=TransportConfig(
            preference=os.getenv("MEMGATE_MCP_PREFERENCE", transport_data.get("preference", "auto")),
            endpoints=endpoints,
            allow_direct_api=_env_bool(
                "MEMGATE_ALLOW_DIRECT_API", transport_data.get("allow_direct_api", True)
            ),
            connect_timeout=float(transport_data.get("connect_timeout", 10.0)),
            request_timeout=float(transport_data.get("request_timeout", 30.0)),
            max_attempts_per_endpoint=int(transport_data.get("max_attempts_per_endpoint", 4)),
            backoff_base=float(transport_data.get("backoff_base", 1.0)),
            backoff_max=float(transport_data.get("backoff_max", 10.0)),
            backoff_jitter=float(transport_data.get("backoff_jitter", 0.25)),
            heartbeat_interval=float(transport_data.get("heartbeat_interval", 30.0)),
            heartbeat_timeout=float(transport_data.get("heartbeat_timeout", 5.0)),
            heartbeat_failure_threshold=int(transport_data.get("heartbeat_failure_threshold", 3)),
            reconnect_wait=float(transport_data.get("reconnect_wait", 15.0)),
        ),
        memory=MemoryConfig(
            backend=memory_data.get("backend", "api"),
            request_timeout=float(memory_data.get("request_timeout", 15.0)),
            bulk_concurrency=int(
                os.getenv("MEMGATE_BULK_CONCURRENCY", memory_data.get("bulk_concurrency", 5))
            ),
            history_file=Path(history_file).expanduser() if history_file else None,
        ),
        home=home,
        credentials_file=Path(
            file_data.get("credentials_file", str(home / "credentials.json"))
        ).expanduser(),
        log_level=os.getenv("MEMGATE_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config
