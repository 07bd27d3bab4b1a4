"""Channel protocol and shared transport types."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from memgate.config import EndpointConfig


class EndpointKind(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass(frozen=True)
class Endpoint:
    """Protocol endpoint. Lower ``priority`` is tried first."""

    uri: str
    kind: EndpointKind
    priority: int = 0

    @classmethod
    def from_config(cls, config: EndpointConfig) -> Endpoint:
        return cls(uri=config.uri, kind=EndpointKind(config.kind), priority=config.priority)


@dataclass
class ConnectResult:
    mode: str  # "local" | "remote"
    transport_active: bool
    endpoint: Endpoint | None = None
    direct_api: bool = False


@dataclass
class ConnectionStatus:
    state: ConnectionState
    mode: str | None = None
    endpoint: Endpoint | None = None
    consecutive_failures: int = 0
    direct_api: bool = False


@runtime_checkable
class Channel(Protocol):
    """Duplex JSON-RPC channel to one protocol endpoint."""

    @property
    def endpoint(self) -> Endpoint: ...

    @property
    def is_open(self) -> bool: ...

    async def connect(self) -> None:
        """Open the channel and complete the protocol handshake."""
        ...

    async def send(self, message: dict[str, Any]) -> None:
        """Write one JSON-RPC message."""
        ...

    async def receive(self) -> dict[str, Any]:
        """Read the next JSON-RPC message."""
        ...

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Send a request and return its ``result``. Raises a MemgateError on failure."""
        ...

    async def heartbeat(self) -> bool:
        """Return True if the endpoint answered a liveness probe."""
        ...

    async def close(self) -> None: ...
