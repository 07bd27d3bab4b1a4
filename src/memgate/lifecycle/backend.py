"""Memory backend capability used by the lifecycle manager.

The concrete backend is chosen once, at composition time, by
``create_memory_backend``; the lifecycle manager only sees the protocol.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from memgate.errors import APIError, NotFound

if TYPE_CHECKING:
    from memgate.api.client import MemoryAPIClient
    from memgate.transport.manager import ConnectionManager

_NOT_FOUND_RE = re.compile(r"\bnot found\b", re.IGNORECASE)


@runtime_checkable
class MemoryBackend(Protocol):
    """Read and update memory records held by the Memory API."""

    async def get_memory(self, memory_id: str) -> dict[str, Any]:
        """Return the record. Raises NotFound if it does not exist."""
        ...

    async def update_memory(self, memory_id: str, changes: dict[str, Any]) -> dict[str, Any]: ...

    async def list_memories(
        self,
        *,
        state: str | None = None,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...


class ToolMemoryBackend:
    """Memory access through protocol tool calls (direct API when no channel is up)."""

    def __init__(self, connection: ConnectionManager) -> None:
        self.connection = connection

    async def get_memory(self, memory_id: str) -> dict[str, Any]:
        result = await self._record_call(memory_id, "memory_get_memory", {"memory_id": memory_id})
        if not result:
            raise NotFound(f"Memory {memory_id} not found")
        return result

    async def update_memory(self, memory_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        return await self._record_call(memory_id, "memory_update_memory", {"memory_id": memory_id, **changes})

    async def _record_call(self, memory_id: str, tool: str, arguments: dict[str, Any]) -> dict[str, Any]:
        # Tool errors arrive as text; a missing record must still read as NotFound
        try:
            result = await self.connection.call_tool(tool, arguments)
        except APIError as e:
            if _NOT_FOUND_RE.search(str(e)):
                raise NotFound(f"Memory {memory_id} not found") from e
            raise
        return result

    async def list_memories(
        self,
        *,
        state: str | None = None,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        arguments: dict[str, Any] = {}
        if state:
            arguments["state"] = state
        if before:
            arguments["before"] = before.isoformat()
        if limit is not None:
            arguments["limit"] = limit
        result = await self.connection.call_tool("memory_list_memories", arguments)
        if isinstance(result, dict):
            return list(result.get("memories") or [])
        return list(result or [])


def create_memory_backend(
    kind: str,
    *,
    api: MemoryAPIClient,
    connection: ConnectionManager | None = None,
) -> MemoryBackend:
    """Build the backend named by ``kind`` ("api" or "protocol")."""
    if kind == "api":
        return api
    if kind == "protocol":
        if connection is None:
            raise APIError("The protocol memory backend needs a connection manager")
        return ToolMemoryBackend(connection)
    raise ValueError(f"Unknown memory backend: {kind!r}")
