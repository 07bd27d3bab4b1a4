"""Direct-API fallback: protocol tool calls served straight from the Memory API."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from memgate.api.client import MemoryAPIClient
from memgate.errors import APIError

logger = logging.getLogger(__name__)

_ID_SCHEMA = {
    "type": "object",
    "properties": {"memory_id": {"type": "string"}},
    "required": ["memory_id"],
}

TOOL_CATALOGUE: list[dict[str, Any]] = [
    {
        "name": "memory_create_memory",
        "description": "Create a new memory",
        "inputSchema": {
            "type": "object",
            "properties": {
                "title": {"type": "string"},
                "content": {"type": "string"},
                "metadata": {"type": "object"},
            },
            "required": ["content"],
        },
    },
    {
        "name": "memory_search_memories",
        "description": "Search memories by query",
        "inputSchema": {
            "type": "object",
            "properties": {"query": {"type": "string"}, "limit": {"type": "integer"}},
            "required": ["query"],
        },
    },
    {"name": "memory_get_memory", "description": "Get one memory by id", "inputSchema": _ID_SCHEMA},
    {
        "name": "memory_update_memory",
        "description": "Update fields of a memory",
        "inputSchema": {
            "type": "object",
            "properties": {"memory_id": {"type": "string"}},
            "required": ["memory_id"],
            "additionalProperties": True,
        },
    },
    {"name": "memory_delete_memory", "description": "Delete a memory", "inputSchema": _ID_SCHEMA},
    {
        "name": "memory_list_memories",
        "description": "List memories, optionally filtered by state",
        "inputSchema": {
            "type": "object",
            "properties": {
                "state": {"type": "string"},
                "before": {"type": "string"},
                "limit": {"type": "integer"},
            },
        },
    },
]


def _memory_id(arguments: dict[str, Any]) -> str:
    memory_id = arguments.get("memory_id") or arguments.get("id")
    if not memory_id:
        raise APIError("memory_id is required")
    return str(memory_id)


class DirectToolInvoker:
    """Maps protocol tool names onto Memory API requests."""

    def __init__(self, api: MemoryAPIClient) -> None:
        self.api = api

    def list_tools(self) -> list[dict[str, Any]]:
        return [dict(tool) for tool in TOOL_CATALOGUE]

    async def call(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        args = dict(arguments or {})
        logger.debug("Direct API call: %s", name)

        if name == "memory_create_memory":
            return await self.api.create_memory(args)
        if name == "memory_search_memories":
            query = args.pop("query", "")
            return await self.api.search_memories(query, **args)
        if name == "memory_get_memory":
            return await self.api.get_memory(_memory_id(args))
        if name == "memory_update_memory":
            memory_id = _memory_id(args)
            args.pop("memory_id", None)
            args.pop("id", None)
            return await self.api.update_memory(memory_id, args)
        if name == "memory_delete_memory":
            await self.api.delete_memory(_memory_id(args))
            return {"deleted": True}
        if name == "memory_list_memories":
            return await self.api.list_memories(
                state=args.get("state"),
                before=_parse_before(args.get("before")),
                limit=args.get("limit"),
            )
        raise APIError(f"Unknown tool: {name}")


def _parse_before(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
