"""JSON-RPC 2.0 message types + parse/format (no I/O).

Channels exchange whole messages, one JSON object per line (stdio) or per
HTTP body; this module only turns them into typed values and back.
"""

from __future__ import annotations

import itertools
import json
from dataclasses import dataclass, field
from typing import Any

from memgate.errors import APIError, classify_rpc_error

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "memgate", "version": "0.1.0"}

_ids = itertools.count(1)


# ── Parsed message types (endpoint -> memgate) ─────────────────


@dataclass
class Response:
    """Reply to one of our requests."""

    id: int | str | None
    result: Any = None
    error: dict[str, Any] | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def raise_for_error(self) -> Any:
        """Return ``result`` or raise the classified error."""
        if self.error is not None:
            raise classify_rpc_error(self.error)
        return self.result


@dataclass
class Notification:
    """Server-initiated message without an id (logs, progress)."""

    method: str
    params: dict[str, Any] = field(default_factory=dict)


ParsedMessage = Response | Notification | dict


# ── Parsing ────────────────────────────────────────────────────


def parse_message(data: dict[str, Any]) -> ParsedMessage:
    if "result" in data or "error" in data:
        return Response(id=data.get("id"), result=data.get("result"), error=data.get("error"))
    if "method" in data and "id" not in data:
        return Notification(method=data["method"], params=data.get("params") or {})
    # Server requests and anything unrecognised stay raw
    return data


def parse_line(line: str) -> ParsedMessage:
    """Parse a single JSON-RPC line. Raises APIError on malformed input."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise APIError(f"Malformed JSON-RPC message: {e}") from e
    if not isinstance(data, dict):
        raise APIError("JSON-RPC message must be an object")
    return parse_message(data)


# ── Formatting (memgate -> endpoint) ───────────────────────────


def next_id() -> int:
    return next(_ids)


def build_request(method: str, params: dict[str, Any] | None = None, *, request_id: int | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {
        "jsonrpc": "2.0",
        "id": next_id() if request_id is None else request_id,
        "method": method,
    }
    if params is not None:
        message["params"] = params
    return message


def build_notification(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        message["params"] = params
    return message


def format_message(message: dict[str, Any]) -> str:
    """Serialize one message (no trailing newline)."""
    return json.dumps(message, separators=(",", ":"))


def initialize_params() -> dict[str, Any]:
    return {
        "protocolVersion": PROTOCOL_VERSION,
        "capabilities": {},
        "clientInfo": CLIENT_INFO,
    }


def tool_call_result(result: Any) -> Any:
    """Unwrap a ``tools/call`` result.

    Tool results arrive as ``{"content": [{"type": "text", "text": ...}], "isError": bool}``.
    Text that is JSON is decoded; an ``isError`` result is raised as APIError.
    """
    if not isinstance(result, dict) or "content" not in result:
        return result
    texts = [
        block.get("text", "")
        for block in result.get("content") or []
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    text = "\n".join(texts)
    if result.get("isError"):
        raise APIError(text or "Tool call failed")
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return text

