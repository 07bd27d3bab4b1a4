"""Memory states, the transition table, and lifecycle records."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class MemoryState(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"
    DELETED = "deleted"


TRANSITIONS: dict[MemoryState, frozenset[MemoryState]] = {
    MemoryState.ACTIVE: frozenset({MemoryState.PAUSED, MemoryState.ARCHIVED, MemoryState.DELETED}),
    MemoryState.PAUSED: frozenset({MemoryState.ACTIVE, MemoryState.ARCHIVED, MemoryState.DELETED}),
    MemoryState.ARCHIVED: frozenset({MemoryState.ACTIVE, MemoryState.DELETED}),
    MemoryState.DELETED: frozenset(),
}

RESTORABLE = frozenset({MemoryState.PAUSED, MemoryState.ARCHIVED})


def is_valid_transition(from_state: MemoryState, to_state: MemoryState) -> bool:
    return to_state in TRANSITIONS[from_state]


class BulkOperation(str, Enum):
    PAUSE = "pause"
    ARCHIVE = "archive"
    DELETE = "delete"

    @property
    def target_state(self) -> MemoryState:
        return _BULK_TARGETS[self]


_BULK_TARGETS = {
    BulkOperation.PAUSE: MemoryState.PAUSED,
    BulkOperation.ARCHIVE: MemoryState.ARCHIVED,
    BulkOperation.DELETE: MemoryState.DELETED,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """ISO-8601 string (``Z`` suffix allowed) or datetime -> aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class MemoryRecord:
    """Snapshot of a memory as returned by the Memory API."""

    id: str
    state: MemoryState
    created_at: datetime | None = None
    updated_at: datetime | None = None
    archived_at: datetime | None = None
    deleted_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    title: str | None = None
    content: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryRecord:
        return cls(
            id=str(data["id"]),
            state=MemoryState(data.get("state") or MemoryState.ACTIVE.value),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            archived_at=parse_timestamp(data.get("archived_at")),
            deleted_at=parse_timestamp(data.get("deleted_at")),
            metadata=dict(data.get("metadata") or {}),
            title=data.get("title"),
            content=data.get("content"),
        )


@dataclass(frozen=True)
class StateTransition:
    """One applied state change. Immutable once recorded."""

    memory_id: str
    from_state: MemoryState
    to_state: MemoryState
    actor_id: str
    timestamp: datetime = field(default_factory=utcnow)
    reason: str | None = None
    metadata: dict[str, Any] | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "memory_id": self.memory_id,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateTransition:
        return cls(
            id=data["id"],
            memory_id=data["memory_id"],
            from_state=MemoryState(data["from_state"]),
            to_state=MemoryState(data["to_state"]),
            reason=data.get("reason"),
            timestamp=parse_timestamp(data["timestamp"]) or utcnow(),
            actor_id=data.get("actor_id") or "anonymous",
            metadata=data.get("metadata"),
        )


@dataclass
class BulkOperationResult:
    memory_id: str
    success: bool
    previous_state: MemoryState | None = None
    new_state: MemoryState | None = None
    error: str | None = None
