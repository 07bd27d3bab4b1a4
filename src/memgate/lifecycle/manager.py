"""Memory lifecycle manager: validated state transitions and bulk operations with an audit trail."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any

from memgate.errors import APIError, InvalidTransition, MemgateError, NotFound
from memgate.lifecycle.backend import MemoryBackend
from memgate.lifecycle.history import TransitionLog
from memgate.lifecycle.models import (
    RESTORABLE,
    BulkOperation,
    BulkOperationResult,
    MemoryRecord,
    MemoryState,
    StateTransition,
    is_valid_transition,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

ActorProvider = Callable[[], Awaitable[str]]


class MemoryLifecycleManager:
    """Applies state changes to memories held by the Memory API.

    The remote record is authoritative; this class only validates the
    requested transition, persists it, and keeps a local audit trail.
    Changes to one memory id are serialized; different ids run concurrently.
    """

    def __init__(
        self,
        backend: MemoryBackend,
        history: TransitionLog | None = None,
        *,
        actor: ActorProvider | None = None,
        bulk_concurrency: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.backend = backend
        self.history = history if history is not None else TransitionLog()
        self._actor = actor
        self.bulk_concurrency = max(1, bulk_concurrency)
        self._clock = clock
        self._lane_locks: dict[str, asyncio.Lock] = {}  # per-memory serialization
        self._lane_users: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def _lane(self, memory_id: str) -> AsyncIterator[None]:
        """Hold the lock for ``memory_id``; the lock is dropped once nobody uses or awaits it."""
        lock = self._lane_locks.setdefault(memory_id, asyncio.Lock())
        self._lane_users[memory_id] = self._lane_users.get(memory_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lane_users[memory_id] -= 1
            if not self._lane_users[memory_id]:
                del self._lane_users[memory_id]
                del self._lane_locks[memory_id]

    # ── Single transitions ────────────────────────────────────

    async def update_state(
        self,
        memory_id: str,
        new_state: MemoryState | str,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> StateTransition:
        """Move one memory to ``new_state``.

        Raises NotFound if the memory does not exist and InvalidTransition,
        before anything is written, if the table forbids the move.
        """
        target = MemoryState(new_state)
        async with self._lane(memory_id):
            record = await self._load(memory_id)
            return await self._apply(record, target, reason, metadata)

    async def _load(self, memory_id: str) -> MemoryRecord:
        data = await self.backend.get_memory(memory_id)
        if not data:
            raise NotFound(f"Memory {memory_id} not found")
        try:
            return MemoryRecord.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            raise APIError(f"Malformed memory record {memory_id}: {e}") from e

    async def _apply(
        self,
        record: MemoryRecord,
        target: MemoryState,
        reason: str | None,
        metadata: dict[str, Any] | None,
    ) -> StateTransition:
        if not is_valid_transition(record.state, target):
            raise InvalidTransition(record.state, target)

        now = self._clock()
        changes: dict[str, Any] = {"state": target.value, "updated_at": now.isoformat()}
        if target is MemoryState.ARCHIVED:
            changes["archived_at"] = now.isoformat()
        elif target is MemoryState.DELETED:
            changes["deleted_at"] = now.isoformat()
        elif target is MemoryState.ACTIVE and record.archived_at is not None:
            changes["archived_at"] = None

        actor_id = await self._actor_id()
        await self.backend.update_memory(record.id, changes)

        transition = StateTransition(
            memory_id=record.id,
            from_state=record.state,
            to_state=target,
            actor_id=actor_id,
            timestamp=now,
            reason=reason,
            metadata=metadata,
        )
        await self.history.append(transition)
        logger.info("Memory %s: %s -> %s", record.id, record.state.value, target.value)
        return transition

    async def _actor_id(self) -> str:
        if self._actor is None:
            return "anonymous"
        return await self._actor()

    # ── Bulk operations ───────────────────────────────────────

    async def bulk_update_state(
        self,
        memory_ids: Iterable[str],
        operation: BulkOperation | str,
        cancel_event: asyncio.Event | None = None,
        reason: str | None = None,
    ) -> list[BulkOperationResult]:
        """Apply ``operation`` to every id; one result per id, in input order.

        Ids are independent: a missing id or a forbidden transition is
        reported in that id's result and never stops the others. Ids already
        in the target state succeed as no-ops. Once ``cancel_event`` is set,
        ids that have not started yet report ``"cancelled"``.
        """
        try:
            op = BulkOperation(operation)
        except ValueError:
            raise ValueError(f"Unknown bulk operation: {operation!r}") from None

        target = op.target_state
        reason = reason or f"Bulk {op.value} operation"
        ids = list(memory_ids)
        logger.info("Bulk %s of %d memories", op.value, len(ids))

        async def _one(memory_id: str) -> BulkOperationResult:
            return await self._bulk_one(memory_id, target, reason, allowed_from=None)

        return await self._fan_out(ids, _one, cancel_event)

    async def restore(
        self,
        memory_ids: Iterable[str],
        reason: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[BulkOperationResult]:
        """Return paused or archived memories to active; other states fail per id."""
        ids = list(memory_ids)

        async def _one(memory_id: str) -> BulkOperationResult:
            return await self._bulk_one(
                memory_id,
                MemoryState.ACTIVE,
                reason or "Memory restoration",
                allowed_from=RESTORABLE,
            )

        return await self._fan_out(ids, _one, cancel_event)

    async def archive_older_than(
        self,
        before: datetime,
        cancel_event: asyncio.Event | None = None,
    ) -> list[BulkOperationResult]:
        """Archive every active memory created before ``before``."""
        cutoff = parse_timestamp(before)
        data = await self.backend.list_memories(state=MemoryState.ACTIVE.value, before=cutoff)
        ids = []
        for record in _parse_listing(data):
            if record.state is not MemoryState.ACTIVE:
                continue
            if record.created_at is not None and record.created_at >= cutoff:
                continue
            ids.append(record.id)
        logger.info("Archiving %d memories created before %s", len(ids), cutoff.isoformat())
        return await self.bulk_update_state(ids, BulkOperation.ARCHIVE, cancel_event=cancel_event)

    async def _fan_out(
        self,
        ids: list[str],
        handler: Callable[[str], Awaitable[BulkOperationResult]],
        cancel_event: asyncio.Event | None,
    ) -> list[BulkOperationResult]:
        semaphore = asyncio.Semaphore(self.bulk_concurrency)

        async def _guarded(memory_id: str) -> BulkOperationResult:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return BulkOperationResult(memory_id=memory_id, success=False, error="cancelled")
                return await handler(memory_id)

        return list(await asyncio.gather(*(_guarded(memory_id) for memory_id in ids)))

    async def _bulk_one(
        self,
        memory_id: str,
        target: MemoryState,
        reason: str,
        *,
        allowed_from: frozenset[MemoryState] | None,
    ) -> BulkOperationResult:
        async with self._lane(memory_id):
            try:
                record = await self._load(memory_id)
            except NotFound:
                return BulkOperationResult(memory_id=memory_id, success=False, error="not found")
            except MemgateError as e:
                return BulkOperationResult(memory_id=memory_id, success=False, error=str(e))

            previous = record.state
            if allowed_from is not None and previous not in allowed_from:
                return BulkOperationResult(
                    memory_id=memory_id,
                    success=False,
                    previous_state=previous,
                    new_state=previous,
                    error=f"cannot restore from {previous.value} state",
                )
            if previous is target:
                return BulkOperationResult(
                    memory_id=memory_id, success=True, previous_state=previous, new_state=target
                )

            try:
                await self._apply(record, target, reason, None)
            except MemgateError as e:
                logger.warning("Memory %s: %s -> %s failed: %s", memory_id, previous.value, target.value, e)
                return BulkOperationResult(
                    memory_id=memory_id,
                    success=False,
                    previous_state=previous,
                    new_state=previous,
                    error=str(e),
                )
            return BulkOperationResult(
                memory_id=memory_id, success=True, previous_state=previous, new_state=target
            )

    # ── Queries ───────────────────────────────────────────────

    def get_history(self, memory_id: str) -> list[StateTransition]:
        return self.history.for_memory(memory_id)

    async def get_memories_by_state(self, state: MemoryState | str, limit: int = 100) -> list[MemoryRecord]:
        data = await self.backend.list_memories(state=MemoryState(state).value, limit=limit)
        return _parse_listing(data)


def _parse_listing(data: Iterable[Any]) -> list[MemoryRecord]:
    """Listing items -> records; malformed items are skipped with a warning."""
    records = []
    for item in data:
        try:
            records.append(MemoryRecord.from_dict(item))
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Skipping malformed memory in listing: %r (%s)", item, e)
    return records
