"""Memgate facade, the surface a command layer or editor integration talks to."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from memgate.auth.session import AuthStatus, ValidationResult
from memgate.config import MemgateConfig, load_config
from memgate.context import AppContext, build_context
from memgate.lifecycle.models import BulkOperation, BulkOperationResult, MemoryState, StateTransition
from memgate.transport.base import ConnectionStatus, ConnectResult

logger = logging.getLogger(__name__)


class Memgate:
    """Session, transport and lifecycle behind one object."""

    def __init__(self, context: AppContext) -> None:
        self.context = context

    @classmethod
    def from_config(cls, config: MemgateConfig | None = None) -> Memgate:
        return cls(build_context(config or load_config()))

    # ── Session ───────────────────────────────────────────────

    async def is_authenticated(self) -> AuthStatus:
        return await self.context.session.is_authenticated()

    async def login(self, credential: str) -> ValidationResult:
        return await self.context.session.login(credential)

    async def logout(self) -> None:
        await self.context.session.logout()

    # ── Transport ─────────────────────────────────────────────

    async def connect(self, prefer_remote: bool | None = None) -> ConnectResult:
        return await self.context.connection.connect(prefer_remote)

    def connection_status(self) -> ConnectionStatus:
        return self.context.connection.status()

    # ── Lifecycle ─────────────────────────────────────────────

    async def update_memory_state(
        self, memory_id: str, state: MemoryState | str, reason: str | None = None
    ) -> StateTransition:
        return await self.context.lifecycle.update_state(memory_id, state, reason)

    async def bulk_update_state(
        self, memory_ids: Iterable[str], operation: BulkOperation | str
    ) -> list[BulkOperationResult]:
        return await self.context.lifecycle.bulk_update_state(memory_ids, operation)

    async def restore(self, memory_ids: Iterable[str]) -> list[BulkOperationResult]:
        return await self.context.lifecycle.restore(memory_ids)

    async def archive_older_than(self, before: datetime) -> list[BulkOperationResult]:
        return await self.context.lifecycle.archive_older_than(before)

    def get_history(self, memory_id: str) -> list[StateTransition]:
        return self.context.lifecycle.get_history(memory_id)

    # ── Lifecycle of the facade itself ────────────────────────

    async def close(self) -> None:
        await self.context.close()
        logger.debug("Memgate closed")

    async def __aenter__(self) -> Memgate:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
