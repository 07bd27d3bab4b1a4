"""Append-only transition log, optionally persisted as JSON lines."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from memgate.lifecycle.models import StateTransition

logger = logging.getLogger(__name__)


class TransitionLog:
    """In-memory audit trail of applied transitions, one file line per entry when persisted."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._entries: list[StateTransition] = []
        self._lock = asyncio.Lock()
        if path is not None:
            self._entries = self._load(path)

    def __len__(self) -> int:
        return len(self._entries)

    async def append(self, transition: StateTransition) -> None:
        async with self._lock:
            self._entries.append(transition)
            if self.path is not None:
                await asyncio.to_thread(self._append_line, transition)

    def for_memory(self, memory_id: str) -> list[StateTransition]:
        """Transitions for ``memory_id``, most recent first."""
        return [t for t in reversed(self._entries) if t.memory_id == memory_id]

    def all(self) -> list[StateTransition]:
        return list(self._entries)

    # ── Persistence ───────────────────────────────────────────

    def _append_line(self, transition: StateTransition) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(transition.to_dict(), ensure_ascii=False) + "\n")

    @staticmethod
    def _load(path: Path) -> list[StateTransition]:
        if not path.exists():
            return []
        entries: list[StateTransition] = []
        for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
            if not line.strip():
                continue
            try:
                entries.append(StateTransition.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning("Skipping bad history line %s:%d: %s", path, lineno, e)
        logger.debug("Loaded %d transitions from %s", len(entries), path)
        return entries
