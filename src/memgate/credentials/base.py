"""Credential store protocol and an in-process implementation."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

CREDENTIAL_KEY = "credential"

_REDACTED = "••••••••"


@runtime_checkable
class CredentialStore(Protocol):
    """Protocol that every credential backend must implement."""

    async def store(self, key: str, value: str) -> None:
        """Persist ``value`` under ``key``, replacing any previous value."""
        ...

    async def get(self, key: str) -> str | None:
        """Return the value for ``key``, or None when absent."""
        ...

    async def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True if something was removed."""
        ...


class InMemoryCredentialStore:
    """Credential store that lives only as long as the process."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})

    async def store(self, key: str, value: str) -> None:
        self._values[key] = value

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def delete(self, key: str) -> bool:
        return self._values.pop(key, None) is not None


def redact(secret: str | None) -> str:
    """Display form of a secret: first and last 3 characters only."""
    if not secret:
        return "Not configured"
    if len(secret) > 10:
        return f"{secret[:3]}{_REDACTED}{secret[-3:]}"
    return _REDACTED
