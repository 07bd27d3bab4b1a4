"""Error taxonomy shared by every memgate component.

Low-level transport failures (aiohttp, OSError, asyncio timeouts, JSON-RPC
error payloads) are translated here so callers only ever branch on
MemgateError subclasses.
"""

from __future__ import annotations

import asyncio
import socket
from typing import Any

import aiohttp

REAUTH_HINT = "Re-authenticate with `memgate login` to continue."

# JSON-RPC error codes servers use for unauthorized / forbidden
AUTH_RPC_CODES = frozenset({-32001, -32003, 401, 403})


class MemgateError(Exception):
    """Base error. ``error_class`` names the category, ``retryable`` drives retry."""

    error_class = "error"
    retryable = False

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class AuthError(MemgateError):
    """Credential rejected. Terminal until the user re-authenticates."""

    error_class = "auth"

    def __init__(self, message: str = "Authentication failed", *, status: int | None = None) -> None:
        super().__init__(f"{message}. {REAUTH_HINT}", status=status)
        self.reason = message


class NetworkError(MemgateError):
    error_class = "network"
    retryable = True


class RequestTimeout(NetworkError):
    error_class = "timeout"


class InvalidTransition(MemgateError):
    error_class = "invalid_transition"

    def __init__(self, from_state: Any, to_state: Any) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid state transition from {_value(from_state)} to {_value(to_state)}"
        )


class NotFound(MemgateError):
    error_class = "not_found"

    def __init__(self, message: str = "not found", *, status: int | None = 404) -> None:
        super().__init__(message, status=status)


class APIError(MemgateError):
    """Non-retryable remote rejection that is neither auth nor not-found."""

    error_class = "api"


class ConnectionCancelled(MemgateError):
    error_class = "cancelled"


def _value(state: Any) -> str:
    return getattr(state, "value", str(state))


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, MemgateError) and exc.retryable


def classify_status(status: int, message: str = "") -> MemgateError:
    """Map an HTTP status code onto the taxonomy."""
    detail = message or f"HTTP {status}"
    if status in (401, 403):
        return AuthError(detail, status=status)
    if status == 404:
        return NotFound(message or "not found", status=status)
    if status == 408:
        return RequestTimeout(detail, status=status)
    if status == 429 or status >= 500:
        return NetworkError(detail, status=status)
    return APIError(detail, status=status)


def classify_rpc_error(error: dict[str, Any]) -> MemgateError:
    """Map a JSON-RPC ``error`` object onto the taxonomy."""
    code = error.get("code")
    message = str(error.get("message") or "remote error")
    if code in AUTH_RPC_CODES:
        return AuthError(message)
    return APIError(f"{message} (code {code})")


def classify_exception(exc: BaseException, *, auth_status: int | None = None) -> MemgateError:
    """Translate a raw exception into a MemgateError.

    ``auth_status`` is an HTTP status already received from the remote party.
    When it is 401/403 a subsequent timeout is still an auth failure.
    """
    if isinstance(exc, MemgateError):
        return exc
    if auth_status in (401, 403):
        return AuthError(f"HTTP {auth_status}", status=auth_status)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, aiohttp.ServerTimeoutError)):
        return RequestTimeout(f"Request timed out: {exc}" if str(exc) else "Request timed out")
    if isinstance(exc, aiohttp.ClientResponseError):
        return classify_status(exc.status, exc.message)
    if isinstance(exc, aiohttp.ClientConnectorError):
        return NetworkError(f"Connection failed: {exc}")
    if isinstance(exc, socket.gaierror):
        return NetworkError(f"Name resolution failed: {exc}")
    if isinstance(exc, (ConnectionError, OSError)):
        return NetworkError(f"Connection failed: {exc}")
    if isinstance(exc, aiohttp.ClientError):
        return NetworkError(f"Transport error: {exc}")
    return APIError(f"Unexpected {type(exc).__name__}: {exc}")
