"""Async client for the Memory API (REST over aiohttp).

Every call carries an explicit ``aiohttp.ClientTimeout``. Transport failures
and non-2xx statuses are translated into the memgate error taxonomy before
they leave this module.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import aiohttp

from memgate.auth.tokens import auth_headers
from memgate.errors import AuthError, MemgateError, classify_exception, classify_status

logger = logging.getLogger(__name__)

CredentialProvider = Callable[[], Awaitable[str | None]]


class MemoryAPIClient:
    """Thin REST client; the session is opened lazily and reused until ``close()``."""

    def __init__(
        self,
        base_url: str,
        *,
        credential_provider: CredentialProvider | None = None,
        request_timeout: float = 15.0,
        verify_path: str = "/auth/verify",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.verify_path = verify_path
        self._credential_provider = credential_provider
        self._session: aiohttp.ClientSession | None = None
        # Called whenever the API answers 401/403
        self.on_unauthorized: Callable[[], None] | None = None

    @property
    def verify_endpoint(self) -> str:
        return f"{self.base_url}{self.verify_path}"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    # ── Memory records ────────────────────────────────────────

    async def get_memory(self, memory_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/memory/{memory_id}")

    async def update_memory(self, memory_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", f"/memory/{memory_id}", body=changes)

    async def list_memories(
        self,
        *,
        state: str | None = None,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, str] = {}
        if state:
            params["state"] = state
        if before:
            params["before"] = _utc_isoformat(before)
        if limit is not None:
            params["limit"] = str(limit)
        data = await self._request("GET", "/memory", params=params)
        if isinstance(data, dict):
            return list(data.get("memories") or [])
        return list(data or [])

    async def create_memory(self, memory: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/memory", body=memory)

    async def search_memories(self, query: str, **filters: Any) -> list[dict[str, Any]]:
        data = await self._request("POST", "/memory/search", body={"query": query, **filters})
        if isinstance(data, dict):
            return list(data.get("memories") or data.get("results") or [])
        return list(data or [])

    async def delete_memory(self, memory_id: str) -> None:
        await self._request("DELETE", f"/memory/{memory_id}")

    # ── Service ───────────────────────────────────────────────

    async def health(self) -> bool:
        try:
            await self._request("GET", "/health", authenticated=False)
        except MemgateError as e:
            logger.debug("Health check failed: %s", e)
            return False
        return True

    async def verify_token(self, credential: str) -> bool:
        """Ask the server whether ``credential`` is valid. 401/403 raises AuthError."""
        data = await self._request(
            "POST",
            self.verify_path,
            body={"token": credential},
            credential=credential,
        )
        return bool(isinstance(data, dict) and data.get("valid"))

    # ── Internal ──────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        credential: str | None = None,
        authenticated: bool = True,
    ) -> Any:
        headers = {"Accept": "application/json"}
        if authenticated:
            if credential is None and self._credential_provider:
                credential = await self._credential_provider()
            if credential:
                headers.update(auth_headers(credential))

        session = await self._get_session()
        url = f"{self.base_url}{path}"
        status: int | None = None
        try:
            async with session.request(method, url, json=body, params=params, headers=headers) as resp:
                status = resp.status
                text = await resp.text()
                if resp.status >= 400:
                    raise classify_status(resp.status, _error_message(text))
                if not text.strip():
                    return None
                return json.loads(text)
        except MemgateError as e:
            if isinstance(e, AuthError):
                self._notify_unauthorized()
            raise
        except Exception as e:
            error = classify_exception(e, auth_status=status)
            logger.debug("%s %s failed: %s", method, path, error)
            if isinstance(error, AuthError):
                self._notify_unauthorized()
            raise error from e

    def _notify_unauthorized(self) -> None:
        if self.on_unauthorized:
            self.on_unauthorized()


def _utc_isoformat(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _error_message(text: str) -> str:
    """Pull ``error``/``message``/``detail`` out of a JSON error body, else the raw text."""
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return text.strip()[:200]
    if isinstance(data, dict):
        for key in ("error", "message", "detail"):
            if data.get(key):
                return str(data[key])
    return text.strip()[:200]
