"""Remote protocol endpoint: JSON-RPC over HTTP POST, heartbeat via ``GET /health``."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlsplit

import aiohttp

from memgate.auth.tokens import auth_headers
from memgate.errors import AuthError, MemgateError, NetworkError, classify_exception, classify_status
from memgate.transport.base import Endpoint
from memgate.transport.protocol import (
    Response,
    build_notification,
    build_request,
    initialize_params,
    parse_message,
)

logger = logging.getLogger(__name__)

CredentialProvider = Callable[[], Awaitable[str | None]]


def health_url(uri: str) -> str:
    parts = urlsplit(uri)
    return f"{parts.scheme}://{parts.netloc}/health"


class HttpChannel:
    """JSON-RPC client for one remote endpoint, over a private aiohttp session."""

    def __init__(
        self,
        endpoint: Endpoint,
        *,
        credential_provider: CredentialProvider | None = None,
        on_unauthorized: Callable[[], None] | None = None,
        connect_timeout: float = 10.0,
        request_timeout: float = 30.0,
        heartbeat_timeout: float = 5.0,
    ) -> None:
        self._endpoint = endpoint
        self._credential_provider = credential_provider
        self._on_unauthorized = on_unauthorized
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.heartbeat_timeout = heartbeat_timeout
        self._session: aiohttp.ClientSession | None = None
        self._inbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.server_info: dict[str, Any] = {}

    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    @property
    def is_open(self) -> bool:
        return self._session is not None and not self._session.closed

    async def connect(self) -> None:
        if self.is_open:
            return
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.request_timeout, connect=self.connect_timeout)
        )
        try:
            result = await self._call("initialize", initialize_params(), timeout=self.connect_timeout)
            await self.send(build_notification("notifications/initialized"))
        except BaseException:
            await self.close()
            raise
        self.server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        logger.info("Connected to %s (server=%s)", self._endpoint.uri, self.server_info.get("name", "?"))

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        return await self._call(method, params, timeout=self.request_timeout)

    async def send(self, message: dict[str, Any]) -> None:
        """POST one message; any reply body is queued for ``receive()``."""
        body = await self._post(message, timeout=self.request_timeout)
        if body is not None:
            await self._inbox.put(body)

    async def receive(self) -> dict[str, Any]:
        return await self._inbox.get()

    async def heartbeat(self) -> bool:
        if not self._session:
            return False
        try:
            async with self._session.get(
                health_url(self._endpoint.uri),
                timeout=aiohttp.ClientTimeout(total=self.heartbeat_timeout),
            ) as resp:
                return resp.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug("Heartbeat to %s failed: %s", self._endpoint.uri, e)
            return False

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    # ── Internal helpers ──────────────────────────────────────

    async def _call(self, method: str, params: dict[str, Any] | None, *, timeout: float) -> Any:
        request = build_request(method, params)
        body = await self._post(request, timeout=timeout)
        if body is None:
            raise NetworkError(f"Empty response to {method}")
        message = parse_message(body)
        if not isinstance(message, Response):
            raise NetworkError(f"Unexpected reply to {method}")
        try:
            return message.raise_for_error()
        except AuthError:
            self._notify_unauthorized()
            raise

    async def _post(self, message: dict[str, Any], *, timeout: float) -> dict[str, Any] | None:
        if not self._session:
            raise NetworkError("Channel is not connected")

        headers = {"Accept": "application/json"}
        if self._credential_provider:
            credential = await self._credential_provider()
            if credential:
                headers.update(auth_headers(credential))

        status: int | None = None
        try:
            async with self._session.post(
                self._endpoint.uri,
                json=message,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                status = resp.status
                if resp.status >= 400:
                    raise classify_status(resp.status, await resp.text())
                text = await resp.text()
                if not text.strip():
                    return None
                return json.loads(text)
        except AuthError:
            self._notify_unauthorized()
            raise
        except MemgateError:
            raise
        except Exception as e:
            error = classify_exception(e, auth_status=status)
            if isinstance(error, AuthError):
                self._notify_unauthorized()
            raise error from e

    def _notify_unauthorized(self) -> None:
        if self._on_unauthorized:
            self._on_unauthorized()
