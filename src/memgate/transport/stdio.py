"""Local protocol endpoint: a subprocess speaking newline-delimited JSON-RPC on stdio."""

from __future__ import annotations

import asyncio
import json
import logging
import shlex
from typing import Any

from memgate.errors import APIError, NetworkError, classify_exception
from memgate.transport.base import Endpoint
from memgate.transport.protocol import (
    Response,
    build_notification,
    build_request,
    format_message,
    initialize_params,
    parse_line,
)

logger = logging.getLogger(__name__)


class StdioChannel:
    """Manages a long-running endpoint subprocess (``endpoint.uri`` is its command line)."""

    def __init__(
        self,
        endpoint: Endpoint,
        *,
        env: dict[str, str] | None = None,
        connect_timeout: float = 10.0,
        request_timeout: float = 30.0,
        shutdown_timeout: float = 2.0,
    ) -> None:
        self._endpoint = endpoint
        self.env = env
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.shutdown_timeout = shutdown_timeout
        self._process: asyncio.subprocess.Process | None = None
        self._lock = asyncio.Lock()
        self.server_info: dict[str, Any] = {}

    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    @property
    def is_open(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def _build_command(self) -> list[str]:
        cmd = shlex.split(self._endpoint.uri)
        if not cmd:
            raise APIError("Local endpoint has an empty command line")
        return cmd

    async def connect(self) -> None:
        """Start the subprocess and complete the ``initialize`` handshake."""
        if self.is_open:
            return

        cmd = self._build_command()
        logger.debug("Starting: %s", " ".join(cmd[:4]) + (" ..." if len(cmd) > 4 else ""))
        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                env=self.env,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise NetworkError(f"Cannot start local endpoint {cmd[0]}: {e}") from e

        try:
            result = await self._call("initialize", initialize_params(), timeout=self.connect_timeout)
            await self.send(build_notification("notifications/initialized"))
        except BaseException:
            await self.close()
            raise

        self.server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        logger.info(
            "Local endpoint started (pid=%d, server=%s)",
            self._process.pid,
            self.server_info.get("name", "?"),
        )

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        return await self._call(method, params, timeout=self.request_timeout)

    async def heartbeat(self) -> bool:
        """Ping the endpoint. A request already in flight proves the process is alive."""
        if not self.is_open:
            return False
        if self._lock.locked():
            logger.debug("Request in flight, skipping ping")
            return True
        try:
            await self.request("ping")
        except Exception as e:
            logger.debug("Local heartbeat failed: %s", e)
            return False
        return True

    async def send(self, message: dict[str, Any]) -> None:
        if not self._process or not self._process.stdin:
            raise NetworkError("Local endpoint stdin not available")
        data = format_message(message)
        logger.debug("> %s", data[:200])
        try:
            self._process.stdin.write((data + "\n").encode())
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise NetworkError(f"Local endpoint closed its input: {e}") from e

    async def receive(self) -> dict[str, Any]:
        line = await self._readline()
        if line is None:
            raise NetworkError("Local endpoint closed its output")
        try:
            return json.loads(line)
        except json.JSONDecodeError as e:
            raise APIError(f"Malformed JSON-RPC message: {e}") from e

    async def close(self) -> None:
        """Gracefully stop the subprocess."""
        if not self._process:
            return

        process = self._process
        self._process = None
        if process.returncode is None:
            logger.info("Stopping local endpoint (pid=%d)", process.pid)
            try:
                if process.stdin:
                    process.stdin.close()
                await asyncio.wait_for(process.wait(), timeout=self.shutdown_timeout)
            except asyncio.TimeoutError:
                logger.warning("Local endpoint didn't exit gracefully, terminating")
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.shutdown_timeout)
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()

    # ── Internal I/O helpers ──────────────────────────────────

    async def _call(self, method: str, params: dict[str, Any] | None, *, timeout: float) -> Any:
        """Send one request and read until its response arrives."""
        async with self._lock:
            request = build_request(method, params)
            await self.send(request)

            async def _read() -> Response:
                while True:
                    line = await self._readline()
                    if line is None:
                        raise NetworkError("Local endpoint closed before responding")
                    message = parse_line(line)
                    if isinstance(message, Response) and message.id == request["id"]:
                        return message
                    # Notifications and stale responses are skipped

            try:
                response = await asyncio.wait_for(_read(), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise classify_exception(e) from e
        return response.raise_for_error()

    async def _readline(self) -> str | None:
        """Read a single non-empty line from stdout. Returns None on EOF."""
        if not self._process or not self._process.stdout:
            return None
        while True:
            try:
                line = await self._process.stdout.readline()
            except (ConnectionResetError, ValueError) as e:
                logger.warning("Local endpoint output unreadable: %s", e)
                return None
            if not line:
                return None
            decoded = line.decode().strip()
            if decoded:
                logger.debug("< %s", decoded[:200])
                return decoded

