"""Connection manager: endpoint selection and failover, plus health monitoring and reconnection.

State machine::

    disconnected -[connect]-> connecting -[ok]-> connected
    connecting -[fail, endpoints remain]-> connecting (next endpoint)
    connecting -[fail, none remain]-> failed (direct API if allowed)
    connected -[heartbeat fail]-> degraded -[heartbeat ok]-> connected
    degraded -[N consecutive fails]-> disconnected (reconnect scheduled)

Every background task and every state change is tagged with the epoch it was
started in. ``cancel()`` bumps the epoch, so late completions from an
abandoned attempt are ignored instead of mutating state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from memgate.config import TransportConfig
from memgate.errors import AuthError, ConnectionCancelled, MemgateError, NetworkError
from memgate.retry import BackoffPolicy, Sleep, retry_async
from memgate.transport.base import (
    Channel,
    ConnectionState,
    ConnectionStatus,
    ConnectResult,
    Endpoint,
    EndpointKind,
)
from memgate.transport.direct import DirectToolInvoker
from memgate.transport.protocol import tool_call_result

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[Endpoint], Channel]
StateListener = Callable[[ConnectionState, ConnectionState], None]
CredentialCheck = Callable[[], Awaitable[bool]]

_LIVE_STATES = (ConnectionState.CONNECTED, ConnectionState.DEGRADED)


class ConnectionManager:
    """Keeps one protocol channel alive, or routes calls to the direct API."""

    def __init__(
        self,
        config: TransportConfig,
        channel_factory: ChannelFactory,
        *,
        direct: DirectToolInvoker | None = None,
        has_credential: CredentialCheck | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self._channel_factory = channel_factory
        self._direct = direct
        self._has_credential = has_credential
        self._sleep = sleep
        self._endpoints = sorted(
            (Endpoint.from_config(ep) for ep in config.endpoints),
            key=lambda ep: ep.priority,
        )
        self._policy = BackoffPolicy(
            base=config.backoff_base,
            max_delay=config.backoff_max,
            jitter=config.backoff_jitter,
        )

        self._state = ConnectionState.DISCONNECTED
        self._channel: Channel | None = None
        self._mode: str | None = None
        self._direct_active = False
        self._consecutive_failures = 0
        self._last_prefer_remote: bool | None = None
        self._epoch = 0
        self._connect_task: asyncio.Task | None = None
        self._health_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._listeners: list[StateListener] = []

    # ── State ─────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def endpoints(self) -> list[Endpoint]:
        return list(self._endpoints)

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _set_state(self, new: ConnectionState, epoch: int | None = None) -> None:
        if epoch is not None and epoch != self._epoch:
            return
        old = self._state
        if old is new:
            return
        self._state = new
        logger.info("Connection state: %s -> %s", old.value, new.value)
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("Connection state listener failed")

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            state=self._state,
            mode=self._mode,
            endpoint=self._channel.endpoint if self._channel else None,
            consecutive_failures=self._consecutive_failures,
            direct_api=self._direct_active,
        )

    def _direct_allowed(self) -> bool:
        return self.config.allow_direct_api and self._direct is not None

    # ── Connect ───────────────────────────────────────────────

    async def connect(self, prefer_remote: bool | None = None) -> ConnectResult:
        """Connect to the best available endpoint.

        A call made while another connect is in flight joins it. Raises
        AuthError as soon as any endpoint rejects the credential, NetworkError
        when every endpoint failed and the direct API is not allowed, and
        ConnectionCancelled when ``cancel()`` abandons the attempt.
        """
        if self._channel is not None and self._state in _LIVE_STATES:
            return ConnectResult(
                mode=self._mode or self._channel.endpoint.kind.value,
                transport_active=True,
                endpoint=self._channel.endpoint,
            )

        task = self._connect_task
        if task is None or task.done():
            task = asyncio.create_task(self._connect(prefer_remote, self._epoch))
            self._connect_task = task
        else:
            logger.debug("Joining in-flight connection attempt")

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise ConnectionCancelled("Connection attempt was cancelled") from None
            raise

    async def _connect(self, prefer_remote: bool | None, epoch: int) -> ConnectResult:
        prefer_remote = await self._resolve_preference(prefer_remote)
        self._last_prefer_remote = prefer_remote
        self._set_state(ConnectionState.CONNECTING, epoch)

        failures: list[str] = []
        for endpoint in self._ordered_endpoints(prefer_remote):
            try:
                channel = await retry_async(
                    lambda: self._open(endpoint, epoch),
                    policy=self._policy,
                    max_attempts=self.config.max_attempts_per_endpoint,
                    sleep=self._sleep,
                    on_retry=self._on_connect_retry,
                    description=f"connect to {endpoint.uri}",
                )
            except AuthError:
                logger.error("Endpoint %s rejected the credential", endpoint.uri)
                self._set_state(ConnectionState.FAILED, epoch)
                raise
            except ConnectionCancelled:
                raise
            except MemgateError as e:
                self._consecutive_failures += 1
                failures.append(f"{endpoint.uri}: {e}")
                logger.warning("Giving up on endpoint %s: %s", endpoint.uri, e)
                continue

            if epoch != self._epoch:
                await channel.close()
                raise ConnectionCancelled("Connection attempt was cancelled")

            self._channel = channel
            self._mode = endpoint.kind.value
            self._direct_active = False
            self._consecutive_failures = 0
            self._set_state(ConnectionState.CONNECTED, epoch)
            self._start_health_monitor()
            return ConnectResult(mode=self._mode, transport_active=True, endpoint=endpoint)

        self._set_state(ConnectionState.FAILED, epoch)
        if self._direct_allowed():
            logger.warning("No protocol endpoint reachable, using direct API")
            self._mode = EndpointKind.REMOTE.value
            self._direct_active = True
            return ConnectResult(mode=self._mode, transport_active=False, direct_api=True)

        detail = "; ".join(failures) or "no endpoints configured"
        raise NetworkError(f"Could not connect to any protocol endpoint ({detail})")

    async def _open(self, endpoint: Endpoint, epoch: int) -> Channel:
        if epoch != self._epoch:
            raise ConnectionCancelled("Connection attempt was cancelled")
        channel = self._channel_factory(endpoint)
        try:
            await asyncio.wait_for(channel.connect(), timeout=self.config.connect_timeout)
        except BaseException:
            await channel.close()
            raise
        return channel

    def _on_connect_retry(self, attempt: int, error: MemgateError, delay: float) -> None:
        self._consecutive_failures += 1

    async def _resolve_preference(self, prefer_remote: bool | None) -> bool:
        if prefer_remote is not None:
            return prefer_remote
        preference = self.config.preference
        if preference == "remote":
            return True
        if preference == "local":
            return False
        # auto: remote when a credential is stored
        if self._has_credential is None:
            return True
        return await self._has_credential()

    def _ordered_endpoints(self, prefer_remote: bool) -> list[Endpoint]:
        preferred = EndpointKind.REMOTE if prefer_remote else EndpointKind.LOCAL
        return sorted(self._endpoints, key=lambda ep: (ep.kind is not preferred, ep.priority))

    # ── Health monitoring ─────────────────────────────────────

    def _start_health_monitor(self) -> None:
        self._cancel_task(self._health_task)
        self._health_task = asyncio.create_task(self._health_loop(self._epoch))

    async def _health_loop(self, epoch: int) -> None:
        while epoch == self._epoch and self._state in _LIVE_STATES:
            await self._sleep(self.config.heartbeat_interval)
            if epoch != self._epoch:
                return
            await self.perform_health_check()

    async def perform_health_check(self) -> bool:
        """Run one heartbeat now and apply its outcome to the state machine."""
        channel = self._channel
        if channel is None or self._state not in _LIVE_STATES:
            return False

        epoch = self._epoch
        try:
            healthy = await asyncio.wait_for(channel.heartbeat(), timeout=self.config.heartbeat_timeout)
        except asyncio.TimeoutError:
            healthy = False
        except Exception as e:
            logger.debug("Heartbeat raised: %s", e)
            healthy = False

        if epoch != self._epoch or channel is not self._channel:
            return healthy

        if healthy:
            self._consecutive_failures = 0
            self._set_state(ConnectionState.CONNECTED)
            return True

        self._consecutive_failures += 1
        threshold = self.config.heartbeat_failure_threshold
        logger.warning(
            "Heartbeat to %s failed (%d/%d)",
            channel.endpoint.uri,
            self._consecutive_failures,
            threshold,
        )
        if self._consecutive_failures >= threshold:
            self._channel = None
            await channel.close()
            self._set_state(ConnectionState.DISCONNECTED)
            self._schedule_reconnect()
        else:
            self._set_state(ConnectionState.DEGRADED)
        return False

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect(self._epoch))

    async def _reconnect(self, epoch: int) -> None:
        for attempt in range(self.config.max_attempts_per_endpoint):
            delay = self._policy.compute_delay(attempt)
            logger.info("Reconnecting in %.2fs", delay)
            await self._sleep(delay)
            if epoch != self._epoch:
                return
            try:
                await self.connect(prefer_remote=self._last_prefer_remote)
            except AuthError as e:
                logger.error("Reconnect aborted: %s", e)
                return
            except ConnectionCancelled:
                return
            except NetworkError as e:
                logger.warning("Reconnect attempt %d failed: %s", attempt + 1, e)
                continue
            return
        logger.error("Giving up reconnecting after %d rounds", self.config.max_attempts_per_endpoint)

    # ── Foreground calls ──────────────────────────────────────

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        """Invoke a tool over the channel, or through the direct API when no channel is usable."""
        channel = await self._wait_for_transport()
        if channel is not None:
            try:
                result = await channel.request("tools/call", {"name": name, "arguments": arguments or {}})
            except NetworkError as e:
                if not self._direct_allowed():
                    raise
                logger.warning("Tool %s failed over %s, using direct API: %s", name, channel.endpoint.uri, e)
            else:
                return tool_call_result(result)

        if not self._direct_allowed():
            raise NetworkError(f"No protocol transport available for {name} and direct API is disabled")
        return await self._direct.call(name, arguments)

    async def list_tools(self) -> list[dict[str, Any]]:
        channel = await self._wait_for_transport()
        if channel is not None:
            try:
                result = await channel.request("tools/list")
            except NetworkError as e:
                if not self._direct_allowed():
                    raise
                logger.warning("tools/list failed over %s, using direct API: %s", channel.endpoint.uri, e)
            else:
                return list((result or {}).get("tools", []))

        if not self._direct_allowed():
            raise NetworkError("No protocol transport available and direct API is disabled")
        return self._direct.list_tools()

    async def _wait_for_transport(self) -> Channel | None:
        if self._channel is not None and self._state in _LIVE_STATES:
            return self._channel

        pending = [
            task
            for task in (self._reconnect_task, self._connect_task)
            if task is not None and not task.done() and task is not asyncio.current_task()
        ]
        if pending:
            logger.debug("Waiting up to %.1fs for reconnection", self.config.reconnect_wait)
            _, still_pending = await asyncio.wait(pending, timeout=self.config.reconnect_wait)
            if still_pending:
                logger.warning("Reconnection still pending after %.1fs", self.config.reconnect_wait)

        if self._channel is not None and self._state in _LIVE_STATES:
            return self._channel
        return None

    # ── Teardown ──────────────────────────────────────────────

    def _cancel_task(self, task: asyncio.Task | None) -> asyncio.Task | None:
        if task is None or task.done() or task is asyncio.current_task():
            return None
        task.cancel()
        return task

    async def cancel(self) -> None:
        """Abandon any in-flight connect and stop background tasks and timers."""
        self._epoch += 1
        cancelled = [
            t
            for t in (
                self._cancel_task(self._connect_task),
                self._cancel_task(self._health_task),
                self._cancel_task(self._reconnect_task),
            )
            if t is not None
        ]
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)
        self._connect_task = self._health_task = self._reconnect_task = None

        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.close()
        self._set_state(ConnectionState.DISCONNECTED)

    async def disconnect(self) -> None:
        await self.cancel()
        self._mode = None
        self._direct_active = False
        self._consecutive_failures = 0
