"""Composition root. Builds every component once from a MemgateConfig."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from memgate.api.client import MemoryAPIClient
from memgate.auth.session import SessionManager
from memgate.config import MemgateConfig
from memgate.credentials.base import CREDENTIAL_KEY, CredentialStore
from memgate.credentials.file import FileCredentialStore
from memgate.lifecycle.backend import create_memory_backend
from memgate.lifecycle.history import TransitionLog
from memgate.lifecycle.manager import MemoryLifecycleManager
from memgate.transport.base import Channel, Endpoint, EndpointKind
from memgate.transport.direct import DirectToolInvoker
from memgate.transport.http import HttpChannel
from memgate.transport.manager import ChannelFactory, ConnectionManager
from memgate.transport.stdio import StdioChannel

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    config: MemgateConfig
    credentials: CredentialStore
    api: MemoryAPIClient
    session: SessionManager
    connection: ConnectionManager
    lifecycle: MemoryLifecycleManager

    async def close(self) -> None:
        await self.connection.disconnect()
        await self.api.close()


def build_context(
    config: MemgateConfig,
    *,
    credential_store: CredentialStore | None = None,
    channel_factory: ChannelFactory | None = None,
) -> AppContext:
    credentials = credential_store or FileCredentialStore(config.credentials_file)

    async def _credential() -> str | None:
        return await credentials.get(CREDENTIAL_KEY)

    async def _has_credential() -> bool:
        return bool(await _credential())

    api = MemoryAPIClient(
        config.api_url,
        credential_provider=_credential,
        request_timeout=config.memory.request_timeout,
        verify_path=config.auth.verify_path,
    )
    session = SessionManager(config.auth, credentials, api)
    api.on_unauthorized = session.invalidate_cache

    transport = config.transport

    def _default_channel(endpoint: Endpoint) -> Channel:
        if endpoint.kind is EndpointKind.LOCAL:
            return StdioChannel(
                endpoint,
                connect_timeout=transport.connect_timeout,
                request_timeout=transport.request_timeout,
            )
        return HttpChannel(
            endpoint,
            credential_provider=_credential,
            on_unauthorized=session.invalidate_cache,
            connect_timeout=transport.connect_timeout,
            request_timeout=transport.request_timeout,
            heartbeat_timeout=transport.heartbeat_timeout,
        )

    connection = ConnectionManager(
        transport,
        channel_factory or _default_channel,
        direct=DirectToolInvoker(api),
        has_credential=_has_credential,
    )
    session.add_invalidation_listener(connection.cancel)

    backend = create_memory_backend(config.memory.backend, api=api, connection=connection)
    lifecycle = MemoryLifecycleManager(
        backend,
        TransitionLog(config.memory.history_file),
        actor=session.actor_id,
        bulk_concurrency=config.memory.bulk_concurrency,
    )
    logger.debug(
        "Context built (api=%s, backend=%s, endpoints=%d)",
        config.api_url,
        config.memory.backend,
        len(transport.endpoints),
    )
    return AppContext(
        config=config,
        credentials=credentials,
        api=api,
        session=session,
        connection=connection,
        lifecycle=lifecycle,
    )
