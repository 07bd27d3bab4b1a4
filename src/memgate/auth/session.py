"""Session manager: credential validation with a TTL cache and offline fallback.

The manager owns a single ``Session`` per process. Remote verification goes
through the shared retry loop; its outcome is folded into one of five
states reported by ``is_authenticated()``:

- ``missing``: no credential stored
- ``valid``: verified (possibly served from the TTL cache)
- ``invalid``: explicitly rejected by the server; cache dropped at once
- ``offline``: the server was unreachable
- ``unknown``: verification timed out; nothing is promoted or revoked
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

from memgate.auth.tokens import actor_from_credential, locally_plausible
from memgate.config import AuthConfig
from memgate.credentials.base import CREDENTIAL_KEY, CredentialStore, redact
from memgate.errors import AuthError, MemgateError, NetworkError, RequestTimeout
from memgate.retry import BackoffPolicy, Sleep, retry_async

logger = logging.getLogger(__name__)

InvalidationListener = Callable[[], Awaitable[None]]


@runtime_checkable
class Verifier(Protocol):
    """Remote party that can tell whether a credential is currently valid."""

    @property
    def verify_endpoint(self) -> str: ...

    async def verify_token(self, credential: str) -> bool:
        """Return the server's verdict. Raises AuthError on 401/403."""
        ...


@dataclass
class CachedValidation:
    valid: bool
    timestamp: float
    method: str
    endpoint: str


@dataclass
class Session:
    raw_credential: str | None = None
    cached_validation: CachedValidation | None = None
    # Last successful validation, kept past the TTL for offline fallback
    last_known_good: CachedValidation | None = None
    failure_count: int = 0
    last_failure_at: datetime | None = None


@dataclass
class ValidationResult:
    valid: bool
    method: str
    endpoint: str
    reason: str | None = None


@dataclass
class AuthStatus:
    authenticated: bool
    state: str
    reason: str | None = None
    method: str | None = None
    cached: bool = False
    degraded: bool = False


class SessionManager:
    """Tracks whether the stored credential is usable, without over-querying the server."""

    def __init__(
        self,
        config: AuthConfig,
        credential_store: CredentialStore,
        verifier: Verifier,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self._store = credential_store
        self._verifier = verifier
        self._clock = clock
        self._sleep = sleep
        self._session = Session()
        self._failure_lock = asyncio.Lock()
        self._listeners: list[InvalidationListener] = []
        self._backoff = BackoffPolicy(
            base=config.backoff_base,
            max_delay=config.backoff_max,
            jitter=config.backoff_jitter,
        )
        # Retries inside one verification use a short fixed schedule
        self._verify_policy = BackoffPolicy(base=0.5, max_delay=2.0, jitter=0.1)

    # ── Validation ────────────────────────────────────────────

    async def validate(self, credential: str) -> ValidationResult:
        """Verify ``credential`` remotely.

        Explicit rejection comes back as ``valid=False``; network failures and
        timeouts are raised as NetworkError / RequestTimeout after the retry
        budget is spent. Either way the failure counter is updated.
        """
        endpoint = self._verifier.verify_endpoint

        async def _attempt() -> bool:
            return await asyncio.wait_for(
                self._verifier.verify_token(credential),
                timeout=self.config.verify_timeout,
            )

        try:
            valid = await retry_async(
                _attempt,
                policy=self._verify_policy,
                max_attempts=self.config.verify_attempts,
                sleep=self._sleep,
                description="credential verification",
            )
        except AuthError as e:
            await self._record_failure()
            return ValidationResult(valid=False, method="remote", endpoint=endpoint, reason=e.reason)
        except MemgateError:
            await self._record_failure()
            raise

        if not valid:
            await self._record_failure()
            return ValidationResult(
                valid=False,
                method="remote",
                endpoint=endpoint,
                reason="Credential rejected by server",
            )

        await self._reset_failures()
        return ValidationResult(valid=True, method="remote", endpoint=endpoint)

    async def is_authenticated(self) -> AuthStatus:
        credential = await self._load_credential()
        if not credential:
            return AuthStatus(authenticated=False, state="missing", reason="No credential stored")

        cached = self._session.cached_validation
        if cached and cached.valid and self._clock() - cached.timestamp < self.config.cache_ttl:
            return AuthStatus(authenticated=True, state="valid", method=cached.method, cached=True)

        try:
            result = await self.validate(credential)
        except RequestTimeout as e:
            logger.warning("Credential verification timed out: %s", e)
            return AuthStatus(
                authenticated=False,
                state="unknown",
                reason="Verification timed out; authentication state is unknown",
            )
        except NetworkError as e:
            return self._offline_status(credential, e)
        except MemgateError as e:
            logger.warning("Credential verification failed: %s", e)
            return AuthStatus(authenticated=False, state="unknown", reason=str(e))

        if self._session.raw_credential != credential:
            # Logged out or replaced while verifying
            return AuthStatus(authenticated=False, state="unknown", reason="Session changed during verification")

        if not result.valid:
            self._session.cached_validation = None
            self._session.last_known_good = None
            logger.info("Credential %s rejected: %s", redact(credential), result.reason)
            return AuthStatus(
                authenticated=False,
                state="invalid",
                reason=str(AuthError(result.reason or "Credential rejected")),
                method=result.method,
            )

        validation = CachedValidation(
            valid=True,
            timestamp=self._clock(),
            method=result.method,
            endpoint=result.endpoint,
        )
        self._session.cached_validation = validation
        self._session.last_known_good = validation
        return AuthStatus(authenticated=True, state="valid", method=result.method)

    def _offline_status(self, credential: str, error: NetworkError) -> AuthStatus:
        known_good = self._session.last_known_good
        if known_good and locally_plausible(credential):
            logger.warning("Verification unreachable, using last known good session: %s", error)
            return AuthStatus(
                authenticated=True,
                state="offline",
                reason=f"Offline: {error}",
                method="offline",
                degraded=True,
            )
        return AuthStatus(
            authenticated=False,
            state="offline",
            reason=f"Cannot verify credential while offline: {error}",
        )

    # ── Failure tracking & backoff ────────────────────────────

    async def _record_failure(self) -> None:
        async with self._failure_lock:
            self._session.failure_count += 1
            self._session.last_failure_at = datetime.now(timezone.utc)
            count = self._session.failure_count
        logger.debug("Verification failure #%d", count)

    async def _reset_failures(self) -> None:
        async with self._failure_lock:
            self._session.failure_count = 0
            self._session.last_failure_at = None

    @property
    def failure_count(self) -> int:
        return self._session.failure_count

    def compute_delay(self, failure_count: int | None = None, jitter: bool = True) -> float:
        """Backoff before the next attempt: base * 2**n, jittered, capped."""
        n = self._session.failure_count if failure_count is None else failure_count
        return self._backoff.compute_delay(n, jitter=jitter)

    def should_delay(self) -> bool:
        return self._session.failure_count >= self.config.delay_threshold

    # ── Credential lifecycle ──────────────────────────────────

    async def login(self, credential: str) -> ValidationResult:
        """Validate and store ``credential``. Raises AuthError if the server rejects it."""
        if self.should_delay():
            delay = self.compute_delay()
            logger.info("Waiting %.2fs after %d failed attempts", delay, self.failure_count)
            await self._sleep(delay)

        result = await self.validate(credential)
        if not result.valid:
            raise AuthError(result.reason or "Credential rejected")

        await self._store.store(CREDENTIAL_KEY, credential)
        validation = CachedValidation(
            valid=True,
            timestamp=self._clock(),
            method=result.method,
            endpoint=result.endpoint,
        )
        self._session = Session(
            raw_credential=credential,
            cached_validation=validation,
            last_known_good=validation,
        )
        logger.info("Logged in with %s", redact(credential))
        return result

    async def logout(self) -> None:
        await self._store.delete(CREDENTIAL_KEY)
        self._session = Session()
        logger.info("Logged out")
        for listener in list(self._listeners):
            await listener()

    def invalidate_cache(self) -> None:
        """Force the next ``is_authenticated()`` to re-verify."""
        if self._session.cached_validation is not None:
            logger.debug("Validation cache invalidated")
        self._session.cached_validation = None

    def add_invalidation_listener(self, listener: InvalidationListener) -> None:
        self._listeners.append(listener)

    async def credential(self) -> str | None:
        return await self._load_credential()

    async def actor_id(self) -> str:
        return actor_from_credential(await self._load_credential())

    def snapshot(self) -> Session:
        return dataclasses.replace(self._session)

    async def _load_credential(self) -> str | None:
        credential = await self._store.get(CREDENTIAL_KEY)
        if credential != self._session.raw_credential:
            # Stored credential changed underneath us; start a fresh session
            self._session = Session(raw_credential=credential)
        return credential
