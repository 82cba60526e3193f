from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from storeauth.config import (
    EventPublisherMode,
    Settings,
    get_settings,
    reset_settings_cache,
)
from storeauth.logging import get_logger
from storeauth.service.audit import AuditTrail
from storeauth.service.auth import AuthService
from storeauth.service.events import (
    EventDispatcher,
    EventPublisher,
    InMemoryEventPublisher,
    RedisEventPublisher,
)
from storeauth.service.lockout import LockoutPolicy
from storeauth.service.passwords import PasswordHasher
from storeauth.service.security import SecurityService
from storeauth.service.tokens import TokenIssuer
from storeauth.storage.memory import MemoryStore
from storeauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the store, publisher and service instances for one process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            event_publisher=self.settings.event_publisher.value,
        )
        try:
            self.store = (
                MemoryStore(mfa_encryption_key=self.settings.mfa_encryption_key)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    mfa_encryption_key=self.settings.mfa_encryption_key,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.publisher = self._build_publisher()
        self.dispatcher = EventDispatcher(self.publisher)
        self.hasher = PasswordHasher(
            time_cost=self.settings.argon2_time_cost,
            memory_cost=self.settings.argon2_memory_cost,
            timeout_seconds=self.settings.hash_timeout_seconds,
        )
        self.tokens = TokenIssuer(self.settings)
        self.lockout = LockoutPolicy(
            self.settings.max_login_attempts, self.settings.lockout_duration_minutes
        )
        self.audit = AuditTrail(self.store)
        self.security = SecurityService(
            self.store, self.settings, self.hasher, self.audit
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            hasher=self.hasher,
            tokens=self.tokens,
            lockout=self.lockout,
            audit=self.audit,
            dispatcher=self.dispatcher,
            security=self.security,
        )
        self.sweeper = SessionSweeper(
            self.security, self.settings.session_sweep_interval_seconds
        )
        logger.info("runtime_initialized", store_type=store_type)

    def _build_publisher(self) -> EventPublisher:
        if self.settings.event_publisher == EventPublisherMode.REDIS:
            assert self.settings.redis_url is not None
            logger.info(
                "event_publisher_redis",
                redis_url=_mask_url_password(self.settings.redis_url),
            )
            return RedisEventPublisher(
                self.settings.redis_url,
                channel_prefix=self.settings.event_channel_prefix,
            )
        return InMemoryEventPublisher()

    async def close(self) -> None:
        """Stop the sweeper, flush pending events and release connections."""
        await self.sweeper.stop()
        await self.dispatcher.drain()
        await self.publisher.close()
        if hasattr(self.store, "close"):
            self.store.close()


class SessionSweeper:
    """Periodically deactivates expired sessions on the running event loop.

    The sweep is idempotent, so overlapping with request handling or with a
    sweep in another process is harmless. An interval of 0 disables it.
    """

    def __init__(self, security: SecurityService, interval_seconds: float) -> None:
        self.security = security
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.interval_seconds <= 0 or self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("session_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("session_sweeper_stopped")

    async def sweep_once(self) -> int:
        return await asyncio.to_thread(self.security.cleanup_expired_sessions)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep_once()
            except Exception as exc:
                logger.error(
                    "session_sweep_failed", error_type=type(exc).__name__, error=str(exc)
                )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process-wide Runtime.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(settings: Optional[Settings] = None) -> Runtime:
    """Build a fresh runtime from the current environment (TEST_MODE only)."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = settings or get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "SessionSweeper", "get_runtime", "reset_runtime_for_tests"]
