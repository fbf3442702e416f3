from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from rostergate.config import GuardStoreMode, Settings, get_settings, reset_settings_cache
from rostergate.logging import get_logger
from rostergate.service.device import DeviceRiskAssessor
from rostergate.service.guard import AccessControlGuard
from rostergate.service.identity_backends import build_identity_provider
from rostergate.service.migration import MigrationCoordinator
from rostergate.service.roster import CredentialRoster
from rostergate.service.session import SessionManager
from rostergate.storage.memory import MemoryGuardStore
from rostergate.storage.redis_cache import RedisGuardStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the singleton service graph for one client process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            provider_mode=self.settings.provider_mode.value,
            guard_store=self.settings.guard_store.value,
        )

        try:
            self.roster = CredentialRoster.from_file(self.settings.roster_path)
        except (OSError, ValueError) as exc:
            logger.error(
                "runtime_roster_load_failed",
                roster_path=self.settings.roster_path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.store: Union[MemoryGuardStore, RedisGuardStore]
        if self.settings.guard_store == GuardStoreMode.REDIS:
            self.store = RedisGuardStore(self.settings.redis_url)
        else:
            self.store = MemoryGuardStore()
        logger.info(
            "runtime_guard_store_initialized",
            store_type=self.settings.guard_store.value,
            redis_url=_mask_url_password(self.settings.redis_url)
            if self.settings.guard_store == GuardStoreMode.REDIS
            else None,
        )

        self.provider = build_identity_provider(self.settings)
        self.guard = AccessControlGuard.from_settings(self.settings, self.store)
        self.risk_assessor = DeviceRiskAssessor.from_settings(self.settings, self.store)
        self.sessions = SessionManager(timeout=self.settings.session_timeout)
        self.coordinator = MigrationCoordinator(
            self.roster,
            self.guard,
            self.provider,
            self.sessions,
            risk_assessor=self.risk_assessor,
            login_key_domain=self.settings.login_key_domain,
            provider_timeout=self.settings.provider_timeout_seconds,
            migration_delay=self.settings.migration_delay_ms / 1000,
        )
        logger.info("runtime_init_complete", roster_size=len(self.roster))

    async def verify(self) -> None:
        """Check backing services are reachable before serving logins."""
        if isinstance(self.store, RedisGuardStore):
            await self.store.ping()

    async def close(self) -> None:
        await self.coordinator.close()
        await self.provider.close()
        await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(settings: Optional[Settings] = None) -> Runtime:
    """Rebuild the runtime singleton from a fresh settings read."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime(settings)
        return runtime
