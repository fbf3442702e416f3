from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol, Tuple

from rostergate.config import Settings, resolve_timezone
from rostergate.logging import get_logger
from rostergate.storage.models import AttemptRecord, DeviceTrustRecord, utcnow

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class GuardStateStore(Protocol):
    async def get_attempt(self, identifier: str) -> Optional[AttemptRecord]: ...

    async def delete_attempt(self, identifier: str) -> None: ...

    async def increment_failure(
        self,
        identifier: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout: timedelta,
        window: timedelta,
    ) -> AttemptRecord: ...

    async def get_device(self, identifier: str) -> Optional[DeviceTrustRecord]: ...

    async def update_device(
        self,
        identifier: str,
        mutate: Callable[[Optional[DeviceTrustRecord]], DeviceTrustRecord],
    ) -> Tuple[Optional[DeviceTrustRecord], DeviceTrustRecord]: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    remaining_attempts: int
    locked_until: Optional[datetime] = None

    def retry_after_seconds(self, now: datetime) -> int:
        if self.locked_until is None:
            return 0
        return max(0, math.ceil((self.locked_until - now).total_seconds()))


@dataclass(frozen=True)
class AccessWindow:
    """Hours during which logins are accepted, evaluated in ``tz``."""

    start_hour: int = 8
    end_hour: int = 18
    weekdays_only: bool = True
    tz: str = "UTC"

    def allows(self, now: datetime) -> bool:
        local = now.astimezone(resolve_timezone(self.tz))
        if self.weekdays_only and local.weekday() >= 5:
            return False
        return self.start_hour <= local.hour < self.end_hour


def format_lockout_remaining(locked_until: datetime, now: datetime) -> str:
    """Human wait time until a lockout lifts, rounded up to whole minutes."""
    remaining = max(1, math.ceil((locked_until - now).total_seconds() / 60))
    return f"{remaining} minute{'s' if remaining != 1 else ''}"


class AccessControlGuard:
    """Failed-attempt counters and lockout windows per identifier.

    Pure bookkeeping: the guard returns decisions and never raises for a
    normal outcome. Atomicity of each read-modify-write is delegated to the
    state store; callers serialize the check-then-record sequence per
    identifier.
    """

    def __init__(
        self,
        store: GuardStateStore,
        *,
        max_attempts: int = 3,
        lockout: timedelta = timedelta(minutes=15),
        failure_window: Optional[timedelta] = None,
        access_window: Optional[AccessWindow] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.lockout = lockout
        # Failures older than this stop counting; defaults to the lockout length
        self.failure_window = failure_window or lockout
        self.access_window = access_window
        self._clock = clock or utcnow

    @classmethod
    def from_settings(
        cls, settings: Settings, store: GuardStateStore, *, clock: Optional[Clock] = None
    ) -> "AccessControlGuard":
        window = None
        if settings.enforce_access_window:
            window = AccessWindow(
                start_hour=settings.access_window_start_hour,
                end_hour=settings.access_window_end_hour,
                weekdays_only=settings.access_window_weekdays_only,
                tz=settings.access_window_timezone,
            )
        return cls(
            store,
            max_attempts=settings.max_login_attempts,
            lockout=settings.lockout_duration,
            access_window=window,
            clock=clock,
        )

    def now(self) -> datetime:
        return self._clock()

    async def check_allowed(self, identifier: str) -> AccessDecision:
        record = await self.store.get_attempt(identifier)
        if record is None:
            return AccessDecision(allowed=True, remaining_attempts=self.max_attempts)

        now = self.now()
        if record.is_locked(now):
            return AccessDecision(
                allowed=False, remaining_attempts=0, locked_until=record.locked_until
            )
        if record.is_stale(now, self.failure_window):
            await self.store.delete_attempt(identifier)
            logger.info("guard_record_expired", identifier=identifier)
            return AccessDecision(allowed=True, remaining_attempts=self.max_attempts)

        remaining = max(0, self.max_attempts - record.failure_count)
        return AccessDecision(allowed=remaining > 0, remaining_attempts=remaining)

    async def record_failure(self, identifier: str) -> AttemptRecord:
        now = self.now()
        record = await self.store.increment_failure(
            identifier,
            now=now,
            max_attempts=self.max_attempts,
            lockout=self.lockout,
            window=self.failure_window,
        )
        if record.locked_until is not None:
            logger.warning(
                "guard_lockout_triggered",
                identifier=identifier,
                attempts=record.failure_count,
                locked_until=record.locked_until.isoformat(),
            )
        else:
            logger.info(
                "guard_failure_recorded",
                identifier=identifier,
                attempts=record.failure_count,
                remaining=max(0, self.max_attempts - record.failure_count),
            )
        return record

    async def record_success(self, identifier: str) -> None:
        await self.store.delete_attempt(identifier)

    def is_access_time_allowed(self, now: Optional[datetime] = None) -> bool:
        if self.access_window is None:
            return True
        moment = now or self.now()
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return self.access_window.allows(moment)
