from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from rostergate.storage.models import AttemptRecord, DeviceTrustRecord


class MemoryGuardStore:
    """Process-local backing store for attempt and device-trust records.

    Every read-modify-write runs under a single lock, so concurrent logins
    for the same identifier cannot lose an update.
    """

    def __init__(self) -> None:
        self.attempts: Dict[str, AttemptRecord] = {}
        self.devices: Dict[str, DeviceTrustRecord] = {}
        self._data_lock = threading.RLock()

    async def get_attempt(self, identifier: str) -> Optional[AttemptRecord]:
        with self._data_lock:
            return self.attempts.get(identifier)

    async def delete_attempt(self, identifier: str) -> None:
        with self._data_lock:
            self.attempts.pop(identifier, None)

    async def increment_failure(
        self,
        identifier: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout: timedelta,
        window: timedelta,
    ) -> AttemptRecord:
        with self._data_lock:
            updated = AttemptRecord.register_failure(
                self.attempts.get(identifier),
                identifier,
                now=now,
                max_attempts=max_attempts,
                lockout=lockout,
                window=window,
            )
            self.attempts[identifier] = updated
            return updated

    async def get_device(self, identifier: str) -> Optional[DeviceTrustRecord]:
        with self._data_lock:
            return self.devices.get(identifier)

    async def update_device(
        self,
        identifier: str,
        mutate: Callable[[Optional[DeviceTrustRecord]], DeviceTrustRecord],
    ) -> Tuple[Optional[DeviceTrustRecord], DeviceTrustRecord]:
        with self._data_lock:
            current = self.devices.get(identifier)
            updated = mutate(current)
            self.devices[identifier] = updated
            return current, updated

    async def close(self) -> None:
        return None
