from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from rostergate.logging import get_logger
from rostergate.storage.models import Session, utcnow

logger = get_logger(__name__)


class SessionManager:
    """Absolute session timeout, independent of provider token lifetime.

    There is no background expiry: validity is evaluated lazily whenever
    ``is_valid`` is called.
    """

    def __init__(
        self,
        *,
        timeout: timedelta = timedelta(hours=2),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.timeout = timeout
        self._clock = clock or utcnow
        self._session: Optional[Session] = None

    @property
    def current(self) -> Optional[Session]:
        return self._session

    def start(self, identifier: str, account_id: Optional[str] = None) -> Session:
        self._session = Session(
            identifier=identifier, started_at=self._clock(), account_id=account_id
        )
        logger.info("session_started", identifier=identifier, timeout_s=int(self.timeout.total_seconds()))
        return self._session

    def is_valid(self) -> bool:
        if self._session is None:
            return False
        return self._clock() - self._session.started_at < self.timeout

    def remaining(self) -> timedelta:
        if self._session is None:
            return timedelta(0)
        left = self.timeout - (self._clock() - self._session.started_at)
        return max(left, timedelta(0))

    def end(self) -> None:
        if self._session is not None:
            logger.info("session_ended", identifier=self._session.identifier)
        self._session = None
