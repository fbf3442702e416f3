"""Device fingerprinting and login-pattern risk heuristics.

Fingerprints are best-effort and non-cryptographic in purpose: they feed an
advisory risk signal and are never a security boundary on their own.
"""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Mapping, Optional, Protocol

from rostergate.config import Settings
from rostergate.logging import get_logger
from rostergate.storage.models import DeviceTrustRecord, utcnow

logger = get_logger(__name__)

FINGERPRINT_LENGTH = 32


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class RiskAssessment:
    suspicious: bool
    risk_level: RiskLevel
    reason: Optional[str] = None


class FingerprintSource(Protocol):
    """Capability supplying an opaque, stable device token."""

    def fingerprint(self) -> str: ...


def generate_fingerprint(signals: Mapping[str, str]) -> str:
    """Collapse environment signals into a fixed-length opaque token."""
    canonical = json.dumps(dict(signals), sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(canonical.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii")[:FINGERPRINT_LENGTH]


@dataclass(frozen=True)
class EnvironmentSignals:
    """Client environment as reported by the login surface.

    ``surface`` carries the rendering-surface signature (canvas/GL renderer
    string or similar) when the client can provide one.
    """

    user_agent: str = ""
    language: str = ""
    platform: str = ""
    screen: str = ""
    timezone: str = ""
    surface: str = ""

    def fingerprint(self) -> str:
        return generate_fingerprint(asdict(self))


@dataclass(frozen=True)
class StaticFingerprint:
    value: str

    def fingerprint(self) -> str:
        return self.value


class DeviceRiskAssessor:
    """Classifies each login as low/medium/high risk from device history.

    Only the most recently seen fingerprint is trusted; the one it replaced
    is kept as ``previous_fingerprint`` for audit and is not compared
    against.
    """

    def __init__(
        self,
        store,
        *,
        rapid_login: timedelta = timedelta(minutes=10),
        high_volume_count: int = 10,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.rapid_login = rapid_login
        self.high_volume_count = high_volume_count
        self._clock = clock or utcnow

    @classmethod
    def from_settings(
        cls, settings: Settings, store, *, clock: Optional[Callable[[], datetime]] = None
    ) -> "DeviceRiskAssessor":
        return cls(
            store,
            rapid_login=settings.rapid_login_threshold,
            high_volume_count=settings.high_volume_login_count,
            clock=clock,
        )

    def _classify(
        self, current: Optional[DeviceTrustRecord], fingerprint: str, now: datetime
    ) -> RiskAssessment:
        if current is None:
            return RiskAssessment(suspicious=False, risk_level=RiskLevel.LOW)
        if current.fingerprint != fingerprint:
            return RiskAssessment(
                suspicious=True,
                risk_level=RiskLevel.MEDIUM,
                reason="Login from new device detected",
            )
        rapid = now - current.last_seen < self.rapid_login
        high_volume = current.login_count > self.high_volume_count
        if rapid and high_volume:
            return RiskAssessment(
                suspicious=True,
                risk_level=RiskLevel.HIGH,
                reason="Unusually frequent login activity",
            )
        return RiskAssessment(suspicious=False, risk_level=RiskLevel.LOW)

    async def assess(self, identifier: str, fingerprint: str) -> RiskAssessment:
        now = self._clock()
        outcome: dict[str, RiskAssessment] = {}

        def mutate(current: Optional[DeviceTrustRecord]) -> DeviceTrustRecord:
            # May run more than once under optimistic stores; keep it pure
            outcome["assessment"] = self._classify(current, fingerprint, now)
            if current is None:
                return DeviceTrustRecord(
                    identifier=identifier,
                    fingerprint=fingerprint,
                    first_seen=now,
                    last_seen=now,
                )
            return current.seen_again(fingerprint, now)

        _, updated = await self.store.update_device(identifier, mutate)
        assessment = outcome["assessment"]
        if assessment.suspicious:
            logger.warning(
                "device_risk_flagged",
                identifier=identifier,
                risk_level=assessment.risk_level.value,
                reason=assessment.reason,
                login_count=updated.login_count,
            )
        return assessment
