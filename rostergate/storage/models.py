from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class EnrollmentRecord:
    identifier: str
    secret: str = field(repr=False)


@dataclass
class RemoteAccount:
    account_id: str
    identifier: str
    display_label: str
    created_at: datetime
    last_login_at: datetime
    is_active: bool = True
    provisioned_from_roster: bool = False


@dataclass
class AttemptRecord:
    identifier: str
    failure_count: int
    first_failure_at: datetime
    last_failure_at: datetime
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def is_stale(self, now: datetime, window: timedelta) -> bool:
        """True when the record no longer counts against the identifier."""
        if self.locked_until is not None:
            return self.locked_until <= now
        return now - self.last_failure_at >= window

    @classmethod
    def register_failure(
        cls,
        existing: Optional["AttemptRecord"],
        identifier: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout: timedelta,
        window: timedelta,
    ) -> "AttemptRecord":
        """Return the record that results from one more failed attempt.

        The count is capped at ``max_attempts``; reaching it sets
        ``locked_until``. A record that is already locked is returned
        unchanged so the lockout is never extended by further attempts.
        """
        if existing is not None and existing.is_locked(now):
            return existing
        if existing is None or existing.is_stale(now, window):
            count = 1
            first = now
        else:
            count = min(existing.failure_count + 1, max_attempts)
            first = existing.first_failure_at
        locked_until = now + lockout if count >= max_attempts else None
        return cls(
            identifier=identifier,
            failure_count=count,
            first_failure_at=first,
            last_failure_at=now,
            locked_until=locked_until,
        )


@dataclass
class DeviceTrustRecord:
    identifier: str
    fingerprint: str
    first_seen: datetime
    last_seen: datetime
    login_count: int = 1
    previous_fingerprint: Optional[str] = None

    def seen_again(self, fingerprint: str, now: datetime) -> "DeviceTrustRecord":
        previous = self.previous_fingerprint
        if fingerprint != self.fingerprint:
            previous = self.fingerprint
        return replace(
            self,
            fingerprint=fingerprint,
            last_seen=now,
            login_count=self.login_count + 1,
            previous_fingerprint=previous,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "fingerprint": self.fingerprint,
            "first_seen": _format_ts(self.first_seen),
            "last_seen": _format_ts(self.last_seen),
            "login_count": self.login_count,
            "previous_fingerprint": self.previous_fingerprint,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceTrustRecord":
        return cls(
            identifier=data["identifier"],
            fingerprint=data["fingerprint"],
            first_seen=_parse_ts(data["first_seen"]),
            last_seen=_parse_ts(data["last_seen"]),
            login_count=int(data.get("login_count", 1)),
            previous_fingerprint=data.get("previous_fingerprint"),
        )


@dataclass
class Session:
    identifier: str
    started_at: datetime
    account_id: Optional[str] = None


@dataclass
class ProfileDocument:
    """Remote profile stored alongside a provider account.

    ``to_dict`` uses the camelCase field names of the remote document
    collection so existing documents stay readable.
    """

    identifier: str
    login_key: str
    display_label: str
    created_at: datetime
    last_login_at: datetime
    is_active: bool = True
    provisioned_from_roster: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "loginKey": self.login_key,
            "displayLabel": self.display_label,
            "createdAt": self.created_at,
            "lastLoginAt": self.last_login_at,
            "isActive": self.is_active,
            "provisionedFromRoster": self.provisioned_from_roster,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProfileDocument":
        created = _parse_ts(data.get("createdAt")) or utcnow()
        return cls(
            identifier=str(data.get("identifier", "")),
            login_key=str(data.get("loginKey", "")),
            display_label=str(data.get("displayLabel") or data.get("identifier", "")),
            created_at=created,
            last_login_at=_parse_ts(data.get("lastLoginAt")) or created,
            is_active=bool(data.get("isActive", True)),
            provisioned_from_roster=bool(data.get("provisionedFromRoster", False)),
        )

    def as_remote_account(self, account_id: str) -> RemoteAccount:
        return RemoteAccount(
            account_id=account_id,
            identifier=self.identifier,
            display_label=self.display_label,
            created_at=self.created_at,
            last_login_at=self.last_login_at,
            is_active=self.is_active,
            provisioned_from_roster=self.provisioned_from_roster,
        )
