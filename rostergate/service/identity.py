from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Protocol

from rostergate.logging import get_logger
from rostergate.storage.models import ProfileDocument

logger = get_logger(__name__)

AuthStateCallback = Callable[[Optional[str]], None]
Unsubscribe = Callable[[], None]

_PATH_SEPARATORS = re.compile(r"[\\/]")


class ProviderErrorKind(str, Enum):
    """Provider failure classes the login state machine branches on."""

    NOT_FOUND = "not_found"  # no account for the login key, or provider won't say
    WRONG_SECRET = "wrong_secret"
    ACCOUNT_EXISTS = "account_exists"
    RATE_LIMITED = "rate_limited"
    CONFIGURATION = "configuration"
    OTHER = "other"


class ProviderError(Exception):
    """Raised by identity provider backends.

    ``code`` is the provider's raw error code. It is for logs only and must
    not be surfaced to end users.
    """

    def __init__(self, kind: ProviderErrorKind, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.kind = kind
        self.code = code
        self.message = message or code


@dataclass(frozen=True)
class ProviderAccount:
    account_id: str
    login_key: str


class IdentityProvider(Protocol):
    async def create_account(self, login_key: str, secret: str) -> ProviderAccount: ...

    async def sign_in(self, login_key: str, secret: str) -> ProviderAccount: ...

    async def sign_out(self) -> None: ...

    async def get_profile(self, account_id: str) -> Optional[ProfileDocument]: ...

    async def put_profile(
        self, account_id: str, profile: ProfileDocument, *, merge_fields: Optional[List[str]] = None
    ) -> None: ...

    def subscribe_auth_state(self, callback: AuthStateCallback) -> Unsubscribe: ...

    async def close(self) -> None: ...


def derive_login_key(identifier: str, domain: str) -> str:
    """Map a roster identifier to its provider-side login key.

    Deterministic: lower-cased, path separators replaced with ``-``, and a
    fixed domain suffix, e.g. ``CSC/2021/001`` -> ``csc-2021-001@student.app``.
    """
    local_part = _PATH_SEPARATORS.sub("-", identifier.strip().lower())
    return f"{local_part}@{domain}"


class AuthStatePublisher:
    """Publish/subscribe for identity changes.

    Owned by whichever component mutates identity state. New subscribers are
    called immediately with the current identity; a failing listener is
    logged and does not stop delivery to the others.
    """

    def __init__(self, initial: Optional[str] = None) -> None:
        self._current = initial
        self._listeners: List[AuthStateCallback] = []

    @property
    def current(self) -> Optional[str]:
        return self._current

    def subscribe(self, callback: AuthStateCallback, *, replay: bool = True) -> Unsubscribe:
        self._listeners.append(callback)
        if replay:
            self._deliver(callback, self._current)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, identity: Optional[str]) -> None:
        changed = identity != self._current
        self._current = identity
        if not changed:
            return
        for callback in list(self._listeners):
            self._deliver(callback, identity)

    def _deliver(self, callback: AuthStateCallback, identity: Optional[str]) -> None:
        try:
            callback(identity)
        except Exception as exc:
            logger.error(
                "auth_state_listener_failed",
                listener=getattr(callback, "__qualname__", repr(callback)),
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def __len__(self) -> int:
        return len(self._listeners)
