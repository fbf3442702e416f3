"""Lazy migration of roster identities into the remote identity provider.

A login is validated against the static roster, then resolved remotely:
sign in if the account exists, otherwise create it once from the validated
roster secret. Every attempt is gated by the access-control guard and
serialized per identifier, so a double-submit cannot provision twice.

State flow::

    IDLE -> VALIDATING -> REMOTE_SIGN_IN -> AUTHENTICATED
                |               |
                |               +-> PROVISIONING -> AUTHENTICATED | FAILED | REJECTED
                |               +-> REJECTED | FAILED
                +-> REJECTED
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Tuple, TypeVar

from rostergate.logging import correlation_scope, get_logger
from rostergate.service.device import DeviceRiskAssessor, FingerprintSource, RiskAssessment
from rostergate.service.errors import (
    AccessWindowClosedError,
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    LockedError,
    ProviderMisconfiguredError,
    ProviderUnavailableError,
    ServiceError,
    SessionExpiredError,
)
from rostergate.service.guard import AccessControlGuard, format_lockout_remaining
from rostergate.service.identity import (
    AuthStateCallback,
    AuthStatePublisher,
    IdentityProvider,
    ProviderAccount,
    ProviderError,
    ProviderErrorKind,
    Unsubscribe,
    derive_login_key,
)
from rostergate.service.locks import KeyedLock
from rostergate.service.roster import CredentialRoster
from rostergate.service.session import SessionManager
from rostergate.storage.errors import GuardStoreUnavailable
from rostergate.storage.models import EnrollmentRecord, ProfileDocument, RemoteAccount, utcnow

logger = get_logger(__name__)

T = TypeVar("T")

# Provider failures that mean "this secret does not open the remote account"
_CREDENTIAL_KINDS = frozenset(
    {ProviderErrorKind.NOT_FOUND, ProviderErrorKind.WRONG_SECRET, ProviderErrorKind.ACCOUNT_EXISTS}
)


class LoginState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    REMOTE_SIGN_IN = "remote_sign_in"
    PROVISIONING = "provisioning"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class LoginResult:
    identifier: str
    state: LoginState = LoginState.IDLE
    account_id: Optional[str] = None
    error: Optional[ServiceError] = None
    risk: Optional[RiskAssessment] = None
    provisioned: bool = False
    transitions: List[LoginState] = field(default_factory=lambda: [LoginState.IDLE])

    @property
    def ok(self) -> bool:
        return self.state == LoginState.AUTHENTICATED

    @property
    def retryable(self) -> bool:
        return bool(self.error and self.error.retryable)

    def advance(self, state: LoginState) -> None:
        self.state = state
        self.transitions.append(state)

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


@dataclass
class MigrationReport:
    migrated: List[str] = field(default_factory=list)
    already_migrated: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)

    def summary(self) -> dict:
        return {
            "migrated": len(self.migrated),
            "already_migrated": len(self.already_migrated),
            "pending": len(self.pending),
            "failed": len(self.failed),
        }


class MigrationCoordinator:
    """Login state machine and consumer-facing identity surface."""

    def __init__(
        self,
        roster: CredentialRoster,
        guard: AccessControlGuard,
        provider: IdentityProvider,
        sessions: SessionManager,
        *,
        risk_assessor: Optional[DeviceRiskAssessor] = None,
        login_key_domain: str = "student.app",
        provider_timeout: Optional[float] = 15.0,
        migration_delay: float = 0.5,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.roster = roster
        self.guard = guard
        self.provider = provider
        self.sessions = sessions
        self.risk_assessor = risk_assessor
        self.login_key_domain = login_key_domain
        self.provider_timeout = provider_timeout or None
        self.migration_delay = migration_delay
        self._clock = clock or utcnow
        self._locks = KeyedLock()
        # Bulk migration signs in and out of the shared provider client, so it
        # never overlaps a login in flight
        self._gate = asyncio.Condition()
        self._logins_in_flight = 0
        self._migrating = False
        self._publisher = AuthStatePublisher()
        self._provider_unsubscribe: Optional[Unsubscribe] = provider.subscribe_auth_state(
            self._on_provider_state
        )

    # ------------------------------------------------------------------
    # Consumer boundary
    # ------------------------------------------------------------------

    async def login(
        self,
        identifier: str,
        secret: str,
        *,
        device: Optional[FingerprintSource] = None,
    ) -> LoginResult:
        identifier = (identifier or "").strip()
        result = LoginResult(identifier=identifier)
        with correlation_scope():
            if not identifier:
                result.advance(LoginState.VALIDATING)
                self._reject(result, InvalidCredentialsError())
            else:
                async with self._login_slot(), self._locks.hold(identifier):
                    try:
                        await self._run_login(result, secret or "", device)
                    except GuardStoreUnavailable as exc:
                        logger.error("guard_store_unavailable", identifier=identifier, error=exc.message)
                        self._fail(
                            result,
                            ProviderUnavailableError("Sign-in is temporarily unavailable; please retry"),
                        )
            logger.info(
                "login_finished",
                identifier=identifier,
                state=result.state.value,
                transitions=[state.value for state in result.transitions],
                error_code=result.error.error_code if result.error else None,
                provisioned=result.provisioned,
            )
        return result

    async def logout(self) -> None:
        session = self.sessions.current
        self.sessions.end()
        try:
            await self._remote(self.provider.sign_out())
        except (ProviderError, asyncio.TimeoutError) as exc:
            logger.warning("provider_sign_out_failed", error_type=type(exc).__name__)
        self._publisher.publish(None)
        if session is not None:
            logger.info("logout", identifier=session.identifier)

    async def current_identity(self) -> Optional[str]:
        session = self.sessions.current
        if session is None:
            return None
        if not self.sessions.is_valid():
            logger.info("session_expired", identifier=session.identifier)
            await self.logout()
            return None
        return session.account_id

    async def require_identity(self) -> str:
        """Account id for a privileged action, or raise if re-authentication is needed."""
        had_session = self.sessions.current is not None
        account_id = await self.current_identity()
        if account_id is None:
            if had_session:
                raise SessionExpiredError()
            raise AuthenticationError("Not logged in")
        return account_id

    def on_identity_change(self, callback: AuthStateCallback) -> Unsubscribe:
        return self._publisher.subscribe(callback)

    def session_valid(self) -> bool:
        return self.sessions.is_valid()

    async def get_profile(self) -> Optional[ProfileDocument]:
        account_id = await self.require_identity()
        return await self._surface_call(self.provider.get_profile(account_id))

    async def current_account(self) -> Optional[RemoteAccount]:
        account_id = await self.require_identity()
        profile = await self._surface_call(self.provider.get_profile(account_id))
        return profile.as_remote_account(account_id) if profile else None

    async def update_profile(self, *, display_label: str) -> ProfileDocument:
        label = (display_label or "").strip()
        if not label:
            raise ServiceError("Display label must not be empty")
        account_id = await self.require_identity()
        profile = await self._surface_call(self.provider.get_profile(account_id))
        if profile is None:
            raise ServiceError("Profile not found", status_code=404, error_code="not_found")
        profile.display_label = label
        await self._surface_call(
            self.provider.put_profile(account_id, profile, merge_fields=["displayLabel"])
        )
        return profile

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def migrate_roster(
        self, *, delay_seconds: Optional[float] = None, dry_run: bool = False
    ) -> MigrationReport:
        """Provision every roster identity that has no remote account yet.

        Waits for logins already in flight, then holds new logins back until
        the run finishes.
        """
        delay = self.migration_delay if delay_seconds is None else delay_seconds
        async with self._migration_slot():
            with correlation_scope():
                report = MigrationReport()
                for record in self.roster:
                    status, reason = await self._migrate_one(record, dry_run=dry_run)
                    if status == "migrated":
                        report.migrated.append(record.identifier)
                    elif status == "already_migrated":
                        report.already_migrated.append(record.identifier)
                    elif status == "pending":
                        report.pending.append(record.identifier)
                    else:
                        report.failed.append((record.identifier, reason or "unknown"))
                    logger.info(
                        "roster_migration_step", identifier=record.identifier, status=status, reason=reason
                    )
                    if status == "migrated" and delay:
                        await asyncio.sleep(delay)
                logger.info("roster_migration_complete", dry_run=dry_run, **report.summary())
        return report

    async def close(self) -> None:
        if self._provider_unsubscribe is not None:
            self._provider_unsubscribe()
            self._provider_unsubscribe = None

    @contextlib.asynccontextmanager
    async def _login_slot(self) -> AsyncIterator[None]:
        async with self._gate:
            await self._gate.wait_for(lambda: not self._migrating)
            self._logins_in_flight += 1
        try:
            yield
        finally:
            async with self._gate:
                self._logins_in_flight -= 1
                self._gate.notify_all()

    @contextlib.asynccontextmanager
    async def _migration_slot(self) -> AsyncIterator[None]:
        async with self._gate:
            if self._migrating:
                raise ConflictError("Bulk migration is already running")
            self._migrating = True
        try:
            async with self._gate:
                await self._gate.wait_for(lambda: self._logins_in_flight == 0)
            if self.sessions.current is not None:
                raise ConflictError("Bulk migration cannot run while a user session is active")
            yield
        finally:
            async with self._gate:
                self._migrating = False
                self._gate.notify_all()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _run_login(
        self, result: LoginResult, secret: str, device: Optional[FingerprintSource]
    ) -> None:
        identifier = result.identifier
        result.advance(LoginState.VALIDATING)

        if not self.guard.is_access_time_allowed():
            self._reject(
                result, AccessWindowClosedError("Login is only available during access hours")
            )
            return

        result.risk = await self._assess_device(identifier, device)

        decision = await self.guard.check_allowed(identifier)
        if not decision.allowed:
            now = self.guard.now()
            wait = (
                format_lockout_remaining(decision.locked_until, now)
                if decision.locked_until
                else format_lockout_remaining(now + self.guard.lockout, now)
            )
            self._reject(
                result,
                LockedError(
                    f"Too many failed attempts. Try again in {wait}.",
                    locked_until=decision.locked_until,
                    retry_after_seconds=decision.retry_after_seconds(now),
                ),
            )
            return

        record = self.roster.lookup(identifier, secret)
        if record is None:
            await self.guard.record_failure(identifier)
            self._reject(result, InvalidCredentialsError())
            return

        login_key = derive_login_key(identifier, self.login_key_domain)
        result.advance(LoginState.REMOTE_SIGN_IN)
        try:
            account = await self._remote(self.provider.sign_in(login_key, record.secret))
        except asyncio.TimeoutError:
            self._fail(result, self._timeout_error("sign_in"))
            return
        except ProviderError as exc:
            if exc.kind != ProviderErrorKind.NOT_FOUND:
                await self._handle_provider_error(result, exc, phase="sign_in")
                return
            logger.info("remote_account_absent", identifier=identifier, code=exc.code)
            account = await self._provision(result, record, login_key)
            if account is None:
                return
        else:
            await self._touch_profile(account, record)

        await self._authenticate(result, account)

    async def _provision(
        self, result: LoginResult, record: EnrollmentRecord, login_key: str
    ) -> Optional[ProviderAccount]:
        result.advance(LoginState.PROVISIONING)
        try:
            account = await self._remote(self.provider.create_account(login_key, record.secret))
        except asyncio.TimeoutError:
            self._fail(result, self._timeout_error("provision"))
            return None
        except ProviderError as exc:
            await self._handle_provider_error(result, exc, phase="provision")
            return None
        result.provisioned = True
        logger.info("remote_account_provisioned", identifier=record.identifier)
        await self._write_profile(account, record)
        return account

    async def _authenticate(self, result: LoginResult, account: ProviderAccount) -> None:
        await self.guard.record_success(result.identifier)
        self.sessions.start(result.identifier, account.account_id)
        result.account_id = account.account_id
        result.advance(LoginState.AUTHENTICATED)
        self._publisher.publish(account.account_id)
        logger.info(
            "login_authenticated",
            identifier=result.identifier,
            branch="provision" if result.provisioned else "sign_in",
        )

    async def _handle_provider_error(
        self, result: LoginResult, exc: ProviderError, *, phase: str
    ) -> None:
        if exc.kind in _CREDENTIAL_KINDS:
            # Roster accepted the secret but the remote account rejects it
            logger.warning(
                "roster_remote_divergence",
                identifier=result.identifier,
                phase=phase,
                code=exc.code,
            )
            await self.guard.record_failure(result.identifier)
            self._reject(result, InvalidCredentialsError())
            return
        self._fail(result, self._provider_failure(exc, phase=phase))

    def _provider_failure(self, exc: ProviderError, *, phase: str) -> ServiceError:
        if exc.kind == ProviderErrorKind.CONFIGURATION:
            logger.error("identity_provider_misconfigured", phase=phase, code=exc.code)
            return ProviderMisconfiguredError(
                "Sign-in is unavailable because the identity provider is misconfigured"
            )
        logger.warning(
            "identity_provider_unavailable", phase=phase, code=exc.code, kind=exc.kind.value
        )
        return ProviderUnavailableError("Sign-in service is temporarily unavailable; please retry")

    def _timeout_error(self, phase: str) -> ProviderUnavailableError:
        logger.warning("identity_provider_timeout", phase=phase, timeout_s=self.provider_timeout)
        return ProviderUnavailableError("Sign-in service timed out; please retry")

    def _reject(self, result: LoginResult, error: ServiceError) -> None:
        result.error = error
        result.advance(LoginState.REJECTED)

    def _fail(self, result: LoginResult, error: ServiceError) -> None:
        result.error = error
        result.advance(LoginState.FAILED)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _remote(self, call: Awaitable[T]) -> T:
        if self.provider_timeout:
            return await asyncio.wait_for(call, self.provider_timeout)
        return await call

    async def _surface_call(self, call: Awaitable[T]) -> T:
        """Run a provider call for a consumer action, translating its failures."""
        try:
            return await self._remote(call)
        except asyncio.TimeoutError as exc:
            raise self._timeout_error("profile") from exc
        except ProviderError as exc:
            raise self._provider_failure(exc, phase="profile") from exc

    async def _assess_device(
        self, identifier: str, device: Optional[FingerprintSource]
    ) -> Optional[RiskAssessment]:
        if device is None or self.risk_assessor is None:
            return None
        try:
            return await self.risk_assessor.assess(identifier, device.fingerprint())
        except GuardStoreUnavailable as exc:
            # Advisory only; a missing assessment never blocks the login
            logger.warning("device_assessment_unavailable", identifier=identifier, error=exc.message)
            return None

    def _new_profile(self, account: ProviderAccount, record: EnrollmentRecord) -> ProfileDocument:
        now = self._clock()
        return ProfileDocument(
            identifier=record.identifier,
            login_key=account.login_key,
            display_label=record.identifier,
            created_at=now,
            last_login_at=now,
            is_active=True,
            provisioned_from_roster=True,
        )

    async def _write_profile(self, account: ProviderAccount, record: EnrollmentRecord) -> None:
        try:
            await self._remote(self.provider.put_profile(account.account_id, self._new_profile(account, record)))
        except (ProviderError, asyncio.TimeoutError) as exc:
            # The account exists; the next sign-in rewrites the missing profile
            logger.warning(
                "profile_write_failed",
                identifier=record.identifier,
                error_type=type(exc).__name__,
                code=getattr(exc, "code", None),
            )

    async def _touch_profile(self, account: ProviderAccount, record: EnrollmentRecord) -> None:
        try:
            profile = await self._remote(self.provider.get_profile(account.account_id))
            if profile is None:
                logger.info("profile_missing_rewritten", identifier=record.identifier)
                await self._write_profile(account, record)
                return
            profile.last_login_at = self._clock()
            await self._remote(
                self.provider.put_profile(account.account_id, profile, merge_fields=["lastLoginAt"])
            )
        except (ProviderError, asyncio.TimeoutError) as exc:
            logger.warning(
                "profile_touch_failed",
                identifier=record.identifier,
                error_type=type(exc).__name__,
                code=getattr(exc, "code", None),
            )

    async def _migrate_one(self, record: EnrollmentRecord, *, dry_run: bool) -> Tuple[str, Optional[str]]:
        login_key = derive_login_key(record.identifier, self.login_key_domain)
        try:
            try:
                await self._remote(self.provider.sign_in(login_key, record.secret))
                return "already_migrated", None
            except asyncio.TimeoutError:
                return "failed", "timeout"
            except ProviderError as exc:
                if exc.kind != ProviderErrorKind.NOT_FOUND:
                    return "failed", exc.kind.value
            if dry_run:
                return "pending", None
            try:
                account = await self._remote(self.provider.create_account(login_key, record.secret))
            except asyncio.TimeoutError:
                return "failed", "timeout"
            except ProviderError as exc:
                return "failed", exc.kind.value
            await self._write_profile(account, record)
            return "migrated", None
        finally:
            await self.provider.sign_out()

    def _on_provider_state(self, account_id: Optional[str]) -> None:
        session = self.sessions.current
        if account_id is None and session is not None:
            # Provider ended the session on its side (revoked token, remote sign-out)
            logger.info("provider_session_ended", identifier=session.identifier)
            self.sessions.end()
            self._publisher.publish(None)
