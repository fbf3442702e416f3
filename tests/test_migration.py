"""Tests for the lazy-migration login state machine.

Tests for:
- Provision-then-sign-in lifecycle
- Lockout precedence over valid secrets
- Provider failure classification and attempt accounting
- Per-identifier serialization of concurrent logins
- Session expiry and identity notifications
- Bulk roster migration
"""

import asyncio
from datetime import datetime, timezone

import pytest

from rostergate.logging import get_correlation_id
from rostergate.service.device import DeviceRiskAssessor, RiskLevel, StaticFingerprint
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
from rostergate.service.guard import AccessControlGuard, AccessWindow
from rostergate.service.identity import ProviderErrorKind
from rostergate.service.identity_backends import MemoryIdentityProvider
from rostergate.service.migration import LoginState, MigrationCoordinator
from rostergate.storage.errors import GuardStoreUnavailable

S = LoginState


def _build(roster, store, sessions, clock, provider, guard=None, **kwargs):
    return MigrationCoordinator(
        roster,
        guard or AccessControlGuard(store, clock=clock),
        provider,
        sessions,
        risk_assessor=DeviceRiskAssessor(store, clock=clock),
        migration_delay=0,
        clock=clock,
        **kwargs,
    )


class BrokenStore:
    """Guard store whose backend is down."""

    async def get_attempt(self, identifier):
        raise GuardStoreUnavailable("down")

    async def delete_attempt(self, identifier):
        raise GuardStoreUnavailable("down")

    async def increment_failure(self, identifier, **kwargs):
        raise GuardStoreUnavailable("down")

    async def get_device(self, identifier):
        raise GuardStoreUnavailable("down")

    async def update_device(self, identifier, mutate):
        raise GuardStoreUnavailable("down")

    async def close(self):
        return None


class TestLifecycle:
    """First login provisions, later logins sign in."""

    async def test_first_login_provisions_then_signs_in(self, coordinator, provider, store):
        first = await coordinator.login("S1001", "alpha-1001")

        assert first.ok
        assert first.provisioned is True
        assert first.transitions == [S.IDLE, S.VALIDATING, S.REMOTE_SIGN_IN, S.PROVISIONING, S.AUTHENTICATED]
        assert provider.calls["create_account"] == 1
        assert await coordinator.current_identity() == first.account_id

        await coordinator.logout()
        assert await coordinator.current_identity() is None

        second = await coordinator.login("S1001", "alpha-1001")

        assert second.ok
        assert second.provisioned is False
        assert second.transitions == [S.IDLE, S.VALIDATING, S.REMOTE_SIGN_IN, S.AUTHENTICATED]
        assert second.account_id == first.account_id
        assert provider.calls["create_account"] == 1

        sign_ins = provider.calls["sign_in"]
        third = await coordinator.login("S1001", "wrong")

        assert third.state == S.REJECTED
        assert isinstance(third.error, InvalidCredentialsError)
        assert store.attempts["S1001"].failure_count == 1
        assert provider.calls["sign_in"] == sign_ins

    async def test_repeated_logins_create_one_account(self, coordinator, provider):
        for _ in range(3):
            result = await coordinator.login("S1001", "alpha-1001")
            assert result.ok

        assert len(provider.accounts) == 1
        assert provider.calls["create_account"] == 1

    async def test_provisioned_profile_is_marked(self, coordinator, provider, clock):
        result = await coordinator.login("S1001", "alpha-1001")

        profile = provider.profiles[result.account_id]
        assert profile.identifier == "S1001"
        assert profile.login_key == "s1001@student.app"
        assert profile.provisioned_from_roster is True
        assert profile.created_at == clock.now

    async def test_sign_in_touches_last_login(self, coordinator, provider, clock):
        first = await coordinator.login("S1001", "alpha-1001")
        created = provider.profiles[first.account_id].created_at
        await coordinator.logout()
        clock.advance(hours=1)

        await coordinator.login("S1001", "alpha-1001")

        profile = provider.profiles[first.account_id]
        assert profile.last_login_at == clock.now
        assert profile.created_at == created

    async def test_path_identifiers_map_to_safe_login_key(self, coordinator, provider):
        result = await coordinator.login("CSC/2021/003", "charlie-003")

        assert result.ok
        assert "csc-2021-003@student.app" in provider.accounts

    async def test_success_clears_failures(self, coordinator, store):
        await coordinator.login("S1001", "wrong")
        await coordinator.login("S1001", "alpha-1001")

        assert "S1001" not in store.attempts

    async def test_correlation_id_scoped_to_login(self, coordinator):
        await coordinator.login("S1001", "alpha-1001")

        assert get_correlation_id() is None


class TestRejection:
    """Roster mismatches and lockout."""

    async def test_lockout_takes_precedence_over_valid_secret(self, coordinator, provider):
        for _ in range(3):
            result = await coordinator.login("S1002", "wrong")
            assert isinstance(result.error, InvalidCredentialsError)

        locked = await coordinator.login("S1002", "bravo-1002")

        assert locked.state == S.REJECTED
        assert isinstance(locked.error, LockedError)
        assert locked.error.retry_after_seconds == 15 * 60
        assert "15 minutes" in locked.error.message
        assert provider.calls["sign_in"] == 0

    async def test_login_allowed_after_lockout_elapses(self, coordinator, clock):
        for _ in range(3):
            await coordinator.login("S1002", "wrong")
        clock.advance(minutes=15)

        result = await coordinator.login("S1002", "bravo-1002")

        assert result.ok

    async def test_wrong_secret_never_reaches_provider(self, coordinator, provider):
        result = await coordinator.login("S1001", "wrong")

        assert S.REMOTE_SIGN_IN not in result.transitions
        assert S.PROVISIONING not in result.transitions
        assert provider.calls["sign_in"] == 0
        assert provider.calls["create_account"] == 0

    async def test_unknown_and_wrong_secret_look_the_same(self, coordinator):
        unknown = await coordinator.login("S9999", "alpha-1001")
        wrong = await coordinator.login("S1001", "wrong")

        assert unknown.error.message == wrong.error.message
        assert unknown.error.error_code == wrong.error.error_code

    async def test_blank_identifier_rejected_without_charge(self, coordinator, store):
        result = await coordinator.login("   ", "alpha-1001")

        assert isinstance(result.error, InvalidCredentialsError)
        assert store.attempts == {}

    async def test_remote_secret_divergence_is_rejected(self, roster, store, sessions, clock):
        provider = MemoryIdentityProvider()
        await provider.create_account("s1001@student.app", "rotated-secret")
        await provider.sign_out()
        coordinator = _build(roster, store, sessions, clock, provider)

        result = await coordinator.login("S1001", "alpha-1001")

        assert result.state == S.REJECTED
        assert isinstance(result.error, InvalidCredentialsError)
        assert S.PROVISIONING not in result.transitions
        assert store.attempts["S1001"].failure_count == 1
        assert provider.calls["create_account"] == 1

    async def test_divergence_under_enumeration_protection(self, roster, store, sessions, clock):
        provider = MemoryIdentityProvider(enumeration_protection=True)
        await provider.create_account("s1001@student.app", "rotated-secret")
        await provider.sign_out()
        coordinator = _build(roster, store, sessions, clock, provider)

        result = await coordinator.login("S1001", "alpha-1001")

        assert result.state == S.REJECTED
        assert isinstance(result.error, InvalidCredentialsError)
        assert store.attempts["S1001"].failure_count == 1
        assert len(provider.accounts) == 1

    async def test_access_window_closed(self, roster, store, sessions, clock, provider):
        clock.now = datetime(2024, 3, 9, 10, 0, tzinfo=timezone.utc)  # Saturday
        guard = AccessControlGuard(store, access_window=AccessWindow(), clock=clock)
        coordinator = _build(roster, store, sessions, clock, provider, guard=guard)

        result = await coordinator.login("S1001", "alpha-1001")

        assert isinstance(result.error, AccessWindowClosedError)
        assert store.attempts == {}

    async def test_raise_for_error(self, coordinator):
        result = await coordinator.login("S1001", "wrong")

        with pytest.raises(InvalidCredentialsError):
            result.raise_for_error()


class TestProviderFailures:
    """Infrastructure failures resolve to Failed and never charge an attempt."""

    async def test_provisioning_failure_is_retryable(self, coordinator, provider, store):
        provider.inject_fault("create_account", ProviderErrorKind.RATE_LIMITED, "QUOTA_EXCEEDED")

        failed = await coordinator.login("S1001", "alpha-1001")

        assert failed.state == S.FAILED
        assert isinstance(failed.error, ProviderUnavailableError)
        assert failed.retryable is True
        assert store.attempts == {}

        retried = await coordinator.login("S1001", "alpha-1001")
        assert retried.ok
        assert retried.provisioned is True

    async def test_sign_in_outage_is_not_charged(self, coordinator, provider, store):
        provider.inject_fault("sign_in", ProviderErrorKind.OTHER, "NETWORK_ERROR")

        result = await coordinator.login("S1001", "alpha-1001")

        assert result.state == S.FAILED
        assert isinstance(result.error, ProviderUnavailableError)
        assert store.attempts == {}

    async def test_misconfiguration_is_distinct_and_hides_code(self, coordinator, provider):
        provider.inject_fault("sign_in", ProviderErrorKind.CONFIGURATION, "CONFIGURATION_NOT_FOUND")

        result = await coordinator.login("S1001", "alpha-1001")

        assert result.state == S.FAILED
        assert isinstance(result.error, ProviderMisconfiguredError)
        assert result.retryable is False
        assert "CONFIGURATION_NOT_FOUND" not in result.error.message
        assert "CONFIGURATION_NOT_FOUND" not in str(result.error.detail)

    async def test_timeout_resolves_to_failed(self, roster, store, sessions, clock):
        provider = MemoryIdentityProvider(latency=0.2)
        coordinator = _build(roster, store, sessions, clock, provider, provider_timeout=0.05)

        result = await coordinator.login("S1001", "alpha-1001")

        assert result.state == S.FAILED
        assert isinstance(result.error, ProviderUnavailableError)
        assert store.attempts == {}
        assert sessions.current is None

    async def test_profile_write_failure_does_not_block_login(self, coordinator, provider):
        provider.inject_fault("put_profile")

        first = await coordinator.login("S1001", "alpha-1001")

        assert first.ok
        assert provider.profiles == {}

        await coordinator.logout()
        await coordinator.login("S1001", "alpha-1001")

        assert provider.profiles[first.account_id].provisioned_from_roster is True

    async def test_guard_store_outage_fails_closed(self, roster, sessions, clock, provider):
        coordinator = _build(roster, BrokenStore(), sessions, clock, provider)

        result = await coordinator.login("S1001", "alpha-1001", device=StaticFingerprint("a"))

        assert result.state == S.FAILED
        assert isinstance(result.error, ProviderUnavailableError)
        assert result.risk is None
        assert provider.calls["sign_in"] == 0


class TestConcurrency:
    async def test_double_submit_provisions_once(self, roster, store, sessions, clock):
        provider = MemoryIdentityProvider(latency=0.01)
        coordinator = _build(roster, store, sessions, clock, provider)

        first, second = await asyncio.gather(
            coordinator.login("S1001", "alpha-1001"),
            coordinator.login("S1001", "alpha-1001"),
        )

        assert first.ok and second.ok
        assert provider.calls["create_account"] == 1
        assert sorted([first.provisioned, second.provisioned]) == [False, True]
        assert first.account_id == second.account_id

    async def test_different_identifiers_proceed_independently(self, roster, store, sessions, clock):
        provider = MemoryIdentityProvider(latency=0.01)
        coordinator = _build(roster, store, sessions, clock, provider)

        results = await asyncio.gather(
            coordinator.login("S1001", "alpha-1001"),
            coordinator.login("S1002", "bravo-1002"),
        )

        assert all(result.ok for result in results)
        assert len(provider.accounts) == 2


class TestSessionAndIdentity:
    """Session expiry, logout and identity notifications."""

    async def test_expired_session_forces_reauthentication(self, coordinator, clock):
        result = await coordinator.login("S1001", "alpha-1001")
        clock.advance(hours=1, minutes=59)
        assert coordinator.session_valid() is True
        assert await coordinator.require_identity() == result.account_id

        clock.advance(minutes=1)

        assert coordinator.session_valid() is False
        with pytest.raises(SessionExpiredError):
            await coordinator.require_identity()
        assert await coordinator.current_identity() is None

    async def test_not_logged_in(self, coordinator):
        with pytest.raises(AuthenticationError) as exc_info:
            await coordinator.require_identity()

        assert not isinstance(exc_info.value, SessionExpiredError)

    async def test_identity_change_notifications(self, coordinator, clock):
        seen = []
        coordinator.on_identity_change(seen.append)

        result = await coordinator.login("S1001", "alpha-1001")
        await coordinator.logout()

        assert seen == [None, result.account_id, None]

    async def test_expiry_notifies_subscribers(self, coordinator, clock):
        seen = []
        coordinator.on_identity_change(seen.append)
        await coordinator.login("S1001", "alpha-1001")
        clock.advance(hours=2)

        await coordinator.current_identity()

        assert seen[-1] is None

    async def test_provider_side_sign_out_ends_session(self, coordinator, provider, sessions):
        seen = []
        coordinator.on_identity_change(seen.append)
        await coordinator.login("S1001", "alpha-1001")

        provider.revoke_current()

        assert sessions.current is None
        assert seen[-1] is None

    async def test_unsubscribe_stops_notifications(self, coordinator):
        seen = []
        unsubscribe = coordinator.on_identity_change(seen.append)
        unsubscribe()

        await coordinator.login("S1001", "alpha-1001")

        assert seen == [None]


class TestDeviceRisk:
    async def test_risk_reported_with_login(self, coordinator):
        first = await coordinator.login("S1001", "alpha-1001", device=StaticFingerprint("device-a"))
        await coordinator.logout()
        second = await coordinator.login("S1001", "alpha-1001", device=StaticFingerprint("device-b"))

        assert first.risk.risk_level == RiskLevel.LOW
        assert second.risk.risk_level == RiskLevel.MEDIUM
        assert second.ok

    async def test_no_device_means_no_assessment(self, coordinator):
        result = await coordinator.login("S1001", "alpha-1001")

        assert result.risk is None

    async def test_failed_attempts_update_device_record(self, coordinator, store):
        await coordinator.login("S1001", "wrong", device=StaticFingerprint("device-a"))

        assert store.devices["S1001"].fingerprint == "device-a"


class TestProfileActions:
    """Privileged profile reads and writes."""

    async def test_profile_requires_login(self, coordinator):
        with pytest.raises(AuthenticationError):
            await coordinator.get_profile()

    async def test_update_display_label(self, coordinator, provider):
        result = await coordinator.login("S1001", "alpha-1001")

        updated = await coordinator.update_profile(display_label="Ada Obi")

        assert updated.display_label == "Ada Obi"
        assert provider.profiles[result.account_id].display_label == "Ada Obi"
        assert provider.profiles[result.account_id].identifier == "S1001"

    async def test_blank_display_label_rejected(self, coordinator):
        await coordinator.login("S1001", "alpha-1001")

        with pytest.raises(ServiceError):
            await coordinator.update_profile(display_label="  ")

    async def test_current_account(self, coordinator):
        result = await coordinator.login("S1001", "alpha-1001")

        account = await coordinator.current_account()

        assert account.account_id == result.account_id
        assert account.identifier == "S1001"
        assert account.provisioned_from_roster is True

    async def test_profile_outage_surfaces_classified_error(self, coordinator, provider):
        await coordinator.login("S1001", "alpha-1001")
        provider.inject_fault("get_profile", ProviderErrorKind.RATE_LIMITED, "QUOTA_EXCEEDED")

        with pytest.raises(ProviderUnavailableError):
            await coordinator.get_profile()


class TestBulkMigration:
    """Operator-driven roster migration."""

    async def test_migrates_remaining_identities(self, coordinator, provider):
        await coordinator.login("S1001", "alpha-1001")
        await coordinator.logout()

        report = await coordinator.migrate_roster()

        assert report.already_migrated == ["S1001"]
        assert report.migrated == ["S1002", "CSC/2021/003"]
        assert report.failed == []
        assert len(provider.accounts) == 3
        assert len(provider.profiles) == 3
        assert provider.current_account_id is None

    async def test_login_after_migration_signs_in(self, coordinator, provider):
        await coordinator.migrate_roster()

        result = await coordinator.login("S1002", "bravo-1002")

        assert result.ok
        assert result.provisioned is False
        assert provider.calls["create_account"] == 3

    async def test_dry_run_creates_nothing(self, coordinator, provider):
        report = await coordinator.migrate_roster(dry_run=True)

        assert report.pending == ["S1001", "S1002", "CSC/2021/003"]
        assert provider.accounts == {}

    async def test_failures_are_reported_and_skipped(self, coordinator, provider):
        provider.inject_fault("sign_in", ProviderErrorKind.RATE_LIMITED, "TOO_MANY_ATTEMPTS_TRY_LATER")

        report = await coordinator.migrate_roster()

        assert report.failed == [("S1001", "rate_limited")]
        assert report.migrated == ["S1002", "CSC/2021/003"]
        assert report.summary() == {"migrated": 2, "already_migrated": 0, "pending": 0, "failed": 1}

    async def test_refuses_while_session_active(self, coordinator):
        await coordinator.login("S1001", "alpha-1001")

        with pytest.raises(ConflictError):
            await coordinator.migrate_roster()

    async def test_login_during_migration_keeps_its_session(self, roster, store, sessions, clock):
        provider = MemoryIdentityProvider(latency=0.01)
        coordinator = _build(roster, store, sessions, clock, provider)

        report, result = await asyncio.gather(
            coordinator.migrate_roster(delay_seconds=0),
            coordinator.login("S1001", "alpha-1001"),
        )

        assert report.migrated == ["S1001", "S1002", "CSC/2021/003"]
        assert result.ok
        assert result.provisioned is False
        assert await coordinator.current_identity() == result.account_id
        assert provider.current_account_id == result.account_id

    async def test_migration_waits_for_login_in_flight(self, roster, store, sessions, clock):
        provider = MemoryIdentityProvider(latency=0.01)
        coordinator = _build(roster, store, sessions, clock, provider)

        login = asyncio.ensure_future(coordinator.login("S1001", "alpha-1001"))
        await asyncio.sleep(0)

        with pytest.raises(ConflictError):
            await coordinator.migrate_roster(delay_seconds=0)

        assert (await login).ok
        assert await coordinator.current_identity() == (await login).account_id

    async def test_second_run_is_refused(self, roster, store, sessions, clock):
        provider = MemoryIdentityProvider(latency=0.01)
        coordinator = _build(roster, store, sessions, clock, provider)

        first, second = await asyncio.gather(
            coordinator.migrate_roster(delay_seconds=0),
            coordinator.migrate_roster(delay_seconds=0),
            return_exceptions=True,
        )

        assert first.summary()["migrated"] == 3
        assert isinstance(second, ConflictError)
