"""Unit tests for device fingerprinting and risk assessment."""

from rostergate.service.device import (
    FINGERPRINT_LENGTH,
    EnvironmentSignals,
    RiskLevel,
    StaticFingerprint,
    generate_fingerprint,
)


class TestFingerprint:
    """Tests for fingerprint generation."""

    def test_fixed_length(self):
        token = EnvironmentSignals(user_agent="Mozilla/5.0", language="en-NG").fingerprint()

        assert len(token) == FINGERPRINT_LENGTH

    def test_stable_for_same_signals(self):
        signals = EnvironmentSignals(user_agent="Mozilla/5.0", screen="1920x1080", timezone="Africa/Lagos")

        assert signals.fingerprint() == EnvironmentSignals(
            user_agent="Mozilla/5.0", screen="1920x1080", timezone="Africa/Lagos"
        ).fingerprint()

    def test_differs_when_any_signal_changes(self):
        base = EnvironmentSignals(user_agent="Mozilla/5.0", screen="1920x1080")
        other = EnvironmentSignals(user_agent="Mozilla/5.0", screen="1280x720")

        assert base.fingerprint() != other.fingerprint()

    def test_key_order_does_not_matter(self):
        assert generate_fingerprint({"a": "1", "b": "2"}) == generate_fingerprint({"b": "2", "a": "1"})

    def test_static_fingerprint_passthrough(self):
        assert StaticFingerprint("device-a").fingerprint() == "device-a"


class TestRiskAssessment:
    """Tests for login-pattern classification."""

    async def test_first_login_is_low_risk(self, assessor, store):
        assessment = await assessor.assess("S1001", "device-a")

        assert assessment.suspicious is False
        assert assessment.risk_level == RiskLevel.LOW
        assert store.devices["S1001"].login_count == 1

    async def test_same_device_is_low_risk(self, assessor, clock):
        await assessor.assess("S1001", "device-a")
        clock.advance(hours=1)

        assessment = await assessor.assess("S1001", "device-a")

        assert assessment.risk_level == RiskLevel.LOW

    async def test_new_device_is_medium_risk(self, assessor, store):
        await assessor.assess("S1001", "device-a")

        assessment = await assessor.assess("S1001", "device-b")

        assert assessment.suspicious is True
        assert assessment.risk_level == RiskLevel.MEDIUM
        assert assessment.reason == "Login from new device detected"
        record = store.devices["S1001"]
        assert record.fingerprint == "device-b"
        assert record.previous_fingerprint == "device-a"

    async def test_only_latest_device_is_trusted(self, assessor):
        await assessor.assess("S1001", "device-a")
        await assessor.assess("S1001", "device-b")

        assessment = await assessor.assess("S1001", "device-a")

        assert assessment.risk_level == RiskLevel.MEDIUM

    async def test_rapid_high_volume_is_high_risk(self, assessor, store, clock):
        # Eleven prior logins from the same device, each a minute apart
        for _ in range(11):
            await assessor.assess("S1001", "device-a")
            clock.advance(minutes=1)

        assessment = await assessor.assess("S1001", "device-a")

        assert assessment.suspicious is True
        assert assessment.risk_level == RiskLevel.HIGH
        assert assessment.reason == "Unusually frequent login activity"
        assert store.devices["S1001"].login_count == 12

    async def test_high_volume_but_spaced_out_is_low_risk(self, assessor, clock):
        for _ in range(11):
            await assessor.assess("S1001", "device-a")
            clock.advance(minutes=30)

        assessment = await assessor.assess("S1001", "device-a")

        assert assessment.risk_level == RiskLevel.LOW

    async def test_volume_threshold_is_strict(self, assessor, clock):
        # Exactly ten prior logins does not cross the threshold
        for _ in range(10):
            await assessor.assess("S1001", "device-a")
            clock.advance(minutes=1)

        assessment = await assessor.assess("S1001", "device-a")

        assert assessment.risk_level == RiskLevel.LOW
