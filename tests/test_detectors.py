"""Tests for the threat detectors, the registry and history-backed detection."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from sessionguard.service.detectors import (
    BLOCK_IP,
    MONITOR,
    PROGRESSIVE_DELAY,
    REQUIRE_CAPTCHA,
    REQUIRE_MFA,
    AccountEnumerationDetector,
    AutomatedTimingDetector,
    BruteForceDetector,
    CredentialStuffingDetector,
    DetectorRegistry,
    DeviceAnomalyDetector,
    GeolocationAnomalyDetector,
    SuspiciousAgentDetector,
    UnusualTimeDetector,
    ThreatSignal,
    Verdict,
    aggregate,
)
from sessionguard.service.geo import StaticGeoResolver
from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.models import (
    GeoLocation,
    LoginAttempt,
    RiskLevel,
    SecurityEventType,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
IP = "198.51.100.23"
UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/126.0 Safari/537.36"
NEW_YORK = GeoLocation(40.7128, -74.0060, "US", "New York")
LONDON = GeoLocation(51.5074, -0.1278, "GB", "London")


def attempts(count, *, spacing=1.0, identifiers=1, success_every=0, user_agent=UA, endpoint="login"):
    """Build ``count`` attempts ending at NOW, ``spacing`` seconds apart."""
    result = []
    for i in range(count):
        result.append(
            LoginAttempt(
                ip=IP,
                identifier=f"user{i % identifiers}@example.com",
                success=bool(success_every) and i % success_every == 0,
                timestamp=NOW - timedelta(seconds=spacing * (count - 1 - i)),
                user_agent=user_agent,
                endpoint=endpoint,
            )
        )
    return tuple(result)


def signal(history=(), **kwargs):
    kwargs.setdefault("user_agent", UA)
    return ThreatSignal(now=NOW, ip=IP, ip_attempts=history, **kwargs)


class TestBruteForce:
    def test_threshold_breach_is_high(self):
        verdict = BruteForceDetector().evaluate(signal(attempts(25, spacing=2)))

        assert verdict.detected
        assert verdict.severity is RiskLevel.HIGH
        assert verdict.recommendation == BLOCK_IP
        assert verdict.details["attempts"] == 25

    def test_three_times_threshold_is_critical(self):
        verdict = BruteForceDetector().evaluate(signal(attempts(60, spacing=0.5)))
        assert verdict.severity is RiskLevel.CRITICAL

    def test_below_threshold(self):
        verdict = BruteForceDetector().evaluate(signal(attempts(19, spacing=2)))
        assert not verdict.detected

    def test_old_attempts_fall_out_of_window(self):
        verdict = BruteForceDetector().evaluate(signal(attempts(25, spacing=5)))
        # only the last 13 are inside 60 seconds
        assert not verdict.detected

    def test_counts_only_matching_endpoint(self):
        history = attempts(25, spacing=1, endpoint="mfa")
        assert not BruteForceDetector().evaluate(signal(history)).detected
        assert BruteForceDetector().evaluate(signal(history, endpoint="mfa")).detected


class TestCredentialStuffing:
    def test_many_identifiers_low_success(self):
        verdict = CredentialStuffingDetector().evaluate(
            signal(attempts(15, spacing=10, identifiers=5))
        )

        assert verdict.detected
        assert verdict.severity is RiskLevel.HIGH
        assert verdict.recommendation == BLOCK_IP
        assert set(verdict.indicators) == {
            "HIGH_EMAIL_DIVERSITY",
            "LOW_SUCCESS_RATE",
            "SINGLE_USER_AGENT",
        }

    def test_high_success_rate_is_not_stuffing(self):
        verdict = CredentialStuffingDetector().evaluate(
            signal(attempts(20, spacing=10, identifiers=5, success_every=2))
        )
        assert not verdict.detected

    def test_single_identifier_is_not_stuffing(self):
        verdict = CredentialStuffingDetector().evaluate(signal(attempts(20, spacing=10)))
        assert not verdict.detected


class TestGeolocation:
    def previous(self, hours_ago):
        return LoginAttempt(
            ip="203.0.113.10",
            identifier="alice@example.com",
            success=True,
            timestamp=NOW - timedelta(hours=hours_ago),
            subject_id="user-1",
            location=NEW_YORK,
        )

    def test_impossible_travel(self):
        verdict = GeolocationAnomalyDetector().evaluate(
            signal(location=LONDON, last_success=self.previous(1))
        )

        assert verdict.detected
        assert verdict.severity is RiskLevel.HIGH
        assert verdict.recommendation == REQUIRE_MFA
        assert "IMPOSSIBLE_TRAVEL" in verdict.indicators
        assert verdict.distance_km == pytest.approx(5570, rel=0.01)
        assert verdict.speed_kmh > 1000

    def test_high_velocity(self):
        verdict = GeolocationAnomalyDetector().evaluate(
            signal(location=LONDON, last_success=self.previous(10))
        )
        assert verdict.detected
        assert verdict.severity is RiskLevel.MEDIUM
        assert verdict.recommendation == MONITOR

    def test_plausible_travel(self):
        verdict = GeolocationAnomalyDetector().evaluate(
            signal(location=LONDON, last_success=self.previous(12))
        )
        assert not verdict.detected
        assert verdict.speed_kmh < 500

    def test_missing_location_is_clean(self):
        verdict = GeolocationAnomalyDetector().evaluate(signal(last_success=self.previous(1)))
        assert not verdict.detected


class TestSuspiciousAgent:
    def test_curl_is_high(self):
        verdict = SuspiciousAgentDetector().evaluate(signal(user_agent="curl/8.0"))
        assert verdict.severity is RiskLevel.HIGH
        assert verdict.recommendation == REQUIRE_CAPTCHA

    def test_missing_agent_is_low(self):
        verdict = SuspiciousAgentDetector().evaluate(signal(user_agent=None))
        assert verdict.severity is RiskLevel.LOW
        assert verdict.recommendation == MONITOR

    def test_browser_is_clean(self):
        assert not SuspiciousAgentDetector().evaluate(signal()).detected


class TestAutomatedTiming:
    def test_regular_intervals(self):
        verdict = AutomatedTimingDetector().evaluate(signal(attempts(12, spacing=2)))
        assert verdict.detected
        assert verdict.recommendation == PROGRESSIVE_DELAY

    def test_irregular_intervals(self):
        history = tuple(
            LoginAttempt(ip=IP, identifier="a", success=False, timestamp=NOW - timedelta(seconds=s))
            for s in (0, 1, 5, 6, 15, 17, 30, 31, 44, 50, 58)
        )
        assert not AutomatedTimingDetector().evaluate(signal(history)).detected


class TestAccountEnumeration:
    def test_many_failed_identifiers(self):
        verdict = AccountEnumerationDetector().evaluate(
            signal(attempts(21, spacing=10, identifiers=11))
        )
        assert verdict.detected
        assert verdict.severity is RiskLevel.MEDIUM

    def test_at_threshold_is_clean(self):
        verdict = AccountEnumerationDetector().evaluate(
            signal(attempts(20, spacing=10, identifiers=10))
        )
        assert not verdict.detected


def past_logins(*, days, hour, user_agent=UA):
    """One successful login per day for ``days`` days, at ``hour`` UTC."""
    return tuple(
        LoginAttempt(
            ip=IP,
            identifier="alice@example.com",
            success=True,
            timestamp=(NOW - timedelta(days=day)).replace(hour=hour),
            subject_id="user-1",
            user_agent=user_agent,
        )
        for day in range(days, 1, -1)
    )


class TestDeviceAnomaly:
    detector = DeviceAnomalyDetector()

    def test_known_device_is_clean(self):
        history = past_logins(days=10, hour=12)
        assert not self.detector.evaluate(
            signal(subject_id="user-1", subject_history=history)
        ).detected

    def test_unrecognized_device(self):
        history = past_logins(days=10, hour=12)
        verdict = self.detector.evaluate(
            signal(
                subject_id="user-1",
                subject_history=history,
                user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) Firefox/128.0",
            )
        )
        assert verdict.detected
        assert verdict.severity is RiskLevel.LOW
        assert verdict.recommendation == MONITOR
        assert verdict.indicators == ("UNRECOGNIZED_DEVICE",)

    def test_headless_browser_on_new_device_requires_mfa(self):
        history = past_logins(days=10, hour=12)
        verdict = self.detector.evaluate(
            signal(
                subject_id="user-1",
                subject_history=history,
                user_agent="Mozilla/5.0 (X11; Linux x86_64) HeadlessChrome/126.0 Safari/537.36",
            )
        )
        assert verdict.severity is RiskLevel.HIGH
        assert verdict.recommendation == REQUIRE_MFA
        assert set(verdict.indicators) == {"UNRECOGNIZED_DEVICE", "AUTOMATED_BROWSER"}

    def test_first_login_has_no_baseline(self):
        assert not self.detector.evaluate(signal(subject_id="user-1")).detected

    def test_needs_a_subject(self):
        assert not self.detector.evaluate(signal(user_agent="selenium webdriver")).detected


class TestUnusualTime:
    detector = UnusualTimeDetector()

    def test_usual_hour_is_clean(self):
        history = past_logins(days=20, hour=12)
        assert not self.detector.evaluate(
            signal(subject_id="user-1", subject_history=history)
        ).detected

    def test_outside_usual_hours(self):
        history = past_logins(days=20, hour=9)
        verdict = self.detector.evaluate(signal(subject_id="user-1", subject_history=history))
        assert verdict.indicators == ("OUTSIDE_USUAL_HOURS",)
        assert verdict.recommendation == MONITOR

    def test_unusual_night_login_requires_mfa(self):
        history = past_logins(days=20, hour=12)
        night = ThreatSignal(
            now=NOW.replace(hour=3), ip=IP, subject_id="user-1", subject_history=history
        )
        verdict = self.detector.evaluate(night)
        assert set(verdict.indicators) == {"OUTSIDE_USUAL_HOURS", "LATE_NIGHT_ACCESS"}
        assert verdict.severity is RiskLevel.MEDIUM
        assert verdict.recommendation == REQUIRE_MFA

    def test_regular_night_owl_is_clean(self):
        history = past_logins(days=20, hour=3)
        night = ThreatSignal(
            now=NOW.replace(hour=3), ip=IP, subject_id="user-1", subject_history=history
        )
        assert not self.detector.evaluate(night).detected

    def test_logins_from_the_last_day_do_not_set_the_baseline(self):
        recent = tuple(
            LoginAttempt(
                ip=IP,
                identifier="alice@example.com",
                success=True,
                timestamp=NOW - timedelta(hours=h),
                subject_id="user-1",
            )
            for h in (1, 2, 3)
        )
        assert not self.detector.evaluate(
            signal(subject_id="user-1", subject_history=recent)
        ).detected


class TestRegistry:
    def test_duplicate_name_rejected(self):
        registry = DetectorRegistry([BruteForceDetector()])
        with pytest.raises(ValueError):
            registry.register(BruteForceDetector())

    def test_broken_detector_is_skipped(self):
        class Broken:
            name = "broken"

            def evaluate(self, signal):
                raise RuntimeError("boom")

        registry = DetectorRegistry([Broken(), SuspiciousAgentDetector()])
        verdicts = registry.evaluate_all(signal(user_agent="curl/8.0"))
        assert [v.detector for v in verdicts] == ["suspicious_agent"]

    def test_from_settings_registers_all(self, settings):
        registry = DetectorRegistry.from_settings(settings)
        assert registry.names == [
            "brute_force",
            "credential_stuffing",
            "geolocation_anomaly",
            "suspicious_agent",
            "automated_timing",
            "account_enumeration",
            "device_anomaly",
            "unusual_time",
        ]

    def test_disabled_detectors_are_left_out(self, settings):
        registry = DetectorRegistry.from_settings(
            settings.model_copy(update={"disabled_detectors": "unusual_time, no_such_detector"})
        )
        assert "unusual_time" not in registry.names
        assert "device_anomaly" in registry.names

    def test_aggregate_picks_most_severe(self):
        verdicts = [
            Verdict("a", detected=True, severity=RiskLevel.MEDIUM),
            Verdict("b", detected=True, severity=RiskLevel.CRITICAL),
            Verdict("c", detected=False),
        ]
        assert aggregate(verdicts).detector == "b"
        assert not aggregate([Verdict("c")]).detected


class TestThreatDetector:
    async def _record(self, runtime, history):
        for attempt in history:
            await runtime.store.record_login_attempt(attempt)

    async def test_detect_brute_force_from_history(self, runtime, clock):
        clock.set(NOW)
        await self._record(runtime, attempts(25, spacing=2))

        verdict = await runtime.threats.detect_brute_force(IP)

        assert verdict.detected
        assert verdict.severity is RiskLevel.HIGH
        assert verdict.recommendation == BLOCK_IP

    async def test_detect_credential_stuffing_from_history(self, runtime, clock):
        clock.set(NOW)
        await self._record(runtime, attempts(15, spacing=10, identifiers=5))

        verdict = await runtime.threats.detect_credential_stuffing(IP)
        assert verdict.detected

    async def test_geolocation_uses_resolver(self, runtime, clock):
        clock.set(NOW)
        runtime.threats.geo = StaticGeoResolver(
            [("203.0.113.0/24", NEW_YORK), ("198.51.100.0/24", LONDON)]
        )
        await runtime.store.record_login_attempt(
            LoginAttempt(
                ip="203.0.113.10",
                identifier="alice@example.com",
                success=True,
                timestamp=NOW - timedelta(hours=1),
                subject_id="user-1",
            )
        )

        verdict = await runtime.threats.analyze_geolocation_anomaly("user-1", IP)
        assert verdict.detected
        assert verdict.severity is RiskLevel.HIGH

    async def test_assess_logs_each_positive_verdict(self, runtime, clock):
        clock.set(NOW)
        await self._record(runtime, attempts(25, spacing=2))

        assessment = await runtime.threats.assess(ip=IP, user_agent="curl/8.0")

        assert assessment.blocked
        assert assessment.overall.recommendation == BLOCK_IP
        threat_events = [
            e for e in runtime.events.pending_events() if e.type is SecurityEventType.THREAT_DETECTED
        ]
        detectors = {e.details["detector"] for e in threat_events}
        assert {"brute_force", "suspicious_agent"} <= detectors

    async def test_login_context_runs_subject_detectors_only(self, runtime, clock):
        clock.set(NOW)
        for attempt in past_logins(days=10, hour=12):
            await runtime.store.record_login_attempt(attempt)

        assessment = await runtime.threats.analyze_login_context(
            "user-1", IP, "Mozilla/5.0 (X11; Linux x86_64) HeadlessChrome/126.0"
        )

        assert {v.detector for v in assessment.verdicts} == {
            "geolocation_anomaly",
            "device_anomaly",
            "unusual_time",
        }
        assert [v.detector for v in assessment.detected] == ["device_anomaly"]
        event = runtime.events.pending_events()[-1]
        assert event.subject_id == "user-1"
        assert event.details["recommendation"] == REQUIRE_MFA

    async def test_history_outage_fails_open(self, runtime):
        runtime.store.list_login_attempts = AsyncMock(side_effect=StoreUnavailableError("down"))

        assessment = await runtime.threats.assess(ip=IP, user_agent=UA)

        assert not assessment.blocked
        types = [e.type for e in runtime.events.pending_events()]
        assert SecurityEventType.STORE_DEGRADED in types
