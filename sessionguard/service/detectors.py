from __future__ import annotations

import re
import statistics
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from sessionguard.clock import Clock, MonotonicClock
from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.circuit_breaker import StoreGuard
from sessionguard.service.events import SecurityEventLog
from sessionguard.service.geo import GeoResolver, haversine_km
from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.models import (
    EventSeverity,
    GeoLocation,
    LoginAttempt,
    RiskLevel,
    SecurityEventType,
)

logger = get_logger(__name__)

BLOCK_IP = "BLOCK_IP"
REQUIRE_MFA = "REQUIRE_MFA"
REQUIRE_CAPTCHA = "REQUIRE_CAPTCHA"
PROGRESSIVE_DELAY = "PROGRESSIVE_DELAY"
MONITOR = "MONITOR"

_BOT_PATTERN = re.compile(r"bot|crawler|spider|scraper|curl|wget|python|java", re.IGNORECASE)
_LEGACY_BROWSER_PATTERN = re.compile(r"MSIE|Trident", re.IGNORECASE)
_AUTOMATED_BROWSER_PATTERN = re.compile(
    r"headless|phantom|selenium|webdriver|automation", re.IGNORECASE
)


@dataclass(frozen=True)
class Verdict:
    """Outcome of one detector; ``detected`` is False for a clean signal."""

    detector: str
    detected: bool = False
    severity: RiskLevel = RiskLevel.NONE
    recommendation: Optional[str] = None
    confidence: float = 0.0
    indicators: Tuple[str, ...] = ()
    distance_km: Optional[float] = None
    speed_kmh: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def anomalous(self) -> bool:
        return self.detected

    @property
    def risk_level(self) -> RiskLevel:
        return self.severity

    @property
    def blocking(self) -> bool:
        return self.detected and self.recommendation == BLOCK_IP

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "detector": self.detector,
            "detected": self.detected,
            "severity": self.severity.value,
            "recommendation": self.recommendation,
            "confidence": round(self.confidence, 3),
            "indicators": list(self.indicators),
        }
        if self.distance_km is not None:
            payload["distance_km"] = round(self.distance_km, 1)
        if self.speed_kmh is not None:
            payload["speed_kmh"] = round(self.speed_kmh, 1)
        payload.update(self.details)
        return payload


@dataclass(frozen=True)
class ThreatSignal:
    """Read-only snapshot of everything detectors may look at for one request."""

    now: datetime
    ip: str
    subject_id: Optional[str] = None
    identifier: Optional[str] = None
    user_agent: Optional[str] = None
    endpoint: str = "login"
    ip_attempts: Tuple[LoginAttempt, ...] = ()
    location: Optional[GeoLocation] = None
    last_success: Optional[LoginAttempt] = None
    # Earlier successful logins of ``subject_id``, oldest first
    subject_history: Tuple[LoginAttempt, ...] = ()

    def attempts_within(self, seconds: float, *, endpoint: Optional[str] = None) -> List[LoginAttempt]:
        cutoff = self.now - timedelta(seconds=seconds)
        return [
            a
            for a in self.ip_attempts
            if cutoff <= a.timestamp <= self.now and (endpoint is None or a.endpoint == endpoint)
        ]


class Detector(Protocol):
    name: str

    def evaluate(self, signal: ThreatSignal) -> Verdict: ...


class BruteForceDetector:
    name = "brute_force"

    def __init__(self, threshold: int = 20, window_seconds: int = 60) -> None:
        self.threshold = threshold
        self.window_seconds = window_seconds

    def evaluate(self, signal: ThreatSignal) -> Verdict:
        failures = [
            a
            for a in signal.attempts_within(self.window_seconds, endpoint=signal.endpoint)
            if not a.success
        ]
        count = len(failures)
        if count < self.threshold:
            return Verdict(self.name, details={"attempts": count})
        severity = RiskLevel.CRITICAL if count >= self.threshold * 3 else RiskLevel.HIGH
        return Verdict(
            self.name,
            detected=True,
            severity=severity,
            recommendation=BLOCK_IP,
            confidence=min(1.0, count / (self.threshold * 3)),
            indicators=("HIGH_FAILURE_VOLUME",),
            details={"attempts": count, "window_seconds": self.window_seconds},
        )


class CredentialStuffingDetector:
    """Many identifiers, many attempts and almost no successes from one address."""

    name = "credential_stuffing"

    def __init__(
        self,
        *,
        window_seconds: int = 600,
        min_identifiers: int = 5,
        min_attempts: int = 15,
        max_success_rate: float = 0.1,
    ) -> None:
        self.window_seconds = window_seconds
        self.min_identifiers = min_identifiers
        self.min_attempts = min_attempts
        self.max_success_rate = max_success_rate

    def evaluate(self, signal: ThreatSignal) -> Verdict:
        attempts = signal.attempts_within(self.window_seconds)
        total = len(attempts)
        identifiers = {a.identifier for a in attempts}
        successes = sum(1 for a in attempts if a.success)
        success_rate = successes / total if total else 0.0
        agents = {a.user_agent for a in attempts}

        indicators = []
        if len(identifiers) >= self.min_identifiers:
            indicators.append("HIGH_EMAIL_DIVERSITY")
        if total and success_rate <= self.max_success_rate:
            indicators.append("LOW_SUCCESS_RATE")
        if total >= self.min_attempts and len(agents) == 1:
            indicators.append("SINGLE_USER_AGENT")

        details = {
            "attempts": total,
            "distinct_identifiers": len(identifiers),
            "success_rate": round(success_rate, 3),
        }
        detected = (
            total >= self.min_attempts
            and len(identifiers) >= self.min_identifiers
            and success_rate <= self.max_success_rate
        )
        if not detected:
            return Verdict(self.name, indicators=tuple(indicators), details=details)
        return Verdict(
            self.name,
            detected=True,
            severity=RiskLevel.HIGH,
            recommendation=BLOCK_IP,
            confidence=len(indicators) / 3,
            indicators=tuple(indicators),
            details=details,
        )


class GeolocationAnomalyDetector:
    """Flags travel speeds between consecutive successful logins."""

    name = "geolocation_anomaly"

    def __init__(self, *, impossible_kmh: float = 1000.0, high_kmh: float = 500.0) -> None:
        self.impossible_kmh = impossible_kmh
        self.high_kmh = high_kmh

    def evaluate(self, signal: ThreatSignal) -> Verdict:
        previous = signal.last_success
        if signal.location is None or previous is None or previous.location is None:
            return Verdict(self.name)
        distance = haversine_km(previous.location, signal.location)
        hours = (signal.now - previous.timestamp).total_seconds() / 3600
        if hours <= 0:
            speed = float("inf") if distance > 1.0 else 0.0
        else:
            speed = distance / hours

        if speed > self.impossible_kmh:
            return Verdict(
                self.name,
                detected=True,
                severity=RiskLevel.HIGH,
                recommendation=REQUIRE_MFA,
                confidence=0.9,
                indicators=("IMPOSSIBLE_TRAVEL",),
                distance_km=distance,
                speed_kmh=speed,
            )
        if speed > self.high_kmh:
            return Verdict(
                self.name,
                detected=True,
                severity=RiskLevel.MEDIUM,
                recommendation=MONITOR,
                confidence=0.6,
                indicators=("HIGH_TRAVEL_VELOCITY",),
                distance_km=distance,
                speed_kmh=speed,
            )
        return Verdict(self.name, distance_km=distance, speed_kmh=speed)


class SuspiciousAgentDetector:
    name = "suspicious_agent"

    def evaluate(self, signal: ThreatSignal) -> Verdict:
        user_agent = signal.user_agent or ""
        score = 0
        indicators = []
        if len(user_agent) < 10:
            score += 20
            indicators.append("MISSING_OR_SHORT_USER_AGENT")
        if _BOT_PATTERN.search(user_agent):
            score += 30
            indicators.append("AUTOMATION_USER_AGENT")
        if _LEGACY_BROWSER_PATTERN.search(user_agent):
            score += 15
            indicators.append("OUTDATED_BROWSER")

        if score >= 50:
            severity = RiskLevel.HIGH
        elif score >= 30:
            severity = RiskLevel.MEDIUM
        elif score > 0:
            severity = RiskLevel.LOW
        else:
            return Verdict(self.name)
        return Verdict(
            self.name,
            detected=True,
            severity=severity,
            recommendation=REQUIRE_CAPTCHA if severity >= RiskLevel.MEDIUM else MONITOR,
            confidence=min(1.0, score / 65),
            indicators=tuple(indicators),
            details={"score": score},
        )


class AutomatedTimingDetector:
    """Scripted clients hit the endpoint at suspiciously regular intervals."""

    name = "automated_timing"

    def __init__(self, *, window_seconds: int = 300, min_attempts: int = 10) -> None:
        self.window_seconds = window_seconds
        self.min_attempts = min_attempts

    def evaluate(self, signal: ThreatSignal) -> Verdict:
        attempts = sorted(signal.attempts_within(self.window_seconds), key=lambda a: a.timestamp)
        if len(attempts) < self.min_attempts:
            return Verdict(self.name)
        intervals = [
            (later.timestamp - earlier.timestamp).total_seconds()
            for earlier, later in zip(attempts, attempts[1:])
        ]
        mean = statistics.fmean(intervals)
        stdev = statistics.pstdev(intervals)
        if mean <= 0 or mean >= 10 or stdev >= mean * 0.1:
            return Verdict(self.name)
        return Verdict(
            self.name,
            detected=True,
            severity=RiskLevel.MEDIUM,
            recommendation=PROGRESSIVE_DELAY,
            confidence=0.7,
            indicators=("REGULAR_INTERVALS",),
            details={"mean_interval_seconds": round(mean, 3), "attempts": len(attempts)},
        )


class AccountEnumerationDetector:
    name = "account_enumeration"

    def __init__(
        self, *, window_seconds: int = 900, min_failures: int = 20, min_identifiers: int = 10
    ) -> None:
        self.window_seconds = window_seconds
        self.min_failures = min_failures
        self.min_identifiers = min_identifiers

    def evaluate(self, signal: ThreatSignal) -> Verdict:
        failures = [a for a in signal.attempts_within(self.window_seconds) if not a.success]
        identifiers = {a.identifier for a in failures}
        if len(failures) <= self.min_failures or len(identifiers) <= self.min_identifiers:
            return Verdict(self.name)
        return Verdict(
            self.name,
            detected=True,
            severity=RiskLevel.MEDIUM,
            recommendation=REQUIRE_CAPTCHA,
            confidence=0.7,
            indicators=("ACCOUNT_ENUMERATION",),
            details={"failures": len(failures), "distinct_identifiers": len(identifiers)},
        )


class DeviceAnomalyDetector:
    """Client software the subject has not used before, or a driven browser."""

    name = "device_anomaly"

    def __init__(self, *, history_days: int = 90, max_known_devices: int = 10) -> None:
        self.history_days = history_days
        self.max_known_devices = max_known_devices

    def evaluate(self, signal: ThreatSignal) -> Verdict:
        if signal.subject_id is None:
            return Verdict(self.name)
        user_agent = (signal.user_agent or "").strip()
        cutoff = signal.now - timedelta(days=self.history_days)
        usage = Counter(
            a.user_agent
            for a in signal.subject_history
            if a.success and a.user_agent and a.timestamp >= cutoff
        )
        known = {agent for agent, _ in usage.most_common(self.max_known_devices)}

        score = 0
        indicators = []
        # A subject with no history has no baseline to deviate from
        if known and user_agent not in known:
            score += 15
            indicators.append("UNRECOGNIZED_DEVICE")
        if _AUTOMATED_BROWSER_PATTERN.search(user_agent):
            score += 30
            indicators.append("AUTOMATED_BROWSER")
        if not score:
            return Verdict(self.name)

        severity = _score_severity(score)
        return Verdict(
            self.name,
            detected=True,
            severity=severity,
            recommendation=REQUIRE_MFA if severity >= RiskLevel.MEDIUM else MONITOR,
            confidence=min(1.0, score / 45),
            indicators=tuple(indicators),
            details={"score": score, "known_devices": len(known)},
        )


class UnusualTimeDetector:
    """Logins outside the subject's usual UTC hours or in the dead of night."""

    name = "unusual_time"

    def __init__(
        self,
        *,
        history_days: int = 30,
        usual_hours: int = 8,
        night_start: int = 2,
        night_end: int = 6,
        min_night_logins: int = 3,
    ) -> None:
        self.history_days = history_days
        self.usual_hours = usual_hours
        self.night_start = night_start
        self.night_end = night_end
        self.min_night_logins = min_night_logins

    def _is_night(self, hour: int) -> bool:
        return self.night_start <= hour <= self.night_end

    def evaluate(self, signal: ThreatSignal) -> Verdict:
        if signal.subject_id is None:
            return Verdict(self.name)
        hour = signal.now.hour
        # The last day is left out so a burst of today's logins cannot set the baseline
        start = signal.now - timedelta(days=self.history_days)
        end = signal.now - timedelta(days=1)
        by_hour = Counter(
            a.timestamp.hour for a in signal.subject_history if a.success and start <= a.timestamp < end
        )
        usual = {h for h, _ in by_hour.most_common(self.usual_hours)}

        score = 0
        indicators = []
        if usual and hour not in usual:
            score += 15
            indicators.append("OUTSIDE_USUAL_HOURS")
        if self._is_night(hour):
            night_logins = sum(count for h, count in by_hour.items() if self._is_night(h))
            if night_logins < self.min_night_logins:
                score += 20
                indicators.append("LATE_NIGHT_ACCESS")
        if not score:
            return Verdict(self.name)

        severity = _score_severity(score)
        return Verdict(
            self.name,
            detected=True,
            severity=severity,
            recommendation=REQUIRE_MFA if severity >= RiskLevel.MEDIUM else MONITOR,
            confidence=min(1.0, score / 35),
            indicators=tuple(indicators),
            details={"score": score, "hour": hour, "usual_hours": sorted(usual)},
        )


def _score_severity(score: int) -> RiskLevel:
    if score >= 45:
        return RiskLevel.HIGH
    if score >= 30:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


# Detectors that need an authenticated subject and its login history
SUBJECT_DETECTORS = (
    GeolocationAnomalyDetector.name,
    DeviceAnomalyDetector.name,
    UnusualTimeDetector.name,
)


class DetectorRegistry:
    def __init__(self, detectors: Optional[Iterable[Detector]] = None) -> None:
        self._detectors: Dict[str, Detector] = {}
        for detector in detectors or []:
            self.register(detector)

    def register(self, detector: Detector) -> None:
        if detector.name in self._detectors:
            raise ValueError(f"detector already registered: {detector.name}")
        self._detectors[detector.name] = detector

    def unregister(self, name: str) -> None:
        self._detectors.pop(name, None)

    def get(self, name: str) -> Optional[Detector]:
        return self._detectors.get(name)

    @property
    def names(self) -> List[str]:
        return list(self._detectors)

    def evaluate_all(
        self, signal: ThreatSignal, names: Optional[Iterable[str]] = None
    ) -> List[Verdict]:
        selected = set(names) if names is not None else None
        verdicts = []
        for detector in self._detectors.values():
            if selected is not None and detector.name not in selected:
                continue
            try:
                verdicts.append(detector.evaluate(signal))
            except Exception as exc:
                # Detection is advisory; one broken heuristic must not block logins
                logger.error("detector_failed", detector=detector.name, error=str(exc))
        return verdicts

    @classmethod
    def from_settings(cls, settings: Settings) -> "DetectorRegistry":
        registry = cls(
            [
                BruteForceDetector(
                    settings.brute_force_threshold, settings.brute_force_window_seconds
                ),
                CredentialStuffingDetector(
                    window_seconds=settings.stuffing_window_seconds,
                    min_identifiers=settings.stuffing_min_identifiers,
                    min_attempts=settings.stuffing_min_attempts,
                    max_success_rate=settings.stuffing_max_success_rate,
                ),
                GeolocationAnomalyDetector(
                    impossible_kmh=settings.impossible_travel_kmh,
                    high_kmh=settings.high_travel_kmh,
                ),
                SuspiciousAgentDetector(),
                AutomatedTimingDetector(
                    window_seconds=settings.timing_window_seconds,
                    min_attempts=settings.timing_min_attempts,
                ),
                AccountEnumerationDetector(
                    window_seconds=settings.enumeration_window_seconds,
                    min_failures=settings.enumeration_min_failures,
                    min_identifiers=settings.enumeration_min_identifiers,
                ),
                DeviceAnomalyDetector(
                    history_days=settings.known_device_history_days,
                    max_known_devices=settings.max_known_devices,
                ),
                UnusualTimeDetector(
                    history_days=settings.usual_hours_history_days,
                    usual_hours=settings.usual_hours_count,
                    night_start=settings.night_hours_start,
                    night_end=settings.night_hours_end,
                    min_night_logins=settings.night_min_logins,
                ),
            ]
        )
        for name in settings.disabled_detector_names:
            if registry.get(name) is None:
                logger.warning("unknown_detector_disabled", detector=name)
            registry.unregister(name)
        return registry


def aggregate(verdicts: Iterable[Verdict]) -> Verdict:
    """Pick the most severe positive verdict; ties keep registration order."""
    worst: Optional[Verdict] = None
    for verdict in verdicts:
        if not verdict.detected:
            continue
        if worst is None or verdict.severity > worst.severity:
            worst = verdict
    return worst or Verdict("aggregate")


@dataclass(frozen=True)
class ThreatAssessment:
    verdicts: Tuple[Verdict, ...]
    overall: Verdict

    @property
    def blocked(self) -> bool:
        return any(v.blocking for v in self.verdicts)

    @property
    def detected(self) -> List[Verdict]:
        return [v for v in self.verdicts if v.detected]


class ThreatDetector:
    """Gathers a :class:`ThreatSignal` from history and runs registered detectors.

    History reads go through the store guard and fail open: an unreachable
    store yields an empty history and a degraded event, never a denial.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        guard: StoreGuard,
        events: SecurityEventLog,
        registry: Optional[DetectorRegistry] = None,
        geo: Optional[GeoResolver] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.guard = guard
        self.events = events
        self.registry = registry or DetectorRegistry.from_settings(settings)
        self.geo = geo
        self.clock = clock or MonotonicClock()

    def _history_window(self) -> int:
        s = self.settings
        return max(
            s.brute_force_window_seconds,
            s.stuffing_window_seconds,
            s.timing_window_seconds,
            s.enumeration_window_seconds,
        )

    def _subject_history_days(self) -> int:
        return max(self.settings.known_device_history_days, self.settings.usual_hours_history_days)

    async def record_attempt(self, attempt: LoginAttempt) -> None:
        try:
            await self.guard.call(
                "record_login_attempt", lambda: self.store.record_login_attempt(attempt)
            )
        except StoreUnavailableError as exc:
            self.events.degraded(exc.store, "record_login_attempt")

    async def resolve_location(self, ip: str) -> Optional[GeoLocation]:
        if self.geo is None:
            return None
        return await self.geo.resolve(ip)

    async def build_signal(
        self,
        *,
        ip: str,
        subject_id: Optional[str] = None,
        identifier: Optional[str] = None,
        user_agent: Optional[str] = None,
        endpoint: str = "login",
        now: Optional[datetime] = None,
        history_seconds: Optional[int] = None,
    ) -> ThreatSignal:
        now = now or self.clock.now()
        since = now - timedelta(seconds=history_seconds or self._history_window())
        attempts: List[LoginAttempt] = []
        subject_history: List[LoginAttempt] = []
        last_success: Optional[LoginAttempt] = None
        try:
            attempts = await self.guard.call(
                "list_login_attempts", lambda: self.store.list_login_attempts(since=since, ip=ip)
            )
            if subject_id:
                last_success = await self.guard.call(
                    "get_last_successful_login",
                    lambda: self.store.get_last_successful_login(subject_id),
                )
                subject_since = now - timedelta(days=self._subject_history_days())
                subject_history = await self.guard.call(
                    "list_subject_logins",
                    lambda: self.store.list_login_attempts(
                        since=subject_since, subject_id=subject_id
                    ),
                )
        except StoreUnavailableError as exc:
            self.events.degraded(exc.store, "build_threat_signal")
            logger.warning("threat_history_unavailable", error=exc.message)

        if last_success is not None and last_success.location is None and self.geo is not None:
            previous = await self.geo.resolve(last_success.ip)
            if previous is not None:
                last_success = LoginAttempt(
                    ip=last_success.ip,
                    identifier=last_success.identifier,
                    success=True,
                    timestamp=last_success.timestamp,
                    subject_id=last_success.subject_id,
                    user_agent=last_success.user_agent,
                    endpoint=last_success.endpoint,
                    location=previous,
                )

        return ThreatSignal(
            now=now,
            ip=ip,
            subject_id=subject_id,
            identifier=identifier,
            user_agent=user_agent,
            endpoint=endpoint,
            ip_attempts=tuple(attempts),
            location=await self.resolve_location(ip),
            last_success=last_success,
            subject_history=tuple(
                sorted((a for a in subject_history if a.success), key=lambda a: a.timestamp)
            ),
        )

    async def detect_brute_force(
        self, ip: str, endpoint: str = "login", window_seconds: Optional[int] = None
    ) -> Verdict:
        window = window_seconds or self.settings.brute_force_window_seconds
        signal = await self.build_signal(ip=ip, endpoint=endpoint, history_seconds=window)
        return BruteForceDetector(self.settings.brute_force_threshold, window).evaluate(signal)

    async def detect_credential_stuffing(self, ip: str) -> Verdict:
        detector = self.registry.get(CredentialStuffingDetector.name) or CredentialStuffingDetector(
            window_seconds=self.settings.stuffing_window_seconds,
            min_identifiers=self.settings.stuffing_min_identifiers,
            min_attempts=self.settings.stuffing_min_attempts,
            max_success_rate=self.settings.stuffing_max_success_rate,
        )
        signal = await self.build_signal(ip=ip, history_seconds=self.settings.stuffing_window_seconds)
        return detector.evaluate(signal)

    async def analyze_geolocation_anomaly(
        self, subject_id: str, ip: str, timestamp: Optional[datetime] = None
    ) -> Verdict:
        detector = self.registry.get(GeolocationAnomalyDetector.name) or GeolocationAnomalyDetector(
            impossible_kmh=self.settings.impossible_travel_kmh,
            high_kmh=self.settings.high_travel_kmh,
        )
        signal = await self.build_signal(ip=ip, subject_id=subject_id, now=timestamp)
        return detector.evaluate(signal)

    async def assess(
        self,
        *,
        ip: str,
        subject_id: Optional[str] = None,
        identifier: Optional[str] = None,
        user_agent: Optional[str] = None,
        endpoint: str = "login",
    ) -> ThreatAssessment:
        signal = await self.build_signal(
            ip=ip,
            subject_id=subject_id,
            identifier=identifier,
            user_agent=user_agent,
            endpoint=endpoint,
        )
        return self._report(signal, self.registry.evaluate_all(signal))

    async def analyze_login_context(
        self, subject_id: str, ip: str, user_agent: Optional[str] = None
    ) -> ThreatAssessment:
        """Run the subject-scoped detectors once credentials have been verified.

        Must be called before the current success is recorded, so the
        baselines only contain earlier logins.
        """
        signal = await self.build_signal(ip=ip, subject_id=subject_id, user_agent=user_agent)
        return self._report(signal, self.registry.evaluate_all(signal, SUBJECT_DETECTORS))

    def _report(self, signal: ThreatSignal, verdicts: Iterable[Verdict]) -> ThreatAssessment:
        verdicts = tuple(verdicts)
        assessment = ThreatAssessment(verdicts=verdicts, overall=aggregate(verdicts))
        ip, subject_id = signal.ip, signal.subject_id
        for verdict in assessment.detected:
            self.events.emit(
                SecurityEventType.THREAT_DETECTED,
                EventSeverity.from_risk(verdict.severity),
                subject_id=subject_id,
                ip=ip,
                details=verdict.to_dict(),
            )
        if assessment.detected:
            logger.warning(
                "threat_detected",
                ip=ip,
                detectors=[v.detector for v in assessment.detected],
                severity=assessment.overall.severity.value,
            )
        return assessment
