from __future__ import annotations

import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional, Protocol

from sessionguard.clock import Clock, MonotonicClock
from sessionguard.logging import get_audit_logger, get_logger
from sessionguard.service.circuit_breaker import StoreGuard
from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.models import (
    EventSeverity,
    SecurityEvent,
    SecurityEventType,
)

logger = get_logger(__name__)

_DENIAL_TYPES = {
    SecurityEventType.LOGIN_FAILED,
    SecurityEventType.TOKEN_REJECTED,
    SecurityEventType.RATE_LIMITED,
    SecurityEventType.MFA_FAILED,
}
_ANOMALY_TYPES = {
    SecurityEventType.THREAT_DETECTED,
    SecurityEventType.SESSION_HIJACK_SUSPECTED,
    SecurityEventType.TOKEN_REUSED,
}


class EventSink(Protocol):
    async def append_security_event(self, event: SecurityEvent) -> None: ...

    async def list_security_events(
        self, *, since: Optional[datetime] = None, until: Optional[datetime] = None
    ) -> List[SecurityEvent]: ...


@dataclass
class ReportBucket:
    start: datetime
    end: datetime
    denials: int = 0
    lockouts: int = 0
    anomalies: int = 0
    degraded: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "denials": self.denials,
            "lockouts": self.lockouts,
            "anomalies": self.anomalies,
            "degraded": self.degraded,
        }


@dataclass
class SecurityReport:
    since: datetime
    until: datetime
    total_events: int
    by_type: Dict[str, int]
    by_severity: Dict[str, int]
    high_risk_events: int
    blocked_ips: List[str]
    top_offending_ips: List[Dict[str, Any]]
    buckets: List[ReportBucket] = field(default_factory=list)
    pending_events: int = 0
    dropped_events: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "since": self.since.isoformat(),
            "until": self.until.isoformat(),
            "total_events": self.total_events,
            "by_type": self.by_type,
            "by_severity": self.by_severity,
            "high_risk_events": self.high_risk_events,
            "blocked_ips": self.blocked_ips,
            "top_offending_ips": self.top_offending_ips,
            "buckets": [bucket.to_dict() for bucket in self.buckets],
            "pending_events": self.pending_events,
            "dropped_events": self.dropped_events,
        }


class SecurityEventLog:
    """Append-only security event log with a bounded in-process buffer.

    ``log_security_event`` never awaits: events land in the buffer and the
    audit logger immediately, and :meth:`flush` drains the buffer into the
    sink. While the sink is unreachable the buffer keeps the newest
    ``buffer_size`` events and counts the ones it had to drop.
    """

    def __init__(
        self,
        sink: Optional[EventSink],
        *,
        guard: Optional[StoreGuard] = None,
        buffer_size: int = 1000,
        clock: Optional[Clock] = None,
    ) -> None:
        self.sink = sink
        self.guard = guard
        self.buffer_size = buffer_size
        self.clock = clock or MonotonicClock()
        self._lock = threading.Lock()
        self._buffer: Deque[SecurityEvent] = deque()
        self.dropped = 0
        self.audit = get_audit_logger()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def pending_events(self) -> List[SecurityEvent]:
        with self._lock:
            return list(self._buffer)

    def log_security_event(self, event: SecurityEvent) -> None:
        with self._lock:
            if len(self._buffer) >= self.buffer_size:
                self._buffer.popleft()
                self.dropped += 1
            self._buffer.append(event)
        self.audit.info(
            "security_event",
            event_id=event.id,
            event_type=event.type.value,
            severity=event.severity.value,
            subject_id=event.subject_id,
            ip=event.ip,
            details=event.details,
        )

    def emit(
        self,
        event_type: SecurityEventType,
        severity: EventSeverity,
        *,
        subject_id: Optional[str] = None,
        ip: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        **extra: Any,
    ) -> SecurityEvent:
        event = SecurityEvent.new(
            event_type,
            severity,
            subject_id=subject_id,
            ip=ip,
            details={**(details or {}), **extra},
            timestamp=self.clock.now(),
        )
        self.log_security_event(event)
        return event

    def degraded(self, store: str, operation: str, **details: Any) -> SecurityEvent:
        return self.emit(
            SecurityEventType.STORE_DEGRADED,
            EventSeverity.DEGRADED,
            store=store,
            operation=operation,
            **details,
        )

    async def _write(self, event: SecurityEvent) -> None:
        if self.guard is not None:
            await self.guard.call(
                "append_security_event", lambda: self.sink.append_security_event(event)
            )
        else:
            await self.sink.append_security_event(event)

    async def flush(self, max_events: Optional[int] = None) -> int:
        """Drain buffered events into the sink; returns how many were written.

        ``max_events`` bounds the work done by one call; whatever is left
        stays buffered for the next flush.
        """
        if self.sink is None:
            return 0
        written = 0
        while max_events is None or written < max_events:
            with self._lock:
                if not self._buffer:
                    break
                event = self._buffer.popleft()
            try:
                await self._write(event)
            except StoreUnavailableError as exc:
                with self._lock:
                    # Newer events may have filled the buffer meanwhile
                    if len(self._buffer) >= self.buffer_size:
                        self.dropped += 1
                    else:
                        self._buffer.appendleft(event)
                logger.warning(
                    "security_event_flush_deferred",
                    pending=self.pending,
                    error=exc.message,
                )
                break
            written += 1
        return written

    async def list_events(
        self, *, since: Optional[datetime] = None, until: Optional[datetime] = None
    ) -> List[SecurityEvent]:
        stored: List[SecurityEvent] = []
        if self.sink is not None:
            try:
                if self.guard is not None:
                    stored = await self.guard.call(
                        "list_security_events",
                        lambda: self.sink.list_security_events(since=since, until=until),
                    )
                else:
                    stored = await self.sink.list_security_events(since=since, until=until)
            except StoreUnavailableError as exc:
                logger.warning("security_event_listing_degraded", error=exc.message)
        seen = {event.id for event in stored}
        pending = [
            event
            for event in self.pending_events()
            if event.id not in seen
            and (since is None or event.timestamp >= since)
            and (until is None or event.timestamp < until)
        ]
        return sorted(stored + pending, key=lambda e: e.timestamp)

    async def security_report(
        self,
        since: datetime,
        until: Optional[datetime] = None,
        *,
        bucket_seconds: int = 3600,
        top_n: int = 5,
    ) -> SecurityReport:
        until = until or self.clock.now()
        if bucket_seconds <= 0:
            raise ValueError("bucket_seconds must be positive")
        events = await self.list_events(since=since, until=until)

        buckets: List[ReportBucket] = []
        cursor = since
        step = timedelta(seconds=bucket_seconds)
        while cursor < until:
            buckets.append(ReportBucket(start=cursor, end=min(cursor + step, until)))
            cursor += step

        by_type: Counter = Counter()
        by_severity: Counter = Counter()
        offenders: Counter = Counter()
        blocked: set[str] = set()
        high_risk = 0
        for event in events:
            by_type[event.type.value] += 1
            by_severity[event.severity.value] += 1
            if event.severity in (EventSeverity.HIGH, EventSeverity.CRITICAL):
                high_risk += 1
            if event.details.get("recommendation") == "BLOCK_IP" and event.ip:
                blocked.add(event.ip)
            if event.ip and (event.type in _DENIAL_TYPES or event.type in _ANOMALY_TYPES):
                offenders[event.ip] += 1
            if not buckets:
                continue
            index = int((event.timestamp - since).total_seconds() // bucket_seconds)
            bucket = buckets[min(index, len(buckets) - 1)]
            if event.type in _DENIAL_TYPES:
                bucket.denials += 1
            elif event.type is SecurityEventType.ACCOUNT_LOCKED:
                bucket.lockouts += 1
            elif event.type in _ANOMALY_TYPES:
                bucket.anomalies += 1
            elif event.severity is EventSeverity.DEGRADED:
                bucket.degraded += 1

        return SecurityReport(
            since=since,
            until=until,
            total_events=len(events),
            by_type=dict(by_type),
            by_severity=dict(by_severity),
            high_risk_events=high_risk,
            blocked_ips=sorted(blocked),
            top_offending_ips=[
                {"ip": ip, "events": count} for ip, count in offenders.most_common(top_n)
            ],
            buckets=buckets,
            pending_events=self.pending,
            dropped_events=self.dropped,
        )
