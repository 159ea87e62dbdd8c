"""
Event pipeline orchestrator.

Flow for one event:
  validate -> {threat scoring, compliance scoring} concurrently
           -> audit entry (always) -> alerts (threat / violation only)
           -> compliance statistics -> monitor counters

Scorer failures are replaced by neutral results so ingestion never
stalls on a scoring bug. The caller only learns whether the event was
accepted.

Scheduled operations (security scan, daily report, integrity check,
cleanup) live here as well and are driven by the Scheduler.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import Any, Optional

from vigil.alerts.dispatcher import AlertDispatcher
from vigil.audit.trail import AuditTrail
from vigil.detection.compliance import ComplianceScorer
from vigil.detection.threat import ThreatScorer
from vigil.errors import AuditStoreError, EventValidationError
from vigil.models.audit import CleanupCounts, IntegrityReport
from vigil.models.event import EventType, SecurityEvent
from vigil.models.results import ComplianceResult, ThreatAnalysisResult
from vigil.models.severity import Severity
from vigil.monitoring.health import HealthMonitor
from vigil.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class PipelineStats:
    """Running totals since process start."""

    processed: int = 0
    accepted: int = 0
    rejected: int = 0
    threats: int = 0
    violations: int = 0
    alerts: int = 0
    scorer_errors: int = 0
    audit_errors: int = 0
    alert_errors: int = 0
    started_at: str = field(default_factory=lambda: utcnow().isoformat())


def audit_event_type(threat: ThreatAnalysisResult, compliance: ComplianceResult) -> str:
    if threat.is_threat:
        return EventType.THREAT_DETECTED.value
    if not compliance.compliant:
        return EventType.POLICY_VIOLATION.value
    return EventType.SECURITY_EVENT.value


class EventPipeline:
    """
    Entry point for security events.

    Usage:
        pipeline = EventPipeline(threat_scorer, compliance_scorer, trail, dispatcher, monitor)
        accepted = await pipeline.process_event(payload)
    """

    def __init__(
        self,
        threat_scorer: ThreatScorer,
        compliance_scorer: ComplianceScorer,
        audit_trail: AuditTrail,
        dispatcher: AlertDispatcher,
        monitor: HealthMonitor,
    ):
        self.threat_scorer = threat_scorer
        self.compliance_scorer = compliance_scorer
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher
        self.monitor = monitor
        self._stats = PipelineStats()
        self._started = time.monotonic()

    async def _score_threat(self, event: SecurityEvent) -> ThreatAnalysisResult:
        try:
            return await self.threat_scorer.analyze(event)
        except Exception:
            self._stats.scorer_errors += 1
            logger.exception(f"Threat scoring failed for event {event.id}, using neutral result")
            return self.threat_scorer.neutral(event)

    async def _score_compliance(self, event: SecurityEvent) -> ComplianceResult:
        try:
            return await asyncio.to_thread(self.compliance_scorer.check_event, event)
        except Exception:
            self._stats.scorer_errors += 1
            logger.exception(f"Compliance check failed for event {event.id}, using neutral result")
            return self.compliance_scorer.neutral()

    async def _record_audit(
        self,
        event: SecurityEvent,
        threat: ThreatAnalysisResult,
        compliance: ComplianceResult,
    ) -> Optional[str]:
        severity = Severity.highest(
            event.base_severity,
            threat.severity if threat.is_threat else None,
            compliance.max_severity,
        )
        try:
            return await self.audit_trail.record(
                audit_event_type(threat, compliance),
                {"event": event.to_dict(), "threat_analysis": threat.to_dict()},
                metadata={
                    "event_id": event.id,
                    "event_type": event.type,
                    "source_ip": event.source_ip,
                    "user_agent": event.source.user_agent,
                    "user_id": event.source.user_id,
                    "session_id": event.source.session_id,
                },
                compliance=compliance,
                severity=severity,
            )
        except Exception:
            self._stats.audit_errors += 1
            logger.exception(f"Audit recording failed for event {event.id}")
            return None

    async def _dispatch_alerts(
        self, threat: ThreatAnalysisResult, compliance: ComplianceResult
    ) -> None:
        notifications = []
        if threat.is_threat:
            notifications.append(self.dispatcher.notify_threat(threat))
        if not compliance.compliant:
            notifications.append(self.dispatcher.notify_compliance(compliance))
        if not notifications:
            return

        results = await asyncio.gather(*notifications, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                self._stats.alert_errors += 1
                logger.error(f"Alert dispatch failed: {result}")
            elif result is not None:
                self._stats.alerts += 1

    async def process_event(self, payload: Any) -> bool:
        """
        Validate, score, audit and alert on one event.

        Args:
            payload: Decoded event body

        Returns:
            True if the event was accepted, False if it was rejected
        """
        started = time.perf_counter()
        self._stats.processed += 1

        try:
            event = SecurityEvent.from_payload(payload)
        except EventValidationError as e:
            self._stats.rejected += 1
            logger.warning(f"Invalid security event received: {e}")
            await self.monitor.record_event(error=True)
            return False

        self._stats.accepted += 1

        threat, compliance = await asyncio.gather(
            self._score_threat(event), self._score_compliance(event)
        )
        compliance.metadata.setdefault("event_id", event.id)

        await self._record_audit(event, threat, compliance)

        if threat.is_threat:
            self._stats.threats += 1
        if not compliance.compliant:
            self._stats.violations += 1
        await self._dispatch_alerts(threat, compliance)

        await self.compliance_scorer.record(compliance)
        await self.monitor.record_event(
            event.type,
            source_ip=event.source_ip,
            latency_ms=(time.perf_counter() - started) * 1000,
            is_threat=threat.is_threat,
            violation=not compliance.compliant,
            auth_failure=event.type == EventType.AUTHENTICATION_FAILURE.value,
        )
        return True

    async def check_compliance(self, content: Any) -> ComplianceResult:
        """Ad-hoc compliance check of arbitrary content."""
        result = await asyncio.to_thread(self.compliance_scorer.check, content)
        await self.compliance_scorer.record(result)
        return result

    # --- scheduled operations ---

    async def flush_audit(self) -> int:
        return await self.audit_trail.flush()

    async def sample_metrics(self) -> None:
        snapshot = await self.monitor.sample()
        await self.monitor.evaluate_health(snapshot)

    async def detect_anomalies(self) -> None:
        await self.monitor.detect_anomalies()

    async def run_security_scan(self) -> dict[str, Any]:
        """Hourly health evaluation plus compliance scan, recorded in the audit trail."""
        logger.info("Starting scheduled security scan")
        health = await self.monitor.evaluate_health()
        compliance = await self.compliance_scorer.scan()
        report = {
            "timestamp": utcnow().isoformat(),
            "health": health.to_dict(),
            "compliance": compliance,
            "stats": asdict(self._stats),
        }
        await self.audit_trail.record(EventType.SECURITY_SCAN.value, report)
        logger.info("Scheduled security scan completed successfully")
        return report

    async def generate_daily_report(self, day: Optional[date] = None) -> dict[str, Any]:
        """Daily totals for threats, compliance and alerts; audited and mailed."""
        day = day or utcnow().date()
        logger.info(f"Generating daily security report for {day.isoformat()}")

        integrity = await self.audit_trail.get_integrity_report(day - timedelta(days=1))
        report = {
            "date": day.isoformat(),
            "stats": asdict(self._stats),
            "threats": await self.threat_scorer.daily_summary(day),
            "compliance": await self.compliance_scorer.daily_summary(day),
            "alerts": await self.dispatcher.daily_summary(day),
            "integrity": integrity.to_dict() if integrity else None,
        }
        await self.audit_trail.record(EventType.DAILY_REPORT.value, report)
        await self.dispatcher.send_report(report)
        logger.info("Daily security report generated")
        return report

    async def run_integrity_check(self, day: Optional[date] = None) -> IntegrityReport:
        """
        Verify a day's audit entries (yesterday by default).

        Any invalid entry raises a critical system alert regardless of cooldown.
        """
        day = day or utcnow().date() - timedelta(days=1)
        try:
            await self.audit_trail.flush()
        except AuditStoreError as e:
            logger.warning(f"Pre-check flush failed, verifying stored entries only: {e}")

        report = await self.audit_trail.verify_day(day)
        if not report.is_intact:
            logger.error(
                f"Audit integrity violated for {day.isoformat()}: "
                f"{report.invalid_logs} invalid entries"
            )
            alert = await self.dispatcher.notify_integrity_failure(report)
            if alert is not None:
                self._stats.alerts += 1
        return report

    async def run_cleanup(self) -> CleanupCounts:
        logger.info("Starting log cleanup")
        return await self.audit_trail.cleanup()

    def stats(self) -> dict[str, Any]:
        return {
            **asdict(self._stats),
            "uptime_seconds": int(time.monotonic() - self._started),
            "threat": self.threat_scorer.stats(),
            "compliance": self.compliance_scorer.stats(),
            "audit": self.audit_trail.stats(),
            "alerts_dispatcher": self.dispatcher.stats(),
            "monitoring": self.monitor.stats(),
        }

    async def shutdown(self, grace_seconds: float = 10.0) -> None:
        """Flush the audit buffer, giving up after the grace period."""
        try:
            await asyncio.wait_for(self.audit_trail.close(), timeout=grace_seconds)
        except asyncio.TimeoutError:
            logger.error(
                f"Audit flush did not finish within {grace_seconds}s, "
                f"{self.audit_trail.buffer_size} entries not persisted"
            )
        except AuditStoreError as e:
            logger.error(
                f"Final audit flush failed, {self.audit_trail.buffer_size} entries not persisted: {e}"
            )
        await self.dispatcher.close()
