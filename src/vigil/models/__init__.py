"""
Domain models for the Vigil pipeline.
"""

from vigil.models.alert import Alert, AlertType
from vigil.models.audit import (
    AuditLogEntry,
    AuditSearchCriteria,
    CleanupCounts,
    IntegrityReport,
    InvestigationStatus,
    ViolationRecord,
)
from vigil.models.event import EVENT_TYPE_SEVERITY, EventSource, EventType, SecurityEvent
from vigil.models.metrics import (
    Anomaly,
    HealthCheck,
    HealthState,
    HealthStatus,
    MetricsSnapshot,
    PerformanceMetrics,
    SecurityMetrics,
    SystemMetrics,
)
from vigil.models.results import ComplianceResult, ThreatAnalysisResult, Violation
from vigil.models.severity import Severity

__all__ = [
    "Alert",
    "AlertType",
    "Anomaly",
    "AuditLogEntry",
    "AuditSearchCriteria",
    "CleanupCounts",
    "ComplianceResult",
    "EVENT_TYPE_SEVERITY",
    "EventSource",
    "EventType",
    "HealthCheck",
    "HealthState",
    "HealthStatus",
    "IntegrityReport",
    "InvestigationStatus",
    "MetricsSnapshot",
    "PerformanceMetrics",
    "SecurityEvent",
    "SecurityMetrics",
    "Severity",
    "SystemMetrics",
    "ThreatAnalysisResult",
    "Violation",
    "ViolationRecord",
]
