"""
Monitoring snapshots, health checks and anomalies.
"""

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from vigil.models.severity import Severity
from vigil.utils import parse_iso8601, utc_isoformat, utcnow


@dataclass
class SystemMetrics:
    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    disk_usage: float = 0.0
    load_average: list[float] = field(default_factory=list)
    uptime: float = 0.0


@dataclass
class SecurityMetrics:
    threats_detected: int = 0
    requests_processed: int = 0
    failed_authentications: int = 0
    blocked_ips: int = 0
    policy_violations: int = 0


@dataclass
class PerformanceMetrics:
    avg_response_time: float = 0.0
    requests_per_second: float = 0.0
    error_rate: float = 0.0
    database_connections: int = 0


@dataclass
class MetricsSnapshot:
    """One sample of system, security and performance metrics."""

    system: SystemMetrics = field(default_factory=SystemMetrics)
    security: SecurityMetrics = field(default_factory=SecurityMetrics)
    performance: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "system": asdict(self.system),
            "security": asdict(self.security),
            "performance": asdict(self.performance),
            "timestamp": utc_isoformat(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MetricsSnapshot":
        timestamp = data.get("timestamp")
        return cls(
            system=SystemMetrics(**data.get("system", {})),
            security=SecurityMetrics(**data.get("security", {})),
            performance=PerformanceMetrics(**data.get("performance", {})),
            timestamp=parse_iso8601(timestamp) if timestamp else utcnow(),
        )


class HealthState(str, enum.Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class HealthCheck:
    """Outcome of one threshold check."""

    name: str
    status: HealthState
    value: float
    threshold: Optional[float] = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "value": self.value,
            "threshold": self.threshold,
            "message": self.message,
        }


@dataclass
class HealthStatus:
    """Aggregate of all health checks. Critical wins over warning."""

    overall_status: HealthState
    checks: dict[str, HealthCheck] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def failing(self) -> list[HealthCheck]:
        return [c for c in self.checks.values() if c.status != HealthState.HEALTHY]

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_status": self.overall_status.value,
            "checks": {name: check.to_dict() for name, check in self.checks.items()},
            "failing": [c.name for c in self.failing],
            "timestamp": utc_isoformat(self.timestamp),
        }


@dataclass
class Anomaly:
    """A metric that departed from its rolling baseline."""

    type: str
    message: str
    current_value: float
    baseline: float
    severity: Severity = Severity.HIGH
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "current_value": self.current_value,
            "baseline": self.baseline,
            "severity": self.severity.value,
            "timestamp": utc_isoformat(self.timestamp),
        }
