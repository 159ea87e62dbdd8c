"""
Scorer outputs.

Both results are built fresh for each event by their scorer and are not
modified once returned.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from vigil.models.severity import Severity
from vigil.utils import utc_isoformat, utcnow


@dataclass
class ThreatAnalysisResult:
    """Threat classification for a single event."""

    is_threat: bool = False
    threat_types: list[str] = field(default_factory=list)
    severity: Severity = Severity.LOW
    confidence: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)
    constitutional_compliant: bool = True
    source_ip: Optional[str] = None
    event_id: Optional[str] = None
    analyzed_at: datetime = field(default_factory=utcnow)

    def add_threat_type(self, threat_type: str) -> None:
        """Add a category tag once, keeping first-seen order."""
        if threat_type not in self.threat_types:
            self.threat_types.append(threat_type)

    def raise_severity(self, severity: Severity) -> None:
        """Severity only ever moves up."""
        self.severity = Severity.highest(self.severity, severity)

    @classmethod
    def neutral(
        cls, event_id: Optional[str] = None, source_ip: Optional[str] = None
    ) -> "ThreatAnalysisResult":
        """Conservative default used when analysis fails."""
        return cls(event_id=event_id, source_ip=source_ip, metadata={"degraded": True})

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_threat": self.is_threat,
            "threat_types": list(self.threat_types),
            "severity": self.severity.value,
            "confidence": self.confidence,
            "metadata": self.metadata,
            "constitutional_compliant": self.constitutional_compliant,
            "source_ip": self.source_ip,
            "event_id": self.event_id,
            "analyzed_at": utc_isoformat(self.analyzed_at),
        }


@dataclass
class Violation:
    """A single violated principle."""

    principle: str
    description: str
    severity: Severity
    confidence: float
    matched_patterns: list[dict[str, str]] = field(default_factory=list)
    context: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "principle": self.principle,
            "description": self.description,
            "severity": self.severity.value,
            "confidence": self.confidence,
            "matched_patterns": list(self.matched_patterns),
            "context": list(self.context),
        }


@dataclass
class ComplianceResult:
    """Outcome of scoring content against the policy principles."""

    compliant: bool = True
    violations: list[Violation] = field(default_factory=list)
    score: float = 1.0
    principles_checked: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=utcnow)

    @property
    def max_severity(self) -> Optional[Severity]:
        """Highest severity among violations, None when compliant."""
        if not self.violations:
            return None
        return Severity.highest(*(v.severity for v in self.violations))

    @property
    def has_critical(self) -> bool:
        return any(v.severity == Severity.CRITICAL for v in self.violations)

    @classmethod
    def neutral(cls, principles: Optional[list[str]] = None) -> "ComplianceResult":
        """Conservative default used when the check fails."""
        return cls(principles_checked=list(principles or []), metadata={"degraded": True})

    def to_dict(self) -> dict[str, Any]:
        return {
            "compliant": self.compliant,
            "violations": [v.to_dict() for v in self.violations],
            "score": self.score,
            "principles_checked": list(self.principles_checked),
            "metadata": self.metadata,
            "checked_at": utc_isoformat(self.checked_at),
        }
