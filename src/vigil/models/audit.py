"""
Audit trail records.

AuditLogEntry and ViolationRecord are append-only; the only mutation
allowed after write is a violation's investigation status moving forward.
"""

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional
from uuid import uuid4

from vigil.errors import InvalidStatusTransition
from vigil.models.severity import Severity
from vigil.utils import ensure_utc, parse_iso8601, utc_isoformat, utcnow


class InvestigationStatus(str, enum.Enum):
    """Review state of a policy violation."""

    PENDING = "pending"
    REVIEWED = "reviewed"
    CLOSED = "closed"


ALLOWED_TRANSITIONS = {
    InvestigationStatus.PENDING: {InvestigationStatus.REVIEWED, InvestigationStatus.CLOSED},
    InvestigationStatus.REVIEWED: {InvestigationStatus.CLOSED},
    InvestigationStatus.CLOSED: set(),
}


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    return parse_iso8601(str(value))


@dataclass
class AuditLogEntry:
    """
    A single audit record.

    ``event_data`` holds the payload as stored: either the plain JSON value
    or the encryption envelope. The hash covers the stored form so that
    verification never needs the key.
    """

    event_type: str
    event_data: Any
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)
    compliance: Optional[dict[str, Any]] = None
    severity: Severity = Severity.MEDIUM
    hash: str = ""
    encrypted: bool = False

    @property
    def source_ip(self) -> Optional[str]:
        return self.metadata.get("source_ip")

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("user_id")

    def canonical_fields(self) -> dict[str, Any]:
        """Fields covered by the integrity digest."""
        return {
            "id": self.id,
            "timestamp": utc_isoformat(self.timestamp),
            "event_type": self.event_type,
            "event_data": self.event_data,
            "metadata": self.metadata,
        }

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": ensure_utc(self.timestamp),
            "event_type": self.event_type,
            "event_data": self.event_data,
            "metadata": self.metadata,
            "compliance": self.compliance,
            "severity": self.severity.value,
            "hash": self.hash,
            "encrypted": self.encrypted,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "AuditLogEntry":
        return cls(
            id=doc["id"],
            timestamp=_as_datetime(doc["timestamp"]),
            event_type=doc["event_type"],
            event_data=doc.get("event_data"),
            metadata=dict(doc.get("metadata") or {}),
            compliance=doc.get("compliance"),
            severity=Severity.parse(doc.get("severity")),
            hash=doc.get("hash", ""),
            encrypted=bool(doc.get("encrypted", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible view for API responses."""
        doc = self.to_document()
        doc["timestamp"] = utc_isoformat(self.timestamp)
        return doc


@dataclass
class ViolationRecord:
    """Policy violation linked to the audit entry it was found in."""

    audit_log_id: str
    event_type: str
    score: float
    severity: Severity
    violations: list[dict[str, Any]] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utcnow)
    source_ip: Optional[str] = None
    user_id: Optional[str] = None
    investigation_status: InvestigationStatus = InvestigationStatus.PENDING
    status_updated_at: Optional[datetime] = None

    def transition(self, status: InvestigationStatus) -> None:
        """
        Move the investigation forward.

        Raises:
            InvalidStatusTransition: If the move is not pending->reviewed,
                pending->closed or reviewed->closed
        """
        status = InvestigationStatus(status)
        if status not in ALLOWED_TRANSITIONS[self.investigation_status]:
            raise InvalidStatusTransition(
                f"Cannot move violation {self.id} from "
                f"{self.investigation_status.value} to {status.value}"
            )
        self.investigation_status = status
        self.status_updated_at = utcnow()

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "audit_log_id": self.audit_log_id,
            "timestamp": ensure_utc(self.timestamp),
            "event_type": self.event_type,
            "score": self.score,
            "severity": self.severity.value,
            "violations": self.violations,
            "source_ip": self.source_ip,
            "user_id": self.user_id,
            "investigation_status": self.investigation_status.value,
            "status_updated_at": self.status_updated_at,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "ViolationRecord":
        updated = doc.get("status_updated_at")
        return cls(
            id=doc["id"],
            audit_log_id=doc["audit_log_id"],
            timestamp=_as_datetime(doc["timestamp"]),
            event_type=doc.get("event_type", ""),
            score=float(doc.get("score", 0.0)),
            severity=Severity.parse(doc.get("severity")),
            violations=list(doc.get("violations") or []),
            source_ip=doc.get("source_ip"),
            user_id=doc.get("user_id"),
            investigation_status=InvestigationStatus(
                doc.get("investigation_status", InvestigationStatus.PENDING.value)
            ),
            status_updated_at=_as_datetime(updated) if updated else None,
        )

    def to_dict(self) -> dict[str, Any]:
        doc = self.to_document()
        doc["timestamp"] = utc_isoformat(self.timestamp)
        doc["status_updated_at"] = (
            utc_isoformat(self.status_updated_at) if self.status_updated_at else None
        )
        return doc


@dataclass
class IntegrityReport:
    """Result of verifying one UTC day of audit entries."""

    date: date
    total_logs: int = 0
    valid_logs: int = 0
    invalid_logs: int = 0
    integrity_score: float = 100.0
    daily_checksum: str = ""
    invalid_ids: list[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=utcnow)

    @property
    def is_intact(self) -> bool:
        return self.invalid_logs == 0

    def to_document(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "total_logs": self.total_logs,
            "valid_logs": self.valid_logs,
            "invalid_logs": self.invalid_logs,
            "integrity_score": self.integrity_score,
            "daily_checksum": self.daily_checksum,
            "invalid_ids": list(self.invalid_ids),
            "checked_at": ensure_utc(self.checked_at),
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "IntegrityReport":
        day = doc["date"]
        if not isinstance(day, date):
            day = date.fromisoformat(str(day))
        return cls(
            date=day,
            total_logs=int(doc.get("total_logs", 0)),
            valid_logs=int(doc.get("valid_logs", 0)),
            invalid_logs=int(doc.get("invalid_logs", 0)),
            integrity_score=float(doc.get("integrity_score", 100.0)),
            daily_checksum=doc.get("daily_checksum", ""),
            invalid_ids=list(doc.get("invalid_ids") or []),
            checked_at=_as_datetime(doc.get("checked_at") or utcnow()),
        )

    def to_dict(self) -> dict[str, Any]:
        doc = self.to_document()
        doc["checked_at"] = utc_isoformat(self.checked_at)
        return doc


@dataclass
class CleanupCounts:
    """Rows removed per collection by a retention pass."""

    audit_logs: int = 0
    violations: int = 0
    integrity_reports: int = 0

    @property
    def total(self) -> int:
        return self.audit_logs + self.violations + self.integrity_reports

    def to_dict(self) -> dict[str, int]:
        return {
            "audit_logs": self.audit_logs,
            "violations": self.violations,
            "integrity_reports": self.integrity_reports,
            "total": self.total,
        }


@dataclass
class AuditSearchCriteria:
    """Filters for audit history queries. All filters are optional and ANDed."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None
    event_type: Optional[str] = None
    source_ip: Optional[str] = None
    user_id: Optional[str] = None
    severity: Optional[Severity] = None
    limit: int = 1000
