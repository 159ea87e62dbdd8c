"""
SQLAlchemy models for the audit document store.

Three append-oriented tables:
- security_audit_logs: every processed event, hashed for tamper detection
- policy_violations: violation records linked to their audit entry
- audit_integrity: one verification report per UTC day

Payload columns use JSONB on PostgreSQL and generic JSON elsewhere.
"""

from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, Date, DateTime, Float, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from vigil.models.audit import InvestigationStatus

JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class SecurityAuditLog(Base):
    """
    Audit entry row.

    Never updated after insert. ``entry_hash`` covers id, timestamp,
    event type, stored event data and metadata; ip_address and user_id
    are denormalized from metadata for indexed search.
    """

    __tablename__ = "security_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_data: Mapped[Any] = mapped_column(JsonColumn, nullable=True)
    metadata_: Mapped[dict] = mapped_column("metadata", JsonColumn, nullable=False, default=dict)
    compliance: Mapped[Optional[dict]] = mapped_column(JsonColumn, nullable=True)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    encrypted: Mapped[bool] = mapped_column(Boolean, default=False)

    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    user_id: Mapped[Optional[str]] = mapped_column(String(255))

    __table_args__ = (
        Index("idx_sal_timestamp", "timestamp"),
        Index("idx_sal_event_type", "event_type"),
        Index("idx_sal_severity", "severity"),
        Index("idx_sal_ip", "ip_address"),
        Index("idx_sal_user", "user_id"),
    )


class PolicyViolation(Base):
    """Violation record. Only the investigation status columns change."""

    __tablename__ = "policy_violations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    audit_log_id: Mapped[str] = mapped_column(String(36), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    violations: Mapped[list] = mapped_column(JsonColumn, nullable=False, default=list)
    source_ip: Mapped[Optional[str]] = mapped_column(String(45))
    user_id: Mapped[Optional[str]] = mapped_column(String(255))
    investigation_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=InvestigationStatus.PENDING.value
    )
    status_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_pv_timestamp", "timestamp"),
        Index("idx_pv_audit_log", "audit_log_id"),
        Index("idx_pv_status", "investigation_status"),
    )


class AuditIntegrity(Base):
    """Daily integrity report, one row per date."""

    __tablename__ = "audit_integrity"

    report_date: Mapped[date] = mapped_column("date", Date, primary_key=True)
    total_logs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    valid_logs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    invalid_logs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    integrity_score: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)
    daily_checksum: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    invalid_ids: Mapped[list] = mapped_column(JsonColumn, nullable=False, default=list)
    checked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
