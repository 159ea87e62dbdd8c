"""
Database repositories for the audit document store.

Repositories take an AsyncSession and translate between ORM rows and
domain records. SqlDocumentStore composes them behind the DocumentStore
interface, one session per operation.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import AsyncIterator, Optional

from sqlalchemy import delete, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from vigil.db.orm import AuditIntegrity, Base, PolicyViolation, SecurityAuditLog
from vigil.models.audit import (
    AuditLogEntry,
    AuditSearchCriteria,
    IntegrityReport,
    InvestigationStatus,
    ViolationRecord,
)
from vigil.models.severity import Severity
from vigil.utils import ensure_utc

logger = logging.getLogger(__name__)


def _entry_from_row(row: SecurityAuditLog) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        timestamp=ensure_utc(row.timestamp),
        event_type=row.event_type,
        event_data=row.event_data,
        metadata=dict(row.metadata_ or {}),
        compliance=row.compliance,
        severity=Severity.parse(row.severity),
        hash=row.entry_hash,
        encrypted=row.encrypted,
    )


def _violation_from_row(row: PolicyViolation) -> ViolationRecord:
    return ViolationRecord(
        id=row.id,
        audit_log_id=row.audit_log_id,
        timestamp=ensure_utc(row.timestamp),
        event_type=row.event_type,
        score=row.score,
        severity=Severity.parse(row.severity),
        violations=list(row.violations or []),
        source_ip=row.source_ip,
        user_id=row.user_id,
        investigation_status=InvestigationStatus(row.investigation_status),
        status_updated_at=ensure_utc(row.status_updated_at) if row.status_updated_at else None,
    )


def _report_from_row(row: AuditIntegrity) -> IntegrityReport:
    return IntegrityReport(
        date=row.report_date,
        total_logs=row.total_logs,
        valid_logs=row.valid_logs,
        invalid_logs=row.invalid_logs,
        integrity_score=row.integrity_score,
        daily_checksum=row.daily_checksum,
        invalid_ids=list(row.invalid_ids or []),
        checked_at=ensure_utc(row.checked_at),
    )


class AuditLogRepository:
    """Repository for security_audit_logs."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def bulk_insert(self, entries: list[AuditLogEntry]) -> None:
        """Insert a batch of entries in one flush."""
        self.session.add_all(
            SecurityAuditLog(
                id=e.id,
                timestamp=ensure_utc(e.timestamp),
                event_type=e.event_type,
                event_data=e.event_data,
                metadata_=e.metadata,
                compliance=e.compliance,
                severity=e.severity.value,
                entry_hash=e.hash,
                encrypted=e.encrypted,
                ip_address=e.source_ip,
                user_id=e.user_id,
            )
            for e in entries
        )
        await self.session.flush()

    async def search(self, criteria: AuditSearchCriteria) -> list[AuditLogEntry]:
        """Search entries, newest first."""
        stmt = select(SecurityAuditLog)

        if criteria.start:
            stmt = stmt.where(SecurityAuditLog.timestamp >= ensure_utc(criteria.start))
        if criteria.end:
            stmt = stmt.where(SecurityAuditLog.timestamp <= ensure_utc(criteria.end))
        if criteria.event_type:
            stmt = stmt.where(SecurityAuditLog.event_type == criteria.event_type)
        if criteria.source_ip:
            stmt = stmt.where(SecurityAuditLog.ip_address == criteria.source_ip)
        if criteria.user_id:
            stmt = stmt.where(SecurityAuditLog.user_id == criteria.user_id)
        if criteria.severity:
            stmt = stmt.where(SecurityAuditLog.severity == criteria.severity.value)

        stmt = stmt.order_by(
            SecurityAuditLog.timestamp.desc(), SecurityAuditLog.id.desc()
        ).limit(criteria.limit)
        result = await self.session.execute(stmt)
        return [_entry_from_row(row) for row in result.scalars().all()]

    async def between(self, start: datetime, end: datetime) -> list[AuditLogEntry]:
        """Entries in [start, end), oldest first."""
        result = await self.session.execute(
            select(SecurityAuditLog)
            .where(
                SecurityAuditLog.timestamp >= ensure_utc(start),
                SecurityAuditLog.timestamp < ensure_utc(end),
            )
            .order_by(SecurityAuditLog.timestamp.asc(), SecurityAuditLog.id.asc())
        )
        return [_entry_from_row(row) for row in result.scalars().all()]

    async def delete_before(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(SecurityAuditLog).where(SecurityAuditLog.timestamp < ensure_utc(cutoff))
        )
        return result.rowcount or 0


class ViolationRepository:
    """Repository for policy_violations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def bulk_insert(self, records: list[ViolationRecord]) -> None:
        self.session.add_all(
            PolicyViolation(
                id=r.id,
                audit_log_id=r.audit_log_id,
                timestamp=ensure_utc(r.timestamp),
                event_type=r.event_type,
                score=r.score,
                severity=r.severity.value,
                violations=r.violations,
                source_ip=r.source_ip,
                user_id=r.user_id,
                investigation_status=r.investigation_status.value,
                status_updated_at=r.status_updated_at,
            )
            for r in records
        )
        await self.session.flush()

    async def list_by_status(
        self, status: Optional[InvestigationStatus] = None, limit: int = 100
    ) -> list[ViolationRecord]:
        stmt = select(PolicyViolation)
        if status is not None:
            stmt = stmt.where(PolicyViolation.investigation_status == status.value)
        stmt = stmt.order_by(PolicyViolation.timestamp.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [_violation_from_row(row) for row in result.scalars().all()]

    async def get_by_id(self, violation_id: str) -> Optional[ViolationRecord]:
        result = await self.session.execute(
            select(PolicyViolation).where(PolicyViolation.id == violation_id)
        )
        row = result.scalar_one_or_none()
        return _violation_from_row(row) if row else None

    async def save_status(self, record: ViolationRecord) -> None:
        """Persist the status columns only; the rest of the row is immutable."""
        row = await self.session.get(PolicyViolation, record.id)
        if row is None:
            raise KeyError(record.id)
        row.investigation_status = record.investigation_status.value
        row.status_updated_at = record.status_updated_at
        await self.session.flush()

    async def delete_before(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(PolicyViolation).where(PolicyViolation.timestamp < ensure_utc(cutoff))
        )
        return result.rowcount or 0


class IntegrityRepository:
    """Repository for audit_integrity."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert(self, report: IntegrityReport) -> None:
        values = {
            "report_date": report.date,
            "total_logs": report.total_logs,
            "valid_logs": report.valid_logs,
            "invalid_logs": report.invalid_logs,
            "integrity_score": report.integrity_score,
            "daily_checksum": report.daily_checksum,
            "invalid_ids": list(report.invalid_ids),
            "checked_at": ensure_utc(report.checked_at),
        }
        if self.session.bind is not None and self.session.bind.dialect.name == "postgresql":
            stmt = pg_insert(AuditIntegrity).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[AuditIntegrity.report_date],
                set_={k: v for k, v in values.items() if k != "report_date"},
            )
            await self.session.execute(stmt)
        else:
            await self.session.merge(AuditIntegrity(**values))
        await self.session.flush()

    async def get(self, day: date) -> Optional[IntegrityReport]:
        row = await self.session.get(AuditIntegrity, day)
        return _report_from_row(row) if row else None

    async def delete_before(self, day: date) -> int:
        result = await self.session.execute(
            delete(AuditIntegrity).where(AuditIntegrity.report_date < day)
        )
        return result.rowcount or 0


class SqlDocumentStore:
    """DocumentStore backed by SQLAlchemy async sessions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: Optional[AsyncEngine] = None,
        timeout: float = 5.0,
    ):
        self._session_factory = session_factory
        self._engine = engine
        self._timeout = timeout

    async def create_schema(self) -> None:
        """Create tables if they do not exist."""
        if self._engine is None:
            return
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def _run(self, op):
        return await asyncio.wait_for(op, timeout=self._timeout)

    async def insert_audit_entries(self, entries: list[AuditLogEntry]) -> None:
        async def op():
            async with self._session() as session:
                await AuditLogRepository(session).bulk_insert(entries)

        await self._run(op())

    async def insert_violations(self, records: list[ViolationRecord]) -> None:
        async def op():
            async with self._session() as session:
                await ViolationRepository(session).bulk_insert(records)

        await self._run(op())

    async def find_audit_entries(self, criteria: AuditSearchCriteria) -> list[AuditLogEntry]:
        async def op():
            async with self._session() as session:
                return await AuditLogRepository(session).search(criteria)

        return await self._run(op())

    async def audit_entries_between(self, start: datetime, end: datetime) -> list[AuditLogEntry]:
        async def op():
            async with self._session() as session:
                return await AuditLogRepository(session).between(start, end)

        return await self._run(op())

    async def delete_audit_entries_before(self, cutoff: datetime) -> int:
        async def op():
            async with self._session() as session:
                return await AuditLogRepository(session).delete_before(cutoff)

        return await self._run(op())

    async def find_violations(
        self, status: Optional[InvestigationStatus] = None, limit: int = 100
    ) -> list[ViolationRecord]:
        async def op():
            async with self._session() as session:
                return await ViolationRepository(session).list_by_status(status, limit)

        return await self._run(op())

    async def get_violation(self, violation_id: str) -> Optional[ViolationRecord]:
        async def op():
            async with self._session() as session:
                return await ViolationRepository(session).get_by_id(violation_id)

        return await self._run(op())

    async def save_violation_status(self, record: ViolationRecord) -> None:
        async def op():
            async with self._session() as session:
                await ViolationRepository(session).save_status(record)

        await self._run(op())

    async def delete_violations_before(self, cutoff: datetime) -> int:
        async def op():
            async with self._session() as session:
                return await ViolationRepository(session).delete_before(cutoff)

        return await self._run(op())

    async def upsert_integrity_report(self, report: IntegrityReport) -> None:
        async def op():
            async with self._session() as session:
                await IntegrityRepository(session).upsert(report)

        await self._run(op())

    async def get_integrity_report(self, day: date) -> Optional[IntegrityReport]:
        async def op():
            async with self._session() as session:
                return await IntegrityRepository(session).get(day)

        return await self._run(op())

    async def delete_integrity_reports_before(self, day: date) -> int:
        async def op():
            async with self._session() as session:
                return await IntegrityRepository(session).delete_before(day)

        return await self._run(op())

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                await self._run(session.execute(text("SELECT 1")))
            return True
        except Exception as e:
            logger.warning(f"Document store ping failed: {e}")
            return False

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
