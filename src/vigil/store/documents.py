"""
Document store interface for audit entries, violation records and
integrity reports, plus an in-process implementation.
"""

import copy
from datetime import date, datetime
from typing import Optional, Protocol

from vigil.models.audit import (
    AuditLogEntry,
    AuditSearchCriteria,
    IntegrityReport,
    InvestigationStatus,
    ViolationRecord,
)
from vigil.utils import ensure_utc


class DocumentStore(Protocol):
    """Indexed collections consumed by the audit trail."""

    async def insert_audit_entries(self, entries: list[AuditLogEntry]) -> None: ...

    async def insert_violations(self, records: list[ViolationRecord]) -> None: ...

    async def find_audit_entries(self, criteria: AuditSearchCriteria) -> list[AuditLogEntry]:
        """Entries matching all criteria, newest first, at most criteria.limit."""
        ...

    async def audit_entries_between(self, start: datetime, end: datetime) -> list[AuditLogEntry]:
        """Entries with start <= timestamp < end, oldest first."""
        ...

    async def delete_audit_entries_before(self, cutoff: datetime) -> int: ...

    async def find_violations(
        self, status: Optional[InvestigationStatus] = None, limit: int = 100
    ) -> list[ViolationRecord]: ...

    async def get_violation(self, violation_id: str) -> Optional[ViolationRecord]: ...

    async def save_violation_status(self, record: ViolationRecord) -> None: ...

    async def delete_violations_before(self, cutoff: datetime) -> int: ...

    async def upsert_integrity_report(self, report: IntegrityReport) -> None: ...

    async def get_integrity_report(self, day: date) -> Optional[IntegrityReport]: ...

    async def delete_integrity_reports_before(self, day: date) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def matches_criteria(entry: AuditLogEntry, criteria: AuditSearchCriteria) -> bool:
    """Evaluate search filters against an entry."""
    ts = ensure_utc(entry.timestamp)
    if criteria.start and ts < ensure_utc(criteria.start):
        return False
    if criteria.end and ts > ensure_utc(criteria.end):
        return False
    if criteria.event_type and entry.event_type != criteria.event_type:
        return False
    if criteria.source_ip and entry.source_ip != criteria.source_ip:
        return False
    if criteria.user_id and entry.user_id != criteria.user_id:
        return False
    if criteria.severity and entry.severity != criteria.severity:
        return False
    return True


class MemoryDocumentStore:
    """
    DocumentStore kept in dictionaries.

    Records are stored as documents and rebuilt on read, so callers see
    the same copy semantics a real database gives them.
    """

    def __init__(self):
        self.audit_logs: dict[str, dict] = {}
        self.violations: dict[str, dict] = {}
        self.integrity_reports: dict[str, dict] = {}

    async def insert_audit_entries(self, entries: list[AuditLogEntry]) -> None:
        for entry in entries:
            if entry.id in self.audit_logs:
                raise ValueError(f"Duplicate audit entry id {entry.id}")
        for entry in entries:
            self.audit_logs[entry.id] = copy.deepcopy(entry.to_document())

    async def insert_violations(self, records: list[ViolationRecord]) -> None:
        for record in records:
            self.violations[record.id] = copy.deepcopy(record.to_document())

    def _entries(self) -> list[AuditLogEntry]:
        return [AuditLogEntry.from_document(copy.deepcopy(d)) for d in self.audit_logs.values()]

    async def find_audit_entries(self, criteria: AuditSearchCriteria) -> list[AuditLogEntry]:
        found = [e for e in self._entries() if matches_criteria(e, criteria)]
        found.sort(key=lambda e: (e.timestamp, e.id), reverse=True)
        return found[: criteria.limit]

    async def audit_entries_between(self, start: datetime, end: datetime) -> list[AuditLogEntry]:
        start, end = ensure_utc(start), ensure_utc(end)
        found = [e for e in self._entries() if start <= e.timestamp < end]
        found.sort(key=lambda e: (e.timestamp, e.id))
        return found

    async def delete_audit_entries_before(self, cutoff: datetime) -> int:
        cutoff = ensure_utc(cutoff)
        stale = [k for k, d in self.audit_logs.items() if ensure_utc(d["timestamp"]) < cutoff]
        for key in stale:
            del self.audit_logs[key]
        return len(stale)

    async def find_violations(
        self, status: Optional[InvestigationStatus] = None, limit: int = 100
    ) -> list[ViolationRecord]:
        records = [ViolationRecord.from_document(copy.deepcopy(d)) for d in self.violations.values()]
        if status is not None:
            records = [r for r in records if r.investigation_status == status]
        records.sort(key=lambda r: (r.timestamp, r.id), reverse=True)
        return records[:limit]

    async def get_violation(self, violation_id: str) -> Optional[ViolationRecord]:
        doc = self.violations.get(violation_id)
        return ViolationRecord.from_document(copy.deepcopy(doc)) if doc else None

    async def save_violation_status(self, record: ViolationRecord) -> None:
        doc = self.violations.get(record.id)
        if doc is None:
            raise KeyError(record.id)
        doc["investigation_status"] = record.investigation_status.value
        doc["status_updated_at"] = record.status_updated_at

    async def delete_violations_before(self, cutoff: datetime) -> int:
        cutoff = ensure_utc(cutoff)
        stale = [k for k, d in self.violations.items() if ensure_utc(d["timestamp"]) < cutoff]
        for key in stale:
            del self.violations[key]
        return len(stale)

    async def upsert_integrity_report(self, report: IntegrityReport) -> None:
        self.integrity_reports[report.date.isoformat()] = copy.deepcopy(report.to_document())

    async def get_integrity_report(self, day: date) -> Optional[IntegrityReport]:
        doc = self.integrity_reports.get(day.isoformat())
        return IntegrityReport.from_document(copy.deepcopy(doc)) if doc else None

    async def delete_integrity_reports_before(self, day: date) -> int:
        stale = [k for k in self.integrity_reports if date.fromisoformat(k) < day]
        for key in stale:
            del self.integrity_reports[key]
        return len(stale)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
