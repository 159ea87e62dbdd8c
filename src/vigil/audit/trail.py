"""
Tamper-evident audit trail.

Every entry is hashed over its canonical fields when recorded, buffered
in memory and written to the document store in bulk, either when the
buffer reaches the batch size or when the scheduler calls flush().

Failure handling:
- A failed bulk write puts the batch back at the head of the buffer once;
  the next flush retries it. Entries are never duplicated.
- The buffer is capped; beyond the cap the oldest entries are dropped
  and counted.
- Flushes are serialized by a lock so two triggers never write the same
  batch concurrently.
- A size-triggered flush runs as a background task so record() never
  waits on the store. After a failed flush, size triggers are paused
  until an explicit flush() succeeds.
"""

import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Optional

from vigil.audit.integrity import compute_daily_checksum, compute_entry_hash, verify_entry
from vigil.errors import AuditStoreError
from vigil.models.audit import (
    AuditLogEntry,
    AuditSearchCriteria,
    CleanupCounts,
    IntegrityReport,
    InvestigationStatus,
    ViolationRecord,
)
from vigil.models.event import EVENT_TYPE_SEVERITY
from vigil.models.results import ComplianceResult
from vigil.models.severity import Severity
from vigil.security.encryption import AuditEncryption
from vigil.store.documents import DocumentStore
from vigil.utils import to_jsonable, utcnow

logger = logging.getLogger(__name__)

SOURCE_SYSTEM = "vigil"


class AuditTrail:
    """
    Buffered, hashed, optionally encrypted audit log.

    Usage:
        trail = AuditTrail(store, encryption=AuditEncryption.from_master_key(key))
        entry_id = await trail.record("security_event", {"path": "/"}, {"source_ip": ip})
        await trail.flush()
        report = await trail.verify_day(date.today())
    """

    def __init__(
        self,
        store: DocumentStore,
        encryption: Optional[AuditEncryption] = None,
        batch_size: int = 100,
        max_buffer_size: int = 10000,
        retention_days: int = 90,
        violation_retention_days: int = 180,
        integrity_retention_days: int = 365,
        search_limit: int = 1000,
        node_id: str = "primary",
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._encryption = encryption
        self.batch_size = batch_size
        self.max_buffer_size = max(max_buffer_size, batch_size)
        self.retention_days = retention_days
        self.violation_retention_days = violation_retention_days
        self.integrity_retention_days = integrity_retention_days
        self.search_limit = search_limit
        self._node_id = node_id
        self._clock = clock

        self._buffer: list[AuditLogEntry] = []
        self._violation_buffer: list[ViolationRecord] = []
        self._flush_lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_backoff = False

        self._stats = {
            "logs_written": 0,
            "logs_encrypted": 0,
            "logs_flushed": 0,
            "flush_failures": 0,
            "entries_dropped": 0,
            "violations_recorded": 0,
            "integrity_violations": 0,
            "last_flush": None,
        }

    @property
    def encryption_enabled(self) -> bool:
        return self._encryption is not None

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    def _build_metadata(self, metadata: Optional[dict[str, Any]]) -> dict[str, Any]:
        metadata = dict(metadata or {})
        return to_jsonable(
            {
                **metadata,
                "source_system": SOURCE_SYSTEM,
                "node_id": self._node_id,
                "session_id": metadata.get("session_id"),
                "user_id": metadata.get("user_id"),
                "source_ip": metadata.get("source_ip"),
                "user_agent": metadata.get("user_agent"),
            }
        )

    def _enforce_cap(self) -> None:
        overflow = len(self._buffer) - self.max_buffer_size
        if overflow > 0:
            del self._buffer[:overflow]
            self._stats["entries_dropped"] += overflow
            logger.warning(f"Audit buffer full, dropped {overflow} oldest entries")

    async def record(
        self,
        event_type: str,
        event_data: Any,
        metadata: Optional[dict[str, Any]] = None,
        compliance: Optional[ComplianceResult] = None,
        severity: Optional[Severity] = None,
    ) -> str:
        """
        Record an audit entry.

        Args:
            event_type: Audit event type
            event_data: Payload; encrypted at rest when encryption is enabled
            metadata: Context such as source_ip, user_id, session_id
            compliance: Compliance result; a violation record is written
                alongside the entry when it is non-compliant
            severity: Entry severity; derived from the event type when None

        Returns:
            The new entry's id
        """
        entry = AuditLogEntry(
            event_type=event_type,
            event_data=to_jsonable(event_data),
            timestamp=self._clock(),
            metadata=self._build_metadata(metadata),
            compliance=to_jsonable(compliance.to_dict()) if compliance else None,
            severity=severity or EVENT_TYPE_SEVERITY.get(event_type, Severity.MEDIUM),
        )

        if self._encryption is not None:
            entry.event_data = self._encryption.encrypt(entry.event_data)
            entry.encrypted = True
            self._stats["logs_encrypted"] += 1

        entry.hash = compute_entry_hash(entry)

        self._buffer.append(entry)
        self._enforce_cap()
        self._stats["logs_written"] += 1

        if compliance is not None and not compliance.compliant:
            self._record_violation(entry, compliance)

        logger.debug(f"Audit entry {entry.id} recorded: {event_type} ({entry.severity.value})")

        if len(self._buffer) >= self.batch_size:
            self._schedule_flush()

        return entry.id

    def _schedule_flush(self) -> None:
        if self._flush_backoff or self._flush_lock.locked():
            return
        if self._flush_task is not None and not self._flush_task.done():
            return
        self._flush_task = asyncio.create_task(self._flush_in_background())

    async def _flush_in_background(self) -> None:
        try:
            await self.flush()
        except AuditStoreError as e:
            logger.warning(f"Batch flush deferred until the next scheduled flush: {e}")

    async def settle(self) -> None:
        """Wait for a size-triggered flush that is still running."""
        task = self._flush_task
        if task is not None and not task.done():
            await asyncio.wait([task])

    def _record_violation(self, entry: AuditLogEntry, compliance: ComplianceResult) -> None:
        record = ViolationRecord(
            audit_log_id=entry.id,
            timestamp=entry.timestamp,
            event_type=entry.event_type,
            score=compliance.score,
            severity=Severity.highest(entry.severity, compliance.max_severity),
            violations=to_jsonable([v.to_dict() for v in compliance.violations]),
            source_ip=entry.source_ip,
            user_id=entry.user_id,
        )
        self._violation_buffer.append(record)
        self._stats["violations_recorded"] += 1
        logger.error(
            f"Policy violation recorded for audit entry {entry.id}: "
            f"{[v.principle for v in compliance.violations]} score={compliance.score:.2f}"
        )

    async def flush(self) -> int:
        """
        Write buffered entries and violation records to the store.

        Returns:
            Number of audit entries written

        Raises:
            AuditStoreError: If the store rejected the write; the batch is
                back in the buffer
        """
        async with self._flush_lock:
            if not self._buffer and not self._violation_buffer:
                return 0

            entries, self._buffer = self._buffer, []
            violations, self._violation_buffer = self._violation_buffer, []

            if entries:
                try:
                    await self._store.insert_audit_entries(entries)
                except Exception as e:
                    self._buffer = entries + self._buffer
                    self._violation_buffer = violations + self._violation_buffer
                    self._enforce_cap()
                    self._stats["flush_failures"] += 1
                    self._flush_backoff = True
                    logger.error(f"Audit flush of {len(entries)} entries failed: {e}")
                    raise AuditStoreError(f"Audit flush failed: {e}") from e
                self._stats["logs_flushed"] += len(entries)
                self._stats["last_flush"] = utcnow()

            if violations:
                try:
                    await self._store.insert_violations(violations)
                except Exception as e:
                    self._violation_buffer = violations + self._violation_buffer
                    self._stats["flush_failures"] += 1
                    self._flush_backoff = True
                    logger.error(f"Violation flush of {len(violations)} records failed: {e}")
                    raise AuditStoreError(f"Violation flush failed: {e}") from e

            self._flush_backoff = False
            logger.debug(f"Flushed {len(entries)} audit entries, {len(violations)} violations")
            return len(entries)

    async def verify_day(self, day: date) -> IntegrityReport:
        """
        Recompute the digest of every entry stored for a UTC day.

        The report is upserted, so re-running a day replaces its report.
        """
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        entries = await self._store.audit_entries_between(start, start + timedelta(days=1))

        invalid_ids = []
        for entry in entries:
            if not verify_entry(entry):
                invalid_ids.append(entry.id)
                logger.error(
                    f"Integrity violation detected: entry {entry.id} "
                    f"stored={entry.hash} expected={compute_entry_hash(entry)}"
                )

        total = len(entries)
        valid = total - len(invalid_ids)
        report = IntegrityReport(
            date=day,
            total_logs=total,
            valid_logs=valid,
            invalid_logs=len(invalid_ids),
            integrity_score=(valid / total * 100) if total else 100.0,
            daily_checksum=compute_daily_checksum(e.hash for e in entries),
            invalid_ids=invalid_ids,
        )
        await self._store.upsert_integrity_report(report)

        self._stats["integrity_violations"] += len(invalid_ids)
        logger.info(
            f"Integrity check for {day.isoformat()}: {valid}/{total} valid "
            f"(score {report.integrity_score:.2f})"
        )
        return report

    async def get_integrity_report(self, day: date) -> Optional[IntegrityReport]:
        return await self._store.get_integrity_report(day)

    def _decrypt(self, entry: AuditLogEntry) -> AuditLogEntry:
        if not entry.encrypted or self._encryption is None:
            return entry
        try:
            entry.event_data = self._encryption.decrypt(entry.event_data)
        except ValueError:
            logger.warning(f"Audit entry {entry.id} payload could not be decrypted")
        return entry

    async def search(self, criteria: AuditSearchCriteria) -> list[AuditLogEntry]:
        """
        Query stored entries, newest first, payloads decrypted.

        The result size never exceeds the configured search limit.
        """
        criteria.limit = max(1, min(criteria.limit, self.search_limit))
        entries = await self._store.find_audit_entries(criteria)
        return [self._decrypt(e) for e in entries]

    async def cleanup(self, cutoff: Optional[datetime] = None) -> CleanupCounts:
        """
        Delete records older than their retention window.

        Args:
            cutoff: Optional earlier cutoff; it is clamped so no collection
                loses records still inside its retention window

        Returns:
            Rows removed per collection
        """
        now = self._clock()
        audit_cutoff = now - timedelta(days=self.retention_days)
        violation_cutoff = now - timedelta(days=self.violation_retention_days)
        integrity_cutoff = (now - timedelta(days=self.integrity_retention_days)).date()

        if cutoff is not None:
            audit_cutoff = min(audit_cutoff, cutoff)
            violation_cutoff = min(violation_cutoff, cutoff)
            integrity_cutoff = min(integrity_cutoff, cutoff.date())

        counts = CleanupCounts(
            audit_logs=await self._store.delete_audit_entries_before(audit_cutoff),
            violations=await self._store.delete_violations_before(violation_cutoff),
            integrity_reports=await self._store.delete_integrity_reports_before(integrity_cutoff),
        )
        logger.info(f"Audit cleanup completed: {counts.to_dict()}")
        return counts

    async def list_violations(
        self, status: Optional[InvestigationStatus] = None, limit: int = 100
    ) -> list[ViolationRecord]:
        return await self._store.find_violations(status, min(limit, self.search_limit))

    async def update_violation_status(
        self, violation_id: str, status: InvestigationStatus
    ) -> Optional[ViolationRecord]:
        """
        Move a violation's investigation forward.

        Returns:
            Updated record, or None if no such violation is stored

        Raises:
            InvalidStatusTransition: If the move is not allowed
        """
        record = await self._store.get_violation(violation_id)
        if record is None:
            return None
        record.transition(status)
        await self._store.save_violation_status(record)
        logger.info(f"Violation {violation_id} moved to {record.investigation_status.value}")
        return record

    def stats(self) -> dict[str, Any]:
        last = self._stats["last_flush"]
        return {
            **self._stats,
            "last_flush": last.isoformat() if last else None,
            "buffer_size": len(self._buffer),
            "violation_buffer_size": len(self._violation_buffer),
            "encryption_enabled": self.encryption_enabled,
            "retention_days": self.retention_days,
        }

    async def close(self) -> None:
        """Final flush before the store connection closes."""
        await self.settle()
        await self.flush()
