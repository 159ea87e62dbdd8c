"""
Audit trail API routes.

Audit entries are read-only. The only write is moving a violation
record through its investigation states.
"""

from datetime import date, datetime
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from vigil.api.deps import Audit
from vigil.errors import InvalidStatusTransition
from vigil.models.audit import AuditSearchCriteria, InvestigationStatus
from vigil.models.severity import Severity
from vigil.utils import ensure_utc

router = APIRouter()


class ViolationStatusUpdate(BaseModel):
    """Request body for a violation status change."""

    status: InvestigationStatus


@router.get("/search")
async def search_audit(
    audit: Audit,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    event_type: Optional[str] = None,
    source_ip: Optional[str] = None,
    user_id: Optional[str] = None,
    severity: Optional[Severity] = None,
    limit: int = Query(100, ge=1, le=1000),
) -> dict[str, Any]:
    """
    Search audit history, newest first.

    Payloads are returned decrypted.
    """
    criteria = AuditSearchCriteria(
        start=ensure_utc(start) if start else None,
        end=ensure_utc(end) if end else None,
        event_type=event_type,
        source_ip=source_ip,
        user_id=user_id,
        severity=severity,
        limit=limit,
    )
    entries = await audit.search(criteria)
    return {"count": len(entries), "entries": [e.to_dict() for e in entries]}


@router.get("/violations")
async def list_violations(
    audit: Audit,
    investigation_status: Optional[InvestigationStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=1000),
) -> dict[str, Any]:
    records = await audit.list_violations(investigation_status, limit)
    return {"count": len(records), "violations": [r.to_dict() for r in records]}


@router.patch("/violations/{violation_id}")
async def update_violation(
    violation_id: str, body: ViolationStatusUpdate, audit: Audit
) -> dict[str, Any]:
    """Move a violation to reviewed or closed."""
    try:
        record = await audit.update_violation_status(violation_id, body.status)
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Violation not found")
    return record.to_dict()


@router.get("/integrity/{day}")
async def get_integrity_report(day: date, audit: Audit) -> dict[str, Any]:
    report = await audit.get_integrity_report(day)
    if report is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="No integrity report for this date"
        )
    return report.to_dict()
