"""
Tamper-evident audit trail.
"""

from vigil.audit.integrity import (
    canonical_json,
    compute_daily_checksum,
    compute_entry_hash,
    verify_entry,
)
from vigil.audit.trail import AuditTrail

__all__ = [
    "AuditTrail",
    "canonical_json",
    "compute_daily_checksum",
    "compute_entry_hash",
    "verify_entry",
]
