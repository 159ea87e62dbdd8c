"""
Database module for Vigil.
"""

from vigil.db.orm import AuditIntegrity, Base, PolicyViolation, SecurityAuditLog
from vigil.db.repositories import (
    AuditLogRepository,
    IntegrityRepository,
    SqlDocumentStore,
    ViolationRepository,
)

__all__ = [
    "Base",
    "SecurityAuditLog",
    "PolicyViolation",
    "AuditIntegrity",
    "AuditLogRepository",
    "ViolationRepository",
    "IntegrityRepository",
    "SqlDocumentStore",
]
