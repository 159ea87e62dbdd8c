"""
Integrity digests for audit entries.

The digest is SHA-256 over canonical JSON (sorted keys, compact
separators) of the entry's id, UTC timestamp, event type, stored event
data and metadata. Encrypted payloads are hashed in their stored form.
"""

import hashlib
import json
from typing import Any, Iterable

from vigil.models.audit import AuditLogEntry


def canonical_json(value: Any) -> str:
    """Deterministic JSON text used as digest input."""
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    )


def compute_entry_hash(entry: AuditLogEntry) -> str:
    """Hex SHA-256 of an entry's canonical fields."""
    return hashlib.sha256(canonical_json(entry.canonical_fields()).encode("utf-8")).hexdigest()


def verify_entry(entry: AuditLogEntry) -> bool:
    """True when the stored hash matches the recomputed digest."""
    return bool(entry.hash) and entry.hash == compute_entry_hash(entry)


def compute_daily_checksum(hashes: Iterable[str]) -> str:
    """
    Digest over a day's entry hashes.

    Args:
        hashes: Entry hashes in timestamp order
    """
    digest = hashlib.sha256()
    for entry_hash in hashes:
        digest.update(entry_hash.encode("ascii"))
    return digest.hexdigest()
