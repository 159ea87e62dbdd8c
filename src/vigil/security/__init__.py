"""
Security primitives: audit payload encryption and webhook signing.
"""

from vigil.security.encryption import (
    AuditEncryption,
    derive_key,
    sign_payload,
    verify_signature,
)

__all__ = [
    "AuditEncryption",
    "derive_key",
    "sign_payload",
    "verify_signature",
]
