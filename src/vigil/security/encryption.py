"""
Audit payload encryption for Vigil.

Event payloads are encrypted at rest with AES-256-GCM under a key
derived by HKDF from AUDIT_ENCRYPTION_KEY. The key is loaded once at
startup and injected into the audit trail; it is never regenerated
mid-process.

Stored form is an envelope:
    {"encrypted": true, "algorithm": "aes-256-gcm", "key_id": "<8 hex>",
     "data": "enc2:<base64(nonce || ciphertext || tag)>"}
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger(__name__)

# Constants
NONCE_SIZE = 12  # 96 bits for AES-GCM
KEY_SIZE = 32    # 256 bits for AES-256
ALGORITHM = "aes-256-gcm"
PREFIX = "enc2:"

# HKDF info strings for domain separation
HKDF_INFO = {
    "audit_encryption": b"vigil-audit-encryption-v1",
}


def derive_key(master_key: str, purpose: str = "audit_encryption") -> bytes:
    """
    Derive a 256-bit key from the configured master key using HKDF.

    Args:
        master_key: The master key string (from config)
        purpose: Key purpose for domain separation

    Returns:
        32-byte derived key
    """
    if purpose not in HKDF_INFO:
        raise ValueError(f"Unknown key purpose: {purpose}")

    # Fernet-style keys are urlsafe base64 of 32 bytes
    key_bytes = master_key.encode()
    if len(master_key) == 44 and master_key.endswith("="):
        try:
            key_bytes = base64.urlsafe_b64decode(master_key)
        except (binascii.Error, ValueError):
            key_bytes = master_key.encode()

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=HKDF_INFO[purpose],
    )
    return hkdf.derive(key_bytes)


class AuditEncryption:
    """
    Encrypts and decrypts audit event payloads using AES-256-GCM.

    Security properties:
    - Confidentiality: AES-256 encryption
    - Integrity: GCM authentication tag
    - Unique ciphertexts: Random nonce per encryption
    """

    def __init__(self, key: bytes):
        """
        Args:
            key: 32-byte derived key
        """
        if len(key) != KEY_SIZE:
            raise ValueError(f"Encryption key must be {KEY_SIZE} bytes")
        self._aesgcm = AESGCM(key)
        self.key_id = hashlib.sha256(key).hexdigest()[:8]

    @classmethod
    def from_master_key(cls, master_key: str) -> "AuditEncryption":
        if not master_key:
            raise ValueError("AUDIT_ENCRYPTION_KEY not configured")
        return cls(derive_key(master_key, "audit_encryption"))

    @staticmethod
    def is_envelope(value: Any) -> bool:
        """Check whether a stored payload is an encryption envelope."""
        return (
            isinstance(value, dict)
            and value.get("encrypted") is True
            and isinstance(value.get("data"), str)
            and value["data"].startswith(PREFIX)
        )

    def encrypt(self, payload: Any) -> dict[str, Any]:
        """
        Encrypt a JSON-serializable payload.

        Args:
            payload: Event data

        Returns:
            Encryption envelope
        """
        plaintext = json.dumps(payload, separators=(",", ":"), default=str)
        nonce = os.urandom(NONCE_SIZE)
        try:
            ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        except Exception as e:
            logger.error(f"Encryption failed: {type(e).__name__}")
            raise ValueError("Failed to encrypt audit payload") from e

        encoded = base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii")
        return {
            "encrypted": True,
            "algorithm": ALGORITHM,
            "key_id": self.key_id,
            "data": f"{PREFIX}{encoded}",
        }

    def decrypt(self, envelope: Any) -> Any:
        """
        Decrypt an envelope back to the plaintext payload.

        Non-envelope values are returned unchanged.

        Raises:
            ValueError: If the ciphertext is corrupt or was made with another key
        """
        if not self.is_envelope(envelope):
            return envelope

        try:
            combined = base64.urlsafe_b64decode(envelope["data"][len(PREFIX):])
            nonce, ciphertext = combined[:NONCE_SIZE], combined[NONCE_SIZE:]
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, None)
        except (InvalidTag, binascii.Error, ValueError) as e:
            logger.error(
                f"Decryption failed for key_id={envelope.get('key_id')}: {type(e).__name__}"
            )
            raise ValueError("Failed to decrypt audit payload") from e

        return json.loads(plaintext.decode("utf-8"))


def sign_payload(secret: str, body: bytes) -> str:
    """
    HMAC-SHA256 signature for an outbound webhook body.

    Returns:
        Signature in the form ``sha256=<hex>``
    """
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Constant-time comparison of a received webhook signature."""
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature)
