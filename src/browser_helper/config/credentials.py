"""
Credential Protection

API keys and OAuth tokens are persisted inside the settings document, so they
are sealed before they leave memory:
- AES-256-GCM encryption with a PBKDF2-derived key
- Integrity checksum verified before decryption
- Audit trail for credential changes
"""

import secrets
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .settings import Settings, get_settings

logger = structlog.get_logger(__name__)

NONCE_SIZE = 12
CHECKSUM_SIZE = 16


class CredentialError(Exception):
    """Raised when a sealed credential cannot be opened"""


class CredentialVault:
    """Seals and opens credential strings for storage"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._encryption_key = self._derive_encryption_key()
        self._audit_logger = structlog.get_logger("credential_audit")

    def _derive_encryption_key(self) -> bytes:
        """Derive encryption key from master key and salt"""
        master_key = self.settings.encryption.master_key.get_secret_value().encode()
        salt = self.settings.encryption.key_salt.get_secret_value().encode()

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.settings.encryption.pbkdf2_iterations,
        )

        return kdf.derive(master_key)

    @staticmethod
    def _checksum(data: bytes) -> str:
        digest = hashes.Hash(hashes.SHA256())
        digest.update(data)
        return digest.finalize().hex()[:CHECKSUM_SIZE]

    def _encrypt(self, value: str) -> Tuple[bytes, str]:
        aesgcm = AESGCM(self._encryption_key)
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = nonce + aesgcm.encrypt(nonce, value.encode(), None)
        return sealed, self._checksum(sealed)

    def seal(self, value: str) -> str:
        """Encrypt a credential into a storable string"""
        sealed, checksum = self._encrypt(value)
        return f"{checksum}:{sealed.hex()}"

    def open(self, sealed_value: str) -> str:
        """Decrypt a string produced by seal()"""
        try:
            checksum, payload_hex = sealed_value.split(":", 1)
            payload = bytes.fromhex(payload_hex)
        except (AttributeError, ValueError) as e:
            raise CredentialError("Malformed sealed credential") from e

        if self._checksum(payload) != checksum:
            raise CredentialError("Credential integrity check failed")

        aesgcm = AESGCM(self._encryption_key)
        try:
            plain = aesgcm.decrypt(payload[:NONCE_SIZE], payload[NONCE_SIZE:], None)
        except InvalidTag as e:
            raise CredentialError("Credential could not be decrypted with the current key") from e
        return plain.decode()

    def audit(self, event_type: str, event_data: Dict[str, Any]):
        """Log credential events for audit trail"""
        if not self.settings.audit.audit_enabled:
            return

        self._audit_logger.info(
            "Credential audit event",
            timestamp=datetime.now(timezone.utc).isoformat(),
            event_type=event_type,
            component="credential_vault",
            data=event_data,
        )
