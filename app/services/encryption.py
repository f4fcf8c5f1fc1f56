"""
Field-level encryption for sensitive patient and order data
Values are AES-256-CBC encrypted with a random IV and stored as base64(iv + ciphertext)
"""

import base64
import binascii
import os
import re
import logging
from typing import Optional, Iterable

from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes
from Crypto.Util.Padding import pad, unpad

from app.utils.error_handler import EncryptionConfigError, EncryptionFallback

logger = logging.getLogger(__name__)

# Security configuration
ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY")
REQUIRE_ENCRYPTION = os.getenv("REQUIRE_ENCRYPTION", "false").lower() in ("1", "true", "yes")

SENSITIVE_FIELDS = ("patient_name", "patient_dob", "notes")

KEY_LENGTH = 32
BLOCK_SIZE = AES.block_size
BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")


class EncryptionGateway:
    """Encrypts and decrypts sensitive string fields"""

    def __init__(self, key: Optional[str] = None, required: bool = False):
        if key is None:
            if required:
                raise EncryptionConfigError("ENCRYPTION_KEY must be set when encryption is required")
            logger.warning("ENCRYPTION_KEY not set; sensitive fields will be stored unencrypted")
            self._key = None
            return

        key_bytes = key.encode("utf-8")
        if len(key_bytes) != KEY_LENGTH:
            raise EncryptionConfigError(f"ENCRYPTION_KEY must be exactly {KEY_LENGTH} bytes")
        self._key = key_bytes

    @classmethod
    def from_env(cls) -> "EncryptionGateway":
        return cls(ENCRYPTION_KEY or None, required=REQUIRE_ENCRYPTION)

    def is_encryption_configured(self) -> bool:
        return self._key is not None

    def encrypt(self, text: Optional[str]) -> Optional[str]:
        """Encrypt a value; empty values become None and values pass through when encryption is off"""
        if not text:
            return None
        if not self.is_encryption_configured():
            return text

        iv = get_random_bytes(BLOCK_SIZE)
        cipher = AES.new(self._key, AES.MODE_CBC, iv)
        ciphertext = cipher.encrypt(pad(str(text).encode("utf-8"), BLOCK_SIZE))
        return base64.b64encode(iv + ciphertext).decode("ascii")

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored value.

        Legacy plaintext written before encryption was enabled is returned unchanged,
        and so is anything that fails to decrypt; a warning is logged for the latter.
        """
        if not value:
            return None
        if not self.is_encryption_configured():
            return value
        if not BASE64_PATTERN.match(value):
            return value

        try:
            return self._decrypt_strict(value)
        except EncryptionFallback as e:
            logger.warning(f"Decryption failed for a value that appeared to be encrypted, returning it unchanged: {e}")
            return value

    def _decrypt_strict(self, value: str) -> str:
        try:
            raw = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncryptionFallback(f"not base64: {e}")

        if len(raw) < 2 * BLOCK_SIZE or len(raw) % BLOCK_SIZE:
            raise EncryptionFallback("wrong block length")

        iv, ciphertext = raw[:BLOCK_SIZE], raw[BLOCK_SIZE:]
        cipher = AES.new(self._key, AES.MODE_CBC, iv)
        try:
            return unpad(cipher.decrypt(ciphertext), BLOCK_SIZE).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise EncryptionFallback(str(e))

    def encrypt_fields(self, data: dict, fields: Iterable[str] = SENSITIVE_FIELDS) -> dict:
        """Return a copy of data with the given fields encrypted; empty ones become None"""
        result = dict(data)
        for field in fields:
            if field in result:
                value = result[field]
                result[field] = self.encrypt(str(value)) if value else None
        return result

    def decrypt_fields(self, data: dict, fields: Iterable[str] = SENSITIVE_FIELDS) -> dict:
        """Return a copy of data with the given fields decrypted; empty ones become None"""
        result = dict(data)
        for field in fields:
            if field in result:
                result[field] = self.decrypt(result[field])
        return result


_gateway: Optional[EncryptionGateway] = None


def get_encryption_gateway() -> EncryptionGateway:
    """Process-wide gateway built from the environment on first use"""
    global _gateway
    if _gateway is None:
        _gateway = EncryptionGateway.from_env()
    return _gateway
