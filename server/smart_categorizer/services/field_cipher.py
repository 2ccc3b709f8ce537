"""
Field Encryption Service

Encrypts transaction descriptions before they are written to the feedback and
training tables, using Fernet symmetric encryption (AES 128 in CBC mode with
HMAC SHA256).

Key handling:
- CATEGORIZER_FIELD_KEY holds a urlsafe base64 Fernet key in production
- Without it a deterministic development key is derived with PBKDF2
- Errors never include the plaintext or ciphertext
"""

import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .. import config

logger = logging.getLogger(__name__)


class FieldCipherError(Exception):
    """Exception raised when field encryption/decryption fails"""
    pass


def derive_dev_key() -> bytes:
    """Deterministic development key, stable across restarts"""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"categorizer-dev-salt",
        iterations=100000,
    )
    return base64.urlsafe_b64encode(kdf.derive(b"categorizer-dev-field-key-change-in-production"))


class FieldCipher:
    """Fernet wrapper for description columns"""

    def __init__(self, key: Optional[str] = None):
        self._fernet = self._initialize_encryption(key)

    def _initialize_encryption(self, key: Optional[str]) -> Fernet:
        try:
            if key:
                logger.info("🔐 Using field encryption key from environment")
                return Fernet(key.encode("utf-8"))

            logger.warning("⚠️  CATEGORIZER_FIELD_KEY not set, using development key")
            return Fernet(derive_dev_key())

        except Exception as e:
            logger.error(f"Failed to initialize field encryption: {e}")
            raise FieldCipherError(f"Encryption setup failed: {e}")

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a field value

        Args:
            plaintext: Value to encrypt

        Returns:
            str: Fernet token

        Raises:
            FieldCipherError: If the value is empty or encryption fails
        """
        if not plaintext:
            raise FieldCipherError("Cannot encrypt empty value")

        try:
            return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")
        except Exception:
            logger.error("Failed to encrypt field value")
            raise FieldCipherError("Field encryption failed")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a field value

        Raises:
            FieldCipherError: If the value is empty, tampered or was encrypted with another key
        """
        if not ciphertext:
            raise FieldCipherError("Cannot decrypt empty value")

        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except Exception:
            logger.error("Failed to decrypt field value")
            raise FieldCipherError("Field decryption failed")


# Global instance for the application
_field_cipher = None


def get_field_cipher() -> FieldCipher:
    """Get the global field cipher, built from CATEGORIZER_FIELD_KEY"""
    global _field_cipher
    if _field_cipher is None:
        _field_cipher = FieldCipher(config.FIELD_KEY or None)
    return _field_cipher
