"""Secret encryption using AES-GCM.

Encrypts connection secrets (client secret, access/refresh tokens,
registration token) before they are written to the connections table.
Uses AES-256-GCM for authenticated encryption, with the connection name as
additional authenticated data so a value copied onto another connection
fails to decrypt.
"""

import base64
import os
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


ENCRYPTED_PREFIX = "enc:v1:"
NONCE_SIZE = 12


def generate_encryption_key() -> str:
    """Generate a new 256-bit encryption key.

    Returns:
        Base64-encoded 32-byte key suitable for AES-256
    """
    return base64.b64encode(secrets.token_bytes(32)).decode("utf-8")


class SecretCipher:
    """AES-256-GCM encryption for individual secret fields.

    Stored format is ``enc:v1:<base64(nonce || ciphertext+tag)>``.

    Usage:
        cipher = SecretCipher(os.environ["TOKEN_ENCRYPTION_KEY"])
        stored = cipher.encrypt(access_token, context="default")
        access_token = cipher.decrypt(stored, context="default")
    """

    def __init__(self, encryption_key: str):
        """Initialize with base64-encoded encryption key.

        Args:
            encryption_key: Base64-encoded 32-byte key (from generate_encryption_key())
        """
        try:
            key = base64.b64decode(encryption_key)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid encryption key: {e}")
        if len(key) != 32:
            raise ValueError("Invalid encryption key: must be 32 bytes (256 bits)")

        self._aesgcm = AESGCM(key)

    @staticmethod
    def is_encrypted(value: Optional[str]) -> bool:
        return bool(value) and value.startswith(ENCRYPTED_PREFIX)

    def encrypt(self, value: str, context: str) -> str:
        """Encrypt a secret.

        Args:
            value: Plaintext secret
            context: Connection name, bound as additional authenticated data
        """
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, value.encode("utf-8"), context.encode("utf-8"))
        return ENCRYPTED_PREFIX + base64.b64encode(nonce + ciphertext).decode("utf-8")

    def decrypt(self, stored: str, context: str) -> str:
        """Decrypt a value produced by encrypt().

        Values without the encrypted prefix are returned unchanged, so a table
        written before a key was configured stays readable.

        Raises:
            ValueError: If decryption fails (wrong key, tampered data, wrong connection)
        """
        if not self.is_encrypted(stored):
            return stored

        try:
            raw = base64.b64decode(stored[len(ENCRYPTED_PREFIX):])
            nonce, ciphertext = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, context.encode("utf-8"))
        except (InvalidTag, ValueError) as e:
            raise ValueError(f"Secret decryption failed: {e!r}")

        return plaintext.decode("utf-8")
