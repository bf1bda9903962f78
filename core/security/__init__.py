"""Security module - encryption of connection secrets at rest."""

from core.security.encryption import (
    SecretCipher,
    generate_encryption_key,
)

__all__ = [
    "SecretCipher",
    "generate_encryption_key",
]
