"""Infrastructure encryption utilities."""

from .credential_encryption import CredentialEncryption, EncryptedEnvelope

__all__ = [
    "CredentialEncryption",
    "EncryptedEnvelope",
]
