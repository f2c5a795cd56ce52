"""Credential encryption using AES-256-GCM.

Provides encryption at rest for connection credentials (OAuth tokens,
API keys, SFTP passwords and private keys, EDI passwords).

Security considerations:
- Uses AES-256-GCM for authenticated encryption
- Derives the encryption key from CREDENTIAL_ENCRYPTION_KEY using HKDF
- Each encryption uses a unique random nonce
- The connection id is bound as associated data, so an envelope copied
  onto another connection row fails to decrypt
"""

import base64
import json
import os
from typing import Dict, Any, Optional
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from config import get_settings


@dataclass
class EncryptedEnvelope:
    """Encrypted credential container.

    Attributes:
        version: Encryption format version
        nonce: Base64-encoded nonce used for encryption
        ciphertext: Base64-encoded encrypted data
        context: Context string used as associated data
    """
    version: int
    nonce: str
    ciphertext: str
    context: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps({
            "v": self.version,
            "n": self.nonce,
            "c": self.ciphertext,
            "ctx": self.context
        })

    @classmethod
    def from_json(cls, data: str) -> "EncryptedEnvelope":
        parsed = json.loads(data)
        return cls(
            version=parsed["v"],
            nonce=parsed["n"],
            ciphertext=parsed["c"],
            context=parsed.get("ctx")
        )


class CredentialEncryption:
    """AES-256-GCM encryption for credential payloads.

    Example:
        encryptor = CredentialEncryption()
        envelope = encryptor.encrypt(
            {"access_token": "..."},
            context="integration_connection:abc-123",
        )
        stored = envelope.to_json()
        credential = encryptor.decrypt_from_json(stored, context="integration_connection:abc-123")
    """

    HKDF_INFO = b"integration-credential-encryption-v1"

    def __init__(self, key_material: Optional[str] = None):
        """Initialize encryptor.

        Args:
            key_material: Base key material. Defaults to CREDENTIAL_ENCRYPTION_KEY.
        """
        self._key_material = (key_material or get_settings().CREDENTIAL_ENCRYPTION_KEY).encode()
        self._key = self._derive_key()

    def _derive_key(self) -> bytes:
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=self.HKDF_INFO,
        )
        return hkdf.derive(self._key_material)

    def encrypt(self, payload: Dict[str, Any], context: str) -> EncryptedEnvelope:
        """Encrypt a credential dictionary bound to a context string.

        Args:
            payload: Serializable credential dictionary
            context: Associated data, must match during decryption

        Returns:
            EncryptedEnvelope with base64 nonce and ciphertext
        """
        plaintext = json.dumps(payload).encode()
        nonce = os.urandom(12)
        ciphertext = AESGCM(self._key).encrypt(nonce, plaintext, context.encode())

        return EncryptedEnvelope(
            version=1,
            nonce=base64.b64encode(nonce).decode(),
            ciphertext=base64.b64encode(ciphertext).decode(),
            context=context
        )

    def decrypt(self, envelope: EncryptedEnvelope, context: str) -> Dict[str, Any]:
        """Decrypt an envelope.

        Raises:
            ValueError: Unsupported version, context mismatch, wrong key or tampered data
        """
        if envelope.version != 1:
            raise ValueError(f"Unsupported encryption version: {envelope.version}")
        if envelope.context != context:
            raise ValueError("Credential envelope context mismatch")

        nonce = base64.b64decode(envelope.nonce)
        ciphertext = base64.b64decode(envelope.ciphertext)

        try:
            plaintext = AESGCM(self._key).decrypt(nonce, ciphertext, context.encode())
        except InvalidTag as e:
            raise ValueError("Decryption failed - invalid key or tampered data") from e

        return json.loads(plaintext.decode())

    def decrypt_from_json(self, json_data: str, context: str) -> Dict[str, Any]:
        return self.decrypt(EncryptedEnvelope.from_json(json_data), context)
