"""Unit tests for AES-GCM credential encryption."""

import base64
import json

import pytest

from infrastructure.encryption import CredentialEncryption, EncryptedEnvelope

KEY = "test-credential-key-32-chars-long-000"
CONTEXT = "integration_connection:1b6f2a9c-0000-4000-8000-000000000001"


class TestCredentialEncryption:
    """Test encryption bound to a connection context."""

    def test_decrypts_with_same_context(self):
        """Payload comes back unchanged."""
        encryptor = CredentialEncryption(KEY)
        stored = encryptor.encrypt({"access_token": "abc", "refresh_token": "def"}, CONTEXT).to_json()

        assert encryptor.decrypt_from_json(stored, CONTEXT) == {"access_token": "abc", "refresh_token": "def"}

    def test_nonce_is_fresh_per_encryption(self):
        encryptor = CredentialEncryption(KEY)
        first = encryptor.encrypt({"key": "k"}, CONTEXT)
        second = encryptor.encrypt({"key": "k"}, CONTEXT)

        assert first.nonce != second.nonce
        assert first.ciphertext != second.ciphertext

    def test_context_mismatch_rejected(self):
        """An envelope copied to another connection does not decrypt."""
        encryptor = CredentialEncryption(KEY)
        envelope = encryptor.encrypt({"key": "k"}, CONTEXT)

        with pytest.raises(ValueError, match="context mismatch"):
            encryptor.decrypt(envelope, "integration_connection:other")

    def test_rewritten_context_fails_authentication(self):
        """Editing the stored context does not bypass the associated data check."""
        encryptor = CredentialEncryption(KEY)
        envelope = encryptor.encrypt({"key": "k"}, CONTEXT)
        forged = EncryptedEnvelope(envelope.version, envelope.nonce, envelope.ciphertext, "integration_connection:other")

        with pytest.raises(ValueError, match="Decryption failed"):
            encryptor.decrypt(forged, "integration_connection:other")

    def test_tampered_ciphertext_rejected(self):
        encryptor = CredentialEncryption(KEY)
        envelope = encryptor.encrypt({"key": "k"}, CONTEXT)
        raw = bytearray(base64.b64decode(envelope.ciphertext))
        raw[0] ^= 0xFF
        tampered = EncryptedEnvelope(envelope.version, envelope.nonce, base64.b64encode(bytes(raw)).decode(), CONTEXT)

        with pytest.raises(ValueError, match="Decryption failed"):
            encryptor.decrypt(tampered, CONTEXT)

    def test_unsupported_version_rejected(self):
        encryptor = CredentialEncryption(KEY)
        stored = json.loads(encryptor.encrypt({"key": "k"}, CONTEXT).to_json())
        stored["v"] = 2

        with pytest.raises(ValueError, match="Unsupported encryption version: 2"):
            encryptor.decrypt_from_json(json.dumps(stored), CONTEXT)

    def test_key_defaults_to_settings(self):
        """The conftest environment provides CREDENTIAL_ENCRYPTION_KEY."""
        stored = CredentialEncryption(KEY).encrypt({"key": "k"}, CONTEXT).to_json()
        assert CredentialEncryption().decrypt_from_json(stored, CONTEXT) == {"key": "k"}
