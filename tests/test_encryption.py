"""
Tests for token encryption at rest.
"""

import pytest
from cryptography.fernet import Fernet

from connectors.encryption import TokenCipher


class TestTokenCipher:
    def test_round_trip(self):
        cipher = TokenCipher(Fernet.generate_key().decode())

        ciphertext = cipher.encrypt("secret-token")

        assert cipher.enabled
        assert ciphertext != "secret-token"
        assert cipher.decrypt(ciphertext) == "secret-token"

    def test_disabled_without_key(self):
        cipher = TokenCipher("")

        assert not cipher.enabled
        assert cipher.encrypt("secret-token") == "secret-token"
        assert cipher.decrypt("secret-token") == "secret-token"

    def test_invalid_key_is_fatal(self):
        with pytest.raises(ValueError, match="TOKEN_ENCRYPTION_KEY"):
            TokenCipher("not-a-fernet-key")

    def test_legacy_plaintext_passes_through(self):
        cipher = TokenCipher(Fernet.generate_key().decode())
        assert cipher.decrypt("stored-before-encryption") == "stored-before-encryption"

    def test_optional_values(self):
        cipher = TokenCipher(Fernet.generate_key().decode())

        assert cipher.encrypt_optional(None) is None
        assert cipher.decrypt_optional(None) is None
        assert cipher.decrypt_optional(cipher.encrypt_optional("rt")) == "rt"
