"""Tests for token encryption at rest."""

import pytest

from connector_api.core.exceptions import TokenCipherError
from connector_api.core.token_cipher import TokenCipher


class TestTokenCipher:

    def test_encrypt_then_decrypt_returns_plaintext(self, cipher):
        ciphertext = cipher.encrypt("ya29.secret-access-token")
        assert ciphertext != "ya29.secret-access-token"
        assert cipher.decrypt(ciphertext) == "ya29.secret-access-token"

    def test_ciphertexts_differ_for_same_plaintext(self, cipher):
        assert cipher.encrypt("token") != cipher.encrypt("token")

    def test_missing_key_is_rejected(self):
        with pytest.raises(TokenCipherError, match="not configured"):
            TokenCipher(None)

    def test_malformed_key_is_rejected(self):
        with pytest.raises(TokenCipherError, match="Invalid"):
            TokenCipher("not-a-fernet-key")

    def test_decrypt_with_other_key_fails(self, cipher):
        other = TokenCipher(TokenCipher.generate_key())
        with pytest.raises(TokenCipherError):
            other.decrypt(cipher.encrypt("token"))

    def test_empty_values_are_rejected(self, cipher):
        with pytest.raises(TokenCipherError):
            cipher.encrypt("")
        with pytest.raises(TokenCipherError):
            cipher.decrypt("")
