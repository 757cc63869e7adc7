"""
Tests for hosting token encryption at rest.
"""

import base64

import pytest

from devrunner.crypto import (
    decrypt_secret,
    encrypt_secret,
    generate_secrets_key,
    is_encrypted,
    load_secrets_key,
)
from devrunner.errors import ConfigError, SecretDecryptionError

from conftest import SECRETS_KEY


@pytest.fixture
def key():
    return load_secrets_key(SECRETS_KEY)


class TestSecretsKey:
    def test_generated_key_is_32_bytes(self):
        assert len(load_secrets_key(generate_secrets_key())) == 32
        assert generate_secrets_key() != generate_secrets_key()

    @pytest.mark.parametrize("value", [None, "", "not base64!", base64.b64encode(b"short").decode()])
    def test_missing_or_malformed_key_is_a_config_error(self, value):
        with pytest.raises(ConfigError) as exc_info:
            load_secrets_key(value)
        assert exc_info.value.metadata == {"variable": "DEVRUNNER_SECRETS_KEY"}


class TestEncryptSecret:
    def test_ciphertext_hides_the_token(self, key):
        sealed = encrypt_secret("ghp_secret_token_value", key)
        assert "ghp_secret_token_value" not in sealed
        assert sealed.startswith("v1:")
        assert is_encrypted(sealed)
        assert decrypt_secret(sealed, key) == "ghp_secret_token_value"

    def test_same_token_never_repeats_a_ciphertext(self, key):
        assert encrypt_secret("nfp_token", key) != encrypt_secret("nfp_token", key)

    def test_unicode_and_empty_tokens(self, key):
        assert decrypt_secret(encrypt_secret("token-\U0001F600", key), key) == "token-\U0001F600"
        assert decrypt_secret(encrypt_secret("", key), key) == ""


class TestDecryptSecret:
    def test_plaintext_is_rejected(self, key):
        assert not is_encrypted("ghp_plain_token")
        with pytest.raises(SecretDecryptionError):
            decrypt_secret("ghp_plain_token", key)

    def test_tampered_ciphertext_is_rejected(self, key):
        prefix, nonce, ciphertext = encrypt_secret("ghp_token", key).split(":")
        raw = bytearray(base64.b64decode(ciphertext))
        raw[0] ^= 0xFF
        tampered = ":".join([prefix, nonce, base64.b64encode(bytes(raw)).decode()])
        with pytest.raises(SecretDecryptionError):
            decrypt_secret(tampered, key)

    def test_wrong_key_is_rejected(self, key):
        sealed = encrypt_secret("ghp_token", key)
        with pytest.raises(SecretDecryptionError) as exc_info:
            decrypt_secret(sealed, load_secrets_key(generate_secrets_key()))
        assert exc_info.value.category == "config"

    def test_bad_nonce_is_rejected(self, key):
        _, _, ciphertext = encrypt_secret("ghp_token", key).split(":")
        with pytest.raises(SecretDecryptionError):
            decrypt_secret(f"v1:{base64.b64encode(b'abc').decode()}:{ciphertext}", key)
