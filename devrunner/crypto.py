"""
DevRunner Token Encryption

Hosting tokens are stored at rest as AES-256-GCM ciphertext:

    v1:<base64 nonce>:<base64 ciphertext+tag>

The key is 32 random bytes, base64 encoded in DEVRUNNER_SECRETS_KEY.
Generate one with `generate_secrets_key()`.
"""

import base64
import binascii
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from devrunner.errors import ConfigError, SecretDecryptionError

SECRETS_KEY_ENV = "DEVRUNNER_SECRETS_KEY"
SECRETS_KEY_BYTES = 32
NONCE_BYTES = 12
_PREFIX = "v1"
_DECRYPTION_ERROR_MESSAGE = "unable to decrypt stored token with DEVRUNNER_SECRETS_KEY"


def generate_secrets_key() -> str:
    return base64.b64encode(secrets.token_bytes(SECRETS_KEY_BYTES)).decode("ascii")


def load_secrets_key(encoded: Optional[str]) -> bytes:
    """Decode and validate the configured key. Missing or malformed keys are config errors."""
    if not encoded:
        raise ConfigError(
            f"{SECRETS_KEY_ENV} is required to store or read tokens", metadata={"variable": SECRETS_KEY_ENV}
        )
    try:
        key = base64.b64decode(encoded.encode("ascii"), validate=True)
    except (UnicodeEncodeError, binascii.Error, ValueError):
        raise ConfigError(f"{SECRETS_KEY_ENV} must be base64", metadata={"variable": SECRETS_KEY_ENV}) from None
    if len(key) != SECRETS_KEY_BYTES:
        raise ConfigError(
            f"{SECRETS_KEY_ENV} must decode to {SECRETS_KEY_BYTES} bytes, got {len(key)}",
            metadata={"variable": SECRETS_KEY_ENV},
        )
    return key


def is_encrypted(value: object) -> bool:
    if not isinstance(value, str):
        return False
    parts = value.split(":")
    return len(parts) == 3 and parts[0] == _PREFIX and all(parts[1:])


def encrypt_secret(plaintext: str, key: bytes) -> str:
    """Encrypt with a fresh random nonce, so equal tokens never share a ciphertext."""
    nonce = secrets.token_bytes(NONCE_BYTES)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return ":".join([_PREFIX, _encode(nonce), _encode(ciphertext)])


def decrypt_secret(token: str, key: bytes) -> str:
    if not is_encrypted(token):
        raise SecretDecryptionError(_DECRYPTION_ERROR_MESSAGE)
    _, nonce_b64, ciphertext_b64 = token.split(":")
    nonce = _decode(nonce_b64)
    if len(nonce) != NONCE_BYTES:
        raise SecretDecryptionError(_DECRYPTION_ERROR_MESSAGE)
    try:
        return AESGCM(key).decrypt(nonce, _decode(ciphertext_b64), None).decode("utf-8")
    except (InvalidTag, ValueError) as exc:
        raise SecretDecryptionError(_DECRYPTION_ERROR_MESSAGE) from exc


def _encode(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _decode(encoded: str) -> bytes:
    try:
        return base64.b64decode(encoded.encode("ascii"), validate=True)
    except (UnicodeEncodeError, binascii.Error, ValueError) as exc:
        raise SecretDecryptionError(_DECRYPTION_ERROR_MESSAGE) from exc
