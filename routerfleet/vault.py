"""AES-256-GCM vault for node credentials at rest.

Stored blobs are ``base64(nonce[12] || tag[16] || ciphertext)``. A vault instance
holds the process-wide key; it is built once at startup and shared read-only by
every dispatch unit.
"""

from __future__ import annotations

import base64
import binascii
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from routerfleet.config import Settings
from routerfleet.errors import ConfigurationError, CredentialError
from routerfleet.logger import get_logger

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16

_logger = get_logger("vault")


def generate_key() -> str:
    """Return a fresh base64-encoded 256-bit key suitable for CREDENTIAL_KEY."""
    return base64.b64encode(secrets.token_bytes(KEY_BYTES)).decode("ascii")


def _decode_key(key_b64: str) -> bytes:
    if not key_b64 or not key_b64.strip():
        raise ConfigurationError(
            "Missing credential encryption key. Set CREDENTIAL_KEY "
            "(generate one with `routerfleet generate-key`)."
        )
    try:
        key = base64.b64decode(key_b64.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError("Invalid credential encryption key: not valid base64") from exc
    if len(key) != KEY_BYTES:
        raise ConfigurationError(
            f"Invalid credential encryption key length: expected {KEY_BYTES} bytes, got {len(key)}"
        )
    return key


class Vault:
    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_BYTES:
            raise ConfigurationError(
                f"Invalid credential encryption key length: expected {KEY_BYTES} bytes, got {len(key)}"
            )
        self._aead = AESGCM(key)

    @classmethod
    def from_base64(cls, key_b64: str) -> "Vault":
        return cls(_decode_key(key_b64))

    @classmethod
    def from_settings(cls, settings: Settings) -> "Vault":
        vault = cls.from_base64(settings.credential_key)
        _logger.info("vault.ready", "Loaded credential encryption key", key_bits=KEY_BYTES * 8)
        return vault

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if not plaintext:
            return None
        nonce = secrets.token_bytes(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag; stored layout puts it ahead of the ciphertext.
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: Optional[str]) -> Optional[str]:
        if not blob:
            return None
        try:
            combined = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CredentialError(CredentialError.INVALID_BASE64) from exc

        if len(combined) < NONCE_BYTES + TAG_BYTES:
            raise CredentialError(CredentialError.INVALID_FORMAT)

        nonce = combined[:NONCE_BYTES]
        tag = combined[NONCE_BYTES : NONCE_BYTES + TAG_BYTES]
        ciphertext = combined[NONCE_BYTES + TAG_BYTES :]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError) as exc:
            raise CredentialError(CredentialError.DECRYPTION_FAILED) from exc
