"""Curve25519 key material in the base64 form RouterOS and wg(8) exchange."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat

from routerfleet.errors import ValidationError

KEY_BYTES = 32


@dataclass(frozen=True)
class KeyPair:
    private_key: str = field(repr=False)
    public_key: str


def _encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def decode_key(value: str) -> bytes:
    try:
        raw = base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("wireguard key must be base64") from exc
    if len(raw) != KEY_BYTES:
        raise ValidationError(f"wireguard key must decode to {KEY_BYTES} bytes")
    return raw


def _public_of(private: X25519PrivateKey) -> str:
    return _encode(private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw))


def generate_key_pair() -> KeyPair:
    private = X25519PrivateKey.generate()
    raw_private = private.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
    return KeyPair(private_key=_encode(raw_private), public_key=_public_of(private))


def generate_private_key() -> str:
    return generate_key_pair().private_key


def derive_public_key(private_key: str) -> str:
    return _public_of(X25519PrivateKey.from_private_bytes(decode_key(private_key)))
