from __future__ import annotations

import base64

import pytest

from routerfleet.errors import ValidationError
from routerfleet.wireguard import KEY_BYTES, decode_key, derive_public_key, generate_key_pair, generate_private_key

# RFC 7748 section 6.1, Alice's key pair.
_RFC_PRIVATE = bytes.fromhex("77076d0a7318a57d3c16c17251b26645df4c2f87ebc0992ab177fba51db92c2a")
_RFC_PUBLIC = bytes.fromhex("8520f0098930a754748b7ddcb43ef75a0dbf3a0d26381af4eba4a98eaa9b4e6a")


def test_generated_pair_is_consistent() -> None:
    pair = generate_key_pair()

    assert len(decode_key(pair.private_key)) == KEY_BYTES
    assert len(decode_key(pair.public_key)) == KEY_BYTES
    assert derive_public_key(pair.private_key) == pair.public_key
    assert pair.private_key not in repr(pair)


def test_pairs_are_fresh() -> None:
    assert generate_key_pair() != generate_key_pair()
    assert generate_private_key() != generate_private_key()


def test_public_key_matches_reference_vector() -> None:
    private = base64.b64encode(_RFC_PRIVATE).decode("ascii")
    assert derive_public_key(private) == base64.b64encode(_RFC_PUBLIC).decode("ascii")


@pytest.mark.parametrize(
    "value",
    [
        "not base64 !!",
        base64.b64encode(b"k" * (KEY_BYTES - 1)).decode("ascii"),
        base64.b64encode(b"k" * (KEY_BYTES + 1)).decode("ascii"),
    ],
)
def test_malformed_keys_are_rejected(value: str) -> None:
    with pytest.raises(ValidationError):
        decode_key(value)
    with pytest.raises(ValidationError):
        derive_public_key(value)
