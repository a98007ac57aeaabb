import hashlib

import multibase
import pytest

from mech_client.cid import (
    ContentDigest,
    cid_from_digest,
    cid_render_for_url,
    cid_to_hex,
    digest_from_cid,
)
from mech_client.errors import InvalidCidError, UnsupportedDigestError

DIGEST = hashlib.sha256(b"mech request").digest()


def _legacy_cid(multihash: bytes) -> str:
    return bytes(multibase.encode("base58btc", multihash)).decode()[1:]


def test_cid_round_trip_preserves_digest():
    cid = cid_from_digest(DIGEST)

    assert cid.startswith("bafybei")
    assert digest_from_cid(cid).digest == DIGEST
    assert cid_from_digest(digest_from_cid(cid)) == cid


def test_legacy_base58_cid_decodes_to_digest():
    legacy = _legacy_cid(bytes([0x12, 0x20]) + DIGEST)
    assert legacy.startswith("Qm")

    digest = digest_from_cid(legacy)

    assert digest == ContentDigest(digest=DIGEST)
    assert digest.hex == "0x" + DIGEST.hex()
    assert digest.bytes32 == DIGEST


def test_base16_and_uppercase_base32_forms_are_accepted():
    assert digest_from_cid("f01701220" + DIGEST.hex()).digest == DIGEST
    assert digest_from_cid("B" + cid_from_digest(DIGEST)[1:].upper()).digest == DIGEST

def test_rejects_truncated_legacy_cid():
    legacy = _legacy_cid(bytes([0x12, 0x20]) + DIGEST)
    truncated = legacy[:-1]
    assert truncated.startswith("Qm")

    with pytest.raises(UnsupportedDigestError) as excinfo:
        digest_from_cid(truncated)
    assert excinfo.value.code != 0x12


def test_unprefixed_base58_is_not_read_as_legacy():
    other_hash = _legacy_cid(bytes([0x13, 0x20]) + DIGEST)
    assert not other_hash.startswith("Qm")

    with pytest.raises(InvalidCidError):
        digest_from_cid(other_hash)


def test_rejects_short_modern_multihash():
    short = bytes([0x01, 0x70, 0x12, 0x10]) + DIGEST[:16]
    with pytest.raises(UnsupportedDigestError) as excinfo:
        digest_from_cid("f" + short.hex())
    assert excinfo.value.length == 0x10


def test_invalid_cids_raise():
    with pytest.raises(InvalidCidError):
        digest_from_cid("")
    with pytest.raises(InvalidCidError):
        digest_from_cid("fnothex")


def test_content_digest_validates_length():
    with pytest.raises(UnsupportedDigestError):
        ContentDigest(digest=b"short")


def test_render_for_url_accepts_bytes_hex_and_cid():
    expected = "https://gateway.autonolas.tech/ipfs/f01701220" + DIGEST.hex()

    assert cid_render_for_url(DIGEST) == expected
    assert cid_render_for_url("0x" + DIGEST.hex()) == expected
    assert cid_render_for_url(DIGEST.hex()) == expected
    assert cid_render_for_url(cid_from_digest(DIGEST)) == expected


def test_cid_to_hex_renders_codec_and_multihash():
    assert cid_to_hex(cid_from_digest(DIGEST)) == "f01701220" + DIGEST.hex()
