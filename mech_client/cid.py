"""Conversion between content-store identifiers and on-chain digests.

The marketplace contracts store the raw 32 byte sha2-256 digest of a request
or result. The content store hands out CIDs, either the legacy base58 form
(``Qm...``) or the multibase CIDv1 form (``bafy...``). This module strips the
CID framing down to the multihash and back.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

import multibase
import multicodec

from .errors import InvalidCidError, UnsupportedDigestError

SHA2_256_CODE = 0x12
SHA2_256_LENGTH = 32

CID_V1 = 0x01

GATEWAY_URL = "https://gateway.autonolas.tech/ipfs/"
# "f" base16 multibase, CIDv1, dag-pb, sha2-256, 32 bytes
CID_HEX_PREFIX = "f01701220"
IPFS_URL_TEMPLATE = GATEWAY_URL + CID_HEX_PREFIX + "{}"


@dataclass(frozen=True, slots=True)
class ContentDigest:
    """A sha2-256 multihash extracted from a CID."""

    digest: bytes
    function_code: int = SHA2_256_CODE
    length: int = SHA2_256_LENGTH

    def __post_init__(self) -> None:
        _check_multihash(self.function_code, self.length)
        if len(self.digest) != self.length:
            raise UnsupportedDigestError(
                f"Digest has {len(self.digest)} bytes, expected {self.length}",
                code=self.function_code,
                length=len(self.digest),
            )

    @property
    def hex(self) -> str:
        return "0x" + self.digest.hex()

    @property
    def bytes32(self) -> bytes:
        return self.digest


DigestLike = Union[ContentDigest, bytes, bytearray, str]


def _check_multihash(code: int, length: int) -> None:
    if code != SHA2_256_CODE or length != SHA2_256_LENGTH:
        raise UnsupportedDigestError(
            f"Unexpected multihash code/length: code=0x{code:02x} len={length}",
            code=code,
            length=length,
        )


_DECODE_ERRORS = (ValueError, TypeError, KeyError)


def _cid_bytes(cid: str) -> bytes:
    """Byte-decode ``cid``. Legacy ``Qm`` identifiers are bare base58btc multihashes."""

    if cid.startswith("Qm"):
        text = "z" + cid
    elif cid[0] in ("B", "F"):
        text = cid.lower()
    elif multibase.is_encoded(cid):
        text = cid
    else:
        text = "b" + cid.lower()
    try:
        return bytes(multibase.decode(text))
    except _DECODE_ERRORS as exc:
        raise InvalidCidError(f"Invalid CID {cid!r}: {exc}") from exc


def _strip_version(raw: bytes) -> bytes:
    return raw[1:] if raw[:1] == bytes([CID_V1]) else raw


def multihash_from_cid(cid: str) -> bytes:
    """Return the ``(code, length, digest)`` multihash bytes embedded in ``cid``."""

    cid = (cid or "").strip()
    if not cid:
        raise InvalidCidError("Empty CID")
    raw = _cid_bytes(cid)
    if cid.startswith("Qm"):
        multihash = raw
    else:
        try:
            multihash = multicodec.remove_prefix(_strip_version(raw))
        except _DECODE_ERRORS as exc:
            raise InvalidCidError(f"CID {cid!r} has no multicodec prefix: {exc}") from exc
        if not multihash:
            raise InvalidCidError("CID too short after skipping prefixes")
    if len(multihash) < 2 + SHA2_256_LENGTH:
        code = multihash[0] if multihash else -1
        length = multihash[1] if len(multihash) > 1 else 0
        _check_multihash(code, length)
        raise UnsupportedDigestError("Multihash too short", code=code, length=len(multihash) - 2)
    return multihash


def digest_from_cid(cid: str) -> ContentDigest:
    """Extract the 32 byte sha2-256 digest from a legacy or CIDv1 identifier."""

    multihash = multihash_from_cid(cid)
    code, length = multihash[0], multihash[1]
    _check_multihash(code, length)
    return ContentDigest(digest=bytes(multihash[2 : 2 + length]), function_code=code, length=length)


def cid_from_digest(digest: DigestLike) -> str:
    """Render ``digest`` as a base32 CIDv1 (dag-pb, sha2-256)."""

    multihash = bytes([SHA2_256_CODE, SHA2_256_LENGTH]) + digest_bytes(digest)
    payload = bytes([CID_V1]) + multicodec.add_prefix("dag-pb", multihash)
    return bytes(multibase.encode("base32", payload)).decode("ascii")


def cid_to_hex(cid: str) -> str:
    """Return the ``f01...`` base16 rendering (codec plus multihash) of ``cid``."""

    multihash = multihash_from_cid(cid)
    cid = cid.strip()
    if cid.startswith("Qm"):
        codec_and_hash = multicodec.add_prefix("dag-pb", multihash)
    else:
        codec_and_hash = _strip_version(_cid_bytes(cid))
    return f"f{CID_V1:02x}{codec_and_hash.hex()}"


def digest_bytes(digest: DigestLike) -> bytes:
    if isinstance(digest, ContentDigest):
        return digest.digest
    if isinstance(digest, (bytes, bytearray)):
        raw = bytes(digest)
    else:
        text = digest.strip()
        hex_text = text[2:] if text.lower().startswith("0x") else text
        if len(hex_text) == 2 * SHA2_256_LENGTH and all(c in "0123456789abcdefABCDEF" for c in hex_text):
            raw = bytes.fromhex(hex_text)
        else:
            return digest_from_cid(text).digest
    if len(raw) != SHA2_256_LENGTH:
        raise UnsupportedDigestError(
            f"Digest has {len(raw)} bytes, expected {SHA2_256_LENGTH}", code=SHA2_256_CODE, length=len(raw)
        )
    return raw


def cid_render_for_url(digest: DigestLike) -> str:
    """Format the gateway URL the content store serves ``digest`` under."""

    return IPFS_URL_TEMPLATE.format(digest_bytes(digest).hex())


def data_url_from_payload(payload: bytes) -> str:
    """Build the delivery URL from the raw bytes carried in a Deliver event."""

    return IPFS_URL_TEMPLATE.format(bytes(payload).hex())


__all__ = [
    "CID_HEX_PREFIX",
    "ContentDigest",
    "GATEWAY_URL",
    "IPFS_URL_TEMPLATE",
    "cid_from_digest",
    "cid_render_for_url",
    "cid_to_hex",
    "data_url_from_payload",
    "digest_bytes",
    "digest_from_cid",
    "multihash_from_cid",
]
