"""Request identifier and address helpers.

String request ids are parsed by one rule shared by every helper: a ``0x``
prefix means hex, exactly 64 hex characters is the canonical fixed-width form
(also hex), and anything else is a decimal rendering.
"""

from __future__ import annotations

import re
from typing import Union

ZERO_ADDRESS = "0x" + "0" * 40

RequestIdLike = Union[int, str, bytes]

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_HEX_RE = re.compile(r"[0-9a-f]*")
_CANONICAL_LENGTH = 64


def _request_id_value(request_id: RequestIdLike) -> int:
    if isinstance(request_id, (bytes, bytearray)):
        if len(request_id) > 32:
            raise ValueError(f"request id longer than 32 bytes: {len(request_id)}")
        return int.from_bytes(bytes(request_id), "big")
    if isinstance(request_id, int):
        value = request_id
    else:
        text = str(request_id).strip().lower()
        if text.startswith("0x"):
            digits, base = text[2:], 16
        elif len(text) == _CANONICAL_LENGTH:
            digits, base = text, 16
        else:
            digits, base = text, 10
        if not digits or (base == 16 and not _HEX_RE.fullmatch(digits)) or (base == 10 and not digits.isdigit()):
            raise ValueError(f"invalid request id: {request_id!r}")
        value = int(digits, base)
    if value < 0 or value >= 1 << 256:
        raise ValueError(f"request id out of range: {request_id!r}")
    return value


def normalize_request_id(request_id: RequestIdLike) -> str:
    """Return the canonical lowercase, unprefixed, 64 character hex form."""

    return request_id_to_bytes32(request_id).hex()


def request_id_to_bytes32(request_id: RequestIdLike) -> bytes:
    """Convert an int, decimal string, hex string or bytes to 32 bytes."""

    return _request_id_value(request_id).to_bytes(32, "big")


def request_id_to_int_str(request_id: RequestIdLike) -> str:
    """Decimal rendering used for display and content-store lookup paths."""

    return str(_request_id_value(request_id))


def looks_like_address(value: object) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


def is_zero_address(value: str) -> bool:
    return value.lower() == ZERO_ADDRESS


__all__ = [
    "RequestIdLike",
    "ZERO_ADDRESS",
    "is_zero_address",
    "looks_like_address",
    "normalize_request_id",
    "request_id_to_bytes32",
    "request_id_to_int_str",
]
