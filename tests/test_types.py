import pytest

from mech_client.types import (
    ZERO_ADDRESS,
    is_zero_address,
    looks_like_address,
    normalize_request_id,
    request_id_to_bytes32,
    request_id_to_int_str,
)


def test_normalize_request_id_strips_prefix_and_case():
    assert normalize_request_id("0xABC") == "0" * 61 + "abc"
    assert normalize_request_id("0" * 61 + "ABC") == normalize_request_id("0xabc")
    assert normalize_request_id(1) == "0" * 63 + "1"
    assert normalize_request_id(b"\x01") == "0" * 63 + "1"
    canonical = normalize_request_id("0x" + "ab" * 32)
    assert normalize_request_id(canonical) == canonical


def test_normalize_request_id_rejects_oversized_and_malformed_values():
    with pytest.raises(ValueError):
        normalize_request_id("0x" + "1" * 65)
    with pytest.raises(ValueError):
        normalize_request_id(b"\x00" * 33)
    with pytest.raises(ValueError):
        normalize_request_id("abc")
    with pytest.raises(ValueError):
        normalize_request_id("0x")


def test_request_id_to_bytes32_accepts_decimal_and_hex():
    expected = (10).to_bytes(32, "big")

    assert request_id_to_bytes32(10) == expected
    assert request_id_to_bytes32("10") == expected
    assert request_id_to_bytes32("0x0a") == expected
    with pytest.raises(ValueError):
        request_id_to_bytes32(-1)


@pytest.mark.parametrize(
    "request_id",
    ["42", "0x2a", "0X2A", 42, b"\x2a", "0" * 62 + "2a", "0x" + "ab" * 32, str(int("ab" * 32, 16))],
)
def test_helpers_agree_on_every_input_form(request_id):
    raw = request_id_to_bytes32(request_id)

    assert bytes.fromhex(normalize_request_id(request_id)) == raw
    assert request_id_to_int_str(request_id) == str(int.from_bytes(raw, "big"))


def test_request_id_to_int_str():
    assert request_id_to_int_str("0x0a") == "10"
    assert request_id_to_int_str("0" * 63 + "a") == "10"
    assert request_id_to_int_str("42") == "42"


def test_address_helpers():
    assert looks_like_address("0x" + "ab" * 20)
    assert not looks_like_address("0x1234")
    assert not looks_like_address(None)
    assert is_zero_address(ZERO_ADDRESS)
    assert not is_zero_address("0x" + "11" * 20)
