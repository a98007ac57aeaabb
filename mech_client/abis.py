"""Minimal contract ABIs used by the client plus event helpers."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Sequence

from eth_abi import decode as abi_decode
from eth_utils import keccak

from .errors import MalformedLogError


def _fn(
    name: str,
    inputs: Sequence[tuple[str, str]],
    outputs: Sequence[tuple[str, str]] = (),
    *,
    mutability: str = "view",
) -> Dict[str, Any]:
    return {
        "inputs": [{"internalType": kind, "name": arg, "type": kind} for arg, kind in inputs],
        "name": name,
        "outputs": [{"internalType": kind, "name": arg, "type": kind} for arg, kind in outputs],
        "stateMutability": mutability,
        "type": "function",
    }


def _event(name: str, inputs: Sequence[tuple[str, str, bool]]) -> Dict[str, Any]:
    return {
        "anonymous": False,
        "inputs": [
            {"indexed": indexed, "internalType": kind, "name": arg, "type": kind} for arg, kind, indexed in inputs
        ],
        "name": name,
        "type": "event",
    }


_REQUEST_ARGS = [
    ("maxDeliveryRate", "uint256"),
    ("paymentType", "bytes32"),
    ("priorityMech", "address"),
    ("responseTimeout", "uint256"),
    ("paymentData", "bytes"),
]

MARKETPLACE_ABI: List[Dict[str, Any]] = [
    _fn("request", [("requestData", "bytes"), *_REQUEST_ARGS], [("requestId", "bytes32")], mutability="payable"),
    _fn(
        "requestBatch",
        [("requestDatas", "bytes[]"), *_REQUEST_ARGS],
        [("requestIds", "bytes32[]")],
        mutability="payable",
    ),
    _fn(
        "mapRequestIdInfos",
        [("requestId", "bytes32")],
        [
            ("priorityMech", "address"),
            ("deliveryMech", "address"),
            ("requester", "address"),
            ("responseTimeout", "uint256"),
            ("deliveryRate", "uint256"),
            ("paymentType", "bytes32"),
        ],
    ),
    _fn("mapPaymentTypeBalanceTrackers", [("paymentType", "bytes32")], [("balanceTracker", "address")]),
    _event(
        "MarketplaceRequest",
        [
            ("priorityMech", "address", True),
            ("requester", "address", True),
            ("numRequests", "uint256", False),
            ("requestIds", "bytes32[]", False),
            ("requestDatas", "bytes[]", False),
        ],
    ),
]

MECH_ABI: List[Dict[str, Any]] = [
    _fn("paymentType", [], [("paymentType", "bytes32")]),
    _fn("maxDeliveryRate", [], [("maxDeliveryRate", "uint256")]),
    _fn("serviceId", [], [("serviceId", "uint256")]),
    _event(
        "Deliver",
        [
            ("mech", "address", True),
            ("mechServiceMultisig", "address", True),
            ("requestId", "bytes32", False),
            ("deliveryRate", "uint256", False),
            ("data", "bytes", False),
        ],
    ),
]

AGENT_MECH_ABI: List[Dict[str, Any]] = [
    _fn(
        "deliverToMarketplace",
        [("requestIds", "bytes32[]"), ("datas", "bytes[]")],
        mutability="nonpayable",
    ),
]

_SAFE_TX_ARGS = [
    ("to", "address"),
    ("value", "uint256"),
    ("data", "bytes"),
    ("operation", "uint8"),
    ("safeTxGas", "uint256"),
    ("baseGas", "uint256"),
    ("gasPrice", "uint256"),
    ("gasToken", "address"),
    ("refundReceiver", "address"),
]

SAFE_ABI: List[Dict[str, Any]] = [
    _fn("nonce", [], [("nonce", "uint256")]),
    _fn("getTransactionHash", [*_SAFE_TX_ARGS, ("_nonce", "uint256")], [("txHash", "bytes32")]),
    _fn(
        "execTransaction",
        [*_SAFE_TX_ARGS, ("signatures", "bytes")],
        [("success", "bool")],
        mutability="payable",
    ),
]

BALANCE_TRACKER_ABI: List[Dict[str, Any]] = [
    _fn("mapRequesterBalances", [("requester", "address")], [("balance", "uint256")]),
]

NVM_BALANCE_TRACKER_ABI: List[Dict[str, Any]] = [
    *BALANCE_TRACKER_ABI,
    _fn("subscriptionNFT", [], [("subscriptionNFT", "address")]),
    _fn("subscriptionTokenId", [], [("subscriptionTokenId", "uint256")]),
]

ERC20_ABI: List[Dict[str, Any]] = [
    _fn("allowance", [("owner", "address"), ("spender", "address")], [("remaining", "uint256")]),
    _fn("approve", [("spender", "address"), ("amount", "uint256")], [("success", "bool")], mutability="nonpayable"),
    _fn("balanceOf", [("account", "address")], [("balance", "uint256")]),
]

ERC1155_ABI: List[Dict[str, Any]] = [
    _fn("balanceOf", [("account", "address"), ("id", "uint256")], [("balance", "uint256")]),
]


def _find_event(abi: Sequence[Dict[str, Any]], name: str) -> Dict[str, Any]:
    for item in abi:
        if item.get("type") == "event" and item.get("name") == name:
            return item
    raise KeyError(f"event {name} not found in ABI")


def event_signature(abi: Sequence[Dict[str, Any]], name: str) -> str:
    entry = _find_event(abi, name)
    types = ",".join(str(arg["type"]) for arg in entry.get("inputs", []))
    return f"{name}({types})"


def event_topic(abi: Sequence[Dict[str, Any]], name: str) -> str:
    """Return the 0x-prefixed keccak topic of event ``name``."""

    return "0x" + keccak(text=event_signature(abi, name)).hex()


def event_data_types(abi: Sequence[Dict[str, Any]], name: str) -> List[str]:
    entry = _find_event(abi, name)
    return [str(arg["type"]) for arg in entry.get("inputs", []) if not arg.get("indexed")]


def decode_event_data(abi: Sequence[Dict[str, Any]], name: str, data: bytes) -> tuple:
    """Decode the non-indexed fields of event ``name`` from raw log data."""

    return tuple(abi_decode(event_data_types(abi, name), bytes(data)))


def log_data_bytes(log: Mapping[str, Any]) -> bytes:
    """Return a log's ``data`` field as bytes, accepting hex strings."""

    data = log.get("data")
    if isinstance(data, str):
        text = data[2:] if data.startswith("0x") else data
        try:
            return bytes.fromhex(text)
        except ValueError as exc:
            raise MalformedLogError(f"log data is not hex: {exc}") from exc
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    raise MalformedLogError(f"log has no data payload: {type(data).__name__}")


__all__ = [
    "AGENT_MECH_ABI",
    "BALANCE_TRACKER_ABI",
    "ERC1155_ABI",
    "ERC20_ABI",
    "MARKETPLACE_ABI",
    "MECH_ABI",
    "NVM_BALANCE_TRACKER_ABI",
    "SAFE_ABI",
    "decode_event_data",
    "event_data_types",
    "event_signature",
    "event_topic",
    "log_data_bytes",
]
