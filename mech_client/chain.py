"""Async adapter over a synchronous :class:`web3.Web3` connection.

Every blocking RPC is pushed to a worker thread with :func:`asyncio.to_thread`
so the polling loops stay cooperative. The submitter, delivery monitor and
Safe builder only rely on the method names below, which lets tests pass
lightweight fakes instead.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Union

from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware

from .config import MechConfig
from .errors import TransactionBuildError, TransactionSendError

LOGGER = logging.getLogger(__name__)

BlockId = Union[int, str]

_ALREADY_KNOWN_MARKERS = ("already known", "known transaction", "alreadyknown")


def _to_hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(value)


def _normalize_receipt(receipt: Any) -> Dict[str, Any]:
    payload = dict(receipt)
    if "transactionHash" in payload:
        payload["transactionHash"] = _to_hex(payload["transactionHash"])
    payload["logs"] = [_normalize_log(log) for log in payload.get("logs") or []]
    return payload


def _normalize_log(log: Any) -> Dict[str, Any]:
    payload = dict(log)
    payload["topics"] = [_to_hex(topic) for topic in payload.get("topics") or []]
    data = payload.get("data", b"")
    payload["data"] = Web3.to_bytes(hexstr=data) if isinstance(data, str) else bytes(data)
    if "transactionHash" in payload:
        payload["transactionHash"] = _to_hex(payload["transactionHash"])
    return payload


class Web3ChainClient:
    """Chain client used by the submitter, delivery monitor and Safe builder."""

    def __init__(self, web3: Web3, *, chain_id: Optional[int] = None) -> None:
        self.web3 = web3
        self._chain_id = chain_id

    @classmethod
    def from_config(cls, config: MechConfig, *, request_timeout: float = 30.0) -> "Web3ChainClient":
        web3 = Web3(Web3.HTTPProvider(config.rpc_url, request_kwargs={"timeout": request_timeout}))
        if config.ledger_config.poa_chain:
            web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        LOGGER.debug("Chain client initialized for %s (chain %s)", config.rpc_url, config.chain_id)
        return cls(web3, chain_id=config.chain_id)

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(self.web3.eth.chain_id)
        return self._chain_id

    def _contract(self, address: str, abi: Sequence[Dict[str, Any]]):
        return self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=list(abi))

    def encode(self, address: str, abi: Sequence[Dict[str, Any]], method: str, *args: Any) -> str:
        """ABI-encode ``method(*args)`` as 0x-prefixed calldata."""

        return self._contract(address, abi).encode_abi(method, args=list(args))

    async def call(self, address: str, abi: Sequence[Dict[str, Any]], method: str, *args: Any) -> Any:
        function = getattr(self._contract(address, abi).functions, method)
        return await asyncio.to_thread(function(*args).call)

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return int(await asyncio.to_thread(self.web3.eth.estimate_gas, tx))

    async def get_transaction_count(self, address: str, block: BlockId = "pending") -> int:
        checksum = Web3.to_checksum_address(address)
        return int(await asyncio.to_thread(self.web3.eth.get_transaction_count, checksum, block))

    async def get_block(self, block: BlockId = "latest") -> Dict[str, Any]:
        return dict(await asyncio.to_thread(self.web3.eth.get_block, block))

    async def get_max_priority_fee(self) -> int:
        return int(await asyncio.to_thread(lambda: self.web3.eth.max_priority_fee))

    async def get_gas_price(self) -> int:
        return int(await asyncio.to_thread(lambda: self.web3.eth.gas_price))

    async def sign(self, tx: Dict[str, Any], account: LocalAccount) -> bytes:
        try:
            signed = await asyncio.to_thread(account.sign_transaction, tx)
        except (TypeError, ValueError) as exc:
            raise TransactionBuildError(f"Unable to sign transaction: {exc}") from exc
        return bytes(signed.raw_transaction)

    async def send_signed(self, raw: bytes) -> str:
        try:
            tx_hash = await asyncio.to_thread(self.web3.eth.send_raw_transaction, raw)
        except (Web3Exception, ValueError) as exc:
            message = str(exc)
            known = _to_hex(Web3.keccak(raw)) if any(m in message.lower() for m in _ALREADY_KNOWN_MARKERS) else None
            raise TransactionSendError(message, transaction_hash=known) from exc
        return _to_hex(tx_hash)

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        try:
            receipt = await asyncio.to_thread(self.web3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        return _normalize_receipt(receipt)

    async def get_past_logs(
        self,
        address: str,
        topics: Sequence[Optional[str]],
        from_block: BlockId,
        to_block: BlockId = "latest",
    ) -> List[Dict[str, Any]]:
        params = {
            "address": Web3.to_checksum_address(address),
            "topics": list(topics),
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        logs = await asyncio.to_thread(self.web3.eth.get_logs, params)
        return [_normalize_log(log) for log in logs]


__all__ = ["BlockId", "Web3ChainClient"]
