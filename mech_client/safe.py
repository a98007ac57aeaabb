"""Deliver mech results through a Gnosis Safe (v1.3.0) ``execTransaction``."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Optional, Tuple

from eth_account.messages import encode_defunct
from web3 import Web3

from .abis import AGENT_MECH_ABI, SAFE_ABI
from .cid import DigestLike, digest_bytes, digest_from_cid
from .errors import TransactionBuildError
from .submitter import MARKETPLACE_RETRY, SubmissionResult, TransactionCall, TransactionSubmitter
from .types import ZERO_ADDRESS, RequestIdLike, request_id_to_bytes32, request_id_to_int_str

logger = logging.getLogger(__name__)

# Safe's signature verifier treats v > 30 as an eth_sign (personal message) signature.
ETH_SIGN_V_OFFSET = 4


class SafeOperation(IntEnum):
    CALL = 0
    DELEGATE_CALL = 1


@dataclass(frozen=True, slots=True)
class MultisigCall:
    """A signed Safe transaction. Gas, fee and refund fields stay zero."""

    wallet: str
    to: str
    data: str
    nonce: int
    safe_tx_hash: bytes
    signature: bytes
    operation: SafeOperation = SafeOperation.CALL
    value: int = 0
    safe_tx_gas: int = 0
    base_gas: int = 0
    gas_price: int = 0
    gas_token: str = ZERO_ADDRESS
    refund_receiver: str = ZERO_ADDRESS

    def hash_args(self) -> Tuple[Any, ...]:
        return (
            self.to,
            self.value,
            Web3.to_bytes(hexstr=self.data),
            int(self.operation),
            self.safe_tx_gas,
            self.base_gas,
            self.gas_price,
            self.gas_token,
            self.refund_receiver,
        )


def sign_safe_hash(safe_tx_hash: bytes, account: Any) -> bytes:
    """Sign ``safe_tx_hash`` as a personal message and return ``r || s || v+4``."""

    try:
        signed = account.sign_message(encode_defunct(primitive=bytes(safe_tx_hash)))
    except (TypeError, ValueError) as exc:
        raise TransactionBuildError(f"Unable to sign Safe transaction hash: {exc}") from exc
    return (
        int(signed.r).to_bytes(32, "big")
        + int(signed.s).to_bytes(32, "big")
        + bytes([int(signed.v) + ETH_SIGN_V_OFFSET])
    )


class SafeDeliveryBuilder:
    """Builds ``deliverToMarketplace`` calls wrapped in a Safe meta-transaction."""

    def __init__(self, chain: Any) -> None:
        self.chain = chain

    def encode_delivery(self, target: str, request_id: RequestIdLike, result_digest: DigestLike) -> str:
        return self.chain.encode(
            target,
            AGENT_MECH_ABI,
            "deliverToMarketplace",
            [request_id_to_bytes32(request_id)],
            [digest_bytes(result_digest)],
        )

    async def build_delivery(
        self,
        request_id: RequestIdLike,
        result_digest: DigestLike,
        target: str,
        wallet: str,
        signer: Any,
    ) -> MultisigCall:
        to = Web3.to_checksum_address(target)
        wallet = Web3.to_checksum_address(wallet)
        data = self.encode_delivery(to, request_id, result_digest)
        # Read right before hashing: any other pending Safe transaction moves it.
        nonce = int(await self.chain.call(wallet, SAFE_ABI, "nonce"))
        unsigned = MultisigCall(wallet=wallet, to=to, data=data, nonce=nonce, safe_tx_hash=b"", signature=b"")
        safe_tx_hash = bytes(
            await self.chain.call(wallet, SAFE_ABI, "getTransactionHash", *unsigned.hash_args(), nonce)
        )
        logger.debug("Safe %s nonce %s tx hash 0x%s", wallet, nonce, safe_tx_hash.hex())
        return MultisigCall(
            wallet=wallet,
            to=to,
            data=data,
            nonce=nonce,
            safe_tx_hash=safe_tx_hash,
            signature=sign_safe_hash(safe_tx_hash, signer),
        )

    def exec_transaction_call(self, call: MultisigCall) -> TransactionCall:
        data = self.chain.encode(call.wallet, SAFE_ABI, "execTransaction", *call.hash_args(), call.signature)
        return TransactionCall(to=call.wallet, data=data, value=0)

    async def deliver(
        self,
        request_id: RequestIdLike,
        result_digest: DigestLike,
        target: str,
        wallet: str,
        signer: Any,
        submitter: TransactionSubmitter,
        *,
        wait: bool = True,
    ) -> SubmissionResult:
        call = await self.build_delivery(request_id, result_digest, target, wallet, signer)
        return await submitter.submit(
            self.exec_transaction_call(call), signer, wait=wait, retry_policy=MARKETPLACE_RETRY
        )


async def deliver_via_safe(
    ipfs: Any,
    builder: SafeDeliveryBuilder,
    submitter: TransactionSubmitter,
    *,
    request_id: RequestIdLike,
    result_content: Dict[str, Any],
    target: str,
    wallet: str,
    signer: Any,
    wait: bool = True,
    tx_url_template: Optional[str] = None,
) -> SubmissionResult:
    """Upload ``result_content``, then deliver its digest for ``request_id`` via ``wallet``."""

    filename = request_id_to_int_str(request_id)
    cid = await ipfs.upload_json(result_content, filename=filename, wrap_with_directory=True)
    logger.info("Uploaded result for request %s: %s%s", request_id, ipfs.gateway_url, cid)
    digest = digest_from_cid(cid)
    result = await builder.deliver(request_id, digest, target, wallet, signer, submitter, wait=wait)
    if tx_url_template:
        logger.info("Transaction: %s", tx_url_template.replace("{transaction_digest}", result.tx_hash))
    return result


__all__ = [
    "ETH_SIGN_V_OFFSET",
    "MultisigCall",
    "SafeDeliveryBuilder",
    "SafeOperation",
    "deliver_via_safe",
    "sign_safe_hash",
]
