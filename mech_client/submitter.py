"""Fee pricing, signing and retrying submission of transactions."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Literal, Optional, Tuple

from web3 import Web3

from .errors import ReceiptTimeoutError, TransactionBuildError, TransactionSubmissionError
from .metrics import TX_ATTEMPTS_TOTAL, TX_SUBMISSIONS_TOTAL

LOGGER = logging.getLogger(__name__)

ReceiptStatus = Literal["submitted", "confirmed", "reverted", "unknown"]

DEFAULT_PRIORITY_FEE = 1_500_000_000
DEFAULT_GAS_FALLBACK = 500_000


@dataclass(frozen=True, slots=True)
class FeePolicy:
    """Type-2 pricing: ``max_fee = multiplier * base_fee + priority_fee``."""

    default_priority_fee: int = DEFAULT_PRIORITY_FEE
    base_fee_multiplier: int = 2


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: float = 3.0
    timeout: float = 300.0


SIMPLE_RETRY = RetryPolicy()
MARKETPLACE_RETRY = RetryPolicy(timeout=900.0)


@dataclass(frozen=True, slots=True)
class TransactionCall:
    """Unsigned call description: target, calldata and attached value."""

    to: str
    data: str
    value: int = 0


@dataclass(slots=True)
class SubmissionResult:
    tx_hash: str
    status: ReceiptStatus
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    attempts: int = 1
    receipt: Optional[Dict[str, Any]] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"hash": self.tx_hash, "status": self.status}
        if self.block_number is not None:
            payload["blockNumber"] = self.block_number
        if self.gas_used is not None:
            payload["gasUsed"] = self.gas_used
        return payload


def classify_receipt(receipt: Optional[Dict[str, Any]]) -> ReceiptStatus:
    if receipt is None:
        return "unknown"
    return "confirmed" if int(receipt.get("status", 0)) == 1 else "reverted"


def _accepted_hash(exc: BaseException) -> Tuple[Optional[str], Optional[Dict[str, Any]]]:
    """Return the hash (and receipt) a failed send still carries, if any."""

    receipt = getattr(exc, "receipt", None)
    if not isinstance(receipt, dict):
        receipt = None
    tx_hash = getattr(exc, "transaction_hash", None) or getattr(exc, "tx_hash", None)
    if tx_hash is None and receipt is not None:
        tx_hash = receipt.get("transactionHash")
    return (str(tx_hash) if tx_hash else None), receipt


class TransactionSubmitter:
    """Builds, prices, signs and submits transactions with a bounded retry loop.

    Every attempt re-reads the *pending* nonce and a fresh fee quote, so a
    signed payload is never reused under a different nonce. A send failure
    that still exposes a transaction hash is treated as accepted and the
    outcome is read from the receipt instead of resubmitting.
    """

    def __init__(
        self,
        chain: Any,
        *,
        fee_policy: Optional[FeePolicy] = None,
        retry_policy: Optional[RetryPolicy] = None,
        gas_fallback: int = DEFAULT_GAS_FALLBACK,
        receipt_poll_interval: float = 3.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.chain = chain
        self.fee_policy = fee_policy or FeePolicy()
        self.retry_policy = retry_policy or SIMPLE_RETRY
        self.gas_fallback = gas_fallback
        self.receipt_poll_interval = receipt_poll_interval
        self._sleep = sleep
        self._clock = clock

    async def fee_fields(self) -> Dict[str, int]:
        block = await self.chain.get_block("latest")
        base_fee = block.get("baseFeePerGas")
        if base_fee is None:
            return {"gasPrice": int(await self.chain.get_gas_price())}
        try:
            priority_fee = int(await self.chain.get_max_priority_fee())
        except Exception as exc:
            LOGGER.warning("Priority fee lookup failed (%s); using %s wei", exc, self.fee_policy.default_priority_fee)
            priority_fee = self.fee_policy.default_priority_fee
        return {
            "maxFeePerGas": self.fee_policy.base_fee_multiplier * int(base_fee) + priority_fee,
            "maxPriorityFeePerGas": priority_fee,
        }

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        try:
            return int(await self.chain.estimate_gas(tx))
        except Exception as exc:
            LOGGER.warning("Gas estimation failed (%s); using fallback limit %s", exc, self.gas_fallback)
            return self.gas_fallback

    async def build_transaction(self, call: TransactionCall, sender: str) -> Dict[str, Any]:
        nonce = await self.chain.get_transaction_count(sender, "pending")
        tx: Dict[str, Any] = {
            "from": Web3.to_checksum_address(sender),
            "to": Web3.to_checksum_address(call.to),
            "data": call.data,
            "value": int(call.value),
            "nonce": int(nonce),
            "chainId": int(self.chain.chain_id),
        }
        tx.update(await self.fee_fields())
        tx["gas"] = await self.estimate_gas(dict(tx))
        return tx

    async def _wait_for_receipt(self, tx_hash: str, timeout: float) -> Dict[str, Any]:
        deadline = self._clock() + timeout
        while True:
            receipt = await self.chain.get_receipt(tx_hash)
            if receipt is not None:
                return receipt
            if self._clock() >= deadline:
                raise ReceiptTimeoutError(f"No receipt for {tx_hash} after {timeout}s", tx_hash=tx_hash)
            await self._sleep(self.receipt_poll_interval)

    def _finish(self, tx_hash: str, receipt: Optional[Dict[str, Any]], attempts: int) -> SubmissionResult:
        status = classify_receipt(receipt)
        TX_SUBMISSIONS_TOTAL.labels(status=status).inc()
        LOGGER.info("Transaction %s classified as %s", tx_hash, status)
        if receipt is None:
            return SubmissionResult(tx_hash=tx_hash, status=status, attempts=attempts)
        return SubmissionResult(
            tx_hash=tx_hash,
            status=status,
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
            attempts=attempts,
            receipt=receipt,
        )

    async def submit(
        self,
        call: TransactionCall,
        account: Any,
        *,
        wait: bool = True,
        retry_policy: Optional[RetryPolicy] = None,
        receipt_timeout: Optional[float] = None,
    ) -> SubmissionResult:
        """Submit ``call`` signed by ``account`` and optionally wait for its receipt."""

        policy = retry_policy or self.retry_policy
        deadline = self._clock() + policy.timeout
        attempts = 0
        last_error: Optional[BaseException] = None
        tx_hash: Optional[str] = None

        while attempts < policy.max_attempts:
            attempts += 1
            TX_ATTEMPTS_TOTAL.inc()
            try:
                tx = await self.build_transaction(call, account.address)
                raw = await self.chain.sign(tx, account)
                tx_hash = await self.chain.send_signed(raw)
                LOGGER.info("Transaction %s sent (attempt %s, nonce %s)", tx_hash, attempts, tx["nonce"])
                break
            except TransactionBuildError:
                LOGGER.error("Transaction to %s could not be built or signed", call.to)
                raise
            except Exception as exc:
                accepted, receipt = _accepted_hash(exc)
                if accepted is not None:
                    LOGGER.warning("Send reported %s but the node accepted %s", exc, accepted)
                    if receipt is not None:
                        return self._finish(accepted, receipt, attempts)
                    tx_hash = accepted
                    break
                last_error = exc
                if attempts >= policy.max_attempts or self._clock() + policy.backoff >= deadline:
                    break
                LOGGER.warning(
                    "Submission attempt %s/%s failed: %s; retrying in %ss",
                    attempts,
                    policy.max_attempts,
                    exc,
                    policy.backoff,
                )
                await self._sleep(policy.backoff)

        if tx_hash is None:
            TX_SUBMISSIONS_TOTAL.labels(status="failed").inc()
            LOGGER.error("Transaction to %s failed after %s attempts: %s", call.to, attempts, last_error)
            raise TransactionSubmissionError(
                f"Transaction failed after {attempts} attempts: {last_error}",
                last_error=last_error,
                attempts=attempts,
            ) from last_error

        if not wait:
            TX_SUBMISSIONS_TOTAL.labels(status="submitted").inc()
            return SubmissionResult(tx_hash=tx_hash, status="submitted", attempts=attempts)

        timeout = receipt_timeout if receipt_timeout is not None else max(0.0, deadline - self._clock())
        try:
            receipt = await self._wait_for_receipt(tx_hash, timeout)
        except ReceiptTimeoutError as exc:
            LOGGER.warning("%s", exc)
            receipt = None
        except Exception as exc:
            LOGGER.warning("Receipt lookup for %s failed: %s", tx_hash, exc)
            receipt = None
        return self._finish(tx_hash, receipt, attempts)


__all__ = [
    "DEFAULT_GAS_FALLBACK",
    "DEFAULT_PRIORITY_FEE",
    "FeePolicy",
    "MARKETPLACE_RETRY",
    "RetryPolicy",
    "SIMPLE_RETRY",
    "SubmissionResult",
    "TransactionCall",
    "TransactionSubmitter",
    "classify_receipt",
]
