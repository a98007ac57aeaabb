"""Payment handling for the four marketplace payment types."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from web3 import Web3

from .abis import BALANCE_TRACKER_ABI, ERC20_ABI, ERC1155_ABI, NVM_BALANCE_TRACKER_ABI
from .errors import (
    ConfigurationError,
    InsufficientBalanceError,
    TransactionSubmissionError,
    UnsupportedPaymentTypeError,
)
from .submitter import SubmissionResult, TransactionCall, TransactionSubmitter

logger = logging.getLogger(__name__)

CHAIN_TO_PRICE_TOKEN: Dict[int, str] = {
    1: "0x0001A500A6B18995B03f44bb040A5fFc28E45CB0",
    10: "0xFC2E6e6BCbd49ccf3A5f029c79984372DcBFE527",
    100: "0xcE11e14225575945b8E6Dc0D4F2dD4C570f79d9f",
    137: "0xFEF5d947472e72Efbb2E388c730B7428406F2F95",
    8453: "0x54330d28ca3357F294334BDC454a032e7f353416",
    42220: "0xFEF5d947472e72Efbb2E388c730B7428406F2F95",
}


class PaymentType(Enum):
    """On-chain payment type identifiers reported by ``IMech.paymentType()``."""

    NATIVE = "ba699a34be8fe0e7725e93dcbce1701b0211a8ca61330aaeb8a05bf2ec7abed1"
    TOKEN = "3679d66ef546e66ce9057c4a052f317b135bc8e8c509638f7966edfd4fcf45e9"
    NATIVE_NVM = "803dd08fe79d91027fc9024e254a0942372b92f3ccabc1bd19f4a5c2b251c316"
    TOKEN_NVM = "0d6fd99afa9c4c580fab5e341922c2a5c4b61d880da60506193d7bf88944dd14"

    @classmethod
    def from_bytes32(cls, value: Union[bytes, bytearray, str]) -> "PaymentType":
        if isinstance(value, (bytes, bytearray)):
            key = bytes(value).hex()
        else:
            key = str(value).strip().lower()
            key = key[2:] if key.startswith("0x") else key
        try:
            return cls(key)
        except ValueError:
            expected = ", ".join(member.value for member in cls)
            raise UnsupportedPaymentTypeError(
                f"Invalid mech payment type 0x{key}; expected one of: {expected}",
                payment_type=key,
            ) from None

    @property
    def bytes32(self) -> bytes:
        return bytes.fromhex(self.value)

    @property
    def hex(self) -> str:
        return "0x" + self.value

    @property
    def is_nvm(self) -> bool:
        return self in (PaymentType.NATIVE_NVM, PaymentType.TOKEN_NVM)

    @property
    def label(self) -> str:
        return "token" if self in (PaymentType.TOKEN, PaymentType.TOKEN_NVM) else "native"


@dataclass(frozen=True, slots=True)
class PaymentContext:
    """Everything a payment handler needs for one request batch."""

    chain: Any
    submitter: TransactionSubmitter
    account: Any
    chain_id: int
    balance_tracker: str
    max_delivery_rate: int
    num_requests: int = 1
    use_prepaid: bool = False

    @property
    def total_price(self) -> int:
        return self.max_delivery_rate * self.num_requests


async def fetch_prepaid_balance(chain: Any, balance_tracker: str, requester: str) -> int:
    return int(await chain.call(balance_tracker, BALANCE_TRACKER_ABI, "mapRequesterBalances", requester))


async def fetch_nvm_balance(chain: Any, balance_tracker: str, requester: str) -> int:
    """Balance tracker credit plus the requester's ERC-1155 subscription balance."""

    tracker_balance = int(
        await chain.call(balance_tracker, NVM_BALANCE_TRACKER_ABI, "mapRequesterBalances", requester)
    )
    subscription_nft = await chain.call(balance_tracker, NVM_BALANCE_TRACKER_ABI, "subscriptionNFT")
    subscription_id = await chain.call(balance_tracker, NVM_BALANCE_TRACKER_ABI, "subscriptionTokenId")
    subscription_balance = int(await chain.call(subscription_nft, ERC1155_ABI, "balanceOf", requester, subscription_id))
    logger.info(
        "NVM balance for %s: tracker=%s subscription=%s",
        requester,
        tracker_balance,
        subscription_balance,
    )
    return tracker_balance + subscription_balance


async def _check_prepaid(ctx: PaymentContext, payment_type: PaymentType) -> int:
    requester = ctx.account.address
    balance = await fetch_prepaid_balance(ctx.chain, ctx.balance_tracker, requester)
    if balance < ctx.max_delivery_rate:
        raise InsufficientBalanceError(
            f"Insufficient {payment_type.label} deposited balance for {requester}. "
            f"Needed: {ctx.max_delivery_rate}, actual: {balance}. Use deposit-{payment_type.label} to add.",
            needed=ctx.max_delivery_rate,
            actual=balance,
            address=requester,
        )
    logger.info("Sender %s balance sufficient: %s", payment_type.label, balance)
    return 0


async def approve_price_tokens(ctx: PaymentContext, amount: int) -> Optional[SubmissionResult]:
    """Ensure the balance tracker may pull ``amount`` price tokens; ``None`` when it already can."""

    token = CHAIN_TO_PRICE_TOKEN.get(ctx.chain_id)
    if token is None:
        raise ConfigurationError(f"No price token configured for chain {ctx.chain_id}")
    owner = ctx.account.address
    spender = Web3.to_checksum_address(ctx.balance_tracker)
    allowance = int(await ctx.chain.call(token, ERC20_ABI, "allowance", owner, spender))
    if allowance >= amount:
        logger.info("Sufficient allowance already exists (%s >= %s)", allowance, amount)
        return None
    data = ctx.chain.encode(token, ERC20_ABI, "approve", spender, amount)
    result = await ctx.submitter.submit(TransactionCall(to=token, data=data), ctx.account)
    if result.status != "confirmed":
        raise TransactionSubmissionError(f"Price token approval {result.tx_hash} ended as {result.status}")
    logger.info("Approved %s price tokens for %s in %s", amount, ctx.balance_tracker, result.tx_hash)
    return result


async def _pay_native(ctx: PaymentContext) -> int:
    if ctx.use_prepaid:
        return await _check_prepaid(ctx, PaymentType.NATIVE)
    return ctx.total_price


async def _pay_token(ctx: PaymentContext) -> int:
    if ctx.use_prepaid:
        return await _check_prepaid(ctx, PaymentType.TOKEN)
    await approve_price_tokens(ctx, ctx.total_price)
    return 0


async def _pay_nvm(ctx: PaymentContext) -> int:
    requester = ctx.account.address
    balance = await fetch_nvm_balance(ctx.chain, ctx.balance_tracker, requester)
    if balance < ctx.total_price:
        raise InsufficientBalanceError(
            f"Insufficient Nevermined subscription balance for {requester}. "
            f"Needed: {ctx.total_price}, actual: {balance}.",
            needed=ctx.total_price,
            actual=balance,
            address=requester,
        )
    return 0


_HANDLERS: Dict[PaymentType, Callable[[PaymentContext], Awaitable[int]]] = {
    PaymentType.NATIVE: _pay_native,
    PaymentType.TOKEN: _pay_token,
    PaymentType.NATIVE_NVM: _pay_nvm,
    PaymentType.TOKEN_NVM: _pay_nvm,
}


async def prepare_payment(payment_type: PaymentType, ctx: PaymentContext) -> int:
    """Run the pre-flight checks for ``payment_type`` and return the value to attach."""

    value = await _HANDLERS[payment_type](ctx)
    logger.info("Payment type %s: attaching %s wei", payment_type.name, value)
    return value


__all__ = [
    "CHAIN_TO_PRICE_TOKEN",
    "PaymentContext",
    "PaymentType",
    "approve_price_tokens",
    "fetch_nvm_balance",
    "fetch_prepaid_balance",
    "prepare_payment",
]
