"""End-to-end request flow against the Mech Marketplace contract."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from eth_abi.exceptions import DecodingError
from web3 import Web3

from .abis import MARKETPLACE_ABI, MECH_ABI, decode_event_data, event_topic, log_data_bytes
from .chain import Web3ChainClient
from .cid import GATEWAY_URL, digest_bytes
from .config import MechConfig
from .delivery import DeliveryMonitor, PollingDeliveryMonitor
from .errors import ConfigurationError, ContentStoreError, MalformedLogError, TransactionSubmissionError
from .ipfs import IPFSClient, push_json_to_ipfs, push_metadata_to_ipfs
from .payments import PaymentContext, PaymentType, fetch_nvm_balance, prepare_payment
from .submitter import MARKETPLACE_RETRY, RetryPolicy, SubmissionResult, TransactionCall, TransactionSubmitter
from .types import is_zero_address, normalize_request_id, request_id_to_int_str

logger = logging.getLogger(__name__)

DEFAULT_TOOL = "default-tool"
MARKETPLACE_REQUEST_TOPIC = event_topic(MARKETPLACE_ABI, "MarketplaceRequest")


def decode_marketplace_request_log(log: Mapping[str, Any]) -> List[str]:
    """Return the 0x-prefixed request ids carried by one ``MarketplaceRequest`` log."""

    data = log_data_bytes(log)
    try:
        _num_requests, ids, _datas = decode_event_data(MARKETPLACE_ABI, "MarketplaceRequest", data)
    except (DecodingError, ValueError, TypeError) as exc:
        raise MalformedLogError(f"cannot decode MarketplaceRequest payload: {exc}") from exc
    return ["0x" + bytes(request_id).hex() for request_id in ids]


@dataclass(frozen=True, slots=True)
class MechInfo:
    address: str
    payment_type: PaymentType
    service_id: int
    max_delivery_rate: int
    balance_tracker: str


@dataclass(slots=True)
class MarketplaceInteraction:
    """Outcome of :meth:`MarketplaceClient.interact`."""

    tx_hash: str
    tx_url: str
    request_ids: List[str]
    request_id_ints: List[str]
    data_urls: Dict[str, str] = field(default_factory=dict)
    results: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_hash": self.tx_hash,
            "transaction_url": self.tx_url,
            "request_ids": list(self.request_ids),
            "request_id_ints": list(self.request_id_ints),
            "data_urls": dict(self.data_urls),
            "results": list(self.results),
        }


class MarketplaceClient:
    """Posts requests to the marketplace and collects the delivered results."""

    def __init__(
        self,
        config: MechConfig,
        chain: Any,
        ipfs: IPFSClient,
        *,
        submitter: Optional[TransactionSubmitter] = None,
        monitor: Optional[DeliveryMonitor] = None,
    ) -> None:
        self.config = config
        self.marketplace_address = config.require_marketplace()
        self.chain = chain
        self.ipfs = ipfs
        self.submitter = submitter or TransactionSubmitter(
            chain, retry_policy=MARKETPLACE_RETRY, gas_fallback=config.gas_limit
        )
        self.monitor = monitor or PollingDeliveryMonitor(chain, self.marketplace_address)

    @classmethod
    def from_config(cls, config: MechConfig, **kwargs: Any) -> "MarketplaceClient":
        return cls(config, Web3ChainClient.from_config(config), IPFSClient(), **kwargs)

    async def fetch_mech_info(self, mech: str) -> MechInfo:
        raw_payment_type = await self.chain.call(mech, MECH_ABI, "paymentType")
        payment_type = PaymentType.from_bytes32(raw_payment_type)
        max_delivery_rate = int(await self.chain.call(mech, MECH_ABI, "maxDeliveryRate"))
        service_id = int(await self.chain.call(mech, MECH_ABI, "serviceId"))
        balance_tracker = await self.chain.call(
            self.marketplace_address,
            MARKETPLACE_ABI,
            "mapPaymentTypeBalanceTrackers",
            payment_type.bytes32,
        )
        info = MechInfo(
            address=mech,
            payment_type=payment_type,
            service_id=service_id,
            max_delivery_rate=max_delivery_rate,
            balance_tracker=str(balance_tracker),
        )
        logger.info(
            "Mech %s: payment type %s, max delivery rate %s, service %s",
            mech,
            payment_type.name,
            max_delivery_rate,
            service_id,
        )
        return info

    async def upload_requests(
        self,
        prompts: Sequence[str],
        tools: Sequence[str],
        *,
        extra_attributes: Optional[Dict[str, Any]] = None,
        ipfs_json_contents: Optional[Sequence[Optional[Dict[str, Any]]]] = None,
    ) -> List[str]:
        """Pin one metadata document per prompt and return their digests."""

        digests: List[str] = []
        for index, prompt in enumerate(prompts):
            json_content = None
            if ipfs_json_contents and index < len(ipfs_json_contents):
                json_content = ipfs_json_contents[index]
            if json_content:
                digest, cid = await push_json_to_ipfs(self.ipfs, json_content)
            else:
                tool = tools[index] if index < len(tools) else DEFAULT_TOOL
                digest, cid = await push_metadata_to_ipfs(self.ipfs, prompt, tool, extra_attributes)
            logger.info("Prompt uploaded: %s%s", GATEWAY_URL, cid)
            digests.append(digest)
        return digests

    def encode_request(
        self,
        digests: Sequence[str],
        mech_info: MechInfo,
        *,
        response_timeout: Optional[int] = None,
        payment_data: Optional[str] = None,
    ) -> str:
        args = (
            mech_info.max_delivery_rate,
            mech_info.payment_type.bytes32,
            Web3.to_checksum_address(mech_info.address),
            self.config.response_timeout if response_timeout is None else response_timeout,
            Web3.to_bytes(hexstr=payment_data or self.config.payment_data or "0x"),
        )
        raw_digests = [digest_bytes(digest) for digest in digests]
        if len(raw_digests) == 1:
            return self.chain.encode(self.marketplace_address, MARKETPLACE_ABI, "request", raw_digests[0], *args)
        return self.chain.encode(self.marketplace_address, MARKETPLACE_ABI, "requestBatch", raw_digests, *args)

    async def send_request(
        self,
        digests: Sequence[str],
        mech_info: MechInfo,
        value: int,
        account: Any,
        *,
        response_timeout: Optional[int] = None,
        payment_data: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> SubmissionResult:
        if not digests:
            raise ValueError("at least one request digest is required")
        data = self.encode_request(
            digests, mech_info, response_timeout=response_timeout, payment_data=payment_data
        )
        call = TransactionCall(to=self.marketplace_address, data=data, value=value)
        return await self.submitter.submit(call, account, retry_policy=retry_policy or MARKETPLACE_RETRY)

    def request_ids_from_receipt(self, receipt: Mapping[str, Any]) -> List[str]:
        """Return the 0x-prefixed request ids announced by ``MarketplaceRequest`` logs."""

        request_ids: List[str] = []
        for log in receipt.get("logs") or []:
            address = log.get("address")
            if address and str(address).lower() != self.marketplace_address.lower():
                continue
            topics = [str(topic).lower() for topic in log.get("topics") or []]
            if not topics or topics[0] != MARKETPLACE_REQUEST_TOPIC:
                continue
            try:
                request_ids.extend(decode_marketplace_request_log(log))
            except MalformedLogError as exc:
                logger.warning("Skipping malformed MarketplaceRequest log: %s", exc)
        return request_ids

    async def _fetch_results(self, request_ids: Sequence[str], data_urls: Mapping[str, str]) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        for request_id in request_ids:
            request_id_int = request_id_to_int_str(request_id)
            data_url = data_urls.get(normalize_request_id(request_id))
            if data_url is None:
                logger.info("No data received for request %s", request_id_int)
                results.append({"requestId": request_id_int, "data": None})
                continue
            logger.info("Data arrived: %s", data_url)
            try:
                data = await self.ipfs.fetch_json(f"{data_url}/{request_id_int}")
            except ContentStoreError as exc:
                logger.warning("Fetching result for request %s failed: %s", request_id_int, exc)
                results.append({"requestId": request_id_int, "error": str(exc)})
                continue
            results.append({"requestId": request_id_int, "data": data})
        return results

    async def interact(
        self,
        prompts: Sequence[str],
        priority_mech: str,
        account: Any,
        *,
        tools: Optional[Sequence[str]] = None,
        extra_attributes: Optional[Dict[str, Any]] = None,
        ipfs_json_contents: Optional[Sequence[Optional[Dict[str, Any]]]] = None,
        use_prepaid: bool = False,
        response_timeout: Optional[int] = None,
        timeout: Optional[float] = None,
        post_only: bool = False,
    ) -> MarketplaceInteraction:
        """Upload, pay for, submit and (unless ``post_only``) await a batch of requests."""

        if not prompts:
            raise ValueError("at least one prompt is required")
        if not priority_mech or is_zero_address(priority_mech):
            raise ConfigurationError("Priority mech address not provided")

        mech_info = await self.fetch_mech_info(priority_mech)
        logger.info("Verifying tools %s for service %s", list(tools or []), mech_info.service_id)
        payment = PaymentContext(
            chain=self.chain,
            submitter=self.submitter,
            account=account,
            chain_id=self.config.chain_id,
            balance_tracker=mech_info.balance_tracker,
            max_delivery_rate=mech_info.max_delivery_rate,
            num_requests=len(prompts),
            use_prepaid=use_prepaid,
        )
        value = await prepare_payment(mech_info.payment_type, payment)

        digests = await self.upload_requests(
            prompts,
            list(tools or []),
            extra_attributes=extra_attributes,
            ipfs_json_contents=ipfs_json_contents,
        )
        submission = await self.send_request(
            digests, mech_info, value, account, response_timeout=response_timeout
        )
        tx_url = self.config.tx_url(submission.tx_hash)
        logger.info("Transaction sent: %s", tx_url)
        if submission.status != "confirmed" or submission.receipt is None:
            raise TransactionSubmissionError(
                f"Marketplace request {submission.tx_hash} ended as {submission.status}",
                attempts=submission.attempts,
            )

        request_ids = self.request_ids_from_receipt(submission.receipt)
        request_id_ints = [request_id_to_int_str(request_id) for request_id in request_ids]
        logger.info("Created on-chain request(s) with ID(s) %s", ", ".join(request_id_ints))
        interaction = MarketplaceInteraction(
            tx_hash=submission.tx_hash,
            tx_url=tx_url,
            request_ids=request_ids,
            request_id_ints=request_id_ints,
        )
        if post_only or not request_ids:
            return interaction

        from_block = int(submission.block_number or submission.receipt.get("blockNumber") or 0)
        interaction.data_urls = await self.monitor.wait_for_data_urls(request_ids, from_block, timeout)
        interaction.results = await self._fetch_results(request_ids, interaction.data_urls)
        if mech_info.payment_type.is_nvm and interaction.data_urls:
            balance = await fetch_nvm_balance(self.chain, mech_info.balance_tracker, account.address)
            logger.info("Sender subscription balance after delivery: %s", balance)
        return interaction


__all__ = [
    "DEFAULT_TOOL",
    "MARKETPLACE_REQUEST_TOPIC",
    "MarketplaceClient",
    "MarketplaceInteraction",
    "MechInfo",
    "decode_marketplace_request_log",
]
