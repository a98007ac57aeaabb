"""Two-phase polling for marketplace deliveries.

Phase one polls the marketplace ``mapRequestIdInfos`` accessor until every
request has a delivery mech. Phase two scans each assigned mech's ``Deliver``
logs, once per distinct mech, until every request is delivered. Both phases
share one deadline and a timeout yields whatever subset was collected.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from eth_abi.exceptions import DecodingError

from .abis import MARKETPLACE_ABI, MECH_ABI, decode_event_data, event_topic, log_data_bytes
from .cid import data_url_from_payload
from .errors import MalformedLogError
from .metrics import DELIVERIES_TOTAL, DELIVERY_WAIT_SECONDS
from .types import RequestIdLike, is_zero_address, looks_like_address, normalize_request_id

logger = logging.getLogger(__name__)

WAIT_SLEEP = 3.0
DEFAULT_TIMEOUT = 900.0
DELIVERY_MECH_INDEX = 1

DELIVER_TOPIC = event_topic(MECH_ABI, "Deliver")


class DeliveryState(str, Enum):
    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    DELIVERED = "delivered"
    TIMED_OUT = "timed_out"


@dataclass(slots=True)
class DeliveryRecord:
    """Progress of one request id. Transitions only move forward."""

    request_id: str
    state: DeliveryState = DeliveryState.UNASSIGNED
    mech: Optional[str] = None
    data_url: Optional[str] = None

    def assign(self, mech: str) -> bool:
        if self.state is not DeliveryState.UNASSIGNED:
            return False
        if is_zero_address(mech):
            raise ValueError("the zero address is not a valid assignment")
        self.mech = mech
        self.state = DeliveryState.ASSIGNED
        return True

    def deliver(self, data_url: str) -> bool:
        if self.state is not DeliveryState.ASSIGNED:
            return False
        self.data_url = data_url
        self.state = DeliveryState.DELIVERED
        return True

    def time_out(self) -> bool:
        if self.state in (DeliveryState.DELIVERED, DeliveryState.TIMED_OUT):
            return False
        self.state = DeliveryState.TIMED_OUT
        return True


def decode_deliver_log(log: Mapping[str, Any]) -> Tuple[str, str]:
    """Return ``(request_id, data_url)`` decoded from a ``Deliver`` log."""

    data = log_data_bytes(log)
    try:
        request_id, _delivery_rate, payload = decode_event_data(MECH_ABI, "Deliver", data)
    except (DecodingError, ValueError, TypeError) as exc:
        raise MalformedLogError(f"cannot decode Deliver payload: {exc}") from exc
    return normalize_request_id(bytes(request_id)), data_url_from_payload(payload)


def _assigned_mech(info: Any) -> Optional[str]:
    if not isinstance(info, (list, tuple)) or len(info) <= DELIVERY_MECH_INDEX:
        return None
    mech = info[DELIVERY_MECH_INDEX]
    if not looks_like_address(mech) or is_zero_address(mech):
        return None
    return mech


class DeliveryMonitor(abc.ABC):
    """Resolves request ids to the URLs of their delivered results."""

    @abc.abstractmethod
    async def wait_for_data_urls(
        self,
        request_ids: Sequence[RequestIdLike],
        from_block: int,
        timeout: Optional[float] = None,
    ) -> Dict[str, str]:
        """Return ``{request_id: data_url}`` for every request delivered in time."""


class PollingDeliveryMonitor(DeliveryMonitor):
    """Delivery monitor backed by contract reads and ``eth_getLogs`` polling."""

    def __init__(
        self,
        chain: Any,
        marketplace_address: str,
        *,
        poll_interval: float = WAIT_SLEEP,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.chain = chain
        self.marketplace_address = marketplace_address
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    @staticmethod
    def _records(request_ids: Iterable[RequestIdLike]) -> Dict[str, DeliveryRecord]:
        records: Dict[str, DeliveryRecord] = {}
        for request_id in request_ids:
            key = normalize_request_id(request_id)
            records.setdefault(key, DeliveryRecord(request_id=key))
        return records

    async def _poll_assignment(self, records: Mapping[str, DeliveryRecord], deadline: float) -> None:
        while self._clock() < deadline:
            for record in records.values():
                if record.state is not DeliveryState.UNASSIGNED:
                    continue
                try:
                    info = await self.chain.call(
                        self.marketplace_address,
                        MARKETPLACE_ABI,
                        "mapRequestIdInfos",
                        bytes.fromhex(record.request_id),
                    )
                except Exception as exc:
                    logger.debug("mapRequestIdInfos(%s) failed: %s", record.request_id, exc)
                    continue
                mech = _assigned_mech(info)
                if mech is None:
                    continue
                if record.assign(mech):
                    logger.info("Request %s assigned to mech %s", record.request_id, mech)
            if all(record.state is not DeliveryState.UNASSIGNED for record in records.values()):
                return
            await self._sleep(self.poll_interval)
        logger.info("Assignment polling reached its deadline")

    async def _scan_deliveries(
        self,
        records: Sequence[DeliveryRecord],
        mech: str,
        from_block: int,
        deadline: float,
    ) -> None:
        watched = {record.request_id: record for record in records}
        cursor = from_block
        while self._clock() < deadline:
            try:
                logs = await self.chain.get_past_logs(mech, [DELIVER_TOPIC], cursor, "latest")
            except Exception as exc:
                logger.warning("Fetching Deliver logs for %s from block %s failed: %s", mech, cursor, exc)
                logs = []
            highest: Optional[int] = None
            for log in logs:
                block_number = log.get("blockNumber")
                if isinstance(block_number, int):
                    highest = block_number if highest is None else max(highest, block_number)
                try:
                    request_id, data_url = decode_deliver_log(log)
                except MalformedLogError as exc:
                    logger.warning("Skipping malformed Deliver log from %s: %s", mech, exc)
                    continue
                record = watched.get(request_id)
                if record is not None and record.deliver(data_url):
                    logger.info("Request %s delivered: %s", request_id, data_url)
            if highest is not None:
                cursor = highest + 1
            if all(record.state is DeliveryState.DELIVERED for record in watched.values()):
                return
            await self._sleep(self.poll_interval)
        logger.info("Delivery scan for %s reached its deadline", mech)

    async def watch_for_assignment(
        self,
        request_ids: Sequence[RequestIdLike],
        timeout: Optional[float] = None,
    ) -> Dict[str, str]:
        """Return ``{request_id: mech}`` for every request assigned before the timeout."""

        records = self._records(request_ids)
        deadline = self._clock() + (self.timeout if timeout is None else timeout)
        await self._poll_assignment(records, deadline)
        return {key: record.mech for key, record in records.items() if record.mech is not None}

    async def watch_for_data_urls(
        self,
        request_ids: Sequence[RequestIdLike],
        mech: str,
        from_block: int,
        deadline: Optional[float] = None,
    ) -> Dict[str, str]:
        """Scan ``mech``'s logs for deliveries of ``request_ids``."""

        records = self._records(request_ids)
        for record in records.values():
            record.assign(mech)
        if deadline is None:
            deadline = self._clock() + self.timeout
        await self._scan_deliveries(list(records.values()), mech, from_block, deadline)
        return {key: record.data_url for key, record in records.items() if record.data_url is not None}

    async def wait_for_data_urls(
        self,
        request_ids: Sequence[RequestIdLike],
        from_block: int,
        timeout: Optional[float] = None,
    ) -> Dict[str, str]:
        started = self._clock()
        deadline = started + (self.timeout if timeout is None else timeout)
        records = self._records(request_ids)

        await self._poll_assignment(records, deadline)

        by_mech: Dict[str, List[DeliveryRecord]] = defaultdict(list)
        for record in records.values():
            if record.mech is not None:
                by_mech[record.mech.lower()].append(record)
        await asyncio.gather(
            *(self._scan_deliveries(group, group[0].mech, from_block, deadline) for group in by_mech.values())
        )

        results = {key: record.data_url for key, record in records.items() if record.data_url is not None}
        missing = [record for record in records.values() if record.time_out()]
        DELIVERIES_TOTAL.labels(outcome="delivered").inc(len(results))
        if missing:
            DELIVERIES_TOTAL.labels(outcome="timed_out").inc(len(missing))
            logger.warning(
                "Timed out waiting for %d of %d requests; returning partial results",
                len(missing),
                len(records),
            )
        DELIVERY_WAIT_SECONDS.observe(max(0.0, self._clock() - started))
        return results


__all__ = [
    "DEFAULT_TIMEOUT",
    "DELIVER_TOPIC",
    "DeliveryMonitor",
    "DeliveryRecord",
    "DeliveryState",
    "PollingDeliveryMonitor",
    "WAIT_SLEEP",
    "decode_deliver_log",
]
