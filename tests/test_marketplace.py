import asyncio
import hashlib
import json
from types import SimpleNamespace

import httpx
import pytest
from eth_abi import decode, encode
from web3 import Web3

from mech_client.chain import Web3ChainClient
from mech_client.cid import cid_from_digest
from mech_client.config import get_mech_config
from mech_client.delivery import DeliveryMonitor
from mech_client.errors import ConfigurationError, TransactionSubmissionError
from mech_client.ipfs import IPFSClient
from mech_client.marketplace import MARKETPLACE_REQUEST_TOPIC, MarketplaceClient
from mech_client.payments import PaymentType
from mech_client.submitter import SubmissionResult
from mech_client.types import normalize_request_id

REQUESTER = SimpleNamespace(address=Web3.to_checksum_address("0x" + "11" * 20))
MECH = Web3.to_checksum_address("0x" + "4e" * 20)
TRACKER = Web3.to_checksum_address("0x" + "7c" * 20)
REQ_1 = b"\x01" * 32
REQ_2 = b"\x02" * 32

REQUEST_SELECTOR = Web3.keccak(text="request(bytes,uint256,bytes32,address,uint256,bytes)")[:4]
BATCH_SELECTOR = Web3.keccak(text="requestBatch(bytes[],uint256,bytes32,address,uint256,bytes)")[:4]


class DummyChain:
    def __init__(self, payment_type=PaymentType.NATIVE) -> None:
        self.payment_type = payment_type
        self._encoder = Web3ChainClient(Web3(), chain_id=100)

    def encode(self, address, abi, method, *args):
        return self._encoder.encode(address, abi, method, *args)

    async def call(self, address, abi, method, *args):
        answers = {
            "paymentType": self.payment_type.bytes32,
            "maxDeliveryRate": 100,
            "serviceId": 7,
            "mapPaymentTypeBalanceTrackers": TRACKER,
        }
        return answers[method]


class RegistryStub:
    def __init__(self) -> None:
        self.uploads = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            self.uploads += 1
            cid = cid_from_digest(hashlib.sha256(b"upload-%d" % self.uploads).digest())
            return httpx.Response(200, text=json.dumps({"Name": "metadata.json", "Hash": cid}))
        request_id = request.url.path.rsplit("/", 1)[-1]
        return httpx.Response(200, json={"requestId": request_id, "result": "42"})


class DummySubmitter:
    def __init__(self, marketplace, request_ids, status="confirmed") -> None:
        self.marketplace = marketplace
        self.request_ids = request_ids
        self.status = status
        self.submitted = []

    async def submit(self, call, account, **kwargs):
        self.submitted.append(call)
        log = {
            "address": self.marketplace,
            "topics": [MARKETPLACE_REQUEST_TOPIC, "0x" + "00" * 32, "0x" + "00" * 32],
            "data": encode(
                ["uint256", "bytes32[]", "bytes[]"],
                [len(self.request_ids), self.request_ids, [b"d"] * len(self.request_ids)],
            ),
        }
        unrelated = {"address": "0x" + "99" * 20, "topics": [MARKETPLACE_REQUEST_TOPIC], "data": b""}
        receipt = {"status": 1, "blockNumber": 55, "gasUsed": 90000, "logs": [unrelated, log]}
        return SubmissionResult(
            tx_hash="0x" + "cd" * 32, status=self.status, block_number=55, gas_used=90000, receipt=receipt
        )


class DummyMonitor(DeliveryMonitor):
    def __init__(self, deliver=None) -> None:
        self.deliver = deliver
        self.calls = []

    async def wait_for_data_urls(self, request_ids, from_block, timeout=None):
        self.calls.append((list(request_ids), from_block, timeout))
        delivered = request_ids if self.deliver is None else self.deliver
        return {
            normalize_request_id(request_id): "http://gateway.test/ipfs/f01701220" + "ab" * 32
            for request_id in delivered
        }


def _client(request_ids, *, monitor=None, chain=None, status="confirmed"):
    config = get_mech_config("gnosis")
    submitter = DummySubmitter(config.mech_marketplace_contract, request_ids, status=status)
    transport = httpx.MockTransport(RegistryStub())
    ipfs = IPFSClient("http://registry.test/add", "http://gateway.test/ipfs/", transport=transport)
    client = MarketplaceClient(
        config, chain or DummyChain(), ipfs, submitter=submitter, monitor=monitor or DummyMonitor()
    )
    return client, submitter


def test_single_prompt_interaction_collects_result():
    async def scenario():
        client, submitter = _client([REQ_1])

        interaction = await client.interact(["What is 6*7?"], MECH, REQUESTER, tools=["calculator"], timeout=60)

        (call,) = submitter.submitted
        assert call.value == 100
        calldata = Web3.to_bytes(hexstr=call.data)
        assert calldata[:4] == REQUEST_SELECTOR
        _, rate, payment_type, priority_mech, response_timeout, _ = decode(
            ["bytes", "uint256", "bytes32", "address", "uint256", "bytes"], calldata[4:]
        )
        assert rate == 100
        assert payment_type == PaymentType.NATIVE.bytes32
        assert priority_mech.lower() == MECH.lower()
        assert response_timeout == 300

        assert interaction.request_ids == ["0x" + REQ_1.hex()]
        assert interaction.request_id_ints == [str(int.from_bytes(REQ_1, "big"))]
        assert client.monitor.calls == [(["0x" + REQ_1.hex()], 55, 60)]
        assert interaction.results == [
            {
                "requestId": interaction.request_id_ints[0],
                "data": {"requestId": interaction.request_id_ints[0], "result": "42"},
            }
        ]
        assert interaction.tx_url.endswith("0x" + "cd" * 32)

    asyncio.run(scenario())


def test_batch_uses_request_batch_and_reports_missing_results():
    async def scenario():
        monitor = DummyMonitor(deliver=["0x" + REQ_1.hex()])
        client, submitter = _client([REQ_1, REQ_2], monitor=monitor)

        interaction = await client.interact(["a", "b"], MECH, REQUESTER)

        assert Web3.to_bytes(hexstr=submitter.submitted[0].data)[:4] == BATCH_SELECTOR
        assert submitter.submitted[0].value == 200
        assert len(interaction.results) == 2
        assert interaction.results[1] == {"requestId": str(int.from_bytes(REQ_2, "big")), "data": None}

    asyncio.run(scenario())


def test_post_only_skips_delivery_wait():
    async def scenario():
        monitor = DummyMonitor()
        client, _ = _client([REQ_1], monitor=monitor)

        interaction = await client.interact(["a"], MECH, REQUESTER, post_only=True)

        assert monitor.calls == []
        assert interaction.data_urls == {}
        assert interaction.to_dict()["request_ids"] == ["0x" + REQ_1.hex()]

    asyncio.run(scenario())


def test_unconfirmed_request_raises():
    async def scenario():
        client, _ = _client([REQ_1], status="reverted")
        with pytest.raises(TransactionSubmissionError):
            await client.interact(["a"], MECH, REQUESTER)

    asyncio.run(scenario())


def test_missing_priority_mech_or_marketplace_is_a_configuration_error():
    async def scenario():
        client, _ = _client([REQ_1])
        with pytest.raises(ConfigurationError):
            await client.interact(["a"], "0x" + "00" * 20, REQUESTER)

    asyncio.run(scenario())

    config = get_mech_config("gnosis").model_copy(update={"mech_marketplace_contract": ""})
    with pytest.raises(ConfigurationError):
        MarketplaceClient(config, DummyChain(), IPFSClient(), submitter=object(), monitor=DummyMonitor())


def test_request_ids_from_receipt_filters_foreign_logs():
    client, _ = _client([REQ_1])
    receipt = {
        "logs": [
            {"address": "0x" + "99" * 20, "topics": [MARKETPLACE_REQUEST_TOPIC], "data": b""},
            {"address": client.marketplace_address, "topics": ["0x" + "12" * 32], "data": b""},
            {
                "address": client.marketplace_address.lower(),
                "topics": [MARKETPLACE_REQUEST_TOPIC],
                "data": encode(["uint256", "bytes32[]", "bytes[]"], [1, [REQ_2], [b""]]),
            },
        ]
    }

    assert client.request_ids_from_receipt(receipt) == ["0x" + REQ_2.hex()]
