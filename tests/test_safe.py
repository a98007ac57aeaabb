import asyncio
import hashlib

from eth_abi import decode
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from mech_client.chain import Web3ChainClient
from mech_client.cid import cid_from_digest
from mech_client.safe import ETH_SIGN_V_OFFSET, SafeDeliveryBuilder, deliver_via_safe, sign_safe_hash
from mech_client.submitter import SubmissionResult
from mech_client.types import ZERO_ADDRESS, request_id_to_int_str

SIGNER = Account.from_key("0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318")
WALLET = "0x" + "5a" * 20
TARGET = "0x" + "7b" * 20
SAFE_TX_HASH = hashlib.sha256(b"safe tx").digest()
RESULT_DIGEST = hashlib.sha256(b"result").digest()

DELIVER_SELECTOR = Web3.keccak(text="deliverToMarketplace(bytes32[],bytes[])")[:4]
EXEC_SELECTOR = Web3.keccak(
    text="execTransaction(address,uint256,bytes,uint8,uint256,uint256,uint256,address,address,bytes)"
)[:4]


class DummySafeChain:
    def __init__(self, nonce=5) -> None:
        self.nonce = nonce
        self.calls = []
        self._encoder = Web3ChainClient(Web3(), chain_id=100)

    def encode(self, address, abi, method, *args):
        return self._encoder.encode(address, abi, method, *args)

    async def call(self, address, abi, method, *args):
        self.calls.append((address, method, args))
        if method == "nonce":
            return self.nonce
        if method == "getTransactionHash":
            return SAFE_TX_HASH
        raise AssertionError(f"unexpected call {method}")


class DummySubmitter:
    def __init__(self) -> None:
        self.submitted = []

    async def submit(self, call, account, *, wait=True, retry_policy=None, receipt_timeout=None):
        self.submitted.append((call, account, wait, retry_policy))
        return SubmissionResult(tx_hash="0x" + "ee" * 32, status="confirmed" if wait else "submitted")


class DummyIPFS:
    gateway_url = "https://gateway.autonolas.tech/ipfs/"

    def __init__(self) -> None:
        self.uploads = []

    async def upload_json(self, payload, filename="content.json", *, wrap_with_directory=False):
        self.uploads.append((payload, filename, wrap_with_directory))
        return cid_from_digest(RESULT_DIGEST)


def test_signature_uses_eth_sign_v_offset():
    signature = sign_safe_hash(SAFE_TX_HASH, SIGNER)
    expected = SIGNER.sign_message(encode_defunct(primitive=SAFE_TX_HASH))

    assert len(signature) == 65
    assert signature[64] == expected.v + ETH_SIGN_V_OFFSET
    assert int.from_bytes(signature[:32], "big") == expected.r
    assert int.from_bytes(signature[32:64], "big") == expected.s
    recovered = Account.recover_message(
        encode_defunct(primitive=SAFE_TX_HASH),
        vrs=(signature[64] - ETH_SIGN_V_OFFSET, expected.r, expected.s),
    )
    assert recovered == SIGNER.address


def test_build_delivery_reads_nonce_then_hash():
    async def scenario():
        chain = DummySafeChain(nonce=5)
        builder = SafeDeliveryBuilder(chain)

        call = await builder.build_delivery(42, RESULT_DIGEST, TARGET, WALLET, SIGNER)

        assert [method for _, method, _ in chain.calls] == ["nonce", "getTransactionHash"]
        hash_args = chain.calls[1][2]
        assert hash_args[0] == Web3.to_checksum_address(TARGET)
        assert hash_args[1] == 0
        assert hash_args[3] == 0
        assert hash_args[4:7] == (0, 0, 0)
        assert hash_args[7] == ZERO_ADDRESS
        assert hash_args[8] == ZERO_ADDRESS
        assert hash_args[9] == 5
        assert call.wallet == Web3.to_checksum_address(WALLET)
        assert call.nonce == 5
        assert call.safe_tx_hash == SAFE_TX_HASH
        assert call.signature == sign_safe_hash(SAFE_TX_HASH, SIGNER)

        inner = Web3.to_bytes(hexstr=call.data)
        assert inner[:4] == DELIVER_SELECTOR
        assert hash_args[2] == inner
        ids, datas = decode(["bytes32[]", "bytes[]"], inner[4:])
        assert list(ids) == [(42).to_bytes(32, "big")]
        assert list(datas) == [RESULT_DIGEST]

    asyncio.run(scenario())


def test_exec_transaction_targets_the_wallet():
    async def scenario():
        chain = DummySafeChain()
        builder = SafeDeliveryBuilder(chain)
        call = await builder.build_delivery("0x2a", RESULT_DIGEST, TARGET, WALLET, SIGNER)

        tx = builder.exec_transaction_call(call)

        assert tx.to == call.wallet
        assert tx.value == 0
        assert Web3.to_bytes(hexstr=tx.data)[:4] == EXEC_SELECTOR

    asyncio.run(scenario())


def test_deliver_via_safe_uploads_then_submits():
    async def scenario():
        ipfs = DummyIPFS()
        submitter = DummySubmitter()
        builder = SafeDeliveryBuilder(DummySafeChain())

        result = await deliver_via_safe(
            ipfs,
            builder,
            submitter,
            request_id=7,
            result_content={"result": "done", "tool": "echo"},
            target=TARGET,
            wallet=WALLET,
            signer=SIGNER,
            tx_url_template="https://gnosisscan.io/tx/{transaction_digest}",
        )

        assert result.status == "confirmed"
        assert ipfs.uploads == [({"result": "done", "tool": "echo"}, "7", True)]
        call, account, wait, _ = submitter.submitted[0]
        assert account is SIGNER
        assert wait is True
        assert call.to == Web3.to_checksum_address(WALLET)

    asyncio.run(scenario())



def test_result_is_uploaded_under_the_requesters_lookup_name():
    async def scenario():
        ipfs = DummyIPFS()
        builder = SafeDeliveryBuilder(DummySafeChain())
        request_id = "0x" + "ab" * 32

        await deliver_via_safe(
            ipfs,
            builder,
            DummySubmitter(),
            request_id=request_id,
            result_content={"result": "done"},
            target=TARGET,
            wallet=WALLET,
            signer=SIGNER,
        )

        _, filename, _ = ipfs.uploads[0]
        assert filename == request_id_to_int_str(request_id)
        assert filename == str(int("ab" * 32, 16))

    asyncio.run(scenario())
