import asyncio

import pytest
from web3.exceptions import ContractLogicError

from echelon_agents.chain_client import EXECUTION_STARTED_TOPIC, ChainClient, PreparedTransaction, translate_rpc_error
from echelon_agents.errors import (
    InsufficientFundsError,
    NonceError,
    ReceiptTimeoutError,
    RevertError,
    RevertedError,
    RpcError,
)
from echelon_agents.gas import apply_gas_fields, buffered_gas_limit, get_gas_recommendation
from echelon_agents.models import TxHandle

from conftest import AGENT_WALLET, EXECUTION, PRIVATE_KEY, ROUTER, TRANSFER_TOPIC, USDC, WETH


def padded(address):
    return "0x" + "0" * 24 + address[2:].lower()


def transfer_log(token, recipient, amount):
    return {"address": token, "topics": [TRANSFER_TOPIC, padded(ROUTER), padded(recipient)], "data": hex(amount)}


@pytest.fixture
def client():
    return ChainClient("http://127.0.0.1:9", PRIVATE_KEY, 11155111, receipt_poll_seconds=0.01)


def test_contract_revert_translated():
    error = translate_rpc_error(ContractLogicError("execution reverted: Too little received"), "exactInputSingle")
    assert isinstance(error, RevertError)
    assert error.method == "exactInputSingle"
    assert "Too little received" in error.reason


@pytest.mark.parametrize("message, expected", [
    ("insufficient funds for gas * price + value", InsufficientFundsError),
    ("nonce too low", NonceError),
    ("execution reverted", RevertError),
    ("502 Bad Gateway", RpcError),
])
def test_node_messages_translated(message, expected):
    assert isinstance(translate_rpc_error(ValueError(message), "approve"), expected)


def test_timeout_translated():
    error = translate_rpc_error(asyncio.TimeoutError(), "eth_call")
    assert isinstance(error, RpcError)
    assert "timeout" in str(error)


def test_client_address_derived_from_key(client):
    assert client.address.startswith("0x")
    assert len(client.address) == 42


def test_transfer_amount_sums_matching_logs():
    receipt = {"logs": [
        transfer_log(WETH, AGENT_WALLET, 100),
        transfer_log(WETH, AGENT_WALLET, 25),
        transfer_log(USDC, AGENT_WALLET, 999),
        transfer_log(WETH, ROUTER, 7),
    ]}
    assert ChainClient.transfer_amount_from_receipt(receipt, WETH, AGENT_WALLET) == 125


def test_transfer_amount_zero_without_logs():
    assert ChainClient.transfer_amount_from_receipt({"logs": []}, WETH, AGENT_WALLET) == 0


def test_execution_id_from_receipt():
    receipt = {"logs": [
        transfer_log(WETH, AGENT_WALLET, 1),
        {"address": EXECUTION, "topics": [EXECUTION_STARTED_TOPIC, "0x" + f"{42:064x}"], "data": "0x"},
    ]}
    assert ChainClient.execution_id_from_receipt(receipt, EXECUTION) == 42
    assert ChainClient.execution_id_from_receipt(receipt, ROUTER) is None


def test_receipt_normalized():
    raw = {
        "transactionHash": bytes.fromhex("ab" * 32),
        "blockNumber": 12,
        "status": 1,
        "gasUsed": 50000,
        "logs": [{"address": WETH, "topics": [bytes.fromhex(TRANSFER_TOPIC[2:])], "data": bytes.fromhex("01")}],
    }
    receipt = ChainClient._normalize_receipt(raw)
    assert receipt["transactionHash"] == "0x" + "ab" * 32
    assert receipt["logs"][0]["topics"] == [TRANSFER_TOPIC]
    assert receipt["logs"][0]["data"] == "0x01"


def test_wait_for_receipt_polls_until_mined(client, monkeypatch):
    answers = [RpcError("flaky"), None, {"status": 1, "blockNumber": 5, "gasUsed": 1, "logs": []}]

    async def get_receipt(tx_hash):
        answer = answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    monkeypatch.setattr(client, "get_receipt", get_receipt)
    handle = TxHandle(tx_hash="0x01", nonce=0, to=ROUTER, method="approve")

    receipt = asyncio.run(client.wait_for_receipt(handle, timeout=5))
    assert receipt["blockNumber"] == 5
    assert answers == []


def test_submit_signs_then_broadcasts(client, monkeypatch):
    calls = []

    async def prepare_transaction(address, method, args=(), value=0):
        calls.append(("prepare", method, list(args)))
        return PreparedTransaction(tx_hash="0x02", raw_transaction=b"", nonce=3, to=address, method=method)

    async def broadcast(prepared):
        calls.append(("broadcast", prepared.tx_hash))
        return TxHandle(tx_hash=prepared.tx_hash, nonce=prepared.nonce, to=prepared.to, method=prepared.method)

    monkeypatch.setattr(client, "prepare_transaction", prepare_transaction)
    monkeypatch.setattr(client, "broadcast", broadcast)

    handle = asyncio.run(client.submit_transaction(ROUTER, "approve", [ROUTER, 5]))

    assert calls == [("prepare", "approve", [ROUTER, 5]), ("broadcast", "0x02")]
    assert handle.nonce == 3
    assert handle.to == ROUTER


def test_wait_for_receipt_times_out(client, monkeypatch):
    async def get_receipt(tx_hash):
        return None

    monkeypatch.setattr(client, "get_receipt", get_receipt)
    handle = TxHandle(tx_hash="0x01", nonce=0, to=ROUTER, method="approve")

    with pytest.raises(ReceiptTimeoutError):
        asyncio.run(client.wait_for_receipt(handle, timeout=0.05))


def test_wait_for_receipt_reports_revert(client, monkeypatch):
    async def get_receipt(tx_hash):
        return {"status": 0, "blockNumber": 5, "gasUsed": 1, "logs": []}

    async def revert_reason(tx_hash, block_number):
        return "Too little received"

    monkeypatch.setattr(client, "get_receipt", get_receipt)
    monkeypatch.setattr(client, "_revert_reason", revert_reason)
    handle = TxHandle(tx_hash="0x01", nonce=0, to=ROUTER, method="exactInputSingle")

    with pytest.raises(RevertedError) as excinfo:
        asyncio.run(client.wait_for_receipt(handle, timeout=1))
    assert excinfo.value.reason == "Too little received"
    assert excinfo.value.receipt["blockNumber"] == 5


class _StubEth:
    def __init__(self, base_fee):
        self.base_fee = base_fee

    async def get_block(self, block):
        return {"baseFeePerGas": self.base_fee} if self.base_fee is not None else {}

    @property
    async def max_priority_fee(self):
        return 2

    @property
    async def gas_price(self):
        return 30


class _StubWeb3:
    def __init__(self, base_fee):
        self.eth = _StubEth(base_fee)


def test_eip1559_fee_recommendation():
    recommendation = asyncio.run(get_gas_recommendation(_StubWeb3(base_fee=10)))
    assert recommendation["supports1559"]
    assert recommendation["maxFeePerGas"] == 22
    assert apply_gas_fields({}, recommendation) == {"maxFeePerGas": 22, "maxPriorityFeePerGas": 2}


def test_legacy_fee_recommendation():
    recommendation = asyncio.run(get_gas_recommendation(_StubWeb3(base_fee=None)))
    assert not recommendation["supports1559"]
    assert apply_gas_fields({}, recommendation) == {"gasPrice": 30}


def test_gas_limit_buffered_and_capped():
    assert buffered_gas_limit(100_000) == 120_000
    assert buffered_gas_limit(9_000_000) == 10_000_000
