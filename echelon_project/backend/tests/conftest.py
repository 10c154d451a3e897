"""
Shared fakes for the agent runtime tests: an in-memory chain and indexer
"""
import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import pytest
from pydantic import SecretStr

from echelon_agents.chain_client import EXECUTION_STARTED_TOPIC, ChainClient, PreparedTransaction
from echelon_agents.chains import SEPOLIA_CHAIN_ID, TOKEN_ADDRESSES, UNISWAP_V3_ADDRESSES
from echelon_agents.config import AgentSettings
from echelon_agents.errors import ReceiptTimeoutError, RevertedError
from echelon_agents.helpers import now_seconds
from echelon_agents.ledger import SubmissionLedger
from echelon_agents.models import (
    IndexedExecution,
    Permission,
    PermissionState,
    QuoteResult,
    SpecialistAgent,
    TxHandle,
)

AGENT_WALLET = "0x1111111111111111111111111111111111111111"
USER = "0x2222222222222222222222222222222222222222"
OTHER_USER = "0x3333333333333333333333333333333333333333"
REGISTRY = "0x4444444444444444444444444444444444444444"
EXECUTION = "0x5555555555555555555555555555555555555555"
PERMISSIONS = "0x6666666666666666666666666666666666666666"
PRIVATE_KEY = "0x" + "ab" * 32

WETH = TOKEN_ADDRESSES[SEPOLIA_CHAIN_ID]["WETH"]
USDC = TOKEN_ADDRESSES[SEPOLIA_CHAIN_ID]["USDC"]
ROUTER = UNISWAP_V3_ADDRESSES[SEPOLIA_CHAIN_ID]["swap_router"]
QUOTER = UNISWAP_V3_ADDRESSES[SEPOLIA_CHAIN_ID]["quoter"]

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def make_settings(**overrides) -> AgentSettings:
    values = dict(
        agent_id=1,
        private_key=SecretStr(PRIVATE_KEY),
        agent_type="fund_manager",
        chain_id=SEPOLIA_CHAIN_ID,
        registry_address=REGISTRY,
        execution_address=EXECUTION,
        permission_address=PERMISSIONS,
        rpc_url="http://localhost:8545",
        indexer_url="http://localhost:8080/v1/graphql",
        polling_interval_ms=10,
        receipt_timeout_seconds=1.0,
        receipt_poll_seconds=0.01,
        stop_grace_seconds=1.0,
        router_address=ROUTER,
        quoter_address=QUOTER,
        token_addresses=dict(TOKEN_ADDRESSES[SEPOLIA_CHAIN_ID]),
    )
    values.update(overrides)
    return AgentSettings(**values)


def make_permission(
    permission_id: str = "perm-1",
    user: str = USER,
    token: str = USDC,
    remaining: int = 50_000_000,
    expires_in: int = 86400,
    is_active: bool = True
) -> Permission:
    now = now_seconds()
    return Permission(
        id=permission_id,
        user_address=user,
        agent_id=1,
        permission_type="erc20-token-periodic",
        token_address=token,
        token_symbol="USDC" if token == USDC else "WETH",
        total_amount=remaining,
        granted_at=now - 3600,
        expires_at=now + expires_in,
        is_active=is_active,
        amount_remaining=remaining,
    )


def make_execution(index: int, profit_loss_percent: float, agent_id: int = 9) -> IndexedExecution:
    return IndexedExecution(
        id=f"exec-{index}",
        agent_id=agent_id,
        agent_name="Specialist",
        user_address=USER,
        amount_in=1_000_000,
        amount_out=1_000_000,
        token_in=USDC,
        token_out=WETH,
        profit_loss=Decimal("0"),
        profit_loss_percent=profit_loss_percent,
        result="SUCCESS",
        started_at=1_700_000_000 + index,
    )


def make_specialist(agent_id: int, strategy: str, reputation: int) -> SpecialistAgent:
    return SpecialistAgent(
        id=agent_id,
        wallet_address="0x" + f"{agent_id:040x}",
        name=f"{strategy}-{agent_id}",
        strategy_type=strategy,
        reputation_score=reputation,
        win_rate=0.6,
    )


class FakeIndexer:
    """In-memory stand-in for IndexerClient"""

    def __init__(self, executions=None, leaderboard=None, permissions=None):
        self.executions: List[IndexedExecution] = list(executions or [])
        self.leaderboard: List[SpecialistAgent] = list(leaderboard or [])
        self.permissions: List[Permission] = list(permissions or [])
        self.error: Optional[Exception] = None
        self.calls: List[str] = []

    def _check(self, name: str):
        self.calls.append(name)
        if self.error is not None:
            raise self.error

    async def get_recent_executions(self, agent_id=None, limit=100):
        self._check("get_recent_executions")
        return self.executions[:limit]

    async def get_leaderboard(self, limit=10):
        self._check("get_leaderboard")
        return self.leaderboard[:limit]

    async def get_active_permissions(self, agent_id):
        self._check("get_active_permissions")
        return list(self.permissions)

    async def get_agent_by_id(self, agent_id):
        self._check("get_agent_by_id")
        return None

    async def close(self):
        pass


class FakeChain:
    """
    In-memory stand-in for ChainClient

    ``receipt_modes`` maps a method name to one of confirm, timeout, hang, revert.
    """

    transfer_amount_from_receipt = staticmethod(ChainClient.transfer_amount_from_receipt)
    execution_id_from_receipt = staticmethod(ChainClient.execution_id_from_receipt)

    def __init__(self):
        self.address = AGENT_WALLET
        self.native_balance = 10 ** 18
        self.token_balances: Dict[str, int] = {}
        self.allowances: Dict[str, int] = {}
        self.permission_states: Dict[tuple, PermissionState] = {}
        self.quotes: Dict[tuple, Any] = {}
        self.quote_calls: List[tuple] = []
        self.receipt_modes: Dict[str, str] = {}
        self.swap_output = 0
        self.registered_agent_id: Optional[int] = 1
        self.sent: List[Dict[str, Any]] = []
        self.mined: Dict[str, Dict[str, Any]] = {}
        self.known: set = set()
        self.broadcast_error: Optional[Exception] = None
        self.registered: Dict[str, Any] = {}
        self._nonce = 0

    def register_contract(self, address, abi):
        self.registered[address.lower()] = abi

    def set_permission(self, user, token, remaining=10 ** 12, expires_in=86400, is_active=True):
        self.permission_states[(user.lower(), token.lower())] = PermissionState(
            amount_remaining=remaining,
            expires_at=now_seconds() + expires_in,
            is_active=is_active,
        )

    async def get_native_balance(self, address=None):
        return self.native_balance

    async def get_token_balance(self, token_address, owner=None):
        return self.token_balances.get(token_address.lower(), 0)

    async def get_allowance(self, token_address, spender, owner=None):
        return self.allowances.get(token_address.lower(), 0)

    async def get_permission_state(self, permission_address, user, token):
        return self.permission_states[(user.lower(), token.lower())]

    async def get_registered_agent_id(self, registry_address):
        return self.registered_agent_id

    async def quote_exact_input_single(self, quoter_address, token_in, token_out, amount_in, fee):
        key = (token_in.lower(), token_out.lower())
        self.quote_calls.append((token_in, token_out, amount_in, fee))
        value = self.quotes.get(key)
        if callable(value):
            value = value(amount_in)
        if isinstance(value, Exception):
            raise value
        if value is None:
            raise AssertionError(f"unexpected quote {key}")
        return QuoteResult(amount_out=value, gas_estimate=100000)

    async def prepare_transaction(self, address, method, args: Sequence[Any] = (), value=0):
        nonce = self._nonce
        self._nonce += 1
        return PreparedTransaction(
            tx_hash="0x" + f"{nonce + 1:064x}",
            raw_transaction=b"",
            nonce=nonce,
            to=address,
            method=method,
        )

    async def broadcast(self, prepared):
        if self.broadcast_error is not None:
            raise self.broadcast_error
        self.sent.append({"to": prepared.to, "method": prepared.method, "tx_hash": prepared.tx_hash})
        self.known.add(prepared.tx_hash)
        return TxHandle(tx_hash=prepared.tx_hash, nonce=prepared.nonce, to=prepared.to, method=prepared.method)

    def make_receipt(self, tx_hash, method, status=1):
        logs = []
        if method == "exactInputSingle" and status == 1 and self.swap_output:
            logs.append({
                "address": WETH,
                "topics": [
                    TRANSFER_TOPIC,
                    "0x" + "0" * 24 + ROUTER[2:].lower(),
                    "0x" + "0" * 24 + AGENT_WALLET[2:].lower(),
                ],
                "data": hex(self.swap_output),
            })
        if method == "logExecutionStart":
            logs.append({
                "address": EXECUTION,
                "topics": [EXECUTION_STARTED_TOPIC, "0x" + f"{7:064x}"],
                "data": "0x",
            })
        return {"transactionHash": tx_hash, "blockNumber": 100, "status": status, "gasUsed": 21000, "logs": logs}

    async def wait_for_receipt(self, handle, timeout, poll_interval=None):
        mode = self.receipt_modes.get(handle.method, "confirm")
        if mode == "timeout":
            raise ReceiptTimeoutError(handle.tx_hash, timeout)
        if mode == "hang":
            await asyncio.sleep(3600)
        if mode == "revert":
            receipt = self.make_receipt(handle.tx_hash, handle.method, status=0)
            self.mined[handle.tx_hash] = receipt
            raise RevertedError(handle.tx_hash, "Too little received", receipt)
        receipt = self.make_receipt(handle.tx_hash, handle.method)
        self.mined[handle.tx_hash] = receipt
        return receipt

    async def get_receipt(self, tx_hash):
        return self.mined.get(tx_hash)

    async def transaction_known(self, tx_hash):
        return tx_hash in self.known

    def methods_sent(self) -> List[str]:
        return [tx["method"] for tx in self.sent]

    async def close(self):
        pass


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def swap_settings():
    return make_settings(agent_type="dex_swap")


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def indexer():
    return FakeIndexer()


@pytest.fixture
def ledger(tmp_path):
    ledger = SubmissionLedger(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield ledger
    ledger.close()
