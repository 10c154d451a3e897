import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

import echelon_agents.main as agent_main
from echelon_agents.agent_logger import AgentLogger
from echelon_agents.main import EXIT_CONFIG, EXIT_FATAL, EXIT_OK, main, parse_args, run_agent
from echelon_agents.metrics import CycleStats
from echelon_agents.models import CycleOutcome, CycleResult, ExecutionRecord, SwapOpportunity
from echelon_agents.strategies import DexSwapStrategy, FundManagerStrategy, build_strategy

from conftest import USDC, USER, WETH, FakeIndexer, make_settings

REQUIRED_VARIABLES = [
    "AGENT_ID",
    "AGENT_PRIVATE_KEY",
    "REGISTRY_ADDRESS",
    "EXECUTION_ADDRESS",
    "PERMISSION_ADDRESS",
    "RPC_URL",
    "INDEXER_URL",
    "ENVIO_URL",
]


def test_cli_arguments():
    args = parse_args(["--agent-type", "dex_swap", "--once"])
    assert args.agent_type == "dex_swap"
    assert args.once
    assert args.env_file is None


def test_missing_configuration_exits_with_config_code(tmp_path, monkeypatch, caplog):
    for name in REQUIRED_VARIABLES:
        monkeypatch.delenv(name, raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("LOG_LEVEL=INFO\n")

    with caplog.at_level(logging.CRITICAL):
        assert main(["--env-file", str(env_file)]) == EXIT_CONFIG

    assert "AGENT_PRIVATE_KEY" in caplog.text


def cycle(number, outcome, record=None, reason=None):
    started = datetime(2024, 1, 1, 12, 0, 0)
    return CycleResult(
        cycle_number=number,
        started_at=started,
        finished_at=started + timedelta(milliseconds=250),
        outcome=outcome,
        reason=reason,
        record=record,
    )


def record(status, gas_used=None):
    return ExecutionRecord(
        idempotency_key="run-1:abc",
        decision_key="abc",
        status=status,
        success=status == "confirmed",
        tx_hash="0x01",
        gas_used=gas_used,
    )


def test_cycle_stats():
    stats = CycleStats()
    stats.record(cycle(1, CycleOutcome.SUCCESS, record("confirmed", gas_used=21000)))
    stats.record(cycle(2, CycleOutcome.ERROR, record("reverted", gas_used=30000), reason="reverted"))
    stats.record(cycle(3, CycleOutcome.SKIPPED, reason="no action"))

    assert stats.count(CycleOutcome.SKIPPED) == 1
    assert stats.metrics["total_cycles"] == 3
    assert stats.metrics["transactions_confirmed"] == 1
    assert stats.metrics["transactions_failed"] == 1
    assert stats.metrics["total_gas_used"] == 51000
    assert stats.metrics["last_error"] == "reverted"
    assert stats.last_cycle == {"cycle": 3, "outcome": "skipped", "reason": "no action", "duration_ms": 250}


def test_cycle_log_line_carries_context(caplog):
    agent_logger = AgentLogger("FundManager")
    with caplog.at_level(logging.INFO, logger="echelon_agents.agent.FundManager"):
        agent_logger.log_cycle(cycle(4, CycleOutcome.SUCCESS, record("confirmed")))

    assert "[FundManager] Cycle 4 success" in caplog.text
    assert "tx=0x01" in caplog.text
    assert "status=confirmed" in caplog.text


def test_strategy_variant_selected_from_settings(chain, indexer):
    manager = build_strategy(make_settings(agent_type="fund_manager"), indexer, chain)
    swapper = build_strategy(make_settings(agent_type="dex_swap"), indexer, chain)

    assert isinstance(manager, FundManagerStrategy)
    assert isinstance(swapper, DexSwapStrategy)


class OneShotStrategy:
    name = "OneShot"

    def __init__(self, decision=None, on_evaluate=None):
        self.decision = decision
        self.on_evaluate = on_evaluate
        self.calls = 0

    async def evaluate(self, context):
        self.calls += 1
        if self.on_evaluate is not None:
            self.on_evaluate()
        return self.decision


@pytest.fixture
def wired(chain, monkeypatch):
    """Routes run_agent's clients to the in-memory fakes"""
    indexer = FakeIndexer()
    monkeypatch.setattr(agent_main, "ChainClient", lambda *args, **kwargs: chain)
    monkeypatch.setattr(agent_main, "IndexerClient", lambda *args, **kwargs: indexer)

    def use_strategy(strategy):
        monkeypatch.setattr(agent_main, "build_strategy", lambda *args, **kwargs: strategy)
        return strategy

    return use_strategy


def agent_settings(tmp_path, **overrides):
    return make_settings(ledger_database_url=f"sqlite:///{tmp_path / 'agent.db'}", **overrides)


def test_single_cycle_without_action_exits_ok(wired, chain, tmp_path):
    strategy = wired(OneShotStrategy())

    assert asyncio.run(run_agent(agent_settings(tmp_path), once=True)) == EXIT_OK
    assert strategy.calls == 1
    assert chain.sent == []


def test_unregistered_wallet_exits_fatal(wired, chain, tmp_path):
    strategy = wired(OneShotStrategy())
    chain.registered_agent_id = 2

    assert asyncio.run(run_agent(agent_settings(tmp_path), once=True)) == EXIT_FATAL
    assert strategy.calls == 0


def test_invariant_violation_exits_fatal(wired, chain, tmp_path):
    chain.set_permission(USER, USDC)
    chain.token_balances[USDC.lower()] = 10 ** 9
    unsafe = SwapOpportunity(
        token_in=USDC,
        token_out=WETH,
        amount_in=50_000_000,
        expected_out=10 ** 16,
        min_amount_out=10 ** 15,
        profit_percent=Decimal("2"),
        user_address=USER,
        pool_fee=3000,
        permission_id="perm-1",
    )
    wired(OneShotStrategy(unsafe))
    settings = agent_settings(tmp_path, agent_type="dex_swap")

    code = asyncio.run(asyncio.wait_for(run_agent(settings), timeout=5))

    assert code == EXIT_FATAL
    assert chain.sent == []


@pytest.mark.skipif(sys.platform == "win32", reason="needs loop signal handlers")
def test_sigterm_stops_gracefully(wired, chain, tmp_path):
    strategy = wired(OneShotStrategy(on_evaluate=lambda: os.kill(os.getpid(), signal.SIGTERM)))

    code = asyncio.run(asyncio.wait_for(run_agent(agent_settings(tmp_path)), timeout=5))

    assert code == EXIT_OK
    assert strategy.calls >= 1
