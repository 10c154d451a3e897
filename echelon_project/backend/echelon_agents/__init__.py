"""
Echelon agent runtime - unattended on-chain agents that read the indexer,
decide, and submit transactions on behalf of delegating users
"""
from .cancellation import CancellationToken
from .chain_client import ChainClient
from .config import AgentSettings, load_settings
from .execution_coordinator import ExecutionCoordinator
from .indexer_client import IndexerClient
from .ledger import SubmissionLedger
from .models import (
    AllocationDecision,
    CycleOutcome,
    CycleResult,
    ExecutionRecord,
    MarketSnapshot,
    SwapOpportunity,
)
from .scheduler import AgentRuntime, RuntimeState
from .strategies import DexSwapStrategy, FundManagerStrategy, build_strategy

__version__ = "0.1.0"

__all__ = [
    "AgentRuntime",
    "RuntimeState",
    "AgentSettings",
    "load_settings",
    "CancellationToken",
    "ChainClient",
    "IndexerClient",
    "SubmissionLedger",
    "ExecutionCoordinator",
    "FundManagerStrategy",
    "DexSwapStrategy",
    "build_strategy",
    "AllocationDecision",
    "SwapOpportunity",
    "MarketSnapshot",
    "ExecutionRecord",
    "CycleOutcome",
    "CycleResult",
]
