"""
Strategy engine - a closed set of agent variants behind one evaluate() capability
"""
from typing import Optional

from ..agent_logger import AgentLogger
from ..chain_client import ChainClient
from ..config import AgentSettings
from ..errors import ConfigurationError
from ..indexer_client import IndexerClient
from .base import Strategy, StrategyContext
from .dex_swap import DexSwapStrategy
from .fund_manager import FundManagerStrategy

STRATEGY_VARIANTS = ("fund_manager", "dex_swap")


def build_strategy(
    settings: AgentSettings,
    indexer: IndexerClient,
    chain: ChainClient,
    agent_logger: Optional[AgentLogger] = None
) -> Strategy:
    """Select the strategy variant named by the settings"""
    if settings.agent_type == "fund_manager":
        return FundManagerStrategy(settings, indexer, agent_logger)
    if settings.agent_type == "dex_swap":
        return DexSwapStrategy(settings, indexer, chain, agent_logger)
    raise ConfigurationError(f"Unknown agent type: {settings.agent_type}")


__all__ = [
    "Strategy",
    "StrategyContext",
    "FundManagerStrategy",
    "DexSwapStrategy",
    "STRATEGY_VARIANTS",
    "build_strategy",
]
