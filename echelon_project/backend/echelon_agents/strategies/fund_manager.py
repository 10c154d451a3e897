"""
Fund manager strategy - reads market conditions from the indexer and
redelegates part of the agent's delegated capital to a specialist agent
"""
import asyncio
import logging
from decimal import Decimal, ROUND_FLOOR
from typing import List, Optional, Sequence, Tuple

from ..agent_logger import AgentLogger
from ..config import AgentSettings
from ..helpers import clamp
from ..indexer_client import IndexerClient
from ..models import AllocationDecision, MarketSnapshot, Permission, SpecialistAgent
from .base import StrategyContext
from .market import build_market_snapshot, lookup_decision, volatility_bucket

logger = logging.getLogger(__name__)

# Fallbacks tried in order when no specialist runs the preferred strategy
STRATEGY_ALTERNATIVES = {
    "Arbitrage": ["Momentum", "GridTrading"],
    "Yield": ["DCA", "GridTrading"],
    "Momentum": ["Arbitrage", "GridTrading"],
    "MeanReversion": ["DCA", "GridTrading"],
    "DCA": ["Yield", "GridTrading"],
    "GridTrading": ["DCA", "Yield"],
}


def select_target_strategy(snapshot: MarketSnapshot, settings: AgentSettings) -> Tuple[str, float]:
    """Strategy class and risk factor for the current market"""
    bucket = volatility_bucket(
        snapshot.volatility,
        settings.volatility_low_threshold,
        settings.volatility_high_threshold,
    )
    strategy, risk = lookup_decision(settings.decision_table, bucket, snapshot.trend)

    if snapshot.best_yield_rate > settings.high_yield_threshold and bucket != "high":
        strategy = "Yield"
    return strategy, risk


def select_specialist(
    leaderboard: Sequence[SpecialistAgent],
    strategy: str,
    min_reputation: int,
    exclude_agent_id: Optional[int] = None
) -> Optional[SpecialistAgent]:
    """
    Highest-reputation active specialist running ``strategy``

    Ties go to the lowest agent id. Candidates below ``min_reputation`` and
    the excluded agent never qualify.
    """
    candidates = [
        agent for agent in leaderboard
        if agent.strategy_type.lower() == strategy.lower()
        and agent.reputation_score >= min_reputation
        and agent.id != exclude_agent_id
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda agent: (-agent.reputation_score, agent.id))


def calculate_allocation_amount(available_capital: int, fraction: Decimal, risk_factor: float) -> int:
    """floor(capital * fraction * risk), never negative"""
    if available_capital <= 0:
        return 0
    risk = Decimal(str(clamp(risk_factor, 0.0, 1.0)))
    fraction = Decimal(str(clamp(float(fraction), 0.0, 1.0)))
    amount = (Decimal(available_capital) * fraction * risk).to_integral_value(rounding=ROUND_FLOOR)
    return max(int(amount), 0)


def select_source_permission(permissions: Sequence[Permission]) -> Optional[Permission]:
    """Permission with the most remaining capacity, lowest id on ties"""
    if not permissions:
        return None
    return min(permissions, key=lambda p: (-p.amount_remaining, p.id))


class FundManagerStrategy:
    """Allocates delegated capital to the best specialist for current market conditions"""

    name = "fund_manager"

    def __init__(self, settings: AgentSettings, indexer: IndexerClient, agent_logger: Optional[AgentLogger] = None):
        self.settings = settings
        self.indexer = indexer
        self.agent_logger = agent_logger or AgentLogger("FundManager")

    async def evaluate(self, context: StrategyContext) -> Optional[AllocationDecision]:
        settings = self.settings

        executions, leaderboard, permissions = await asyncio.gather(
            self.indexer.get_recent_executions(None, settings.recent_executions_window),
            self.indexer.get_leaderboard(settings.leaderboard_size),
            self.indexer.get_active_permissions(context.agent_id),
        )

        snapshot = build_market_snapshot(
            executions,
            settings.volatility_scale,
            settings.trend_threshold,
            settings.yield_rate_estimate,
        )
        strategy, risk_factor = select_target_strategy(snapshot, settings)
        self.agent_logger.log_market_analysis(snapshot, strategy, risk_factor)

        if snapshot.sample_size < settings.min_history_samples:
            logger.info(
                f"Not enough execution history ({snapshot.sample_size} < "
                f"{settings.min_history_samples}), no allocation this cycle"
            )
            return None

        specialist = self._find_specialist(leaderboard, strategy, context.agent_id)
        if specialist is None:
            logger.info(f"No specialist with reputation >= {settings.min_reputation_score} for {strategy}")
            return None
        self.agent_logger.log_specialist_selected(specialist)

        usable: List[Permission] = [p for p in permissions if p.is_usable(context.now)]
        source = select_source_permission(usable)
        if source is None:
            logger.info("No usable delegated permissions, nothing to allocate")
            return None

        available_capital = sum(p.amount_remaining for p in usable)
        amount = calculate_allocation_amount(available_capital, settings.allocation_fraction, risk_factor)
        # One redelegation draws on a single user's permission
        amount = min(amount, source.amount_remaining)

        if amount < settings.min_allocation_amount:
            logger.info(
                f"Allocation {amount} below minimum {settings.min_allocation_amount}, no allocation this cycle"
            )
            return None

        decision = AllocationDecision(
            target_agent_id=specialist.id,
            target_agent_address=specialist.wallet_address,
            target_strategy=specialist.strategy_type,
            amount=amount,
            duration=settings.allocation_duration_seconds,
            risk_factor=risk_factor,
            user_address=source.user_address,
            token_address=source.token_address,
            permission_id=source.id,
        )

        if decision.decision_key in context.pending_keys:
            logger.info(f"Allocation to agent {specialist.id} already pending, not re-selecting it")
            return None
        return decision

    def _find_specialist(
        self,
        leaderboard: Sequence[SpecialistAgent],
        strategy: str,
        own_agent_id: int
    ) -> Optional[SpecialistAgent]:
        for candidate_strategy in [strategy] + STRATEGY_ALTERNATIVES.get(strategy, []):
            specialist = select_specialist(
                leaderboard, candidate_strategy, self.settings.min_reputation_score, own_agent_id
            )
            if specialist is not None:
                if candidate_strategy != strategy:
                    logger.info(f"No {strategy} specialist available, falling back to {candidate_strategy}")
                return specialist
        return None
