"""
DEX swap strategy - quotes Uniswap V3 single-pool swaps for each delegated
permission and picks the most profitable one against reference prices
"""
import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from ..agent_logger import AgentLogger
from ..chain_client import ChainClient
from ..chains import get_pool_fee
from ..config import AgentSettings
from ..errors import RevertError, RpcError
from ..helpers import calculate_profit_percent, compute_min_amount_out
from ..indexer_client import IndexerClient
from ..models import Permission, QuoteResult, SwapOpportunity, swap_decision_key
from .base import StrategyContext

logger = logging.getLogger(__name__)


@dataclass
class SwapCandidate:
    permission: Permission
    symbol_in: str
    symbol_out: str
    token_in: str
    token_out: str
    amount_in: int
    pool_fee: int


def reference_amount_out(
    amount_in: int,
    decimals_in: int,
    decimals_out: int,
    price: Decimal
) -> Decimal:
    """Output amount (smallest units) implied by the reference price"""
    whole_in = Decimal(amount_in) / (Decimal(10) ** decimals_in)
    return whole_in * price * (Decimal(10) ** decimals_out)


def rank_opportunities(opportunities: List[SwapOpportunity]) -> List[SwapOpportunity]:
    """Highest profit first, larger input amount on ties"""
    return sorted(opportunities, key=lambda o: (-o.profit_percent, -o.amount_in))


class DexSwapStrategy:
    """Finds the best swap a delegated permission can fund"""

    name = "dex_swap"

    def __init__(
        self,
        settings: AgentSettings,
        indexer: IndexerClient,
        chain: ChainClient,
        agent_logger: Optional[AgentLogger] = None
    ):
        self.settings = settings
        self.indexer = indexer
        self.chain = chain
        self.agent_logger = agent_logger or AgentLogger("DexSwap")

    def build_candidates(self, permissions: List[Permission], context: StrategyContext) -> List[SwapCandidate]:
        """Every (permission, pair) worth quoting; unusable permissions never get this far"""
        settings = self.settings
        candidates = []

        for permission in permissions:
            if not permission.is_usable(context.now):
                logger.debug(f"Skipping permission {permission.id}: inactive, exhausted or expired")
                continue

            for symbol_in, symbol_out in settings.swap_pairs:
                token_in = settings.token_addresses.get(symbol_in)
                token_out = settings.token_addresses.get(symbol_out)
                if not token_in or not token_out:
                    continue
                if token_in.lower() != permission.token_address.lower():
                    continue

                amount_in = min(permission.amount_remaining, settings.max_swap_amount)
                if amount_in < settings.min_swap_amount:
                    logger.debug(
                        f"Permission {permission.id} has {amount_in} left, below minimum swap {settings.min_swap_amount}"
                    )
                    continue

                pool_fee = get_pool_fee(symbol_in, symbol_out)
                key = swap_decision_key(permission.user_address, token_in, token_out, amount_in, pool_fee)
                if key in context.pending_keys:
                    logger.info(f"Swap {symbol_in}->{symbol_out} for {permission.user_address} already pending")
                    continue

                candidates.append(SwapCandidate(
                    permission=permission,
                    symbol_in=symbol_in,
                    symbol_out=symbol_out,
                    token_in=token_in,
                    token_out=token_out,
                    amount_in=amount_in,
                    pool_fee=pool_fee,
                ))

        return candidates

    async def _quote(self, candidate: SwapCandidate) -> Optional[QuoteResult]:
        try:
            return await self.chain.quote_exact_input_single(
                self.settings.quoter_address,
                candidate.token_in,
                candidate.token_out,
                candidate.amount_in,
                candidate.pool_fee,
            )
        except (RpcError, RevertError) as e:
            logger.warning(f"Quote failed for {candidate.symbol_in}->{candidate.symbol_out}: {e}")
            return None

    def build_opportunity(self, candidate: SwapCandidate, quote: QuoteResult) -> Optional[SwapOpportunity]:
        """SwapOpportunity for a quoted candidate, or None when it misses the profit threshold"""
        settings = self.settings
        price = settings.reference_price(candidate.symbol_in, candidate.symbol_out)
        if price is None:
            logger.warning(f"No reference price for {candidate.symbol_in}/{candidate.symbol_out}")
            return None

        reference_out = reference_amount_out(
            candidate.amount_in,
            settings.token_decimals[candidate.symbol_in],
            settings.token_decimals[candidate.symbol_out],
            price,
        )
        profit_percent = calculate_profit_percent(reference_out, Decimal(quote.amount_out))

        if profit_percent < settings.min_profit_percent:
            logger.debug(
                f"Discarding {candidate.symbol_in}->{candidate.symbol_out}: "
                f"profit {profit_percent:.4f}% below {settings.min_profit_percent}%"
            )
            return None

        return SwapOpportunity(
            token_in=candidate.token_in,
            token_out=candidate.token_out,
            amount_in=candidate.amount_in,
            expected_out=quote.amount_out,
            min_amount_out=compute_min_amount_out(quote.amount_out, settings.slippage_tolerance),
            profit_percent=profit_percent,
            user_address=candidate.permission.user_address,
            pool_fee=candidate.pool_fee,
            permission_id=candidate.permission.id,
        )

    async def evaluate(self, context: StrategyContext) -> Optional[SwapOpportunity]:
        permissions = await self.indexer.get_active_permissions(context.agent_id)
        candidates = self.build_candidates(permissions, context)
        if not candidates:
            logger.info("No usable permissions to quote")
            return None

        quotes = await asyncio.gather(*(self._quote(candidate) for candidate in candidates))

        opportunities = []
        for candidate, quote in zip(candidates, quotes):
            if quote is None:
                continue
            opportunity = self.build_opportunity(candidate, quote)
            if opportunity is not None:
                opportunities.append(opportunity)

        if not opportunities:
            logger.info(f"No swap clears the {self.settings.min_profit_percent}% profit threshold")
            return None

        best = rank_opportunities(opportunities)[0]
        self.agent_logger.log_swap_opportunity(best)
        return best
