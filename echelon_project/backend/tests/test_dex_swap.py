import asyncio
from decimal import Decimal

import pytest

from echelon_agents.errors import InvariantViolation, RpcError
from echelon_agents.helpers import compute_min_amount_out, now_seconds
from echelon_agents.models import SwapOpportunity, swap_decision_key
from echelon_agents.strategies import StrategyContext
from echelon_agents.strategies.dex_swap import DexSwapStrategy, rank_opportunities, reference_amount_out

from conftest import AGENT_WALLET, OTHER_USER, USDC, USER, WETH, FakeChain, FakeIndexer, make_permission, make_settings

USDC_TO_WETH = (USDC.lower(), WETH.lower())


def weth_for_usdc(premium_percent):
    """Quote function paying ``premium_percent`` over the 2000 USDC/WETH reference"""
    def quote(amount_in):
        reference = Decimal(amount_in) / Decimal(10 ** 6) / Decimal(2000) * Decimal(10 ** 18)
        return int(reference * (1 + Decimal(premium_percent) / 100))
    return quote


def context(pending_keys=frozenset()):
    return StrategyContext(agent_id=1, agent_wallet=AGENT_WALLET, now=now_seconds(), pending_keys=pending_keys)


def evaluate(permissions, chain, settings=None, ctx=None):
    strategy = DexSwapStrategy(settings or make_settings(agent_type="dex_swap"), FakeIndexer(permissions=permissions), chain)
    return asyncio.run(strategy.evaluate(ctx or context()))


def test_exhausted_permission_excluded_before_quoting():
    chain = FakeChain()
    chain.quotes[USDC_TO_WETH] = weth_for_usdc(5)

    assert evaluate([make_permission(remaining=0)], chain) is None
    assert chain.quote_calls == []


def test_expired_permission_excluded_before_quoting():
    chain = FakeChain()
    chain.quotes[USDC_TO_WETH] = weth_for_usdc(5)

    assert evaluate([make_permission(expires_in=-60)], chain) is None
    assert chain.quote_calls == []


def test_inactive_permission_excluded_before_quoting():
    chain = FakeChain()
    assert evaluate([make_permission(is_active=False)], chain) is None
    assert chain.quote_calls == []


def test_profitable_swap_selected():
    chain = FakeChain()
    chain.quotes[USDC_TO_WETH] = weth_for_usdc(1)

    opportunity = evaluate([make_permission(remaining=50_000_000)], chain)

    assert opportunity is not None
    assert opportunity.token_in == USDC
    assert opportunity.token_out == WETH
    assert opportunity.amount_in == 50_000_000
    assert opportunity.user_address == USER
    assert opportunity.pool_fee == 3000
    assert opportunity.expected_out == weth_for_usdc(1)(50_000_000)
    assert opportunity.min_amount_out == compute_min_amount_out(opportunity.expected_out, Decimal("0.005"))
    assert opportunity.min_amount_out <= opportunity.expected_out
    assert Decimal("0.99") < opportunity.profit_percent <= Decimal("1")
    assert chain.quote_calls == [(USDC, WETH, 50_000_000, 3000)]


def test_swap_below_profit_threshold_discarded():
    chain = FakeChain()
    chain.quotes[USDC_TO_WETH] = weth_for_usdc("0.2")
    assert evaluate([make_permission()], chain) is None
    assert len(chain.quote_calls) == 1


def test_input_amount_bounded_by_max_swap():
    chain = FakeChain()
    chain.quotes[USDC_TO_WETH] = weth_for_usdc(1)
    opportunity = evaluate([make_permission(remaining=500_000_000)], chain)
    assert opportunity.amount_in == 100_000_000


def test_permission_below_min_swap_skipped():
    chain = FakeChain()
    chain.quotes[USDC_TO_WETH] = weth_for_usdc(1)
    assert evaluate([make_permission(remaining=999_999)], chain) is None
    assert chain.quote_calls == []


def test_equal_profit_prefers_larger_amount():
    chain = FakeChain()
    chain.quotes[USDC_TO_WETH] = weth_for_usdc(2)
    opportunity = evaluate(
        [
            make_permission("perm-small", user=USER, remaining=20_000_000),
            make_permission("perm-large", user=OTHER_USER, remaining=60_000_000),
        ],
        chain,
    )
    assert opportunity.permission_id == "perm-large"
    assert opportunity.amount_in == 60_000_000


def test_higher_profit_beats_larger_amount():
    chain = FakeChain()

    def quote(amount_in):
        premium = 3 if amount_in == 20_000_000 else 1
        return weth_for_usdc(premium)(amount_in)

    chain.quotes[USDC_TO_WETH] = quote
    opportunity = evaluate(
        [
            make_permission("perm-small", user=USER, remaining=20_000_000),
            make_permission("perm-large", user=OTHER_USER, remaining=60_000_000),
        ],
        chain,
    )
    assert opportunity.permission_id == "perm-small"


def test_failed_quote_skips_only_that_candidate():
    chain = FakeChain()

    def quote(amount_in):
        if amount_in == 20_000_000:
            raise RpcError("quoter timeout")
        return weth_for_usdc(1)(amount_in)

    chain.quotes[USDC_TO_WETH] = quote
    opportunity = evaluate(
        [
            make_permission("perm-small", user=USER, remaining=20_000_000),
            make_permission("perm-large", user=OTHER_USER, remaining=60_000_000),
        ],
        chain,
    )
    assert opportunity.permission_id == "perm-large"
    assert len(chain.quote_calls) == 2


def test_pending_swap_not_requoted():
    chain = FakeChain()
    chain.quotes[USDC_TO_WETH] = weth_for_usdc(1)
    key = swap_decision_key(USER, USDC, WETH, 50_000_000, 3000)

    assert evaluate([make_permission(remaining=50_000_000)], chain, ctx=context(frozenset({key}))) is None
    assert chain.quote_calls == []


def test_reference_amount_out_converts_decimals():
    # 2000 USDC at 2000 USDC/WETH is exactly one WETH
    out = reference_amount_out(2_000_000_000, 6, 18, Decimal(1) / Decimal(2000))
    assert out.quantize(Decimal(1)) == Decimal(10 ** 18)


def _opportunity(profit, amount_in, expected_out=1000, min_amount_out=995):
    return SwapOpportunity(
        token_in=USDC,
        token_out=WETH,
        amount_in=amount_in,
        expected_out=expected_out,
        min_amount_out=min_amount_out,
        profit_percent=Decimal(profit),
        user_address=USER,
        pool_fee=3000,
        permission_id="perm-1",
    )


def test_rank_opportunities():
    ranked = rank_opportunities([_opportunity("1", 10), _opportunity("2", 5), _opportunity("2", 8)])
    assert [(o.profit_percent, o.amount_in) for o in ranked] == [
        (Decimal(2), 8), (Decimal(2), 5), (Decimal(1), 10)
    ]


def test_min_amount_out_above_expected_is_an_invariant_violation():
    with pytest.raises(InvariantViolation):
        _opportunity("1", 10, expected_out=1000, min_amount_out=1001)
