"""
Market analysis shared by the strategies: snapshot, volatility buckets and
the (volatility, trend) decision table lookup
"""
from typing import Dict, List, Sequence, Tuple

from ..helpers import calculate_volatility, clamp, determine_trend
from ..models import IndexedExecution, MarketSnapshot, TrendDirection


def build_market_snapshot(
    executions: Sequence[IndexedExecution],
    volatility_scale: float,
    trend_threshold: float,
    yield_rate: float = 0.0
) -> MarketSnapshot:
    """
    Derive a MarketSnapshot from a window of executions, newest first

    With no executions the snapshot keeps its defaults: zero volatility,
    neutral trend and a sample size of 0.
    """
    if not executions:
        return MarketSnapshot(best_yield_rate=yield_rate)

    chronological = sorted(executions, key=lambda e: e.started_at)
    values: List[float] = [e.profit_loss_percent for e in chronological]

    return MarketSnapshot(
        volatility=calculate_volatility(values, volatility_scale),
        best_yield_rate=yield_rate,
        trend=TrendDirection(determine_trend(values, trend_threshold)),
        avg_profit_loss=sum(values) / len(values),
        sample_size=len(values),
    )


def volatility_bucket(volatility: float, low_threshold: float, high_threshold: float) -> str:
    """'low' below low_threshold, 'high' at or above high_threshold, else 'medium'"""
    if volatility >= high_threshold:
        return "high"
    if volatility < low_threshold:
        return "low"
    return "medium"


def lookup_decision(
    table: Dict[str, Dict[str, Tuple[str, float]]],
    bucket: str,
    trend: TrendDirection
) -> Tuple[str, float]:
    """Strategy class and clamped risk factor for a table cell"""
    strategy, risk = table[bucket][trend.value]
    return strategy, clamp(float(risk), 0.0, 1.0)
