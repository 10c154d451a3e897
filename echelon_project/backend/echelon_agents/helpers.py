"""
Shared helpers: retry, market math, slippage and formatting
"""
import asyncio
import logging
import re
import statistics
import time
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Awaitable, Callable, Sequence, Tuple, Type

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_PRIVATE_KEY_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")


async def execute_with_retry(
    func: Callable[..., Awaitable[Any]],
    *args,
    max_attempts: int = 4,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    **kwargs
) -> Any:
    """
    Execute a coroutine function with exponential backoff on the given errors

    Args:
        func: Async function to execute
        max_attempts: Total number of attempts, including the first one
        base_delay: Delay before the second attempt, doubled on each retry
        max_delay: Upper bound for a single delay
        retry_on: Exception types that are retried; anything else propagates

    Returns:
        Result of the first successful call
    """
    last_exception = None

    for attempt in range(max_attempts):
        try:
            return await func(*args, **kwargs)
        except retry_on as e:
            last_exception = e
            if attempt < max_attempts - 1:
                wait_time = min(base_delay * (2 ** attempt), max_delay)
                logger.warning(
                    f"Attempt {attempt + 1} failed: {e}. Retrying in {wait_time}s..."
                )
                await asyncio.sleep(wait_time)
            else:
                logger.error(f"All {max_attempts} attempts failed: {e}")

    raise last_exception


def clamp(value: float, lower: float, upper: float) -> float:
    return min(max(value, lower), upper)


def calculate_volatility(values: Sequence[float], scale: float) -> float:
    """
    Normalized spread of profit/loss outcomes.

    Population standard deviation divided by ``scale`` and clamped to [0, 1],
    so 0 is a flat history and 1 is a spread of ``scale`` or more.
    """
    if len(values) < 2 or scale <= 0:
        return 0.0
    return clamp(statistics.pstdev(values) / scale, 0.0, 1.0)


def weighted_moving_average(values: Sequence[float], decay: float = 0.8) -> float:
    """Moving average weighting the most recent values (end of sequence) highest"""
    if not values:
        return 0.0
    weights = [decay ** (len(values) - i - 1) for i in range(len(values))]
    return sum(v * w for v, w in zip(values, weights)) / sum(weights)


def determine_trend(values: Sequence[float], threshold: float = 0.05) -> str:
    """Trend direction ('up', 'down' or 'neutral') of chronologically ordered P/L values"""
    if len(values) < 3:
        return "neutral"
    average = weighted_moving_average(values)
    if average > threshold:
        return "up"
    if average < -threshold:
        return "down"
    return "neutral"


def calculate_profit_percent(reference_amount: Decimal, actual_amount: Decimal) -> Decimal:
    """Percentage by which ``actual_amount`` exceeds ``reference_amount``"""
    if reference_amount <= 0:
        return Decimal("0")
    return (actual_amount - reference_amount) / reference_amount * Decimal(100)


def compute_min_amount_out(expected_out: int, slippage_tolerance: Decimal) -> int:
    """
    Minimum acceptable output: expected_out * (1 - tolerance), floored to an integer

    Raises:
        ValueError: tolerance outside [0, 1) or negative expected output
    """
    tolerance = Decimal(str(slippage_tolerance))
    if tolerance < 0 or tolerance >= 1:
        raise ValueError(f"Slippage tolerance must be in [0, 1), got {tolerance}")
    if expected_out < 0:
        raise ValueError(f"Expected output must be non-negative, got {expected_out}")
    scaled = Decimal(expected_out) * (Decimal(1) - tolerance)
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def now_seconds() -> int:
    return int(time.time())


def is_valid_address(value: str) -> bool:
    return bool(value) and bool(_ADDRESS_RE.match(value))


def is_valid_private_key(value: str) -> bool:
    return bool(value) and bool(_PRIVATE_KEY_RE.match(value))


def format_address(address: str, chars: int = 4) -> str:
    """0x1234...5678"""
    if not address or len(address) < chars * 2 + 2:
        return address
    return f"{address[:chars + 2]}...{address[-chars:]}"
