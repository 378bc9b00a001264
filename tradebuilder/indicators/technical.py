"""
Technical indicator math used by the supplier nodes.

All functions take closing prices oldest-first and return a single float for
the latest bar. When there is not enough history the result is NaN, which
makes every comparison against it false.
"""
import math
from typing import List, Sequence


def calculate_sma(prices: Sequence[float], period: int) -> float:
    """Simple Moving Average of the last `period` prices."""
    if period <= 0 or not prices or len(prices) < period:
        return math.nan
    window = list(prices)[-period:]
    return sum(window) / period


def calculate_rsi(prices: Sequence[float], period: int = 14) -> float:
    """
    Relative Strength Index with Wilder's smoothing.

    Formula: RSI = 100 - (100 / (1 + RS)), where RS = avg_gain / avg_loss
    Needs at least period + 1 prices.
    """
    if period <= 0 or not prices or len(prices) < period + 1:
        return math.nan

    prices = list(prices)
    changes = [prices[i] - prices[i - 1] for i in range(1, len(prices))]
    gains = [max(c, 0.0) for c in changes]
    losses = [abs(min(c, 0.0)) for c in changes]

    # Initial average gain and loss
    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period

    # Smooth averages for remaining values
    for i in range(period, len(changes)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period

    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0

    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def highest(values: List[float]) -> float:
    """Highest value of a series, NaN when empty."""
    clean = [v for v in values if v is not None]
    if not clean:
        return math.nan
    return max(clean)
