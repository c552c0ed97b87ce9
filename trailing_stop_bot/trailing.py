from __future__ import annotations

from decimal import Decimal
from typing import Optional, Sequence, Tuple, Union

from .models import Candle, Side
from .window import resolve_lookback


def is_bullish(c: Candle) -> bool:
    return c.close > c.open


def is_bearish(c: Candle) -> bool:
    return c.close < c.open


def avg_low(candles: Sequence[Candle]) -> Decimal:
    if not candles:
        return Decimal(0)
    return sum((c.low for c in candles), Decimal(0)) / Decimal(len(candles))


def avg_high(candles: Sequence[Candle]) -> Decimal:
    if not candles:
        return Decimal(0)
    return sum((c.high for c in candles), Decimal(0)) / Decimal(len(candles))


def candidate_stop_loss(
    side: Union[Side, str],
    candles: Sequence[Candle],
    lookback: int,
) -> Optional[Decimal]:
    """Clamped trailing candidate before the movement rule.

    Long:  gate prev bullish, avg(low) over the window, clamp <= prev.low
    Short: gate prev bearish, avg(high) over the window, clamp >= prev.high

    None when there are fewer than two candles or the gate fails.
    """
    if len(candles) < 2:
        return None
    side = Side(side)
    lookback = min(resolve_lookback(lookback), len(candles))

    prev = candles[-2]
    window = candles[-lookback:]

    if side is Side.LONG:
        if not is_bullish(prev):
            return None
        return min(avg_low(window), prev.low)

    if not is_bearish(prev):
        return None
    return max(avg_high(window), prev.high)


def compute_next_stop_loss(
    side: Union[Side, str],
    current_stop_loss: Decimal,
    candles: Sequence[Candle],
    lookback: int,
) -> Tuple[Decimal, bool]:
    """Trail the stop-loss for one evaluation.

    Returns (new_stop_loss, moved). The stop only moves up for longs and
    down for shorts; otherwise current_stop_loss comes back untouched.
    """
    side = Side(side)
    candidate = candidate_stop_loss(side, candles, lookback)
    if candidate is None:
        return current_stop_loss, False

    if side is Side.LONG and candidate > current_stop_loss:
        return candidate, True
    if side is Side.SHORT and candidate < current_stop_loss:
        return candidate, True
    return current_stop_loss, False
