from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Tuple, Union

from .aggregator import IntervalLike, aggregate, interval_minutes
from .candle_store import CandleStore
from .models import Candle, Side
from .trailing import compute_next_stop_loss
from .window import needed_aggregated, required_base_count, trim

log = logging.getLogger("service")

BASE_INTERVAL = "1m"


def base_interval_minutes(interval: IntervalLike) -> int:
    if isinstance(interval, str) and interval.strip().lower() == BASE_INTERVAL:
        return 1
    if isinstance(interval, int) and not isinstance(interval, bool) and interval == 1:
        return 1
    if isinstance(interval, timedelta) and interval == timedelta(minutes=1):
        return 1
    return interval_minutes(interval)


def next_stop_loss(
    store: CandleStore,
    symbol: str,
    now: datetime,
    side: Union[Side, str],
    current_stop_loss: Decimal,
    interval: IntervalLike,
    lookback: int,
) -> Tuple[Decimal, bool]:
    """Fetch, aggregate, trim and evaluate the trailing stop for one position.

    interval "1m" evaluates the base candles directly.
    """
    mult = base_interval_minutes(interval)
    limit = required_base_count(lookback, mult)
    candles = store.fetch_recent(symbol, now, limit)
    if mult > 1:
        candles = aggregate(candles, mult)

    if len(candles) < 2:
        log.debug("stop_insufficient_history symbol=%s interval=%s candles=%d", symbol, interval, len(candles))
        return current_stop_loss, False

    candles = trim(candles, needed_aggregated(lookback))
    return compute_next_stop_loss(side, current_stop_loss, candles, lookback)


def fetch_recent_aggregated(
    store: CandleStore,
    symbol: str,
    to: datetime,
    interval: IntervalLike,
    limit: int = 200,
) -> List[Candle]:
    if limit <= 0:
        limit = 200
    mult = interval_minutes(interval)
    rows = store.fetch_recent(symbol, to, limit * mult + mult)
    return trim(aggregate(rows, mult), limit)
