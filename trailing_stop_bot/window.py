from __future__ import annotations

from typing import List, Sequence

from .models import Candle

DEFAULT_LOOKBACK = 20


def resolve_lookback(lookback: int) -> int:
    return DEFAULT_LOOKBACK if lookback <= 0 else int(lookback)


def needed_aggregated(lookback: int) -> int:
    # lookback window + the gating "previous" candle + the latest candle
    return resolve_lookback(lookback) + 2


def required_base_count(lookback: int, interval_minutes: int) -> int:
    """Number of 1m candles to fetch so aggregation yields at least lookback + 2 candles.

    Two extra buckets absorb a partial first and last bucket.
    """
    mult = max(1, int(interval_minutes))
    return needed_aggregated(lookback) * mult + 2 * mult


def trim(aggregated: Sequence[Candle], needed: int) -> List[Candle]:
    if needed > 0 and len(aggregated) > needed:
        return list(aggregated[-needed:])
    return list(aggregated)
