from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .models import Candle

# Intervals the trailing stop is evaluated on, in minutes.
SUPPORTED_INTERVALS: Dict[str, int] = {
    "5m": 5,
    "15m": 15,
    "30m": 30,
    "45m": 45,
}

IntervalLike = Union[str, int, timedelta]


class InvalidInterval(ValueError):
    def __init__(self, interval: object):
        super().__init__(f"invalid interval {interval!r}. allowed: {','.join(SUPPORTED_INTERVALS)}")
        self.interval = interval


def interval_minutes(interval: IntervalLike) -> int:
    """Validate an aggregation interval and return its length in minutes.

    Accepts "15m", 15 or timedelta(minutes=15).
    """
    if isinstance(interval, timedelta):
        secs = interval.total_seconds()
        minutes = int(secs // 60)
        if secs % 60 == 0 and minutes in SUPPORTED_INTERVALS.values():
            return minutes
        raise InvalidInterval(interval)
    if isinstance(interval, bool):
        raise InvalidInterval(interval)
    if isinstance(interval, int):
        if interval in SUPPORTED_INTERVALS.values():
            return interval
        raise InvalidInterval(interval)
    if isinstance(interval, str):
        key = interval.strip().lower()
        if key in SUPPORTED_INTERVALS:
            return SUPPORTED_INTERVALS[key]
    raise InvalidInterval(interval)


def bucket_start(ts: datetime, interval_seconds: int) -> datetime:
    """Epoch-aligned bucket boundary: 12:07 with 5m -> 12:05 (UTC)."""
    secs = int(ts.timestamp())
    return datetime.fromtimestamp((secs // interval_seconds) * interval_seconds, tz=timezone.utc)


@dataclass(frozen=True)
class _Accumulating:
    bucket_start: datetime
    candle: Candle


def _merge(cur: Candle, c: Candle) -> Candle:
    return replace(
        cur,
        high=max(cur.high, c.high),
        low=min(cur.low, c.low),
        close=c.close,
        volume=cur.volume + c.volume,
    )


def _step(
    state: Optional[_Accumulating], c: Candle, interval_seconds: int
) -> Tuple[_Accumulating, Optional[Candle]]:
    """One transition of the bucket fold.

    state None means no bucket is open yet. Returns (next_state, emitted_candle).
    """
    b = bucket_start(c.bucket_start, interval_seconds)
    if state is not None and state.bucket_start == b:
        return _Accumulating(b, _merge(state.candle, c)), None

    opened = _Accumulating(b, replace(c, bucket_start=b))
    emitted = state.candle if state is not None else None
    return opened, emitted


def aggregate(candles: Iterable[Candle], interval: IntervalLike) -> List[Candle]:
    """Group ascending 1m candles into epoch-aligned buckets.

    A bucket is emitted when the first candle of a different bucket arrives;
    the last bucket is always emitted, complete or not.
    """
    seconds = interval_minutes(interval) * 60

    out: List[Candle] = []
    state: Optional[_Accumulating] = None
    for c in candles:
        state, emitted = _step(state, c, seconds)
        if emitted is not None:
            out.append(emitted)

    if state is not None:
        out.append(state.candle)
    return out
