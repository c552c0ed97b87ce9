from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Union


class Side(str, Enum):
    LONG = "long"
    SHORT = "short"


@dataclass(frozen=True)
class Candle:
    symbol: str
    bucket_start: datetime  # UTC, inclusive start of the interval
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal


@dataclass
class Position:
    symbol: str
    side: Side
    stop_loss: Decimal
    interval: str = "5m"
    lookback: int = 20


@dataclass(frozen=True)
class StopLossMove:
    symbol: str
    side: Side
    interval: str
    previous_stop_loss: Decimal
    stop_loss: Decimal
    evaluated_at: datetime


def to_decimal(value: Union[Decimal, int, float, str]) -> Decimal:
    """Exact decimal from exchange/config values.

    Floats go through str() so 0.1 becomes Decimal("0.1"), not its binary expansion.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"not a price: {value!r}")
    return Decimal(str(value).strip())


def utc_from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc)
