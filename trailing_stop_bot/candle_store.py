from __future__ import annotations

import bisect
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .models import Candle


class CandleStore:
    """In-memory 1m candle series, one row per (symbol, bucket_start)."""

    def __init__(self, max_history: int = 20000) -> None:
        self.max_history = max(1, int(max_history))
        self._rows: Dict[str, Dict[datetime, Candle]] = {}
        self._keys: Dict[str, List[datetime]] = {}

    def upsert(self, c: Candle) -> None:
        sym = c.symbol.upper()
        rows = self._rows.setdefault(sym, {})
        keys = self._keys.setdefault(sym, [])
        if c.bucket_start not in rows:
            bisect.insort(keys, c.bucket_start)
        rows[c.bucket_start] = c

        while len(keys) > self.max_history:
            oldest = keys.pop(0)
            del rows[oldest]

    def upsert_many(self, candles: Iterable[Candle]) -> int:
        n = 0
        for c in candles:
            self.upsert(c)
            n += 1
        return n

    def fetch_recent(self, symbol: str, to: datetime, limit: int = 200) -> List[Candle]:
        """Up to `limit` newest rows at or before `to`, returned ascending."""
        if limit <= 0:
            limit = 200
        sym = symbol.upper()
        keys = self._keys.get(sym)
        if not keys:
            return []
        rows = self._rows[sym]

        end = bisect.bisect_right(keys, to)
        return [rows[k] for k in keys[max(0, end - limit):end]]

    def latest(self, symbol: str) -> Optional[Candle]:
        sym = symbol.upper()
        keys = self._keys.get(sym)
        if not keys:
            return None
        return self._rows[sym][keys[-1]]

    def symbols(self) -> List[str]:
        return sorted(self._rows)

    def __len__(self) -> int:
        return sum(len(r) for r in self._rows.values())
