from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from .aggregator import InvalidInterval
from .candle_store import CandleStore
from .config import Config
from .models import Candle, Position, StopLossMove
from .notifier.webhook import WebhookNotifier, format_price
from .providers.binance import BinanceProvider, KlineEvent
from .service import BASE_INTERVAL, base_interval_minutes, next_stop_loss
from .window import required_base_count

log = logging.getLogger("runner")


class TrailingStopRunner:
    """Trails the stop-loss of every configured position once per closed 1m candle."""

    def __init__(self, cfg: Config, *, provider: Optional[BinanceProvider] = None):
        self.cfg = cfg
        self.provider = provider or BinanceProvider(
            market=cfg.provider.market,
            rest_timeout_s=cfg.provider.rest_timeout_s,
            rest_max_retries=cfg.provider.rest_max_retries,
            ws_heartbeat_s=cfg.provider.ws_heartbeat_s,
        )
        self.webhook = WebhookNotifier(
            enabled=cfg.webhook.enabled,
            url=cfg.webhook.url,
            secret=cfg.webhook.secret,
            timeout_s=cfg.webhook.timeout_s,
            headers=cfg.webhook.headers or {},
        )
        self.store = CandleStore(max_history=cfg.trailing.history_limit)

        self.positions: Dict[str, List[Position]] = {}
        for pos in cfg.build_positions():
            self.positions.setdefault(pos.symbol, []).append(pos)

        self._last_bucket: Dict[str, datetime] = {}
        self._metrics = {
            "evaluations_total": 0,
            "moves_total": 0,
            "duplicates_total": 0,
        }

    def _history_needed(self, symbol: str) -> int:
        need = 0
        for pos in self.positions.get(symbol, []):
            need = max(need, required_base_count(pos.lookback, base_interval_minutes(pos.interval)))
        return need

    async def warmup(self) -> None:
        symbols = sorted(self.positions)
        log.info("warmup_start symbols=%d positions=%d", len(symbols), sum(len(v) for v in self.positions.values()))

        sem = asyncio.Semaphore(max(1, int(self.cfg.provider.warmup_concurrency)))

        async def _one(sym: str):
            n = self._history_needed(sym)
            try:
                async with sem:
                    candles = await self.provider.fetch_klines_history(sym, BASE_INTERVAL, n)
            except Exception as e:
                return (sym, repr(e))
            # the newest REST kline is usually still open; the stream delivers it once closed
            now = datetime.now(timezone.utc)
            closed = [c for c in candles if c.bucket_start + timedelta(minutes=1) <= now]
            self.store.upsert_many(closed)
            if closed:
                self._last_bucket[sym] = closed[-1].bucket_start
            log.info("warmup_symbol symbol=%s loaded_1m=%d need=%d", sym, len(closed), n)
            return None

        results = await asyncio.gather(*[_one(sym) for sym in symbols])
        for failure in [r for r in results if r is not None]:
            log.warning("warmup_failed symbol=%s err=%s", failure[0], failure[1])
        log.info("warmup_done candles=%d", len(self.store))

    async def run_forever(self) -> None:
        symbols = sorted(self.positions)
        if not symbols:
            raise ValueError("No positions configured.")

        await self.warmup()

        async for evt in self.provider.stream_klines(symbols, [BASE_INTERVAL]):
            await self.on_kline(evt)

    async def on_kline(self, evt: KlineEvent) -> List[StopLossMove]:
        if evt.timeframe != BASE_INTERVAL or evt.symbol not in self.positions:
            return []
        if self._is_duplicate(evt.candle):
            self._metrics["duplicates_total"] += 1
            return []
        self.store.upsert(evt.candle)
        # evaluate at the close of the minute that just finished
        return await self.evaluate_symbol(evt.symbol, evt.candle.bucket_start + timedelta(minutes=1))

    def _is_duplicate(self, c: Candle) -> bool:
        last = self._last_bucket.get(c.symbol)
        if last is not None and c.bucket_start <= last:
            return True
        self._last_bucket[c.symbol] = c.bucket_start
        return False

    async def evaluate_symbol(self, symbol: str, now: datetime) -> List[StopLossMove]:
        moves: List[StopLossMove] = []
        for pos in self.positions.get(symbol, []):
            self._metrics["evaluations_total"] += 1
            try:
                new_sl, moved = next_stop_loss(
                    self.store, symbol, now, pos.side, pos.stop_loss, pos.interval, pos.lookback
                )
            except InvalidInterval as e:
                log.warning("stop_eval_skipped symbol=%s side=%s err=%s", symbol, pos.side.value, e)
                continue

            if not moved:
                continue

            move = StopLossMove(
                symbol=symbol,
                side=pos.side,
                interval=pos.interval,
                previous_stop_loss=pos.stop_loss,
                stop_loss=new_sl,
                evaluated_at=now,
            )
            pos.stop_loss = new_sl
            self._metrics["moves_total"] += 1
            moves.append(move)
            log.info(
                "stop_moved symbol=%s side=%s interval=%s from=%s to=%s at=%s moves_total=%d",
                symbol,
                pos.side.value,
                pos.interval,
                format_price(move.previous_stop_loss),
                format_price(move.stop_loss),
                now.isoformat(),
                self._metrics["moves_total"],
            )

        for move in moves:
            await self.webhook.send_move(move)
        return moves
