from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Sequence

import aiohttp
import websockets

from ..models import Candle, to_decimal, utc_from_ms

log = logging.getLogger("binance")


def _rest_base(market: str) -> str:
    return "https://fapi.binance.com" if market == "futures" else "https://api.binance.com"


def _klines_path(market: str) -> str:
    return "/fapi/v1/klines" if market == "futures" else "/api/v3/klines"


def _ws_url(market: str) -> str:
    return "wss://fstream.binance.com/ws" if market == "futures" else "wss://stream.binance.com:9443/ws"


def _stream_name(symbol: str, tf: str) -> str:
    return f"{symbol.lower()}@kline_{tf}"


def _max_page(market: str) -> int:
    return 1500 if market == "futures" else 1000


def candle_from_rest_row(symbol: str, row: Sequence) -> Candle:
    # [0]=open time ms, [1..4]=OHLC strings, [5]=base volume
    return Candle(
        symbol=symbol.upper(),
        bucket_start=utc_from_ms(row[0]),
        open=to_decimal(row[1]),
        high=to_decimal(row[2]),
        low=to_decimal(row[3]),
        close=to_decimal(row[4]),
        volume=to_decimal(row[5]),
    )


def candle_from_ws_kline(k: Dict) -> Candle:
    return Candle(
        symbol=str(k.get("s", "")).upper(),
        bucket_start=utc_from_ms(k.get("t")),
        open=to_decimal(k.get("o")),
        high=to_decimal(k.get("h")),
        low=to_decimal(k.get("l")),
        close=to_decimal(k.get("c")),
        volume=to_decimal(k.get("v")),
    )


@dataclass(frozen=True)
class KlineEvent:
    symbol: str
    timeframe: str
    candle: Candle


def parse_kline_message(msg: str) -> Optional[KlineEvent]:
    """Decode one websocket frame; None for acks, malformed frames and open klines."""
    try:
        j = json.loads(msg)
    except ValueError:
        return None
    if not isinstance(j, dict):
        return None
    if "result" in j and j.get("id") == 1:
        return None  # subscribe ack

    data = j.get("data") or j
    if not isinstance(data, dict) or data.get("e") != "kline":
        return None

    k = data.get("k", {})
    if not k.get("x", False):
        return None  # only closed candles

    return KlineEvent(symbol=str(k.get("s", "")).upper(), timeframe=k.get("i", ""), candle=candle_from_ws_kline(k))


class BinanceProvider:
    def __init__(
        self,
        market: str = "futures",
        *,
        rest_timeout_s: int = 20,
        ws_heartbeat_s: int = 20,
        rest_max_retries: int = 4,
        rest_backoff_s: float = 0.8,
        rest_conn_limit: int = 40,
        rest_conn_limit_per_host: int = 10,
    ):
        self.market = market
        self.rest_timeout_s = rest_timeout_s
        self.ws_heartbeat_s = ws_heartbeat_s

        self.rest_max_retries = rest_max_retries
        self.rest_backoff_s = rest_backoff_s
        self.rest_conn_limit = rest_conn_limit
        self.rest_conn_limit_per_host = rest_conn_limit_per_host

        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self) -> None:
        """Close the shared aiohttp session (best-effort)."""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.rest_timeout_s,
            connect=min(10, self.rest_timeout_s),
            sock_connect=min(10, self.rest_timeout_s),
            sock_read=max(10, int(self.rest_timeout_s * 0.75)),
        )

    def _connector(self) -> aiohttp.TCPConnector:
        return aiohttp.TCPConnector(
            limit=self.rest_conn_limit,
            limit_per_host=self.rest_conn_limit_per_host,
            ttl_dns_cache=300,
            enable_cleanup_closed=True,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout(), connector=self._connector())
        return self._session

    async def _get_klines_raw(self, params: Dict[str, object]) -> List[list]:
        url = _rest_base(self.market) + _klines_path(self.market)
        sess = await self._get_session()

        backoff = float(self.rest_backoff_s)
        last_err: Optional[BaseException] = None
        data: List[list] = []
        for attempt in range(1, int(self.rest_max_retries) + 1):
            try:
                async with sess.get(url, params=params) as resp:
                    if resp.status in (418, 429):
                        txt = await resp.text()
                        retry_after = resp.headers.get("Retry-After")
                        sleep_s = float(retry_after) if (retry_after and retry_after.isdigit()) else backoff
                        log.warning(
                            "rest_rate_limited status=%s symbol=%s sleep=%.1fs body=%s",
                            resp.status,
                            params.get("symbol"),
                            sleep_s,
                            txt[:200],
                        )
                        last_err = RuntimeError(f"Binance klines rate limited: {resp.status}")
                        await asyncio.sleep(sleep_s)
                        backoff = min(backoff * 2.0, 20.0)
                        continue

                    if resp.status != 200:
                        txt = await resp.text()
                        raise RuntimeError(f"Binance klines failed: {resp.status} {txt[:500]}")

                    # Some proxies return a wrong content-type; be tolerant.
                    data = await resp.json(content_type=None)

                last_err = None
                break

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_err = e
                if attempt >= int(self.rest_max_retries):
                    break
                log.warning(
                    "rest_timeout_or_client_err attempt=%d/%d symbol=%s backoff=%.1fs err=%s",
                    attempt,
                    self.rest_max_retries,
                    params.get("symbol"),
                    backoff,
                    e,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2.0, 20.0)

        if last_err is not None:
            raise last_err
        return data

    async def fetch_klines(
        self, symbol: str, timeframe: str, limit: int, end_time: Optional[int] = None
    ) -> List[Candle]:
        params: Dict[str, object] = {"symbol": symbol.upper(), "interval": timeframe, "limit": int(limit)}
        if end_time is not None:
            params["endTime"] = int(end_time)
        rows = await self._get_klines_raw(params)
        return [candle_from_rest_row(symbol, row) for row in rows]

    async def fetch_klines_history(self, symbol: str, timeframe: str, total: int) -> List[Candle]:
        """Page backwards with endTime until `total` klines are collected. Ascending, unique."""
        page = _max_page(self.market)
        by_start: Dict[datetime, Candle] = {}
        end_time: Optional[int] = None

        while len(by_start) < total:
            limit = min(page, total - len(by_start))
            candles = await self.fetch_klines(symbol, timeframe, limit, end_time=end_time)
            if not candles:
                break
            for c in candles:
                by_start[c.bucket_start] = c
            oldest_ms = min(int(c.bucket_start.timestamp()) * 1000 for c in candles)
            if end_time is not None and oldest_ms >= end_time:
                break
            end_time = oldest_ms - 1
            if len(candles) < limit:
                break  # exchange has no older data

        keys = sorted(by_start)[-total:]
        log.debug("history_fetched symbol=%s tf=%s rows=%d", symbol, timeframe, len(keys))
        return [by_start[k] for k in keys]

    async def stream_klines(self, symbols: List[str], timeframes: List[str]) -> AsyncIterator[KlineEvent]:
        """Yields CLOSED klines for all (symbol, tf). Auto-reconnects."""
        streams = [_stream_name(sym, tf) for sym in symbols for tf in timeframes]
        ws_url = _ws_url(self.market)

        sub_msg = {"method": "SUBSCRIBE", "params": streams, "id": 1}

        backoff = 1
        while True:
            try:
                async with websockets.connect(
                    ws_url,
                    ping_interval=self.ws_heartbeat_s,
                    ping_timeout=self.ws_heartbeat_s,
                    close_timeout=5,
                    max_queue=5000,
                ) as ws:
                    backoff = 1
                    await ws.send(json.dumps(sub_msg))
                    log.info("ws_subscribed streams=%d market=%s", len(streams), self.market)

                    async for msg in ws:
                        evt = parse_kline_message(msg)
                        if evt is not None:
                            yield evt

            except Exception as e:
                log.warning("ws_error err=%s reconnect_in=%ss", e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 60)
