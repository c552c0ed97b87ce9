from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone

from trailing_stop_bot.candle_store import CandleStore
from trailing_stop_bot.models import to_decimal
from trailing_stop_bot.notifier.webhook import format_price
from trailing_stop_bot.providers.binance import BinanceProvider
from trailing_stop_bot.service import base_interval_minutes, fetch_recent_aggregated, next_stop_loss
from trailing_stop_bot.window import required_base_count


async def _run(args) -> None:
    provider = BinanceProvider(market=args.market)
    try:
        need = required_base_count(args.lookback, base_interval_minutes(args.interval))
        candles = await provider.fetch_klines_history(args.symbol, "1m", need)
    finally:
        await provider.close()

    store = CandleStore()
    store.upsert_many(candles)
    now = datetime.now(timezone.utc)

    if args.interval != "1m":
        print(f"AGGREGATED {args.interval}:")
        for c in fetch_recent_aggregated(store, args.symbol, now, args.interval, args.lookback + 2):
            print(f"  {c.bucket_start.isoformat()} O={c.open} H={c.high} L={c.low} C={c.close} V={c.volume}")

    new_sl, moved = next_stop_loss(store, args.symbol, now, args.side, to_decimal(args.stop), args.interval, args.lookback)
    print(f"\nstop_loss={format_price(new_sl)} moved={moved}")


def main():
    p = argparse.ArgumentParser(description="Evaluate the trailing stop once against live Binance 1m history")
    p.add_argument("--symbol", required=True)
    p.add_argument("--side", required=True, choices=["long", "short"])
    p.add_argument("--stop", required=True, help="Current stop-loss price")
    p.add_argument("--interval", default="5m", choices=["1m", "5m", "15m", "30m", "45m"])
    p.add_argument("--lookback", type=int, default=20)
    p.add_argument("--market", default="futures", choices=["futures", "spot"])
    args = p.parse_args()

    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
