from __future__ import annotations

import argparse
import asyncio
import logging
from typing import List

import yaml

from .config import Config, load_config
from .models import Position
from .notifier.webhook import format_price
from .runner import TrailingStopRunner

log = logging.getLogger("main")


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _log_positions(cfg: Config) -> List[Position]:
    positions = cfg.build_positions()
    for pos in positions:
        log.info(
            "position symbol=%s side=%s stop=%s interval=%s lookback=%d",
            pos.symbol,
            pos.side.value,
            format_price(pos.stop_loss),
            pos.interval,
            pos.lookback,
        )
    log.info(
        "config_loaded name=%s market=%s positions=%d webhook=%s",
        cfg.app.name,
        cfg.provider.market,
        len(positions),
        "on" if cfg.webhook.enabled and cfg.webhook.url else "off",
    )
    return positions


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Trailing Stop Engine - directional trailing stop-loss on aggregated candles")
    p.add_argument("--config", required=True, help="Path to YAML config")
    p.add_argument("--check-config", action="store_true", help="Validate the config, list positions and exit")
    p.add_argument("--log-level", default=None, help="Override app.log_level")
    args = p.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except (OSError, ValueError, TypeError, yaml.YAMLError) as e:
        _setup_logging(args.log_level or "INFO")
        log.error("config_invalid path=%s err=%s", args.config, e)
        return 2

    _setup_logging(args.log_level or cfg.app.log_level)
    positions = _log_positions(cfg)

    if args.check_config:
        return 0
    if not positions:
        log.error("no positions configured")
        return 2

    runner = TrailingStopRunner(cfg)

    async def _run() -> None:
        try:
            await runner.run_forever()
        finally:
            await runner.provider.close()
            log.info("stopped metrics=%s", runner._metrics)

    try:
        asyncio.run(_run())
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        log.exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
