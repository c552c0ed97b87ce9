from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Dict, Optional

import aiohttp

from ..models import StopLossMove

log = logging.getLogger("webhook")


def format_price(x: Decimal) -> str:
    """Plain decimal notation without trailing zeros: 100.500 -> '100.5', 1E+2 -> '100'."""
    s = format(x, "f")
    if "." in s:
        s = s.rstrip("0").rstrip(".")
    return s or "0"


def move_payload(move: StopLossMove, secret: str = "") -> Dict[str, str]:
    return {
        "secret": secret,
        "symbol": move.symbol,
        "side": move.side.value,
        "interval": move.interval,
        "stop_loss": format_price(move.stop_loss),
        "previous_stop_loss": format_price(move.previous_stop_loss),
        "evaluated_at": move.evaluated_at.isoformat(),
    }


class WebhookNotifier:
    def __init__(self, *, enabled: bool, url: str, secret: str, timeout_s: int, headers: Optional[dict]):
        self.enabled = bool(enabled)
        self.url = url or ""
        self.secret = secret or ""
        self.timeout_s = int(timeout_s) if timeout_s is not None else 10
        self.headers = headers or {}

    async def send_move(self, move: StopLossMove) -> None:
        if not self.enabled or not self.url:
            return

        payload = json.dumps(move_payload(move, self.secret), separators=(",", ":"))
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_s)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, data=payload, headers={"Content-Type": "application/json", **self.headers}) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        log.warning("webhook_bad_status status=%s body=%s", resp.status, text[:200])
        except Exception as e:
            # Log but do not crash
            log.warning("webhook_post_failed symbol=%s err=%s", move.symbol, e)
