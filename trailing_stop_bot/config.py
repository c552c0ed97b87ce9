from __future__ import annotations

from dataclasses import dataclass, field
from decimal import InvalidOperation
from typing import Any, Dict, List
import os
import yaml

from .aggregator import interval_minutes
from .models import Position, Side, to_decimal
from .service import BASE_INTERVAL
from .window import DEFAULT_LOOKBACK


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


def _check_interval(interval: str) -> str:
    interval = str(interval).strip().lower()
    if interval != BASE_INTERVAL:
        interval_minutes(interval)  # raises InvalidInterval (a ValueError)
    return interval


@dataclass
class AppConfig:
    name: str = "Trailing Stop Engine"
    log_level: str = "INFO"


@dataclass
class ProviderConfig:
    type: str = "binance"
    market: str = "futures"  # futures|spot
    rest_timeout_s: int = 20
    rest_max_retries: int = 4
    ws_heartbeat_s: int = 20
    warmup_concurrency: int = 5


@dataclass
class TrailingConfig:
    interval: str = "5m"  # 1m|5m|15m|30m|45m
    lookback: int = DEFAULT_LOOKBACK
    history_limit: int = 20000  # 1m rows kept per symbol


@dataclass
class PositionConfig:
    symbol: str = ""
    side: str = "long"
    stop_loss: Any = None
    interval: str = ""  # empty -> trailing.interval
    lookback: int = 0  # 0 -> trailing.lookback

    def to_position(self, defaults: TrailingConfig) -> Position:
        symbol = (self.symbol or "").strip().upper()
        if not symbol:
            raise ValueError("position without symbol")
        try:
            side = Side(str(self.side).strip().lower())
        except ValueError:
            raise ValueError(f"{symbol}: unsupported side {self.side!r} (use long or short)")
        if self.stop_loss is None:
            raise ValueError(f"{symbol}: stop_loss is required")
        try:
            stop = to_decimal(self.stop_loss)
        except (InvalidOperation, ValueError):
            raise ValueError(f"{symbol}: stop_loss is not a number: {self.stop_loss!r}")
        if not stop.is_finite():
            raise ValueError(f"{symbol}: stop_loss is not a number: {self.stop_loss!r}")

        return Position(
            symbol=symbol,
            side=side,
            stop_loss=stop,
            interval=_check_interval(self.interval or defaults.interval),
            lookback=int(self.lookback) if self.lookback and int(self.lookback) > 0 else defaults.lookback,
        )


@dataclass
class WebhookConfig:
    enabled: bool = False
    url: str = ""
    secret: str = ""
    timeout_s: int = 10
    headers: Dict[str, str] = None


@dataclass
class Config:
    app: AppConfig
    provider: ProviderConfig
    trailing: TrailingConfig
    webhook: WebhookConfig
    positions: List[PositionConfig] = field(default_factory=list)

    def build_positions(self) -> List[Position]:
        return [p.to_position(self.trailing) for p in self.positions]


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    app = raw.get("app", {})
    provider = raw.get("provider", {})
    trailing = raw.get("trailing", {})
    wh = raw.get("webhook", {})
    positions = raw.get("positions") or []

    cfg = Config(
        app=AppConfig(**app),
        provider=ProviderConfig(**provider),
        trailing=TrailingConfig(**trailing),
        webhook=WebhookConfig(**wh),
        positions=[PositionConfig(**p) for p in positions],
    )

    # env overrides (useful on servers)
    cfg.app.log_level = _env_override(cfg.app.log_level, "LOG_LEVEL")
    cfg.trailing.interval = _env_override(cfg.trailing.interval, "TRAILING_INTERVAL")
    cfg.trailing.lookback = _env_override(cfg.trailing.lookback, "TRAILING_LOOKBACK")
    cfg.webhook.secret = _env_override(cfg.webhook.secret, "WEBHOOK_SECRET")
    cfg.webhook.url = _env_override(cfg.webhook.url, "WEBHOOK_URL")
    if cfg.webhook.headers is None:
        cfg.webhook.headers = {}

    cfg.trailing.interval = _check_interval(cfg.trailing.interval)
    if cfg.trailing.lookback <= 0:
        cfg.trailing.lookback = DEFAULT_LOOKBACK

    # fail fast on bad positions
    cfg.build_positions()
    return cfg
