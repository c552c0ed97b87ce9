import asyncio
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal

import aiohttp

from trailing_stop_bot.models import Side, StopLossMove
from trailing_stop_bot.notifier import webhook
from trailing_stop_bot.notifier.webhook import WebhookNotifier, format_price, move_payload


def _move() -> StopLossMove:
    return StopLossMove(
        symbol="ETHUSDT",
        side=Side.SHORT,
        interval="5m",
        previous_stop_loss=Decimal("120.0"),
        stop_loss=Decimal("115.000"),
        evaluated_at=datetime(2025, 3, 1, 0, 15, tzinfo=timezone.utc),
    )


def test_format_price():
    assert format_price(Decimal("100.500")) == "100.5"
    assert format_price(Decimal("115.000")) == "115"
    assert format_price(Decimal("1E+2")) == "100"
    assert format_price(Decimal("0.00001230")) == "0.0000123"
    assert format_price(Decimal("0")) == "0"
    assert format_price(Decimal("410") / Decimal("3")).startswith("136.666666")


def test_move_payload():
    payload = move_payload(_move(), "s3cret")
    assert payload == {
        "secret": "s3cret",
        "symbol": "ETHUSDT",
        "side": "short",
        "interval": "5m",
        "stop_loss": "115",
        "previous_stop_loss": "120",
        "evaluated_at": "2025-03-01T00:15:00+00:00",
    }


def test_disabled_notifier_is_a_noop():
    async def _run():
        n = WebhookNotifier(enabled=False, url="https://example.invalid", secret="", timeout_s=1, headers=None)
        await n.send_move(_move())
        n = WebhookNotifier(enabled=True, url="", secret="", timeout_s=1, headers=None)
        await n.send_move(_move())

    asyncio.run(_run())


class _Resp:
    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def text(self):
        return self.body


def _fake_session(posts, reply):
    class _Session:
        def __init__(self, timeout=None):
            self.timeout = timeout

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc):
            return False

        def post(self, url, data=None, headers=None):
            posts.append((url, json.loads(data), headers))
            if isinstance(reply, BaseException):
                raise reply
            return reply

    return _Session


def _notifier() -> WebhookNotifier:
    return WebhookNotifier(
        enabled=True, url="https://hooks.example/sl", secret="s3cret", timeout_s=3, headers={"X-Bot": "trail"}
    )


def test_enabled_notifier_posts_json(monkeypatch):
    posts = []
    monkeypatch.setattr(webhook.aiohttp, "ClientSession", _fake_session(posts, _Resp(200)))
    asyncio.run(_notifier().send_move(_move()))

    assert len(posts) == 1
    url, body, headers = posts[0]
    assert url == "https://hooks.example/sl"
    assert body == move_payload(_move(), "s3cret")
    assert headers == {"Content-Type": "application/json", "X-Bot": "trail"}


def test_bad_status_is_logged_not_raised(monkeypatch, caplog):
    posts = []
    monkeypatch.setattr(webhook.aiohttp, "ClientSession", _fake_session(posts, _Resp(502, "bad gateway")))
    with caplog.at_level(logging.WARNING, logger="webhook"):
        asyncio.run(_notifier().send_move(_move()))

    assert len(posts) == 1
    assert any("webhook_bad_status status=502" in r.getMessage() for r in caplog.records)


def test_transport_error_is_logged_not_raised(monkeypatch, caplog):
    posts = []
    err = aiohttp.ClientConnectionError("refused")
    monkeypatch.setattr(webhook.aiohttp, "ClientSession", _fake_session(posts, err))
    with caplog.at_level(logging.WARNING, logger="webhook"):
        asyncio.run(_notifier().send_move(_move()))

    assert len(posts) == 1
    assert any("webhook_post_failed symbol=ETHUSDT" in r.getMessage() for r in caplog.records)
