from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from trailing_stop_bot.aggregator import InvalidInterval, aggregate, bucket_start, interval_minutes
from trailing_stop_bot.models import Candle

T0 = datetime(2025, 3, 1, tzinfo=timezone.utc)


def _m(minute: int, o, h, l, c, v="1", start: datetime = T0) -> Candle:
    return Candle(
        symbol="BTCUSDT",
        bucket_start=start + timedelta(minutes=minute),
        open=Decimal(str(o)),
        high=Decimal(str(h)),
        low=Decimal(str(l)),
        close=Decimal(str(c)),
        volume=Decimal(str(v)),
    )


def _series(n: int, start: datetime = T0):
    out = []
    for i in range(n):
        base = 100 + i
        out.append(_m(i, base, base + 2, base - 1, base + 1, "0.1", start=start))
    return out


@pytest.mark.parametrize("bad", ["1m", "10m", "1h", 60, 1, timedelta(minutes=7), timedelta(seconds=90), None, True])
def test_unsupported_interval_raises(bad):
    with pytest.raises(InvalidInterval):
        aggregate(_series(3), bad)


def test_invalid_interval_is_a_value_error():
    with pytest.raises(ValueError):
        interval_minutes("2m")


def test_interval_forms_are_equivalent():
    assert interval_minutes("5m") == 5
    assert interval_minutes(" 45M ") == 45
    assert interval_minutes(30) == 30
    assert interval_minutes(timedelta(minutes=15)) == 15
    candles = _series(12)
    assert aggregate(candles, "5m") == aggregate(candles, 5) == aggregate(candles, timedelta(minutes=5))


def test_empty_input_yields_empty_output():
    assert aggregate([], "15m") == []


def test_fifteen_minutes_into_three_5m_buckets():
    candles = _series(15)
    out = aggregate(candles, "5m")

    assert [c.bucket_start for c in out] == [T0, T0 + timedelta(minutes=5), T0 + timedelta(minutes=10)]
    first = out[0]
    assert first.symbol == "BTCUSDT"
    assert first.open == Decimal("100")
    assert first.close == Decimal("105")
    assert first.high == Decimal("106")
    assert first.low == Decimal("99")
    assert first.volume == Decimal("0.5")


def test_last_bucket_is_emitted_even_if_incomplete():
    out = aggregate(_series(7), "5m")
    assert len(out) == 2
    assert out[1].bucket_start == T0 + timedelta(minutes=5)
    assert out[1].open == Decimal("105")
    assert out[1].close == Decimal("107")
    assert out[1].volume == Decimal("0.2")


def test_gaps_only_shrink_buckets():
    candles = [c for i, c in enumerate(_series(15)) if i not in (1, 2, 3, 7)]
    out = aggregate(candles, "5m")
    assert len(out) == 3
    assert out[0].open == Decimal("100")
    assert out[0].close == Decimal("105")
    assert out[0].volume == Decimal("0.2")
    assert out[1].volume == Decimal("0.4")


def test_unaligned_start_is_bucketed_by_epoch():
    start = T0 + timedelta(minutes=3)
    out = aggregate(_series(4, start=start), "5m")
    assert [c.bucket_start for c in out] == [T0, T0 + timedelta(minutes=5)]
    assert out[0].open == Decimal("100")
    assert out[0].close == Decimal("102")


def test_45m_buckets_follow_unix_time_not_the_hour():
    one_am = T0 + timedelta(hours=1)
    out = aggregate(_series(36, start=one_am), "45m")
    # 01:00 UTC falls in the epoch bucket that opened at 00:45
    assert [c.bucket_start for c in out] == [T0 + timedelta(minutes=45), T0 + timedelta(minutes=90)]
    assert out[0].volume == Decimal("3.0")
    assert out[1].volume == Decimal("0.6")


def test_bucket_start_floors_to_interval():
    ts = datetime(2025, 3, 1, 12, 7, 42, tzinfo=timezone.utc)
    assert bucket_start(ts, 300) == datetime(2025, 3, 1, 12, 5, tzinfo=timezone.utc)
    assert bucket_start(ts, 900) == datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert bucket_start(ts, 300).tzinfo is not None


def test_bucket_only_depends_on_its_own_candles():
    base = _series(15)
    other = base[:5] + [_m(i, 50, 300, 10, 60, "9") for i in range(5, 10)] + base[10:]
    a = aggregate(base, "5m")
    b = aggregate(other, "5m")
    assert a[0] == b[0]
    assert a[2] == b[2]
    assert a[1] != b[1]


def test_reaggregation_is_idempotent():
    candles = _series(60)
    once = aggregate(candles, "15m")
    assert aggregate(once, "15m") == once


def test_input_candles_are_not_mutated():
    candles = _series(10)
    before = list(candles)
    aggregate(candles, "5m")
    assert candles == before
