from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ledger.core.time import age_ms, parse_chain_ts, utc_now


def test_parse_block_time_seconds() -> None:
    """blockTime（秒）→UTC datetime に変換できること"""
    dt = parse_chain_ts(1_700_000_000)
    assert dt == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


def test_parse_ts_int_ms() -> None:
    """ミリ秒エポック→UTC datetime に変換できること"""
    now = utc_now()
    ms = int(now.timestamp() * 1000)
    parsed = parse_chain_ts(ms)
    assert abs((parsed - now).total_seconds()) < 1.0


def test_parse_iso_z() -> None:
    """ISO8601のZ付き文字列がパースできること"""
    dt = parse_chain_ts("2024-01-02T03:04:05Z")
    assert dt.tzinfo == timezone.utc
    assert dt.hour == 3


def test_parse_digit_string_and_naive_datetime() -> None:
    """数字だけの文字列は数値扱い、naive datetime は UTC とみなすこと"""
    assert parse_chain_ts("1700000000") == parse_chain_ts(1_700_000_000)
    naive = datetime(2024, 1, 1, 0, 0, 0)
    assert parse_chain_ts(naive).tzinfo == timezone.utc


def test_parse_rejects_bool_and_garbage() -> None:
    """bool や解釈できない文字列はエラーになること"""
    with pytest.raises(TypeError):
        parse_chain_ts(True)
    with pytest.raises(ValueError):
        parse_chain_ts("yesterday")


def test_age_ms_never_negative() -> None:
    """経過ミリ秒は未来の時刻に対して 0 になること"""
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert age_ms(now - timedelta(seconds=2), now=now) == pytest.approx(2000.0)
    assert age_ms(now + timedelta(seconds=5), now=now) == 0.0
