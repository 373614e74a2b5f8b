# これは「UTC基準の時刻、チェーン時刻のパース、経過時間の計算」を提供するファイルです。
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def utc_now() -> datetime:
    """これは何をする関数？
    → タイムゾーン付きの現在UTC時刻を返します。
    """
    return datetime.now(timezone.utc)


def parse_chain_ts(x: Any) -> datetime:
    """これは何をする関数？
    → チェーンや外部APIから来る様々な型のタイムスタンプをUTCのdatetimeに正規化します。
      - int/float: blockTime は秒。13桁ならミリ秒として解釈
      - str: ISO8601を想定（末尾'Z'は+00:00として扱う）。数字のみなら数値扱い
      - datetime: タイムゾーン未設定ならUTCとみなす
    """
    if isinstance(x, datetime):
        return x if x.tzinfo else x.replace(tzinfo=timezone.utc)
    if isinstance(x, bool):
        raise TypeError(f"unsupported timestamp type: {type(x)}")
    if isinstance(x, (int, float)):
        ts = float(x)
        if ts > 1e12:  # 13桁（ミリ秒）
            ts = ts / 1000.0
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    if isinstance(x, str):
        s = x.strip()
        if s.isdigit():
            return parse_chain_ts(int(s))
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError as e:
            raise ValueError(f"unsupported timestamp format: {x}") from e
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    raise TypeError(f"unsupported timestamp type: {type(x)}")


def age_ms(ts: datetime, *, now: datetime | None = None) -> float:
    """これは何をする関数？
    → ts（UTC）から now（省略時は現在UTC）までの経過ミリ秒を返します（負のときは0）。
    """
    ref = now or utc_now()
    delta = (ref - (ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc))).total_seconds()
    return max(0.0, delta * 1000.0)
