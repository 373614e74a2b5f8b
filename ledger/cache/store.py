# これは「ウォレット単位のトレードスナップショットを保持するキャッシュ」と鮮度ポリシーを定義するファイルです。
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable

from loguru import logger

from ledger.config.models import CacheConfig
from ledger.core.time import age_ms, utc_now
from ledger.core.types import TradeRecord


class DataClass(str, Enum):
    """鮮度を分けて管理するデータ種別。"""

    TRADES = "trades"
    FINANCIALS = "financials"
    ANALYSIS = "analysis"


@dataclass(frozen=True)
class StalenessPolicy:
    """データ種別ごとの TTL（秒）。None は「自動では古くならない（手動リフレッシュのみ）」。"""

    trades_ttl_s: float | None = 300.0
    financials_ttl_s: float | None = None
    analysis_ttl_s: float | None = 600.0

    @classmethod
    def from_config(cls, cfg: CacheConfig) -> "StalenessPolicy":
        return cls(
            trades_ttl_s=cfg.trades_ttl_s,
            financials_ttl_s=cfg.financials_ttl_s,
            analysis_ttl_s=cfg.analysis_ttl_s,
        )

    def ttl_s(self, data_class: DataClass) -> float | None:
        if data_class is DataClass.TRADES:
            return self.trades_ttl_s
        if data_class is DataClass.FINANCIALS:
            return self.financials_ttl_s
        return self.analysis_ttl_s

    def is_stale(self, data_class: DataClass, fetched_at: datetime, *, now: datetime | None = None) -> bool:
        """これは何をする関数？
        → fetched_at からの経過が TTL を超えていれば True。TTL が None なら常に False。
        """
        ttl = self.ttl_s(data_class)
        if ttl is None:
            return False
        return age_ms(fetched_at, now=now) > ttl * 1000.0


@dataclass(frozen=True)
class CacheEntry:
    """1 ウォレット分のスナップショット。丸ごと差し替えるだけで、部分更新はしない。

    last_cursor はここまで読んだ最新の署名。backfill_cursor が入っているときは、
    その署名より古く backfill_until（None なら履歴の先頭まで）より新しい範囲がまだ読めていない。
    """

    wallet: str
    trades: tuple[TradeRecord, ...]
    last_cursor: str | None
    fetched_at: datetime
    complete: bool = True
    backfill_cursor: str | None = None
    backfill_until: str | None = None

    @classmethod
    def build(
        cls,
        wallet: str,
        trades: Iterable[TradeRecord],
        *,
        last_cursor: str | None,
        fetched_at: datetime | None = None,
        complete: bool = True,
        backfill_cursor: str | None = None,
        backfill_until: str | None = None,
    ) -> "CacheEntry":
        ordered = tuple(sorted(trades, key=lambda t: t.ordering_key))
        return cls(
            wallet=wallet,
            trades=ordered,
            last_cursor=last_cursor,
            fetched_at=fetched_at or utc_now(),
            complete=complete,
            backfill_cursor=backfill_cursor,
            backfill_until=backfill_until,
        )


class CacheStore:
    """キャッシュの共通インターフェース（メモリ／SQL の実装を差し替えて使う）。"""

    async def get(self, wallet: str) -> CacheEntry | None:
        raise NotImplementedError

    async def put(self, entry: CacheEntry) -> None:
        raise NotImplementedError

    async def invalidate(self, wallet: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryCacheStore(CacheStore):
    """プロセス内の dict に持つキャッシュ。put は参照の差し替えだけなので読み手は半端な状態を見ない。"""

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, wallet: str) -> CacheEntry | None:
        return self._entries.get(wallet)

    async def put(self, entry: CacheEntry) -> None:
        async with self._lock:
            self._entries[entry.wallet] = entry
        logger.debug("cache.put backend=memory wallet={} trades={}", entry.wallet, len(entry.trades))

    async def invalidate(self, wallet: str) -> None:
        async with self._lock:
            self._entries.pop(wallet, None)

    def __len__(self) -> int:
        return len(self._entries)
