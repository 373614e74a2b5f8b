"""このモジュールは『ウォレットごとの取込・キャッシュ・照合・集計をまとめて面倒を見る』オーケストレータです。

- 読み取りは stale-while-revalidate：キャッシュがあれば即返し、古ければ裏で取り直す
- 同じウォレットの取込は同時に 1 本だけ（走行中タスクを共有する）
- 取込結果はキャッシュ済みの集合と id で合流させ、スナップショットごと差し替える
- RPC 接続先が変わったら取込パイプラインを作り直す
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Mapping

from loguru import logger

from ledger.analytics.fifo import FifoReconciler
from ledger.analytics.models import AnalyticsReport, FinancialDetails
from ledger.analytics.report import DEFAULT_BIAS_THRESHOLD, generate_full_report
from ledger.cache.sql import SqlCacheStore
from ledger.cache.store import CacheEntry, CacheStore, DataClass, MemoryCacheStore, StalenessPolicy
from ledger.config.models import AppConfig
from ledger.core.errors import ConfigError
from ledger.core.time import utc_now
from ledger.core.types import TradeRecord
from ledger.ingest.pipeline import FetchResult, IngestionPipeline

PipelineFactory = Callable[[str], IngestionPipeline]
FinancialsProvider = Callable[[str], Awaitable["FinancialDetails | None"]]


@dataclass(frozen=True)
class _MemoReport:
    key: tuple
    built_at: datetime
    report: AnalyticsReport


def merge_trades(cached: tuple[TradeRecord, ...], fresh: list[TradeRecord]) -> list[TradeRecord]:
    """これは何をする関数？
    → キャッシュ済みの集合に新しいレコードを id で合流させます（同じ id は新しい方で置き換え）。
      結果は常に cached の上位集合です。
    """
    by_id: dict[str, TradeRecord] = {t.id: t for t in cached}
    for t in fresh:
        by_id[t.id] = t
    return sorted(by_id.values(), key=lambda t: t.ordering_key)


def next_cursor(previous: str | None, result: FetchResult) -> str | None:
    """これは何をする関数？
    → 取込で読み終えた範囲があれば最新の署名までカーソルを進め、何も読めなかったら据え置きます。
      取り切れなかった古い側は backfill の範囲として別に覚えるので、ここでは進めてよい。
    """
    if result.newest_cursor is None or result.oldest_cursor is None:
        return previous
    return result.newest_cursor


def unread_range(result: FetchResult, until: str | None) -> tuple[str, str | None] | None:
    """これは何をする関数？
    → 取り切れなかった範囲を (before, until) で返します。取り切れた/何も読めなかったときは None。
    """
    if not result.has_more or result.oldest_cursor is None:
        return None
    return result.oldest_cursor, until


@dataclass(frozen=True)
class _Inflight:
    task: "asyncio.Task[CacheEntry]"
    full: bool


class FetchOrchestrator:
    """ウォレット単位の取込とキャッシュ、照合済みトレード・レポートの提供を担当する。"""

    def __init__(
        self,
        *,
        store: CacheStore,
        pipeline_factory: PipelineFactory,
        endpoint: str,
        policy: StalenessPolicy | None = None,
        reconciler: FifoReconciler | None = None,
        financials_provider: FinancialsProvider | None = None,
        bias_threshold: float = DEFAULT_BIAS_THRESHOLD,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._pipeline_factory = pipeline_factory
        self._endpoint = endpoint
        self._pipeline: IngestionPipeline | None = None
        self._policy = policy or StalenessPolicy()
        self._reconciler = reconciler or FifoReconciler()
        self._financials_provider = financials_provider
        self._bias_threshold = bias_threshold
        self._clock = clock
        self._inflight: dict[str, _Inflight] = {}
        self._tasks: set[asyncio.Task[CacheEntry]] = set()
        self._reports: dict[str, _MemoReport] = {}
        self._financials: dict[str, tuple[FinancialDetails | None, datetime]] = {}

    @classmethod
    def from_config(
        cls,
        cfg: AppConfig,
        *,
        store: CacheStore | None = None,
        financials_provider: FinancialsProvider | None = None,
    ) -> "FetchOrchestrator":
        """これは何をする関数？→ AppConfig からキャッシュストアとパイプライン生成関数を組み立てます。"""

        if store is None:
            backend = cfg.cache.backend.lower()
            if backend == "memory":
                store = MemoryCacheStore()
            elif backend == "sql":
                store = SqlCacheStore.from_url(cfg.db_url)
            else:
                raise ConfigError(f"unknown cache backend: {cfg.cache.backend}")

        def _factory(endpoint: str) -> IngestionPipeline:
            return IngestionPipeline.from_config(cfg.chain.model_copy(update={"rpc_url": endpoint}))

        return cls(
            store=store,
            pipeline_factory=_factory,
            endpoint=cfg.chain.rpc_url,
            policy=StalenessPolicy.from_config(cfg.cache),
            financials_provider=financials_provider,
            bias_threshold=cfg.analytics.bias_threshold,
        )

    # ---------- パイプライン（接続先ごとに 1 つ） ----------

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def store(self) -> CacheStore:
        return self._store

    def _current_pipeline(self) -> IngestionPipeline:
        if self._pipeline is None or self._pipeline.endpoint != self._endpoint:
            self._pipeline = self._pipeline_factory(self._endpoint)
        return self._pipeline

    async def switch_endpoint(self, endpoint: str) -> None:
        """これは何をする関数？
        → RPC 接続先を切り替えます。古いパイプラインは閉じ、次の取込で新しく作ります。
        """
        if endpoint == self._endpoint:
            return
        old, self._pipeline = self._pipeline, None
        logger.info("pipeline.switch from={} to={}", self._endpoint, endpoint)
        self._endpoint = endpoint
        self._reports.clear()
        if old is not None:
            await old.close()

    # ---------- 読み取り（SWR） ----------

    async def read(self, wallet: str) -> CacheEntry:
        """これは何をする関数？
        → キャッシュがあればすぐ返し、古ければ裏で再取込を始めます。無ければ初回取込を待って返します。
        """
        entry = await self._store.get(wallet)
        if entry is None:
            return await self._join(wallet, full=True)
        if self._policy.is_stale(DataClass.TRADES, entry.fetched_at, now=self._clock()):
            logger.debug("cache.stale wallet={} fetched_at={}", wallet, entry.fetched_at.isoformat())
            self._schedule(wallet, full=False)
        return entry

    async def refresh(self, wallet: str, *, full: bool = False) -> CacheEntry:
        """これは何をする関数？
        → 手動リフレッシュ。鮮度に関係なく取り直し、確定値とレポートのメモも捨てます。
          full=True ならカーソルを無視して全履歴を読み直します。
        """
        self._financials.pop(wallet, None)
        self._reports.pop(wallet, None)
        logger.info("cache.invalidate wallet={} full={}", wallet, full)
        return await self._join(wallet, full=full)

    async def _join(self, wallet: str, *, full: bool) -> CacheEntry:
        task = self._schedule(wallet, full=full)
        # 呼び出し側がキャンセルされても共有タスクは止めない
        return await asyncio.shield(task)

    def _schedule(self, wallet: str, *, full: bool) -> asyncio.Task[CacheEntry]:
        """これは何をする関数？
        → ウォレットの再取込タスクを 1 本にまとめます。
          走行中のタスクがあればそれを共有し、差分取込の最中に全件読み直しを頼まれたら、終わるのを待ってから全件を読みます。
        """
        current = self._inflight.get(wallet)
        if current is not None and not current.task.done():
            if current.full or not full:
                return current.task
            coro = self._resync_after(current.task, wallet)
        else:
            coro = self._resync(wallet, full=full)
        task = asyncio.create_task(coro, name=f"resync:{wallet}")
        self._inflight[wallet] = _Inflight(task=task, full=full)
        self._tasks.add(task)
        task.add_done_callback(lambda t, w=wallet: self._on_done(w, t))
        return task

    async def _resync_after(self, previous: asyncio.Task[CacheEntry], wallet: str) -> CacheEntry:
        # wait は待つ側がキャンセルされても previous を巻き込まない
        await asyncio.wait({previous})
        return await self._resync(wallet, full=True)

    def _on_done(self, wallet: str, task: asyncio.Task[CacheEntry]) -> None:
        self._tasks.discard(task)
        current = self._inflight.get(wallet)
        if current is not None and current.task is task:
            del self._inflight[wallet]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("resync failed wallet={}", wallet)

    async def _resync(self, wallet: str, *, full: bool) -> CacheEntry:
        """これは何をする関数？
        → 1 回分の再取込。読み残しの古い範囲があれば先にそこを読み、無くなったら最新側の差分を読みます。
          取り切れなかった範囲は backfill として残し、次の再取込で続きから読みます。
        """
        pipeline = self._current_pipeline()
        prev = await self._store.get(wallet)
        fresh_start = full or prev is None
        head = None if fresh_start or prev is None else prev.last_cursor
        gap: tuple[str, str | None] | None = None
        if not fresh_start and prev is not None and prev.backfill_cursor is not None:
            gap = (prev.backfill_cursor, prev.backfill_until)

        fresh: list[TradeRecord] = []
        error: str | None = None
        progressed = False

        if gap is not None:
            r = await pipeline.fetch(wallet, before=gap[0], until=gap[1])
            fresh.extend(r.trades)
            error = r.error
            progressed = r.oldest_cursor is not None
            if not r.has_more:
                gap = None
            elif r.oldest_cursor is not None:
                gap = (r.oldest_cursor, gap[1])
            logger.debug("cache.backfill wallet={} trades={} remaining={}", wallet, len(r.trades), gap)

        if gap is None and error is None:
            r = await pipeline.fetch(wallet, until=head)
            fresh.extend(r.trades)
            error = r.error
            progressed = progressed or r.oldest_cursor is not None
            gap = unread_range(r, head)
            head = next_cursor(head, r)

        if error is not None and not progressed and prev is not None:
            # 何も読めなかった失敗では前回の範囲を据え置く
            head, gap = prev.last_cursor, (
                (prev.backfill_cursor, prev.backfill_until) if prev.backfill_cursor is not None else None
            )

        base: tuple[TradeRecord, ...] = prev.trades if prev is not None else ()
        merged = merge_trades(base, fresh)
        complete = gap is None and error is None
        # 失敗した取込では fetched_at を据え置き、次の読み取りで再試行させる
        fetched_at = prev.fetched_at if (error is not None and prev is not None) else self._clock()

        entry = CacheEntry.build(
            wallet,
            merged,
            last_cursor=head,
            fetched_at=fetched_at,
            complete=complete,
            backfill_cursor=gap[0] if gap else None,
            backfill_until=gap[1] if gap else None,
        )
        await self._store.put(entry)
        logger.debug(
            "cache.swap wallet={} trades={} new={} cursor={} backfill={} complete={}",
            wallet,
            len(entry.trades),
            len(merged) - len(base),
            head,
            entry.backfill_cursor,
            complete,
        )
        return entry

    # ---------- 照合済みトレードとレポート ----------

    async def get_trades(self, wallet: str) -> list[TradeRecord]:
        """これは何をする関数？→ 現在のスナップショットを FIFO 照合したトレード列を返します。"""

        entry = await self.read(wallet)
        return self._reconciler.reconcile(entry.trades).trades

    async def get_financials(self, wallet: str) -> FinancialDetails | None:
        """これは何をする関数？
        → 外部の確定値を返します。初回と手動リフレッシュ後、または TTL 切れのときだけ取り直します。
        """
        if self._financials_provider is None:
            return None
        cached = self._financials.get(wallet)
        now = self._clock()
        if cached is not None and not self._policy.is_stale(DataClass.FINANCIALS, cached[1], now=now):
            return cached[0]
        details = await self._financials_provider(wallet)
        self._financials[wallet] = (details, now)
        return details

    async def get_report(self, wallet: str, current_prices: Mapping[str, float] | None = None) -> AnalyticsReport:
        """これは何をする関数？
        → 照合済みトレードから分析レポートを作ります。
          同じスナップショット・同じ価格なら分析 TTL の間はメモを返します。
        """
        entry = await self.read(wallet)
        prices_key = tuple(sorted((current_prices or {}).items()))
        key = (entry.fetched_at, entry.last_cursor, len(entry.trades), prices_key)
        now = self._clock()
        memo = self._reports.get(wallet)
        if memo is not None and memo.key == key and not self._policy.is_stale(DataClass.ANALYSIS, memo.built_at, now=now):
            return memo.report

        financials = await self.get_financials(wallet)
        trades = self._reconciler.reconcile(entry.trades).trades
        report = generate_full_report(
            trades,
            financials,
            current_prices,
            bias_threshold=self._bias_threshold,
        )
        self._reports[wallet] = _MemoReport(key=key, built_at=now, report=report)
        return report

    # ---------- 後片付け ----------

    async def wait_idle(self) -> None:
        """これは何をする関数？→ 走行中の再取込タスクがすべて終わるまで待ちます（例外は各タスク側でログ済み）。"""

        # 全件読み直しが差分取込の後ろに連なることがあるので、空になるまで待つ
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()
        if self._pipeline is not None:
            await self._pipeline.close()
            self._pipeline = None
        await self._store.close()
