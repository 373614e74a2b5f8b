from __future__ import annotations

import base64

import pytest

pytest.importorskip("loguru")

from ledger.cache.store import MemoryCacheStore, StalenessPolicy
from ledger.chain.events import pack_payload
from ledger.chain.source import ChainDataSource
from ledger.chain.types import ChainTransaction, SignatureInfo
from ledger.config.models import ChainConfig
from ledger.core.types import EventKind, Side
from ledger.ingest.pipeline import IngestionPipeline
from ledger.orchestrator.fetcher import FetchOrchestrator


def _fill(side: Side, price: int, qty: int = 1) -> str:
    q = qty * 1_000_000_000
    p = price * 1_000_000
    fields = (0 if side is Side.LONG else 1, 0, 7, 1, q, p * q // 1_000_000_000, p, 0)
    return "Program data: " + base64.b64encode(pack_payload(EventKind.PERP_FILL_ORDER, *fields)).decode()


class GrowingSource(ChainDataSource):
    """あとから tx を足せる、古い→新しい順の tx 列を返すモック"""

    endpoint = "fake://chain"

    def __init__(self) -> None:
        self._txs: dict[str, ChainTransaction] = {}
        self._order: list[str] = []
        self.signature_calls: list[tuple[str | None, str | None]] = []

    def add(self, sig: str, side: Side, price: int) -> None:
        slot = len(self._order) + 1
        self._txs[sig] = ChainTransaction(
            signature=sig, slot=slot, block_time=1_700_000_000 + slot * 60, log_messages=[_fill(side, price)]
        )
        self._order.append(sig)

    async def get_signatures(self, address, *, before=None, until=None, limit=100):
        self.signature_calls.append((before, until))
        sigs = list(reversed(self._order))
        if until in sigs:
            sigs = sigs[: sigs.index(until)]
        if before in sigs:
            sigs = sigs[sigs.index(before) + 1 :]
        return [SignatureInfo(signature=s, slot=self._txs[s].slot) for s in sigs[:limit]]

    async def get_transaction(self, signature):
        return self._txs.get(signature)


def _orch(src: GrowingSource) -> FetchOrchestrator:
    cfg = ChainConfig(rpc_url=src.endpoint, max_transactions=2, retry_wait_initial=0, retry_wait_max=0)
    return FetchOrchestrator(
        store=MemoryCacheStore(),
        pipeline_factory=lambda endpoint: IngestionPipeline.from_config(cfg, source=src),
        endpoint=src.endpoint,
        policy=StalenessPolicy(trades_ttl_s=None, financials_ttl_s=None, analysis_ttl_s=None),
    )


@pytest.mark.asyncio
async def test_capped_first_sync_backfills_older_history() -> None:
    """初回が上限で切れたら古い側を backfill として残し、次のリフレッシュで読み足して損益を直すこと"""
    src = GrowingSource()
    src.add("s1", Side.LONG, 100)
    src.add("s2", Side.SHORT, 110)
    src.add("s3", Side.LONG, 120)
    orch = _orch(src)

    first = await orch.read("W")
    assert [t.transaction_hash for t in first.trades] == ["s2", "s3"]
    assert first.last_cursor == "s3"
    assert (first.backfill_cursor, first.backfill_until) == ("s2", None)
    assert first.complete is False
    # s1 が無いので s2 の売りが新規建て扱いになり、s3 で -10 の決済になる
    partial = await orch.get_trades("W")
    assert partial[1].pnl == pytest.approx(-10.0)

    second = await orch.refresh("W")
    assert [t.transaction_hash for t in second.trades] == ["s1", "s2", "s3"]
    assert second.last_cursor == "s3"
    assert second.backfill_cursor is None
    assert second.complete is True
    assert src.signature_calls[-2:] == [("s2", None), (None, "s3")]

    trades = await orch.get_trades("W")
    assert trades[1].transaction_hash == "s2"
    assert trades[1].pnl == pytest.approx(10.0)
    await orch.aclose()


@pytest.mark.asyncio
async def test_capped_incremental_fills_the_gap() -> None:
    """差分取込が上限で切れたら、前回の位置までの隙間を次の取込で埋めること"""
    src = GrowingSource()
    src.add("s1", Side.LONG, 100)
    orch = _orch(src)

    first = await orch.read("W")
    assert first.complete is True
    assert first.last_cursor == "s1"

    for sig, side, price in (("s2", Side.LONG, 101), ("s3", Side.LONG, 102), ("s4", Side.LONG, 103), ("s5", Side.LONG, 104)):
        src.add(sig, side, price)

    capped = await orch.refresh("W")
    assert [t.transaction_hash for t in capped.trades] == ["s1", "s4", "s5"]
    assert capped.last_cursor == "s5"
    assert (capped.backfill_cursor, capped.backfill_until) == ("s4", "s1")
    assert capped.complete is False

    filled = await orch.refresh("W")
    assert [t.transaction_hash for t in filled.trades] == ["s1", "s2", "s3", "s4", "s5"]
    assert filled.last_cursor == "s5"
    assert filled.backfill_cursor is None
    assert filled.complete is True
    assert ("s4", "s1") in src.signature_calls
    await orch.aclose()
