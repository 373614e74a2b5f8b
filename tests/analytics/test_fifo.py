from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("loguru")

from ledger.analytics.fifo import FifoReconciler
from ledger.core.types import Fees, RecordKind, Side, TradeRecord, TradeStatus, TradeType

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _fill(
    n: int,
    side: Side,
    qty: float,
    price: float,
    *,
    fee: float = 0.0,
    symbol: str = "SOL/USDC-PERP",
    trade_type: TradeType = TradeType.PERP,
    minutes: int | None = None,
) -> TradeRecord:
    return TradeRecord(
        id=f"tx{n}:0",
        timestamp=T0 + timedelta(minutes=n if minutes is None else minutes),
        symbol=symbol,
        side=side,
        entry_price=price,
        quantity=qty,
        trade_type=trade_type,
        discriminator=19,
        transaction_hash=f"tx{n}",
        value=qty * price,
        fees=Fees(taker=fee),
        slot=n,
    )


def _accrual(n: int, kind: RecordKind, amount: float, symbol: str = "SOL/USDC-PERP") -> TradeRecord:
    return TradeRecord(
        id=f"tx{n}:0",
        timestamp=T0 + timedelta(minutes=n),
        symbol=symbol,
        side=Side.LONG,
        entry_price=0.0,
        quantity=0.0,
        trade_type=TradeType.PERP,
        discriminator=24 if kind is RecordKind.FUNDING else 27,
        transaction_hash=f"tx{n}",
        kind=kind,
        funding=amount if kind is RecordKind.FUNDING else 0.0,
        soc_loss=amount if kind is RecordKind.SOC_LOSS else 0.0,
        pnl=amount if kind is RecordKind.FUNDING else -amount,
        status=TradeStatus.from_pnl(amount if kind is RecordKind.FUNDING else -amount),
        slot=n,
    )


def test_open_and_close_with_fees() -> None:
    """10@30 を建てて 10@35 で閉じ、両側 1 ドルの手数料なら実現損益 48 になること"""
    res = FifoReconciler().reconcile([_fill(1, Side.LONG, 10, 30, fee=1), _fill(2, Side.SHORT, 10, 35, fee=1)])
    close = res.trades[1]
    assert close.pnl == pytest.approx(48.0)
    assert close.status is TradeStatus.WIN
    assert close.entry_price == pytest.approx(30.0)
    assert close.exit_price == pytest.approx(35.0)
    assert close.duration == pytest.approx(60.0)
    assert res.trades[0].status is TradeStatus.OPEN
    assert res.open_lots == []


def test_partial_closes_consume_one_lot_twice() -> None:
    """6@32 と 4@33 の 2 回の決済で 1 つのロットが順に消費されること"""
    fills = [
        _fill(1, Side.LONG, 10, 30, fee=1.0),
        _fill(2, Side.SHORT, 6, 32, fee=0.6),
        _fill(3, Side.SHORT, 4, 33, fee=0.4),
    ]
    res = FifoReconciler().reconcile(fills)
    first, second = res.trades[1], res.trades[2]
    assert [s.quantity for s in res.slices["tx2:0"]] == [6]
    assert [s.quantity for s in res.slices["tx3:0"]] == [4]
    # 入口手数料は 1 単位あたり 0.1、出口手数料は各フィルの全額
    assert first.pnl == pytest.approx(6 * (32 - 30) - 0.6 - 0.6)
    assert second.pnl == pytest.approx(4 * (33 - 30) - 0.4 - 0.4)
    total_fees = sum(f.fees.total for f in fills)
    assert first.pnl + second.pnl == pytest.approx(6 * 2 + 4 * 3 - total_fees)


def test_fifo_consumes_oldest_lot_first() -> None:
    """同じ銘柄・同じ側のロットは古いものから消費されること"""
    fills = [_fill(1, Side.LONG, 1, 100), _fill(2, Side.LONG, 1, 200), _fill(3, Side.SHORT, 1, 150)]
    res = FifoReconciler().reconcile(fills)
    assert res.slices["tx3:0"][0].lot_source_id == "tx1:0"
    assert res.trades[2].pnl == pytest.approx(50.0)
    assert [lot.source_id for lot in res.open_lots] == ["tx2:0"]


def test_matched_quantity_equals_closing_quantity() -> None:
    """複数ロットにまたがる決済でも、引き当て数量の合計は決済数量に一致すること"""
    fills = [
        _fill(1, Side.LONG, 2, 100, fee=1.0),
        _fill(2, Side.LONG, 1, 110, fee=0.5),
        _fill(3, Side.SHORT, 2.5, 120, fee=1.5),
    ]
    res = FifoReconciler().reconcile(fills)
    slices = res.slices["tx3:0"]
    assert sum(s.quantity for s in slices) == pytest.approx(2.5)
    assert [s.lot_source_id for s in slices] == ["tx1:0", "tx2:0"]
    # 2*(120-100) + 0.5*(120-110) - (1.0 + 0.25 + 1.5)
    assert res.trades[2].pnl == pytest.approx(42.25)
    opener = next(t for t in res.trades if t.id == "tx2:0")
    assert opener.remaining_quantity == pytest.approx(0.5)
    assert opener.pending_fees == pytest.approx(0.25)


def test_arrival_order_does_not_matter() -> None:
    """入力の並びを入れ替えても結果は同じこと（チェーン順で並べ直す）"""
    fills = [_fill(1, Side.LONG, 1, 100), _fill(2, Side.LONG, 1, 200), _fill(3, Side.SHORT, 1, 150)]
    a = FifoReconciler().reconcile(fills).trades
    b = FifoReconciler().reconcile(list(reversed(fills))).trades
    assert a == b


def test_same_timestamp_tie_break_by_slot() -> None:
    """同時刻のロットは slot の小さい方が先に消費されること"""
    fills = [
        _fill(2, Side.LONG, 1, 200, minutes=0),
        _fill(1, Side.LONG, 1, 100, minutes=0),
        _fill(3, Side.SHORT, 1, 150, minutes=1),
    ]
    res = FifoReconciler().reconcile(fills)
    assert res.slices["tx3:0"][0].lot_source_id == "tx1:0"


def test_perp_position_flip_opens_remainder() -> None:
    """perp で建玉より大きい反対売買は、残りが反対側の新規ロットになること"""
    res = FifoReconciler().reconcile([_fill(1, Side.LONG, 1, 100), _fill(2, Side.SHORT, 3, 110)])
    flip = res.trades[1]
    assert flip.pnl == pytest.approx(10.0)
    assert flip.unmatched_quantity == 0
    assert flip.remaining_quantity == pytest.approx(2.0)
    assert flip.entry_price == pytest.approx(100.0)
    assert flip.open_entry_price == pytest.approx(110.0)
    assert len(res.open_lots) == 1
    assert res.open_lots[0].side is Side.SHORT


def test_short_then_cover() -> None:
    """perp の売り建て→買い戻しは符号を反転して損益を出すこと"""
    res = FifoReconciler().reconcile([_fill(1, Side.SHORT, 2, 50), _fill(2, Side.LONG, 2, 45)])
    assert res.trades[1].pnl == pytest.approx(10.0)


def test_unmatched_spot_sell_is_flagged_open() -> None:
    """建玉の無いスポット売りは失敗させず、open 扱いで unmatched に記録すること"""
    sell = _fill(1, Side.SHORT, 1, 100, symbol="SOL/USDC", trade_type=TradeType.SPOT)
    res = FifoReconciler().reconcile([sell])
    assert res.trades[0].status is TradeStatus.OPEN
    assert res.trades[0].unmatched_quantity == pytest.approx(1.0)
    assert res.unmatched == ["tx1:0"]
    assert res.open_lots == []


def test_spot_oversell_keeps_unmatched_part() -> None:
    """スポットで在庫より多く売った分は unmatched_quantity に残ること"""
    spot = dict(symbol="SOL/USDC", trade_type=TradeType.SPOT)
    res = FifoReconciler().reconcile([_fill(1, Side.LONG, 1, 100, **spot), _fill(2, Side.SHORT, 1.5, 110, **spot)])
    sell = res.trades[1]
    assert sell.pnl == pytest.approx(10.0)
    assert sell.unmatched_quantity == pytest.approx(0.5)
    assert res.unmatched == ["tx2:0"]


def test_standalone_funding_follows_open_lots() -> None:
    """建玉中の単独 Funding はロットに載り、決済時に実現損益へ入ること"""
    records = [
        _fill(1, Side.LONG, 2, 100),
        _accrual(2, RecordKind.FUNDING, 1.0),
        _accrual(3, RecordKind.SOC_LOSS, 0.4),
        _fill(4, Side.SHORT, 2, 100),
    ]
    res = FifoReconciler().reconcile(records)
    assert res.trades[1].pnl == 0.0
    assert res.trades[1].status is TradeStatus.BREAKEVEN
    assert res.trades[2].pnl == 0.0
    assert res.trades[3].pnl == pytest.approx(0.6)


def test_funding_without_position_stays_standalone() -> None:
    """建玉が無いときの Funding は単独レコードの損益のまま残ること"""
    res = FifoReconciler().reconcile([_accrual(1, RecordKind.FUNDING, 2.0)])
    assert res.trades[0].pnl == pytest.approx(2.0)


def test_inputs_are_not_mutated() -> None:
    """入力レコードは変更されず、照合結果は新しいレコードになること"""
    fills = [_fill(1, Side.LONG, 1, 100), _fill(2, Side.SHORT, 1, 110)]
    FifoReconciler().reconcile(fills)
    assert fills[1].pnl == 0.0
    assert fills[1].status is TradeStatus.OPEN
