from __future__ import annotations

import json
import math
from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("loguru")

from ledger.analytics.fifo import FifoReconciler
from ledger.analytics.models import Bias, FinancialDetails
from ledger.analytics.report import directional_bias, generate_full_report, profit_factor, session_of
from ledger.core.types import Fees, RecordKind, Side, TradeRecord, TradeType

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)  # 月曜 09:00 UTC（london）


def _fill(n: int, side: Side, qty: float, price: float, *, fee: float = 0.0, hours: float = 0.0,
          symbol: str = "SOL/USDC-PERP") -> TradeRecord:
    return TradeRecord(
        id=f"tx{n}:0",
        timestamp=T0 + timedelta(hours=hours, seconds=n),
        symbol=symbol,
        side=side,
        entry_price=price,
        quantity=qty,
        trade_type=TradeType.PERP,
        discriminator=19,
        transaction_hash=f"tx{n}",
        value=qty * price,
        fees=Fees(taker=fee),
        slot=n,
    )


def _reconciled(records: list[TradeRecord]) -> list[TradeRecord]:
    return FifoReconciler().reconcile(records).trades


def test_empty_report_has_zero_counts() -> None:
    """空の入力でも例外を出さず、件数 0・profitFactor 0 のレポートになること"""
    report = generate_full_report([])
    assert report.core.total_trades == 0
    assert report.risk.profit_factor == 0
    assert report.long_short.ratio == 0
    assert report.long_short.bias is Bias.NEUTRAL
    assert len(report.timing.hourly) == 24
    assert report.fees.entries == []
    body = json.loads(report.to_json())
    assert body["core"]["totalTrades"] == 0
    assert body["risk"]["profitFactor"] == 0


def test_report_is_idempotent_bytewise() -> None:
    """同じ入力なら JSON がバイト一致すること"""
    trades = _reconciled([_fill(1, Side.LONG, 10, 30, fee=1), _fill(2, Side.SHORT, 10, 35, fee=1)])
    assert generate_full_report(trades).to_json() == generate_full_report(list(trades)).to_json()


def test_core_risk_and_infinite_profit_factor() -> None:
    """負けが無く勝ちがあると profitFactor は Infinity（JSON でもそのまま）になること"""
    trades = _reconciled([_fill(1, Side.LONG, 10, 30, fee=1), _fill(2, Side.SHORT, 10, 35, fee=1)])
    report = generate_full_report(trades)
    core = report.core
    assert core.total_trades == 2
    assert core.closed_trades == 1
    assert core.wins == 1
    assert core.realized_pnl == pytest.approx(48.0)
    assert core.total_pnl == pytest.approx(48.0)
    assert core.unrealized_pnl == 0
    assert core.win_rate == pytest.approx(100.0)
    assert core.total_volume == pytest.approx(650.0)
    assert core.total_fees == pytest.approx(2.0)
    assert math.isinf(report.risk.profit_factor)
    assert '"profitFactor":Infinity' in report.to_json()


def test_profit_factor_and_bias_helpers() -> None:
    """profit_factor と directional_bias の境界値"""
    assert profit_factor(0.0, -5.0) == 0.0
    assert profit_factor(10.0, -5.0) == pytest.approx(2.0)
    assert math.isinf(profit_factor(3.0, 0.0))
    assert directional_bias(0, 0) == (0.0, Bias.NEUTRAL)
    assert directional_bias(3, 0) == (3.0, Bias.BULLISH)
    assert directional_bias(1, 2)[1] is Bias.BEARISH
    assert directional_bias(6, 5)[1] is Bias.NEUTRAL


def test_sessions_and_hourly_buckets() -> None:
    """UTC の時で asian/london/new_york に振り分け、時間帯別の勝率・損益が入ること"""
    assert [session_of(h) for h in (0, 7, 8, 15, 16, 23)] == ["asian", "asian", "london", "london", "new_york", "new_york"]
    trades = _reconciled([
        _fill(1, Side.LONG, 1, 100),
        _fill(2, Side.SHORT, 1, 90, hours=8),  # 17:00 → new_york で負け
    ])
    report = generate_full_report(trades)
    timing = report.timing
    assert timing.hourly[17].trades == 1
    assert timing.hourly[17].pnl == pytest.approx(-10.0)
    assert timing.hourly[17].win_rate == 0
    assert timing.sessions.london.trades == 1
    assert timing.sessions.new_york.losses == 1
    assert timing.weekday["Monday"].trades == 2
    assert timing.daily["2024-01-01"].trades == 2
    assert timing.monthly["2024-01"].trades == 2


def test_unrealized_uses_current_prices() -> None:
    """現在価格を渡すと、残っている建玉の含み損益が total に入ること"""
    trades = _reconciled([_fill(1, Side.LONG, 2, 100, fee=0.2), _fill(2, Side.SHORT, 1, 110)])
    report = generate_full_report(trades, current_prices={"SOL/USDC-PERP": 120.0})
    # 残り 1 単位: (120-100)*1 - 未実現の入口手数料 0.1
    assert report.core.unrealized_pnl == pytest.approx(19.9)
    assert report.core.realized_pnl == pytest.approx(10.0 - 0.1)
    assert report.core.total_pnl == pytest.approx(report.core.realized_pnl + 19.9)
    assert report.core.open_trades == 1


def test_fee_breakdown_entries() -> None:
    """手数料内訳は 0 でない項目だけ、リベートは負の金額で並ぶこと"""
    maker = _fill(1, Side.LONG, 1, 100)
    maker = TradeRecord(**{**maker.__dict__, "fees": Fees(maker=0.3, rebates=0.1)})
    funding = TradeRecord(
        id="f:0", timestamp=T0, symbol="SOL/USDC-PERP", side=Side.LONG, entry_price=0.0, quantity=0.0,
        trade_type=TradeType.PERP, discriminator=24, transaction_hash="f", kind=RecordKind.FUNDING,
        funding=-0.5, pnl=-0.5,
    )
    report = generate_full_report([maker, funding])
    entries = {e.category: e.amount for e in report.fees.entries}
    assert entries == {"trading": pytest.approx(0.3), "rebates": pytest.approx(-0.1), "funding": pytest.approx(-0.5)}
    assert report.core.total_funding == pytest.approx(-0.5)
    assert report.core.realized_pnl == pytest.approx(-0.5)


def test_drawdown_over_realized_curve() -> None:
    """実現損益の累積カーブから最大ドローダウンを出すこと"""
    trades = _reconciled([
        _fill(1, Side.LONG, 1, 100),
        _fill(2, Side.SHORT, 1, 120),  # +20
        _fill(3, Side.LONG, 1, 100),
        _fill(4, Side.SHORT, 1, 95),  # -5
        _fill(5, Side.LONG, 1, 100),
        _fill(6, Side.SHORT, 1, 90),  # -10
    ])
    dd = generate_full_report(trades).drawdown
    assert dd.peak == pytest.approx(20.0)
    assert dd.max_drawdown == pytest.approx(15.0)
    assert dd.max_drawdown_pct == pytest.approx(75.0)
    assert dd.current_drawdown == pytest.approx(15.0)


def test_long_short_and_symbols() -> None:
    """方向別の件数・比率と、銘柄別の成績が出ること"""
    trades = _reconciled([
        _fill(1, Side.LONG, 1, 100),
        _fill(2, Side.LONG, 1, 100, symbol="ETH-PERP"),
        _fill(3, Side.SHORT, 1, 110),
    ])
    report = generate_full_report(trades)
    ls = report.long_short
    assert (ls.long_trades, ls.short_trades) == (2, 1)
    assert ls.ratio == pytest.approx(2.0)
    assert ls.bias is Bias.BULLISH
    assert set(report.symbols) == {"ETH-PERP", "SOL/USDC-PERP"}
    assert report.symbols["SOL/USDC-PERP"].pnl == pytest.approx(10.0)


def test_financials_override() -> None:
    """確定値を渡すと core の該当項目が置き換わり、unrealized = total - realized になること"""
    trades = _reconciled([_fill(1, Side.LONG, 1, 100), _fill(2, Side.SHORT, 1, 110)])
    fin = FinancialDetails(total_pnl=25.0, realized_pnl=12.0, total_fees=3.0)
    report = generate_full_report(trades, fin)
    assert report.core.total_pnl == 25.0
    assert report.core.realized_pnl == 12.0
    assert report.core.unrealized_pnl == pytest.approx(13.0)
    assert report.core.total_fees == 3.0
    assert report.financials == fin


def test_unrealized_after_flip_uses_open_entry() -> None:
    """反転した約定の含み損益は、決済側の建値ではなく残った反対建玉の建値で測ること"""
    trades = _reconciled([_fill(1, Side.LONG, 10, 100), _fill(2, Side.SHORT, 15, 110)])
    flip = trades[1]
    assert flip.entry_price == pytest.approx(100.0)
    assert flip.open_entry_price == pytest.approx(110.0)
    report = generate_full_report(trades, current_prices={"SOL/USDC-PERP": 110.0})
    assert report.core.realized_pnl == pytest.approx(100.0)
    assert report.core.unrealized_pnl == pytest.approx(0.0)
    # 値上がりは残った 5 単位の売り建てに効く
    report = generate_full_report(trades, current_prices={"SOL/USDC-PERP": 112.0})
    assert report.core.unrealized_pnl == pytest.approx(-10.0)


def test_unrealized_for_open_short() -> None:
    """売り建ての含み損益は価格が下がると正になること"""
    trades = _reconciled([_fill(1, Side.SHORT, 2, 50)])
    assert generate_full_report(trades, current_prices={"SOL/USDC-PERP": 45.0}).core.unrealized_pnl == pytest.approx(10.0)
    assert generate_full_report(trades, current_prices={"SOL/USDC-PERP": 55.0}).core.unrealized_pnl == pytest.approx(-10.0)


def test_unmatched_closing_fills_stay_out_of_results() -> None:
    """建玉の無いスポット売りは open 扱いで、実現損益にも勝率にも入らないこと"""
    sell = _fill(1, Side.SHORT, 1, 100, symbol="SOL/USDC")
    sell = TradeRecord(**{**sell.__dict__, "trade_type": TradeType.SPOT})
    trades = _reconciled([sell, _fill(2, Side.LONG, 1, 100), _fill(3, Side.SHORT, 1, 90)])
    report = generate_full_report(trades, current_prices={"SOL/USDC": 80.0})
    core = report.core
    assert core.total_trades == 3
    assert core.open_trades == 2
    assert core.closed_trades == 1
    assert (core.wins, core.losses) == (0, 1)
    assert core.win_rate == 0
    assert core.realized_pnl == pytest.approx(-10.0)
    assert core.unrealized_pnl == 0
    assert report.risk.profit_factor == 0


def test_weekly_buckets_use_iso_weeks() -> None:
    """週別は ISO 週（年をまたぐ週は ISO 年）でまとめること"""
    trades = _reconciled([
        _fill(1, Side.LONG, 1, 100, hours=-24 * 1),  # 2023-12-31 日曜 → 2023-W52
        _fill(2, Side.SHORT, 1, 110),  # 2024-01-01 月曜 → 2024-W01
        _fill(3, Side.LONG, 1, 100, hours=24 * 7),
        _fill(4, Side.SHORT, 1, 95, hours=24 * 8),
    ])
    weekly = generate_full_report(trades).timing.weekly
    assert list(weekly) == ["2023-W52", "2024-W01", "2024-W02"]
    assert weekly["2024-W01"].pnl == pytest.approx(10.0)
    assert weekly["2024-W02"].losses == 1
    assert "2024-W01" in json.loads(generate_full_report(trades).to_json())["timing"]["weekly"]


def test_order_types_follow_fee_kind() -> None:
    """taker 手数料は market、maker/リベートは limit、手数料なしは unknown に数えること"""
    maker = _fill(3, Side.LONG, 1, 100)
    maker = TradeRecord(**{**maker.__dict__, "fees": Fees(rebates=0.05)})
    trades = _reconciled([_fill(1, Side.LONG, 1, 100, fee=0.1), _fill(2, Side.SHORT, 1, 120), maker])
    kinds = generate_full_report(trades).order_types
    assert set(kinds) == {"market", "limit", "unknown"}
    assert kinds["market"].trades == 1
    assert kinds["limit"].trades == 1
    assert kinds["unknown"].trades == 1
    assert kinds["unknown"].pnl == pytest.approx(20.0 - 0.1)
    assert generate_full_report([]).order_types["market"].trades == 0
    assert "orderTypes" in json.loads(generate_full_report(trades).to_json())
