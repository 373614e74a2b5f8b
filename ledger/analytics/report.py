"""これは「照合済みトレード列から分析レポート（勝率・PF・DD・手数料内訳・時間帯別など）を作る」モジュールです。

generate_full_report は純粋関数です。同じ入力なら同じ出力（JSON もバイト一致）になり、
空の入力や 0 除算になる入力でも例外を出さず、決められた番兵値で埋めたレポートを返します。
"""

from __future__ import annotations

import math
from collections import defaultdict
from typing import Iterable, Mapping

from ledger.core.types import RecordKind, Side, TradeRecord, TradeStatus

from .models import (
    AnalyticsReport,
    Bias,
    Bucket,
    CoreStats,
    DrawdownStats,
    FeeEntry,
    FeeStats,
    FinancialDetails,
    LongShortStats,
    RiskStats,
    SessionBuckets,
    SymbolStats,
    TimingStats,
)

DEFAULT_BIAS_THRESHOLD = 1.2
WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def _pct(part: float, whole: float) -> float:
    return part / whole * 100.0 if whole else 0.0


def _mean(xs: list[float]) -> float:
    return sum(xs) / len(xs) if xs else 0.0


def _is_closed_fill(t: TradeRecord) -> bool:
    return t.kind is RecordKind.FILL and t.status is not TradeStatus.OPEN


def _is_realized(t: TradeRecord) -> bool:
    """実現損益に入るレコードか（決済済みの約定と、単独の手数料/Funding/社会化損失）。"""

    if t.kind is RecordKind.FILL:
        return t.status is not TradeStatus.OPEN
    return t.kind.is_adjustment


def session_of(hour: int) -> str:
    """UTC の時（0-23）をセッション名に振り分ける。"""

    if hour < 8:
        return "asian"
    if hour < 16:
        return "london"
    return "new_york"


def profit_factor(wins_sum: float, losses_sum: float) -> float:
    """これは何をする関数？
    → Σ勝ち / |Σ負け| を返します。負けが 0 で勝ちがあれば inf、勝ちが無ければ 0。
    """
    if wins_sum <= 0:
        return 0.0
    if losses_sum == 0:
        return math.inf
    return wins_sum / abs(losses_sum)


def directional_bias(long_trades: int, short_trades: int, *, threshold: float = DEFAULT_BIAS_THRESHOLD) -> tuple[float, Bias]:
    """これは何をする関数？
    → long/short の件数比と偏り判定を返します。short が 0 件のときの比は long 件数（両方 0 なら 0）。
    """
    ratio = long_trades / short_trades if short_trades > 0 else float(long_trades)
    if long_trades == 0 and short_trades == 0:
        return 0.0, Bias.NEUTRAL
    if ratio > threshold:
        return ratio, Bias.BULLISH
    if ratio < 1.0 / threshold:
        return ratio, Bias.BEARISH
    return ratio, Bias.NEUTRAL


def _bucket(records: list[TradeRecord]) -> Bucket:
    closed = [t for t in records if _is_closed_fill(t)]
    wins = sum(1 for t in closed if t.pnl > 0)
    losses = sum(1 for t in closed if t.pnl < 0)
    return Bucket(
        trades=len(records),
        wins=wins,
        losses=losses,
        pnl=sum(t.pnl for t in closed),
        win_rate=_pct(wins, len(closed)),
        volume=sum(abs(t.value) for t in records),
    )


def _core(trades: list[TradeRecord], fills: list[TradeRecord], current_prices: Mapping[str, float] | None) -> CoreStats:
    closed = [t for t in fills if t.status is not TradeStatus.OPEN]
    wins = sum(1 for t in closed if t.pnl > 0)
    losses = sum(1 for t in closed if t.pnl < 0)
    realized = sum(t.pnl for t in trades if _is_realized(t))

    unrealized = 0.0
    if current_prices:
        for t in fills:
            if t.remaining_quantity <= 0 or t.symbol not in current_prices:
                continue
            mark = float(current_prices[t.symbol])
            sign = 1 if t.side is Side.LONG else -1
            entry = t.open_entry_price if t.open_entry_price is not None else t.entry_price
            unrealized += (mark - entry) * t.remaining_quantity * sign - t.pending_fees + t.pending_adjustment

    return CoreStats(
        total_trades=len(fills),
        closed_trades=len(closed),
        open_trades=len(fills) - len(closed),
        wins=wins,
        losses=losses,
        breakevens=len(closed) - wins - losses,
        total_pnl=realized + unrealized,
        realized_pnl=realized,
        unrealized_pnl=unrealized,
        win_rate=_pct(wins, len(closed)),
        total_volume=sum(abs(t.value) for t in fills),
        total_fees=sum(t.fees.total for t in trades),
        total_funding=sum(t.funding for t in trades),
        total_soc_loss=sum(t.soc_loss for t in trades),
        deposits=sum(t.value for t in trades if t.kind is RecordKind.DEPOSIT),
        withdrawals=sum(t.value for t in trades if t.kind is RecordKind.WITHDRAW),
        avg_trade_duration=_mean([t.duration for t in closed]),
    )


def _risk(fills: list[TradeRecord]) -> RiskStats:
    pnls = [t.pnl for t in fills if t.status is not TradeStatus.OPEN]
    win_pnls = [p for p in pnls if p > 0]
    loss_pnls = [p for p in pnls if p < 0]
    avg_win = _mean(win_pnls)
    avg_loss = _mean(loss_pnls)
    return RiskStats(
        avg_win=avg_win,
        avg_loss=avg_loss,
        profit_factor=profit_factor(sum(win_pnls), sum(loss_pnls)),
        largest_win=max(win_pnls, default=0.0),
        largest_loss=min(loss_pnls, default=0.0),
        expectancy=_mean(pnls),
        risk_reward=avg_win / abs(avg_loss) if avg_loss else 0.0,
    )


def _long_short(fills: list[TradeRecord], threshold: float) -> LongShortStats:
    longs = [t for t in fills if t.side is Side.LONG]
    shorts = [t for t in fills if t.side is Side.SHORT]
    long_b, short_b = _bucket(longs), _bucket(shorts)
    ratio, bias = directional_bias(len(longs), len(shorts), threshold=threshold)
    return LongShortStats(
        long_trades=len(longs),
        short_trades=len(shorts),
        long_volume=long_b.volume,
        short_volume=short_b.volume,
        long_pnl=long_b.pnl,
        short_pnl=short_b.pnl,
        long_win_rate=long_b.win_rate,
        short_win_rate=short_b.win_rate,
        ratio=ratio,
        bias=bias,
    )


def _timing(fills: list[TradeRecord]) -> TimingStats:
    hourly: dict[int, list[TradeRecord]] = {h: [] for h in range(24)}
    weekday: dict[str, list[TradeRecord]] = {d: [] for d in WEEKDAYS}
    daily: dict[str, list[TradeRecord]] = defaultdict(list)
    weekly: dict[str, list[TradeRecord]] = defaultdict(list)
    monthly: dict[str, list[TradeRecord]] = defaultdict(list)
    sessions: dict[str, list[TradeRecord]] = {"asian": [], "london": [], "new_york": []}
    for t in fills:
        ts = t.timestamp
        hourly[ts.hour].append(t)
        weekday[WEEKDAYS[ts.weekday()]].append(t)
        daily[ts.date().isoformat()].append(t)
        iso = ts.isocalendar()
        weekly[f"{iso[0]:04d}-W{iso[1]:02d}"].append(t)
        monthly[f"{ts.year:04d}-{ts.month:02d}"].append(t)
        sessions[session_of(ts.hour)].append(t)
    return TimingStats(
        hourly={h: _bucket(v) for h, v in hourly.items()},
        daily={k: _bucket(daily[k]) for k in sorted(daily)},
        weekly={k: _bucket(weekly[k]) for k in sorted(weekly)},
        weekday={d: _bucket(v) for d, v in weekday.items()},
        monthly={k: _bucket(monthly[k]) for k in sorted(monthly)},
        sessions=SessionBuckets(**{k: _bucket(v) for k, v in sessions.items()}),
    )


def _fees(trades: list[TradeRecord]) -> FeeStats:
    trading = sum(t.fees.maker + t.fees.taker for t in trades if t.kind in (RecordKind.FILL, RecordKind.FEE))
    rebates = sum(t.fees.rebates for t in trades)
    funding = sum(t.funding for t in trades)
    soc_loss = sum(t.soc_loss for t in trades)
    withdrawal = sum(t.fees.total for t in trades if t.kind is RecordKind.WITHDRAW)
    candidates = (
        ("trading", "Trading fees", trading),
        ("rebates", "Maker rebates", -rebates),
        ("funding", "Funding payments", funding),
        ("socialized_loss", "Socialized loss", soc_loss),
        ("withdrawal", "Withdrawal fees", withdrawal),
    )
    return FeeStats(
        total=sum(t.fees.total for t in trades),
        entries=[FeeEntry(category=c, label=l, amount=a) for c, l, a in candidates if a != 0],
    )


def _drawdown(trades: list[TradeRecord]) -> DrawdownStats:
    cum = 0.0
    peak = 0.0
    max_dd = 0.0
    max_dd_pct = 0.0
    for t in trades:
        if not _is_realized(t):
            continue
        cum += t.pnl
        peak = max(peak, cum)
        dd = peak - cum
        if dd > max_dd:
            max_dd = dd
            max_dd_pct = _pct(dd, peak)
    return DrawdownStats(max_drawdown=max_dd, max_drawdown_pct=max_dd_pct, current_drawdown=peak - cum, peak=peak)


def _symbols(fills: list[TradeRecord]) -> dict[str, SymbolStats]:
    grouped: dict[str, list[TradeRecord]] = defaultdict(list)
    for t in fills:
        grouped[t.symbol].append(t)
    out: dict[str, SymbolStats] = {}
    for sym in sorted(grouped):
        b = _bucket(grouped[sym])
        out[sym] = SymbolStats(trades=b.trades, wins=b.wins, pnl=b.pnl, win_rate=b.win_rate, volume=b.volume)
    return out


def order_type_of(t: TradeRecord) -> str:
    """これは何をする関数？
    → 約定の手数料内訳から注文種別を推定します。
      maker 手数料かリベートがあれば limit、taker 手数料があれば market、どちらも無ければ unknown。
    """
    if t.fees.maker > 0 or t.fees.rebates > 0:
        return "limit"
    if t.fees.taker > 0:
        return "market"
    return "unknown"


def _order_types(fills: list[TradeRecord]) -> dict[str, Bucket]:
    grouped: dict[str, list[TradeRecord]] = {"market": [], "limit": [], "unknown": []}
    for t in fills:
        grouped[order_type_of(t)].append(t)
    return {k: _bucket(v) for k, v in grouped.items()}


def _apply_override(core: CoreStats, fin: FinancialDetails) -> CoreStats:
    updates = {k: v for k, v in fin.model_dump().items() if v is not None}
    if not updates:
        return core
    merged = core.model_copy(update=updates)
    return merged.model_copy(update={"unrealized_pnl": merged.total_pnl - merged.realized_pnl})


def generate_full_report(
    trades: Iterable[TradeRecord],
    financials_override: FinancialDetails | None = None,
    current_prices: Mapping[str, float] | None = None,
    *,
    bias_threshold: float = DEFAULT_BIAS_THRESHOLD,
) -> AnalyticsReport:
    """これは何をする関数？
    → 照合済みトレード列（＋任意の確定値・現在価格）から AnalyticsReport を作って返します。
      入力の並び順には依存しません（チェーン順に並べ直してから集計）。
    """
    ordered = sorted(trades, key=lambda t: t.ordering_key)
    fills = [t for t in ordered if t.kind is RecordKind.FILL]

    core = _core(ordered, fills, current_prices)
    if financials_override is not None:
        core = _apply_override(core, financials_override)

    return AnalyticsReport(
        core=core,
        risk=_risk(fills),
        long_short=_long_short(fills, bias_threshold),
        timing=_timing(fills),
        fees=_fees(ordered),
        drawdown=_drawdown(ordered),
        symbols=_symbols(fills),
        order_types=_order_types(fills),
        financials=financials_override,
    )
