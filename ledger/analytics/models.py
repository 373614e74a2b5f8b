from __future__ import annotations

# 分析レポートの厳密なスキーマ（Pydantic v2）。JSON では camelCase で出す。
from enum import Enum

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _Schema(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        ser_json_inf_nan="constants",  # profitFactor の Infinity をそのまま出す
    )


class Bias(str, Enum):
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"


class FinancialDetails(_Schema):
    """外部から与える確定値。None でない項目は集計値を上書きする。"""

    total_pnl: float | None = None
    realized_pnl: float | None = None
    total_fees: float | None = None
    total_funding: float | None = None
    total_soc_loss: float | None = None
    total_volume: float | None = None
    deposits: float | None = None
    withdrawals: float | None = None


class CoreStats(_Schema):
    total_trades: int = 0
    closed_trades: int = 0
    open_trades: int = 0
    wins: int = 0
    losses: int = 0
    breakevens: int = 0
    total_pnl: float = 0.0
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    win_rate: float = 0.0
    total_volume: float = 0.0
    total_fees: float = 0.0
    total_funding: float = 0.0
    total_soc_loss: float = 0.0
    deposits: float = 0.0
    withdrawals: float = 0.0
    avg_trade_duration: float = 0.0


class RiskStats(_Schema):
    avg_win: float = 0.0
    avg_loss: float = 0.0
    profit_factor: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    expectancy: float = 0.0
    risk_reward: float = 0.0


class LongShortStats(_Schema):
    long_trades: int = 0
    short_trades: int = 0
    long_volume: float = 0.0
    short_volume: float = 0.0
    long_pnl: float = 0.0
    short_pnl: float = 0.0
    long_win_rate: float = 0.0
    short_win_rate: float = 0.0
    ratio: float = 0.0
    bias: Bias = Bias.NEUTRAL


class Bucket(_Schema):
    trades: int = 0
    wins: int = 0
    losses: int = 0
    pnl: float = 0.0
    win_rate: float = 0.0
    volume: float = 0.0


class SessionBuckets(_Schema):
    asian: Bucket = Bucket()
    london: Bucket = Bucket()
    new_york: Bucket = Bucket()


class TimingStats(_Schema):
    hourly: dict[int, Bucket] = {}
    daily: dict[str, Bucket] = {}
    weekly: dict[str, Bucket] = {}
    weekday: dict[str, Bucket] = {}
    monthly: dict[str, Bucket] = {}
    sessions: SessionBuckets = SessionBuckets()


class FeeEntry(_Schema):
    category: str
    label: str
    amount: float


class FeeStats(_Schema):
    total: float = 0.0
    entries: list[FeeEntry] = []


class DrawdownStats(_Schema):
    max_drawdown: float = 0.0
    max_drawdown_pct: float = 0.0
    current_drawdown: float = 0.0
    peak: float = 0.0


class SymbolStats(_Schema):
    trades: int = 0
    wins: int = 0
    pnl: float = 0.0
    win_rate: float = 0.0
    volume: float = 0.0


class AnalyticsReport(_Schema):
    """集計結果の全体。空の入力でも全項目がゼロ値で埋まる。"""

    core: CoreStats = CoreStats()
    risk: RiskStats = RiskStats()
    long_short: LongShortStats = LongShortStats()
    timing: TimingStats = TimingStats()
    fees: FeeStats = FeeStats()
    drawdown: DrawdownStats = DrawdownStats()
    symbols: dict[str, SymbolStats] = {}
    order_types: dict[str, Bucket] = {}
    financials: FinancialDetails | None = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)
