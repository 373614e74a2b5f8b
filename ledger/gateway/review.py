"""このモジュールは『トレード振り返りの分析リクエストを受け、上流のテキスト生成に問い合わせる』ゲートウェイです。

流れ：回数制限 → 入力検証 → 上流呼び出し（時間制限つき） → 応答検証
- 時間切れ・上流の失敗・応答不正は、同じトレード項目から組み立てたテンプレートで返す
- 認証エラー（401/403）だけはフォールバックせずそのまま上げる
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Mapping

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ledger.config.models import ReviewConfig
from ledger.core.errors import GatewayAuthError, GatewayError, GatewayTimeout, ValidationError

from .limiter import SlidingWindowLimiter
from .llm import ChatCompletionClient

DISCLAIMER = "Not financial advice. AI analysis for educational and self-improvement purposes only."
DEFAULT_INSIGHTS = (
    "Consider reviewing your entry criteria for this setup",
    "Evaluate your exit strategy against market conditions",
    "Review position sizing relative to account risk",
)

SYSTEM_PROMPT = """You are an expert trading analyst and coach. Analyze the provided trade data and journal entry to generate actionable insights. Focus on:
1. Technical execution quality
2. Psychological patterns
3. Risk management
4. Specific, actionable improvements

Provide analysis in a constructive, educational tone. Never give financial advice or predictions."""

_REPLY_FORMAT = """Provide a comprehensive analysis in the following JSON format:
{
  "performanceCritique": "Detailed analysis of trade execution (2-3 sentences)",
  "emotionalReview": "Analysis of psychological patterns based on journal (2-3 sentences)",
  "actionableInsights": ["3 specific, actionable insights to improve"],
  "riskAssessment": "Brief assessment of risk management (1-2 sentences)",
  "disclaimer": "Standard disclaimer"
}"""


class _Camel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReviewFees(_Camel):
    model_config = ConfigDict(extra="ignore")

    total: float = 0.0


class ReviewTrade(_Camel):
    """上流に渡すトレード項目。TradeRecord.to_dict() の形をそのまま受け付ける。"""

    model_config = ConfigDict(extra="ignore")

    symbol: str
    entry_price: float
    side: str = "long"
    exit_price: float | None = None
    quantity: float = 0.0
    value: float = 0.0
    pnl: float = 0.0
    pnl_percentage: float = 0.0
    duration: float = 0.0
    order_type: str = "market"
    trade_type: str = "spot"
    fees: ReviewFees = ReviewFees()

    @field_validator("quantity", "value", "pnl", "pnl_percentage", "duration", mode="before")
    @classmethod
    def _none_as_zero(cls, v: Any) -> Any:
        return 0.0 if v is None else v

    @property
    def is_long(self) -> bool:
        return self.side.lower() in ("long", "buy")

    @property
    def is_profitable(self) -> bool:
        return self.pnl >= 0


class ReviewRequest(_Camel):
    trade: ReviewTrade
    journal_content: str
    session_context: dict[str, Any] | None = None

    @classmethod
    def parse(cls, body: Any) -> "ReviewRequest":
        """これは何をする関数？
        → リクエスト本文を検証して ReviewRequest にします。欠け・型不正は ValidationError（400）。
        """
        if not isinstance(body, Mapping):
            raise ValidationError("request body must be a JSON object")
        trade = body.get("trade")
        journal = body.get("journalContent")
        if not trade or not journal:
            raise ValidationError("Missing required fields: trade and journalContent")
        if not isinstance(trade, Mapping) or not trade.get("symbol"):
            raise ValidationError("Invalid trade data")
        entry = trade.get("entryPrice")
        if isinstance(entry, bool) or not isinstance(entry, (int, float)):
            raise ValidationError("Invalid trade data")
        try:
            return cls.model_validate(body)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid trade data: {e.errors()[0].get('msg', 'invalid')}") from e


class ReviewResult(_Camel):
    performance_critique: str
    emotional_review: str
    actionable_insights: list[str] = Field(min_length=3)
    risk_assessment: str
    disclaimer: str = DISCLAIMER
    fallback: bool = Field(default=False, exclude=True)

    def to_body(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


# ---------- プロンプトとテンプレート ----------


def build_user_prompt(req: ReviewRequest) -> str:
    """これは何をする関数？→ トレード項目・直近成績・日誌を 1 つのユーザープロンプトにまとめます。"""

    t = req.trade
    direction = "LONG" if t.is_long else "SHORT"
    fee_impact = f"{t.fees.total / abs(t.value) * 100:.2f}" if t.value and t.fees.total else "0"
    exit_price = f"${t.exit_price:.4f}" if t.exit_price is not None else "n/a"
    lines = [
        "Trade Details:",
        f"- Symbol: {t.symbol}",
        f"- Direction: {direction}",
        f"- Entry Price: ${t.entry_price:.4f}",
        f"- Exit Price: {exit_price}",
        f"- Quantity: {t.quantity:.6f}",
        f"- Total Value: ${t.value:.2f}",
        f"- PnL: {'+' if t.is_profitable else '-'}${abs(t.pnl):.2f}",
        f"- PnL %: {t.pnl_percentage:.2f}%",
        f"- Duration: {int(t.duration // 60)} minutes",
        f"- Order Type: {t.order_type}",
        f"- Trade Type: {t.trade_type}",
        f"- Fees Paid: ${t.fees.total:.6f}",
        f"- Fee Impact: {fee_impact}% of trade value",
    ]
    recent = (req.session_context or {}).get("recentTrades")
    if isinstance(recent, list) and recent:
        pnls = [float(x.get("pnl") or 0.0) for x in recent if isinstance(x, Mapping)]
        if pnls:
            wins = sum(1 for p in pnls if p > 0)
            lines += [
                "",
                "Recent Performance Context:",
                f"- Last {len(pnls)} trades PnL: ${sum(pnls):.2f}",
                f"- Win rate last {len(pnls)}: {wins / len(pnls) * 100:.1f}%",
            ]
    lines += ["", "Trader's Journal Entry:", '"""', req.journal_content, '"""', "", _REPLY_FORMAT]
    return "\n".join(lines)


def fallback_review(trade: ReviewTrade, journal_content: str) -> ReviewResult:
    """これは何をする関数？
    → 上流が使えないときに、同じトレード項目から決定的なレビューを組み立てます。
    """
    direction = "long" if trade.is_long else "short"
    pct = trade.pnl_percentage
    if trade.is_profitable:
        critique = (
            f"Your {direction} entry at ${trade.entry_price:.2f} showed good timing. "
            f"The exit captured {pct:.1f}% of the move. Consider using limit orders to improve entry precision."
        )
        first = f"Your winning trades average {trade.duration / 60:.0f} minutes. Compare this to your losing trades."
        rr = f"1:{trade.pnl / (trade.value or 1) * 10:.1f}"
    else:
        critique = (
            f"The {direction} entry at ${trade.entry_price:.2f} went against the prevailing trend. "
            f"The {abs(pct):.1f}% loss suggests reviewing your entry confirmation criteria."
        )
        first = (
            f"Review your stop placement - this loss was {abs(pct):.1f}% which might exceed your risk parameters."
        )
        rr = "Negative"

    if len(journal_content) > 50:
        emotional = (
            "Your journal notes indicate awareness of market conditions. "
            "Continue documenting your thought process before entries."
        )
    else:
        emotional = (
            "Consider adding more detail to your journal about your emotional state "
            "and reasoning before entering the trade."
        )

    sizing = "aggressive" if abs(trade.value) > 20000 else "appropriate"
    fee_share = trade.fees.total / abs(trade.value or 1) * 100
    return ReviewResult(
        performance_critique=critique,
        emotional_review=emotional,
        actionable_insights=[
            first,
            f"Position sizing at ${trade.value:.0f} was {sizing} for this setup.",
            f"Fee impact of ${trade.fees.total:.4f} represents {fee_share:.2f}% of trade value.",
        ],
        risk_assessment=f"Risk/Reward: {rr}. Duration: {int(trade.duration // 60)}min.",
        disclaimer=DISCLAIMER,
        fallback=True,
    )


def parse_reply(content: str) -> ReviewResult:
    """これは何をする関数？
    → 上流の JSON 文字列を検証して ReviewResult にします。
      必須項目が欠けていれば GatewayError。insights が 3 件未満なら定型文で補い、免責文が無ければ付けます。
    """
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise GatewayError("upstream reply is not JSON") from e
    if not isinstance(data, dict):
        raise GatewayError("upstream reply is not a JSON object")
    required = ("performanceCritique", "emotionalReview", "actionableInsights", "riskAssessment")
    missing = [k for k in required if not data.get(k)]
    if missing:
        raise GatewayError(f"invalid analysis format: missing {', '.join(missing)}")

    insights = data["actionableInsights"]
    items = [str(x) for x in insights] if isinstance(insights, list) else []
    if len(items) < 3:
        items = [items[i] if i < len(items) and items[i] else DEFAULT_INSIGHTS[i] for i in range(3)]
    return ReviewResult(
        performance_critique=str(data["performanceCritique"]),
        emotional_review=str(data["emotionalReview"]),
        actionable_insights=items,
        risk_assessment=str(data["riskAssessment"]),
        disclaimer=str(data.get("disclaimer") or DISCLAIMER),
    )


class ReviewGateway:
    """回数制限・入力検証・時間制限・フォールバックをまとめた分析ゲートウェイ。"""

    def __init__(
        self,
        *,
        client: ChatCompletionClient | None,
        limiter: SlidingWindowLimiter,
        timeout_s: float = 15.0,
    ) -> None:
        self._client = client
        self._limiter = limiter
        self._timeout_s = timeout_s

    @classmethod
    def from_config(cls, cfg: ReviewConfig) -> "ReviewGateway":
        client = ChatCompletionClient.from_config(cfg) if cfg.api_key else None
        limiter = SlidingWindowLimiter(max_requests=cfg.max_requests, window_s=cfg.window_s)
        return cls(client=client, limiter=limiter, timeout_s=cfg.timeout_s)

    async def _call_upstream(self, req: ReviewRequest) -> ReviewResult:
        if self._client is None:
            raise GatewayError("no upstream client configured")
        try:
            content = await asyncio.wait_for(
                self._client.complete(SYSTEM_PROMPT, build_user_prompt(req)),
                timeout=self._timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise GatewayTimeout(f"upstream did not answer within {self._timeout_s:.0f}s") from e
        return parse_reply(content)

    async def review(self, identity: str, body: Any) -> ReviewResult:
        """これは何をする関数？
        → 1 件の分析リクエストを処理します。
          RateLimitExceeded（429）・ValidationError（400）・GatewayAuthError（401/403）以外は必ず有効な本文を返します。
        """
        self._limiter.acquire(identity)
        req = ReviewRequest.parse(body)
        if self._client is None:
            logger.debug("gateway.fallback identity={} reason=no upstream configured", identity)
            return fallback_review(req.trade, req.journal_content)
        try:
            return await self._call_upstream(req)
        except GatewayAuthError:
            logger.error("gateway.auth identity={} upstream rejected credentials", identity)
            raise
        except GatewayError as e:
            logger.warning("gateway.fallback identity={} reason={}", identity, e)
        return fallback_review(req.trade, req.journal_content)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
