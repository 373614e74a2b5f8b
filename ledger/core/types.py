from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional


class EventKind(IntEnum):
    """オンチェーンログ先頭1バイトの判別子（discriminator）。"""

    DEPOSIT = 1
    WITHDRAW = 2
    PERP_DEPOSIT = 3
    PERP_WITHDRAW = 4
    FEES_DEPOSIT = 5
    FEES_WITHDRAW = 6
    SPOT_LP_TRADE = 7
    SPOT_PLACE_ORDER = 10
    SPOT_FILL_ORDER = 11
    SPOT_NEW_ORDER = 12
    SPOT_ORDER_CANCEL = 13
    SPOT_ORDER_REVOKE = 14
    SPOT_FEES = 15
    SPOT_MASS_CANCEL = 17
    PERP_PLACE_ORDER = 18
    PERP_FILL_ORDER = 19
    PERP_ORDER_CANCEL = 21
    PERP_ORDER_REVOKE = 22
    PERP_FEES = 23
    PERP_FUNDING = 24
    PERP_MASS_CANCEL = 26
    PERP_SOC_LOSS = 27
    PERP_CHANGE_LEVERAGE = 28
    SWAP_ORDER = 31
    MOVE_SPOT = 32

    @property
    def is_perp(self) -> bool:
        return self.name.startswith("PERP_")


class Side(str, Enum):
    LONG = "long"
    SHORT = "short"

    @classmethod
    def parse(cls, raw: object) -> "Side":
        """long/short に加えて buy/sell・bid/ask・0/1 を同義語として受け付ける。"""

        if isinstance(raw, Side):
            return raw
        if isinstance(raw, int) and not isinstance(raw, bool):
            if raw in (0, 1):
                return cls.LONG if raw == 0 else cls.SHORT
            raise ValueError(f"unknown side: {raw!r}")
        key = str(raw or "").strip().lower()
        if key in ("long", "buy", "bid"):
            return cls.LONG
        if key in ("short", "sell", "ask"):
            return cls.SHORT
        raise ValueError(f"unknown side: {raw!r}")

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1

    @property
    def opposite(self) -> "Side":
        return Side.SHORT if self is Side.LONG else Side.LONG


class TradeType(str, Enum):
    SPOT = "spot"
    PERP = "perp"


class TradeStatus(str, Enum):
    WIN = "win"
    LOSS = "loss"
    BREAKEVEN = "breakeven"
    OPEN = "open"

    @classmethod
    def from_pnl(cls, pnl: float) -> "TradeStatus":
        if pnl > 0:
            return cls.WIN
        if pnl < 0:
            return cls.LOSS
        return cls.BREAKEVEN


class RecordKind(str, Enum):
    FILL = "fill"
    FEE = "fee"
    FUNDING = "funding"
    SOC_LOSS = "soc_loss"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"

    @property
    def is_adjustment(self) -> bool:
        return self in (RecordKind.FEE, RecordKind.FUNDING, RecordKind.SOC_LOSS)

    @property
    def is_capital(self) -> bool:
        return self in (RecordKind.DEPOSIT, RecordKind.WITHDRAW)


@dataclass(frozen=True)
class Fees:
    """手数料の内訳。total は常に maker + taker - rebates。"""

    maker: float = 0.0
    taker: float = 0.0
    rebates: float = 0.0

    @property
    def total(self) -> float:
        return self.maker + self.taker - self.rebates

    def add(self, *, maker: float = 0.0, taker: float = 0.0, rebates: float = 0.0) -> "Fees":
        return Fees(maker=self.maker + maker, taker=self.taker + taker, rebates=self.rebates + rebates)

    def to_dict(self) -> dict[str, float]:
        return {"maker": self.maker, "taker": self.taker, "total": self.total, "rebates": self.rebates}


@dataclass(frozen=True)
class TradeRecord:
    """正規化済みの1約定（または調整/入出金）。作成後は不変で、照合結果は replace で新しく作る。"""

    id: str
    timestamp: datetime
    symbol: str
    side: Side
    entry_price: float
    quantity: float
    trade_type: TradeType
    discriminator: int
    transaction_hash: str
    kind: RecordKind = RecordKind.FILL
    exit_price: Optional[float] = None
    value: float = 0.0
    fees: Fees = field(default_factory=Fees)
    pnl: float = 0.0
    pnl_percentage: float = 0.0
    duration: float = 0.0  # 秒
    status: TradeStatus = TradeStatus.OPEN
    slot: Optional[int] = None
    log_index: int = 0
    order_id: Optional[int] = None
    client_id: Optional[int] = None
    funding: float = 0.0  # 受取が正
    soc_loss: float = 0.0  # 負担額（正の値）
    merged: tuple[tuple[str, int], ...] = ()
    # 照合後に埋まる項目
    remaining_quantity: float = 0.0
    unmatched_quantity: float = 0.0
    pending_fees: float = 0.0
    pending_adjustment: float = 0.0
    open_entry_price: Optional[float] = None  # 残っている建玉の加重平均建値（反転時は約定値）

    @property
    def ordering_key(self) -> tuple:
        """FIFO順序キー。slot が無いときは -1 として tx ハッシュ→ログ位置で決める。"""

        return (self.timestamp, self.slot if self.slot is not None else -1, self.transaction_hash, self.log_index)

    @property
    def is_realized(self) -> bool:
        return self.status is not TradeStatus.OPEN

    def to_dict(self) -> dict[str, object]:
        """JSON/CSV 出力用の camelCase 辞書に変換する。"""

        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "symbol": self.symbol,
            "side": self.side.value,
            "entryPrice": self.entry_price,
            "exitPrice": self.exit_price,
            "quantity": self.quantity,
            "value": self.value,
            "fees": self.fees.to_dict(),
            "pnl": self.pnl,
            "pnlPercentage": self.pnl_percentage,
            "duration": self.duration,
            "status": self.status.value,
            "tradeType": self.trade_type.value,
            "kind": self.kind.value,
            "discriminator": self.discriminator,
            "transactionHash": self.transaction_hash,
            "slot": self.slot,
            "logIndex": self.log_index,
            "orderId": self.order_id,
            "clientId": self.client_id,
            "funding": self.funding,
            "socLoss": self.soc_loss,
            "remainingQuantity": self.remaining_quantity,
            "openEntryPrice": self.open_entry_price,
            "unmatchedQuantity": self.unmatched_quantity,
        }
