"""これは『デコード済みチェーンイベントを TradeRecord に正規化する』モジュールです。

- 単位の統一: 固定小数点の整数を数量/価格/金額の float に直す
- 売買方向の統一: 0/1・buy/sell を long/short に寄せる
- 手数料・Funding・社会化損失が同じ tx の約定を指すときは、その約定に 1 回だけ合流させる
  （合流キーは (tx ハッシュ, 判別子)）。相手の約定が無いものは単独の調整レコードにする
"""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable

from loguru import logger

from ledger.chain.events import (
    CapitalEvent,
    FeeEvent,
    FillEvent,
    FundingEvent,
    OrderEvent,
    RawChainEvent,
    SocLossEvent,
)
from ledger.core.errors import MalformedEventError
from ledger.core.types import EventKind, Fees, RecordKind, Side, TradeRecord, TradeStatus, TradeType

from .symbols import SymbolBook

_DEPOSIT_KINDS = {EventKind.DEPOSIT, EventKind.PERP_DEPOSIT, EventKind.FEES_DEPOSIT}

Adjustment = FeeEvent | FundingEvent | SocLossEvent


def record_id(transaction_hash: str, log_index: int) -> str:
    return f"{transaction_hash}:{log_index}"


class TradeNormalizer:
    """RawChainEvent → TradeRecord の純粋な変換器（状態を持たない）。"""

    def __init__(self, *, qty_decimals: int = 9, quote_decimals: int = 6, symbols: SymbolBook | None = None) -> None:
        self._qty_scale = float(10**qty_decimals)
        self._quote_scale = float(10**quote_decimals)
        self._symbols = symbols or SymbolBook()

    # ---------- 単位変換 ----------

    def _qty(self, raw: int) -> float:
        return raw / self._qty_scale

    def _quote(self, raw: int) -> float:
        return raw / self._quote_scale

    # ---------- 1 イベント → 1 レコード ----------

    def fill_record(self, ev: FillEvent) -> TradeRecord:
        """これは何をする関数？→ 約定イベントを未照合（status=open）の TradeRecord にします。"""

        qty = self._qty(ev.qty)
        price = self._quote(ev.price)
        if qty <= 0 or price <= 0:
            raise MalformedEventError(f"{ev.kind.name}: non-positive qty/price qty={ev.qty} price={ev.price}")
        trade_type = TradeType.PERP if ev.kind.is_perp else TradeType.SPOT
        symbol = self._symbols.perp(ev.instr_id) if trade_type is TradeType.PERP else self._symbols.spot(ev.instr_id)
        value = abs(self._quote(ev.value)) or price * qty
        rebates = self._quote(ev.rebates)
        fees = Fees(rebates=rebates) if rebates >= 0 else Fees(taker=-rebates)
        o = ev.origin
        return TradeRecord(
            id=record_id(o.transaction_hash, o.log_index),
            timestamp=o.block_time,
            symbol=symbol,
            side=Side.parse(ev.side),
            entry_price=price,
            quantity=qty,
            trade_type=trade_type,
            discriminator=int(ev.kind),
            transaction_hash=o.transaction_hash,
            kind=RecordKind.FILL,
            value=value,
            fees=fees,
            slot=o.slot,
            log_index=o.log_index,
            order_id=ev.order_id,
            client_id=ev.client_id,
        )

    def adjustment_record(self, ev: Adjustment) -> TradeRecord:
        """これは何をする関数？→ 相手の約定が無い手数料/Funding/社会化損失を単独レコードにします。"""

        o = ev.origin
        if isinstance(ev, FeeEvent):
            amount = self._quote(ev.fees)
            kind, fees, funding, soc_loss, pnl = RecordKind.FEE, Fees(taker=amount), 0.0, 0.0, -amount
        elif isinstance(ev, FundingEvent):
            amount = self._quote(ev.funding)
            kind, fees, funding, soc_loss, pnl = RecordKind.FUNDING, Fees(), amount, 0.0, amount
        else:
            amount = self._quote(ev.soc_loss)
            kind, fees, funding, soc_loss, pnl = RecordKind.SOC_LOSS, Fees(), 0.0, amount, -amount
        trade_type = TradeType.PERP if ev.kind.is_perp else TradeType.SPOT
        symbol = self._symbols.perp(ev.instr_id) if trade_type is TradeType.PERP else self._symbols.spot(ev.instr_id)
        return TradeRecord(
            id=record_id(o.transaction_hash, o.log_index),
            timestamp=o.block_time,
            symbol=symbol,
            side=Side.LONG,
            entry_price=0.0,
            quantity=0.0,
            trade_type=trade_type,
            discriminator=int(ev.kind),
            transaction_hash=o.transaction_hash,
            kind=kind,
            fees=fees,
            pnl=pnl,
            status=TradeStatus.from_pnl(pnl),
            slot=o.slot,
            log_index=o.log_index,
            client_id=getattr(ev, "client_id", None),
            funding=funding,
            soc_loss=soc_loss,
        )

    def capital_record(self, ev: CapitalEvent) -> TradeRecord:
        o = ev.origin
        amount = self._quote(ev.amount)
        kind = RecordKind.DEPOSIT if ev.kind in _DEPOSIT_KINDS else RecordKind.WITHDRAW
        return TradeRecord(
            id=record_id(o.transaction_hash, o.log_index),
            timestamp=o.block_time,
            symbol=self._symbols.token(ev.token_id),
            side=Side.LONG if kind is RecordKind.DEPOSIT else Side.SHORT,
            entry_price=0.0,
            quantity=amount,
            trade_type=TradeType.PERP if ev.kind.is_perp else TradeType.SPOT,
            discriminator=int(ev.kind),
            transaction_hash=o.transaction_hash,
            kind=kind,
            value=amount,
            status=TradeStatus.BREAKEVEN,
            slot=o.slot,
            log_index=o.log_index,
            client_id=ev.client_id,
        )

    # ---------- 合流 ----------

    def merge_adjustment(self, fill: TradeRecord, ev: Adjustment) -> TradeRecord:
        """これは何をする関数？
        → 約定レコードに手数料/Funding/社会化損失を合流させた新しいレコードを返します。
          同じ (tx, 判別子) が既に合流済みなら何もしません（冪等）。
        """
        key = (ev.origin.transaction_hash, int(ev.kind))
        if key in fill.merged:
            return fill
        merged = fill.merged + (key,)
        if isinstance(ev, FeeEvent):
            amount = self._quote(ev.fees)
            # リベートを得た約定はメイカー側とみなす
            fees = fill.fees.add(maker=amount) if fill.fees.rebates > 0 else fill.fees.add(taker=amount)
            return replace(fill, fees=fees, merged=merged)
        if isinstance(ev, FundingEvent):
            return replace(fill, funding=fill.funding + self._quote(ev.funding), merged=merged)
        return replace(fill, soc_loss=fill.soc_loss + self._quote(ev.soc_loss), merged=merged)

    @staticmethod
    def _matches(fill: TradeRecord, ev: Adjustment, symbol: str) -> bool:
        if fill.symbol != symbol:
            return False
        if isinstance(ev, FeeEvent):
            return True
        return fill.trade_type is TradeType.PERP

    # ---------- まとめて正規化 ----------

    def normalize(self, events: Iterable[RawChainEvent]) -> tuple[list[TradeRecord], int]:
        """これは何をする関数？
        → イベント列を TradeRecord 列（並び順維持）に変換し、(レコード, スキップ数) を返します。
          同じ (tx, ログ位置) の重複イベントは 1 件として扱います。
        """
        records: list[TradeRecord] = []
        by_tx: dict[str, list[int]] = {}  # tx ハッシュ → records 内の約定インデックス
        pending: list[Adjustment] = []
        seen: set[tuple[str, int]] = set()
        skipped = 0

        for ev in events:
            pos = (ev.origin.transaction_hash, ev.origin.log_index)
            if pos in seen:
                continue
            seen.add(pos)
            try:
                if isinstance(ev, FillEvent):
                    by_tx.setdefault(ev.origin.transaction_hash, []).append(len(records))
                    records.append(self.fill_record(ev))
                elif isinstance(ev, (FeeEvent, FundingEvent, SocLossEvent)):
                    pending.append(ev)
                elif isinstance(ev, CapitalEvent):
                    records.append(self.capital_record(ev))
                elif isinstance(ev, OrderEvent):
                    continue
                else:
                    raise MalformedEventError(f"unhandled event type {type(ev).__name__}")
            except MalformedEventError as e:
                skipped += 1
                logger.warning("normalize: skip event id={} reason={}", record_id(*pos), e)

        standalone: list[TradeRecord] = []
        for ev in pending:
            trade_type = TradeType.PERP if ev.kind.is_perp else TradeType.SPOT
            symbol = self._symbols.perp(ev.instr_id) if trade_type is TradeType.PERP else self._symbols.spot(ev.instr_id)
            key = (ev.origin.transaction_hash, int(ev.kind))
            target = None
            for idx in by_tx.get(ev.origin.transaction_hash, []):
                if self._matches(records[idx], ev, symbol) and key not in records[idx].merged:
                    target = idx
                    break
            if target is None:
                standalone.append(self.adjustment_record(ev))
                continue
            records[target] = self.merge_adjustment(records[target], ev)

        out = records + standalone
        out.sort(key=lambda r: r.ordering_key)
        return out, skipped
