from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Tuple

from loguru import logger

from ledger.core.errors import ReconciliationError
from ledger.core.types import RecordKind, Side, TradeRecord, TradeStatus, TradeType

_EPS = 1e-12


@dataclass
class PositionLot:
    """An open, partially unmatched quantity from a single opening fill."""

    instrument: str
    side: Side
    remaining_quantity: float
    entry_price: float
    entry_fees_allocated: float  # fee per unit of the opening fill
    opened_at: datetime
    source_id: str
    adjustment_per_unit: float = 0.0  # funding - socialized loss carried per unit

    def take(self, qty: float) -> float:
        """Consume up to ``qty`` from the lot and return the amount actually taken."""
        taken = min(qty, self.remaining_quantity)
        self.remaining_quantity -= taken
        if self.remaining_quantity < _EPS:
            self.remaining_quantity = 0.0
        return taken


@dataclass(frozen=True)
class MatchedSlice:
    """One consumption of a lot by a closing fill."""

    lot_source_id: str
    quantity: float
    entry_price: float
    exit_price: float
    opened_at: datetime
    closed_at: datetime
    pnl: float


@dataclass
class _Book:
    long_lots: Deque[PositionLot] = field(default_factory=deque)
    short_lots: Deque[PositionLot] = field(default_factory=deque)

    def queue(self, side: Side) -> Deque[PositionLot]:
        return self.long_lots if side is Side.LONG else self.short_lots

    def open_quantity(self) -> float:
        return sum(l.remaining_quantity for l in self.long_lots) + sum(l.remaining_quantity for l in self.short_lots)

    def all_lots(self) -> List[PositionLot]:
        return list(self.long_lots) + list(self.short_lots)


@dataclass
class ReconciliationResult:
    """Reconciled records (input order preserved) plus whatever is still open."""

    trades: List[TradeRecord]
    open_lots: List[PositionLot]
    slices: Dict[str, List[MatchedSlice]]
    unmatched: List[str]


class FifoReconciler:
    """
    Match opening fills against closing fills per instrument, oldest lot
    first, and compute realized PnL per closing fill.

    Rules:
      - Spot sells only close long inventory; a spot sell with nothing to
        close is unmatched (status "open", excluded from realized PnL).
      - Perp fills are position-based: a fill against open lots of the
        opposite side closes them, any remainder opens a new lot.
      - Fees are pro-rated by matched quantity on both legs.
      - Funding and socialized loss merged on a fill follow that fill.
        Standalone accruals are spread over the lots open on that
        instrument at accrual time, pro-rata by remaining quantity, and
        realized when those lots close.

    Input records are never mutated; reconciled copies are returned.
    Records must already be in chain order (see ``TradeRecord.ordering_key``);
    they are re-sorted here, so arrival order never matters.
    """

    def reconcile(self, records: Iterable[TradeRecord]) -> ReconciliationResult:
        ordered = sorted(records, key=lambda r: r.ordering_key)
        books: Dict[str, _Book] = {}
        out: List[TradeRecord] = []
        slices: Dict[str, List[MatchedSlice]] = {}
        unmatched: List[str] = []

        for rec in ordered:
            if rec.kind is RecordKind.FILL:
                book = books.setdefault(rec.symbol, _Book())
                new_rec, rec_slices = self._apply_fill(book, rec)
                if rec_slices:
                    slices[rec.id] = rec_slices
                if new_rec.unmatched_quantity > _EPS:
                    unmatched.append(rec.id)
                out.append(new_rec)
            elif rec.kind in (RecordKind.FUNDING, RecordKind.SOC_LOSS):
                out.append(self._apply_accrual(books.get(rec.symbol), rec))
            else:
                out.append(rec)

        out = self._finalize_open(out, books)
        open_lots = [lot for book in books.values() for lot in book.all_lots() if lot.remaining_quantity > _EPS]
        return ReconciliationResult(trades=out, open_lots=open_lots, slices=slices, unmatched=unmatched)

    # ---------- fills ----------

    def _apply_fill(self, book: _Book, rec: TradeRecord) -> Tuple[TradeRecord, List[MatchedSlice]]:
        side = rec.side
        qty = rec.quantity
        fee_per_unit = rec.fees.total / qty if qty > 0 else 0.0
        adj_per_unit = (rec.funding - rec.soc_loss) / qty if qty > 0 else 0.0

        opposite = book.queue(side.opposite)
        closes_spot_inventory = rec.trade_type is TradeType.SPOT and side is Side.SHORT
        has_opposite = any(l.remaining_quantity > _EPS for l in opposite)

        if not has_opposite and not closes_spot_inventory:
            self._open_lot(book, rec, qty, fee_per_unit, adj_per_unit)
            return rec, []

        try:
            rec_slices = self._match(opposite, rec, qty, fee_per_unit, adj_per_unit)
        except ReconciliationError as e:
            logger.warning("fill.unmatched id={} symbol={} qty={} reason={}", rec.id, rec.symbol, qty, e)
            return replace(rec, status=TradeStatus.OPEN, pnl=0.0, unmatched_quantity=qty), []

        matched = sum(s.quantity for s in rec_slices)
        remainder = qty - matched
        unmatched_qty = 0.0
        if remainder > _EPS:
            if rec.trade_type is TradeType.PERP:
                # Position flips: the rest of the fill opens the other way
                self._open_lot(book, rec, remainder, fee_per_unit, adj_per_unit)
            else:
                unmatched_qty = remainder
                logger.warning(
                    "fill.unmatched id={} symbol={} qty={} matched={}", rec.id, rec.symbol, remainder, matched
                )

        pnl = sum(s.pnl for s in rec_slices)
        entry_price = sum(s.entry_price * s.quantity for s in rec_slices) / matched
        duration = sum((s.closed_at - s.opened_at).total_seconds() * s.quantity for s in rec_slices) / matched
        basis = entry_price * matched
        return (
            replace(
                rec,
                entry_price=entry_price,
                exit_price=rec.entry_price,
                pnl=pnl,
                pnl_percentage=(pnl / basis * 100.0) if basis > 0 else 0.0,
                duration=max(0.0, duration),
                status=TradeStatus.from_pnl(pnl),
                unmatched_quantity=unmatched_qty,
            ),
            rec_slices,
        )

    @staticmethod
    def _open_lot(book: _Book, rec: TradeRecord, qty: float, fee_per_unit: float, adj_per_unit: float) -> None:
        book.queue(rec.side).append(
            PositionLot(
                instrument=rec.symbol,
                side=rec.side,
                remaining_quantity=qty,
                entry_price=rec.entry_price,
                entry_fees_allocated=fee_per_unit,
                opened_at=rec.timestamp,
                source_id=rec.id,
                adjustment_per_unit=adj_per_unit,
            )
        )

    @staticmethod
    def _match(
        lots: Deque[PositionLot],
        rec: TradeRecord,
        qty: float,
        exit_fee_per_unit: float,
        exit_adj_per_unit: float,
    ) -> List[MatchedSlice]:
        """Consume ``lots`` oldest-first until ``qty`` is exhausted or the queue is empty."""

        exit_price = rec.entry_price
        want = qty
        out: List[MatchedSlice] = []
        while want > _EPS and lots:
            lot = lots[0]
            taken = lot.take(want)
            if lot.remaining_quantity <= 0.0:
                lots.popleft()
            if taken <= 0.0:
                continue
            sign = lot.side.sign
            gross = (exit_price - lot.entry_price) * taken * sign
            fees = (lot.entry_fees_allocated + exit_fee_per_unit) * taken
            adjustments = (lot.adjustment_per_unit + exit_adj_per_unit) * taken
            out.append(
                MatchedSlice(
                    lot_source_id=lot.source_id,
                    quantity=taken,
                    entry_price=lot.entry_price,
                    exit_price=exit_price,
                    opened_at=lot.opened_at,
                    closed_at=rec.timestamp,
                    pnl=gross - fees + adjustments,
                )
            )
            want -= taken
        if not out:
            raise ReconciliationError(f"no open lot for {rec.symbol} {rec.side.value}")
        return out

    # ---------- standalone funding / socialized loss ----------

    @staticmethod
    def _apply_accrual(book: _Book | None, rec: TradeRecord) -> TradeRecord:
        amount = rec.funding - rec.soc_loss
        lots = [l for l in book.all_lots() if l.remaining_quantity > _EPS] if book else []
        total_qty = sum(l.remaining_quantity for l in lots)
        if total_qty <= _EPS or amount == 0.0:
            return rec
        per_unit = amount / total_qty
        for lot in lots:
            lot.adjustment_per_unit += per_unit
        # Carried by the lots now; realized when they close
        return replace(rec, pnl=0.0, status=TradeStatus.BREAKEVEN)

    # ---------- leftovers ----------

    @staticmethod
    def _finalize_open(records: List[TradeRecord], books: Dict[str, _Book]) -> List[TradeRecord]:
        remaining: Dict[str, Tuple[float, float, float, float]] = {}
        for book in books.values():
            for lot in book.all_lots():
                if lot.remaining_quantity <= _EPS:
                    continue
                qty, cost, fees, adj = remaining.get(lot.source_id, (0.0, 0.0, 0.0, 0.0))
                remaining[lot.source_id] = (
                    qty + lot.remaining_quantity,
                    cost + lot.entry_price * lot.remaining_quantity,
                    fees + lot.entry_fees_allocated * lot.remaining_quantity,
                    adj + lot.adjustment_per_unit * lot.remaining_quantity,
                )
        if not remaining:
            return records
        out: List[TradeRecord] = []
        for rec in records:
            if rec.id in remaining:
                qty, cost, fees, adj = remaining[rec.id]
                # A flipped fill reports the closed lots as entry_price; the open rest is priced separately
                rec = replace(
                    rec,
                    remaining_quantity=qty,
                    open_entry_price=cost / qty,
                    pending_fees=fees,
                    pending_adjustment=adj,
                )
            out.append(rec)
        return out
