from __future__ import annotations

import csv
import json
import os
from pathlib import Path
from typing import Iterable, Sequence

from ledger.core.types import RecordKind, TradeRecord, TradeStatus

# CSV の列順は固定（読み込む側のスプレッドシートが列位置に依存する）
CSV_HEADERS = (
    "id",
    "timestamp",
    "symbol",
    "side",
    "kind",
    "tradeType",
    "entryPrice",
    "exitPrice",
    "quantity",
    "value",
    "feeMaker",
    "feeTaker",
    "feeRebates",
    "feeTotal",
    "funding",
    "socLoss",
    "pnl",
    "pnlPercentage",
    "duration",
    "status",
    "transactionHash",
    "slot",
    "logIndex",
)


def _csv_row(t: TradeRecord) -> dict[str, object]:
    return {
        "id": t.id,
        "timestamp": t.timestamp.isoformat(),
        "symbol": t.symbol,
        "side": t.side.value,
        "kind": t.kind.value,
        "tradeType": t.trade_type.value,
        "entryPrice": t.entry_price,
        "exitPrice": "" if t.exit_price is None else t.exit_price,
        "quantity": t.quantity,
        "value": t.value,
        "feeMaker": t.fees.maker,
        "feeTaker": t.fees.taker,
        "feeRebates": t.fees.rebates,
        "feeTotal": t.fees.total,
        "funding": t.funding,
        "socLoss": t.soc_loss,
        "pnl": t.pnl,
        "pnlPercentage": t.pnl_percentage,
        "duration": t.duration,
        "status": t.status.value,
        "transactionHash": t.transaction_hash,
        "slot": "" if t.slot is None else t.slot,
        "logIndex": t.log_index,
    }


def ensure_out_dir(path: str | os.PathLike[str]) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def write_csv(path: str | Path, trades: Iterable[TradeRecord]) -> int:
    """トレードを固定列順の CSV に書き出し、書いた行数を返す。"""

    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    n = 0
    with p.open("w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=list(CSV_HEADERS))
        w.writeheader()
        for t in trades:
            w.writerow(_csv_row(t))
            n += 1
    return n


def write_json(path: str | Path, trades: Sequence[TradeRecord]) -> int:
    """トレードを camelCase の JSON 配列で書き出し、件数を返す。"""

    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("w", encoding="utf-8") as f:
        json.dump([t.to_dict() for t in trades], f, ensure_ascii=False, indent=2, default=str)
    return len(trades)


def summarize(trades: Sequence[TradeRecord]) -> str:
    """これは何をする関数？→ 件数・勝敗・実現損益・手数料を 1 行にまとめて返します（CLI の最後に表示する用）。"""

    fills = [t for t in trades if t.kind is RecordKind.FILL]
    closed = [t for t in fills if t.status is not TradeStatus.OPEN]
    wins = sum(1 for t in closed if t.pnl > 0)
    losses = sum(1 for t in closed if t.pnl < 0)
    realized = sum(t.pnl for t in trades if t.kind.is_adjustment or (t.kind is RecordKind.FILL and t.is_realized))
    fees = sum(t.fees.total for t in trades)
    return (
        f"fills={len(fills)} closed={len(closed)} open={len(fills) - len(closed)} "
        f"wins={wins} losses={losses} realized={realized:.6f} fees={fees:.6f}"
    )
