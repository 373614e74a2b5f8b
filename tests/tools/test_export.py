from __future__ import annotations

import csv
import json
from datetime import datetime, timezone
from pathlib import Path

from ledger.core.types import Fees, RecordKind, Side, TradeRecord, TradeStatus, TradeType
from ledger.tools.export import CSV_HEADERS, summarize, write_csv, write_json

T0 = datetime(2024, 7, 1, tzinfo=timezone.utc)


def _rows() -> list[TradeRecord]:
    opened = TradeRecord(
        id="a:0",
        timestamp=T0,
        symbol="SOL/USDC-PERP",
        side=Side.LONG,
        entry_price=100.0,
        quantity=1.0,
        trade_type=TradeType.PERP,
        discriminator=19,
        transaction_hash="a",
        value=100.0,
        fees=Fees(taker=0.1),
        slot=5,
    )
    closed = TradeRecord(
        id="b:0",
        timestamp=T0,
        symbol="SOL/USDC-PERP",
        side=Side.SHORT,
        entry_price=90.0,
        exit_price=90.0,
        quantity=1.0,
        trade_type=TradeType.PERP,
        discriminator=19,
        transaction_hash="b",
        value=90.0,
        fees=Fees(taker=0.1),
        pnl=-10.0,
        status=TradeStatus.LOSS,
        slot=6,
    )
    funding = TradeRecord(
        id="c:0",
        timestamp=T0,
        symbol="SOL/USDC-PERP",
        side=Side.LONG,
        entry_price=0.0,
        quantity=0.0,
        trade_type=TradeType.PERP,
        discriminator=21,
        transaction_hash="c",
        kind=RecordKind.FUNDING,
        funding=0.5,
        pnl=0.5,
    )
    return [opened, closed, funding]


def test_csv_has_fixed_columns(tmp_path: Path) -> None:
    """CSV は固定の列順で、空値は空文字になること"""
    path = tmp_path / "out" / "trades.csv"
    assert write_csv(path, _rows()) == 3
    with path.open(newline="", encoding="utf-8") as f:
        reader = csv.reader(f)
        header = next(reader)
        rows = list(reader)
    assert tuple(header) == CSV_HEADERS
    first = dict(zip(header, rows[0]))
    assert first["exitPrice"] == ""
    assert first["feeTotal"] == "0.1"
    assert first["slot"] == "5"
    assert dict(zip(header, rows[2]))["slot"] == ""
    assert dict(zip(header, rows[1]))["status"] == "loss"


def test_json_export(tmp_path: Path) -> None:
    path = tmp_path / "trades.json"
    assert write_json(path, _rows()) == 3
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data[0]["transactionHash"] == "a"
    assert data[1]["exitPrice"] == 90.0
    assert data[2]["kind"] == "funding"


def test_summarize() -> None:
    line = summarize(_rows())
    assert line == "fills=2 closed=1 open=1 wins=0 losses=1 realized=-9.500000 fees=0.200000"
