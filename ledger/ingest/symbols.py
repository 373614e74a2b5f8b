# これは「チェーン上のトークン ID / 銘柄 ID を表示用シンボルに引く」ためのファイルです。
from __future__ import annotations

from typing import Mapping

TOKEN_SYMBOLS: dict[int, str] = {
    1: "USDC",
    2: "SOL",
    4: "LETTERA",
    6: "VELIT",
    8: "SUN",
    10: "BRSH",
    12: "MSHK",
    14: "SOL",
    16: "trs",
    18: "sad",
    20: "MDVD",
    22: "333",
    24: "BRSH",
    26: "1",
    28: "TST",
    30: "asd",
}

INSTRUMENT_SYMBOLS: dict[int, str] = {
    0: "SOL/USDC",
    2: "LETTERA/USDC",
    4: "VELIT/USDC",
    6: "SUN/USDC",
    8: "BRSH/USDC",
    10: "MSHK/USDC",
    12: "SOL/USDC",
    14: "trs/USDC",
    16: "sad/USDC",
    18: "MDVD/USDC",
    20: "333/USDC",
    22: "BRSH/USDC",
    24: "1/USDC",
    26: "TST/USDC",
    28: "asd/USDC",
}


class SymbolBook:
    """ID→シンボルの対応表。未登録 ID はプレフィックス付きの仮名を返す。"""

    def __init__(
        self,
        *,
        tokens: Mapping[int, str] | None = None,
        instruments: Mapping[int, str] | None = None,
    ) -> None:
        self._tokens = dict(TOKEN_SYMBOLS if tokens is None else tokens)
        self._instruments = dict(INSTRUMENT_SYMBOLS if instruments is None else instruments)

    def token(self, token_id: int) -> str:
        return self._tokens.get(token_id, f"TOKEN-{token_id}")

    def spot(self, instr_id: int) -> str:
        return self._instruments.get(instr_id, f"INSTR-{instr_id}")

    def perp(self, instr_id: int) -> str:
        name = self._instruments.get(instr_id)
        return f"{name}-PERP" if name else f"PERP-{instr_id}"
