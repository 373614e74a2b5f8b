from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class SignatureInfo(BaseModel):
    """getSignaturesForAddress の 1 要素（新しい順で返る）。"""

    model_config = {"extra": "ignore", "populate_by_name": True}

    signature: str
    slot: int | None = None
    err: Any = None
    block_time: int | None = Field(default=None, alias="blockTime")

    @property
    def failed(self) -> bool:
        return self.err is not None


class ChainTransaction(BaseModel):
    """デコーダが必要とする tx の最小形（ログ行とブロック時刻）。"""

    model_config = {"extra": "ignore"}

    signature: str
    slot: int | None = None
    block_time: int | None = None
    err: Any = None
    log_messages: list[str] = []

    @classmethod
    def from_rpc(cls, signature: str, payload: dict[str, Any]) -> "ChainTransaction":
        """getTransaction の result をこの形に詰め替える。"""

        meta = payload.get("meta")
        if not isinstance(meta, dict):
            meta = {}
        return cls(
            signature=signature,
            slot=payload.get("slot"),
            block_time=payload.get("blockTime"),
            err=meta.get("err"),
            log_messages=list(meta.get("logMessages") or []),
        )
