# これは「DBテーブルの形（SQLAlchemy ORMモデル）」を定義するファイルです。
# ウォレットごとの正規化済みトレードと、差分取込用の同期状態を保存します。

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """全テーブルの親クラス（SQLAlchemy 2.0の宣言ベース）"""

    pass


class TradeRow(Base):
    """正規化済み TradeRecord を 1 行で持つテーブル（照合前の形で保存）"""

    __tablename__ = "trade_record"
    __table_args__ = (Index("ix_trade_record_wallet_order", "wallet", "ts", "slot", "tx_hash", "log_index"),)

    pk: Mapped[int] = mapped_column(Integer, primary_key=True)
    wallet: Mapped[str] = mapped_column(String(64), index=True)
    id: Mapped[str] = mapped_column(String(128))  # "{tx_hash}:{log_index}"
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True))  # ブロック時刻（UTC）
    symbol: Mapped[str] = mapped_column(String(64))
    side: Mapped[str] = mapped_column(String(8))  # "long" / "short"
    kind: Mapped[str] = mapped_column(String(16))  # "fill" / "fee" / "funding" ...
    trade_type: Mapped[str] = mapped_column(String(8))  # "spot" / "perp"
    discriminator: Mapped[int] = mapped_column(Integer)
    tx_hash: Mapped[str] = mapped_column(String(128))
    slot: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    log_index: Mapped[int] = mapped_column(Integer)
    entry_price: Mapped[float] = mapped_column(Float)
    exit_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    quantity: Mapped[float] = mapped_column(Float)
    value: Mapped[float] = mapped_column(Float)
    fee_maker: Mapped[float] = mapped_column(Float)
    fee_taker: Mapped[float] = mapped_column(Float)
    fee_rebates: Mapped[float] = mapped_column(Float)
    pnl: Mapped[float] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String(16))
    order_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    client_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    funding: Mapped[float] = mapped_column(Float)
    soc_loss: Mapped[float] = mapped_column(Float)
    merged: Mapped[str] = mapped_column(Text, default="[]")  # JSON: [[tx_hash, discriminator], ...]


class WalletSyncState(Base):
    """ウォレットごとの同期状態（最後に見た署名・読み残しの範囲・取得時刻・完全取込だったか）"""

    __tablename__ = "wallet_sync_state"
    wallet: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_cursor: Mapped[str | None] = mapped_column(String(128), nullable=True)
    backfill_cursor: Mapped[str | None] = mapped_column(String(128), nullable=True)
    backfill_until: Mapped[str | None] = mapped_column(String(128), nullable=True)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    complete: Mapped[bool] = mapped_column(Boolean, default=True)
    trade_count: Mapped[int] = mapped_column(Integer, default=0)
