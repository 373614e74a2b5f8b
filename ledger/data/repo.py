# これは「DBの作成とウォレット単位の保存/取得を提供する」リポジトリの実装です。
# 非同期SQLAlchemy（aiosqlite）を使います。

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from sqlalchemy import delete, select
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ledger.core.types import Fees, RecordKind, Side, TradeRecord, TradeStatus, TradeType

from .schema import Base, TradeRow, WalletSyncState


def _as_utc(dt: datetime) -> datetime:
    # SQLite はタイムゾーンを落として返すので UTC を付け直す
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _to_row(wallet: str, t: TradeRecord) -> TradeRow:
    return TradeRow(
        wallet=wallet,
        id=t.id,
        ts=t.timestamp,
        symbol=t.symbol,
        side=t.side.value,
        kind=t.kind.value,
        trade_type=t.trade_type.value,
        discriminator=t.discriminator,
        tx_hash=t.transaction_hash,
        slot=t.slot,
        log_index=t.log_index,
        entry_price=t.entry_price,
        exit_price=t.exit_price,
        quantity=t.quantity,
        value=t.value,
        fee_maker=t.fees.maker,
        fee_taker=t.fees.taker,
        fee_rebates=t.fees.rebates,
        pnl=t.pnl,
        status=t.status.value,
        order_id=t.order_id,
        client_id=t.client_id,
        funding=t.funding,
        soc_loss=t.soc_loss,
        merged=json.dumps([list(k) for k in t.merged]),
    )


def _from_row(r: TradeRow) -> TradeRecord:
    return TradeRecord(
        id=r.id,
        timestamp=_as_utc(r.ts),
        symbol=r.symbol,
        side=Side(r.side),
        entry_price=r.entry_price,
        quantity=r.quantity,
        trade_type=TradeType(r.trade_type),
        discriminator=r.discriminator,
        transaction_hash=r.tx_hash,
        kind=RecordKind(r.kind),
        exit_price=r.exit_price,
        value=r.value,
        fees=Fees(maker=r.fee_maker, taker=r.fee_taker, rebates=r.fee_rebates),
        pnl=r.pnl,
        status=TradeStatus(r.status),
        slot=r.slot,
        log_index=r.log_index,
        order_id=r.order_id,
        client_id=r.client_id,
        funding=r.funding,
        soc_loss=r.soc_loss,
        merged=tuple((str(h), int(d)) for h, d in json.loads(r.merged or "[]")),
    )


@dataclass(frozen=True)
class WalletSnapshotRow:
    """load_wallet の戻り値（同期状態とトレード列）"""

    wallet: str
    trades: list[TradeRecord]
    last_cursor: str | None
    fetched_at: datetime
    complete: bool
    backfill_cursor: str | None = None
    backfill_until: str | None = None


class Repo:
    """アプリがDBへアクセスするための窓口（create_allとウォレット単位の読み書きを提供）"""

    def __init__(self, db_url: str = "sqlite+aiosqlite:///./db/ledger.db") -> None:
        """これは何をする関数？
        → 接続文字列を受け取り、非同期エンジンとセッションファクトリを準備します。
          SQLiteのときはDBファイルの親ディレクトリを自動作成します。
        """
        self._db_url = db_url
        self._ensure_sqlite_dir(db_url)
        self._engine: AsyncEngine = create_async_engine(db_url, echo=False)
        self._sessionmaker: async_sessionmaker[AsyncSession] = async_sessionmaker(self._engine, expire_on_commit=False)

    # ---------- 内部：SQLiteパスのディレクトリ自動作成 ----------

    @staticmethod
    def _ensure_sqlite_dir(db_url: str) -> None:
        """これは何をする関数？
        → DBがSQLiteのとき、ファイルの親ディレクトリ（例: ./db）を自動で作ります。
        """
        url = make_url(db_url)
        if not url.drivername.startswith("sqlite"):
            return
        if not url.database or url.database == ":memory:":
            return
        p = Path(url.database)
        if not p.is_absolute():
            p = Path.cwd() / p
        p.parent.mkdir(parents=True, exist_ok=True)

    # ---------- スキーマ作成 ----------

    async def create_all(self) -> None:
        """これは何をする関数？
        → モデルに基づく全テーブルを作成します（既にあれば何もしません）。
        """
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    # ---------- ウォレット単位の読み書き ----------

    async def replace_wallet(
        self,
        *,
        wallet: str,
        trades: Sequence[TradeRecord],
        last_cursor: str | None,
        fetched_at: datetime,
        complete: bool = True,
        backfill_cursor: str | None = None,
        backfill_until: str | None = None,
    ) -> None:
        """これは何をする関数？
        → ウォレットのトレードを丸ごと入れ替え、同期状態も更新します（1 トランザクション）。
          途中で失敗したらロールバックされ、読み手が半端な集合を見ることはありません。
        """
        async with self._sessionmaker() as s:
            async with s.begin():
                await s.execute(delete(TradeRow).where(TradeRow.wallet == wallet))
                s.add_all([_to_row(wallet, t) for t in trades])
                state = await s.get(WalletSyncState, wallet)
                if state is None:
                    state = WalletSyncState(wallet=wallet)
                    s.add(state)
                state.last_cursor = last_cursor
                state.fetched_at = fetched_at
                state.complete = complete
                state.backfill_cursor = backfill_cursor
                state.backfill_until = backfill_until
                state.trade_count = len(trades)

    async def load_wallet(self, wallet: str) -> WalletSnapshotRow | None:
        """これは何をする関数？→ 同期状態とトレード列（チェーン順）を返します。未登録なら None。"""
        async with self._sessionmaker() as s:
            state = await s.get(WalletSyncState, wallet)
            if state is None:
                return None
            stmt = (
                select(TradeRow)
                .where(TradeRow.wallet == wallet)
                .order_by(TradeRow.ts, TradeRow.slot, TradeRow.tx_hash, TradeRow.log_index)
            )
            res = await s.execute(stmt)
            trades = [_from_row(r) for r in res.scalars().all()]
        trades.sort(key=lambda t: t.ordering_key)
        return WalletSnapshotRow(
            wallet=wallet,
            trades=trades,
            last_cursor=state.last_cursor,
            fetched_at=_as_utc(state.fetched_at),
            complete=bool(state.complete),
            backfill_cursor=state.backfill_cursor,
            backfill_until=state.backfill_until,
        )

    async def delete_wallet(self, wallet: str) -> None:
        """これは何をする関数？→ ウォレットのトレードと同期状態を削除します。"""
        async with self._sessionmaker() as s:
            async with s.begin():
                await s.execute(delete(TradeRow).where(TradeRow.wallet == wallet))
                await s.execute(delete(WalletSyncState).where(WalletSyncState.wallet == wallet))

    async def list_wallets(self) -> list[str]:
        """これは何をする関数？→ 同期状態を持つウォレットの一覧を返します。"""
        async with self._sessionmaker() as s:
            res = await s.execute(select(WalletSyncState.wallet).order_by(WalletSyncState.wallet))
            return list(res.scalars().all())

    async def dispose(self) -> None:
        await self._engine.dispose()
