# これは「SQLAlchemy（aiosqlite）にスナップショットを永続化するキャッシュ実装」です。
from __future__ import annotations

from loguru import logger

from ledger.data.repo import Repo

from .store import CacheEntry, CacheStore


class SqlCacheStore(CacheStore):
    """Repo を包んで CacheStore として振る舞う。put は 1 トランザクションで丸ごと入れ替える。"""

    def __init__(self, repo: Repo) -> None:
        self._repo = repo
        self._ready = False

    @classmethod
    def from_url(cls, db_url: str) -> "SqlCacheStore":
        return cls(Repo(db_url))

    async def _ensure_schema(self) -> None:
        if not self._ready:
            await self._repo.create_all()
            self._ready = True

    async def get(self, wallet: str) -> CacheEntry | None:
        await self._ensure_schema()
        snap = await self._repo.load_wallet(wallet)
        if snap is None:
            return None
        return CacheEntry(
            wallet=wallet,
            trades=tuple(snap.trades),
            last_cursor=snap.last_cursor,
            fetched_at=snap.fetched_at,
            complete=snap.complete,
            backfill_cursor=snap.backfill_cursor,
            backfill_until=snap.backfill_until,
        )

    async def put(self, entry: CacheEntry) -> None:
        await self._ensure_schema()
        await self._repo.replace_wallet(
            wallet=entry.wallet,
            trades=entry.trades,
            last_cursor=entry.last_cursor,
            fetched_at=entry.fetched_at,
            complete=entry.complete,
            backfill_cursor=entry.backfill_cursor,
            backfill_until=entry.backfill_until,
        )
        logger.debug("cache.put backend=sql wallet={} trades={}", entry.wallet, len(entry.trades))

    async def invalidate(self, wallet: str) -> None:
        await self._ensure_schema()
        await self._repo.delete_wallet(wallet)

    async def close(self) -> None:
        await self._repo.dispose()
