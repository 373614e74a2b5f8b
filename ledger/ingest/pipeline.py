from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from ledger.chain.decoder import ChainEventDecoder
from ledger.chain.source import ChainDataSource, SolanaRpcSource
from ledger.config.models import ChainConfig
from ledger.core.types import TradeRecord

from .normalizer import TradeNormalizer


@dataclass
class FetchResult:
    """1 回の取込結果。error が入っているときは部分結果（has_more=True）。

    読み終えた署名は oldest_cursor..newest_cursor の範囲。何も読めなければ両方 None。
    """

    trades: list[TradeRecord] = field(default_factory=list)
    has_more: bool = False
    error: str | None = None
    newest_cursor: str | None = None
    oldest_cursor: str | None = None
    total_processed: int = 0
    skipped_events: int = 0

    @property
    def complete(self) -> bool:
        return self.error is None and not self.has_more


class IngestionPipeline:
    """1 つのチェーン接続先に対する「デコード→正規化」の組。"""

    def __init__(self, decoder: ChainEventDecoder, normalizer: TradeNormalizer) -> None:
        self._decoder = decoder
        self._normalizer = normalizer

    @classmethod
    def from_config(cls, cfg: ChainConfig, *, source: ChainDataSource | None = None) -> "IngestionPipeline":
        """これは何をする関数？→ ChainConfig から RPC ソース・デコーダ・正規化器を組み立てます。"""

        src = source or SolanaRpcSource(
            cfg.rpc_url,
            timeout_s=cfg.request_timeout_s,
            max_concurrency=cfg.max_concurrency,
        )
        decoder = ChainEventDecoder(
            src,
            program_id=cfg.program_id,
            page_limit=cfg.page_limit,
            max_transactions=cfg.max_transactions,
            retry_tries=cfg.retry_tries,
            retry_wait_initial=cfg.retry_wait_initial,
            retry_wait_max=cfg.retry_wait_max,
        )
        normalizer = TradeNormalizer(qty_decimals=cfg.qty_decimals, quote_decimals=cfg.quote_decimals)
        return cls(decoder, normalizer)

    @property
    def endpoint(self) -> str:
        return self._decoder.source.endpoint

    async def fetch(self, wallet: str, *, until: str | None = None, before: str | None = None) -> FetchResult:
        """これは何をする関数？
        → wallet の履歴（until 指定時はそれより新しい分、before 指定時はそれより古い分）を取り込み、
          正規化済みレコードを返します。
        """
        decoded = await self._decoder.fetch_events(wallet, until=until, before=before)
        trades, skipped = self._normalizer.normalize(decoded.events)
        result = FetchResult(
            trades=trades,
            has_more=decoded.has_more,
            error=decoded.error,
            newest_cursor=decoded.newest_cursor,
            oldest_cursor=decoded.oldest_cursor,
            total_processed=decoded.total_processed,
            skipped_events=decoded.skipped + skipped,
        )
        logger.debug(
            "fetch.done wallet={} endpoint={} trades={} skipped={} complete={}",
            wallet,
            self.endpoint,
            len(trades),
            result.skipped_events,
            result.complete,
        )
        return result

    async def close(self) -> None:
        await self._decoder.source.close()
