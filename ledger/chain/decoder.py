"""このモジュールは『ウォレットのチェーン履歴をページングで読み、型付きイベント列に変換する』デコーダです。

- 署名一覧は新しい順に返るので before カーソルで遡り、until（前回の最新署名）で止める
- 壊れたログ1行・未知の判別子はスキップしてログに残す（取込全体は止めない）
- 通信失敗は tenacity で有限回だけ再試行し、尽きたら has_more/error 付きの部分結果を返す
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass, field

from loguru import logger

from ledger.core.errors import ChainRateLimited, ChainTransportError, IngestionError, MalformedEventError, RetryGiveup
from ledger.core.retry import retryable
from ledger.core.time import parse_chain_ts

from .events import EventOrigin, RawChainEvent, parse_payload
from .source import ChainDataSource
from .types import ChainTransaction, SignatureInfo

_PROGRAM_DATA = re.compile(r"^Program data:\s*([A-Za-z0-9+/=]+)\s*$")


def event_sort_key(ev: RawChainEvent) -> tuple:
    """イベントの並び順キー（ブロック時刻→slot→txハッシュ→ログ位置）。"""

    o = ev.origin
    return (o.block_time, o.slot if o.slot is not None else -1, o.transaction_hash, o.log_index)


@dataclass
class DecodeResult:
    """1 回の取込で得たイベント列と、その取込が完全だったかの情報。"""

    events: list[RawChainEvent] = field(default_factory=list)
    has_more: bool = False
    error: str | None = None
    newest_cursor: str | None = None
    oldest_cursor: str | None = None
    total_processed: int = 0
    skipped: int = 0


class ChainEventDecoder:
    """ChainDataSource からログを読み、RawChainEvent に変換する。"""

    def __init__(
        self,
        source: ChainDataSource,
        *,
        program_id: str | None = None,
        page_limit: int = 100,
        max_transactions: int = 1000,
        retry_tries: int = 4,
        retry_wait_initial: float = 0.5,
        retry_wait_max: float = 8.0,
    ) -> None:
        self._source = source
        self._program_id = program_id
        self._page_limit = max(1, int(page_limit))
        self._max_transactions = max(1, int(max_transactions))
        retry = retryable(
            tries=retry_tries,
            wait_initial=retry_wait_initial,
            wait_max=retry_wait_max,
            retry_on=(ChainTransportError, ChainRateLimited, TimeoutError),
        )
        self._get_signatures = retry(source.get_signatures)
        self._get_transaction = retry(source.get_transaction)

    @property
    def source(self) -> ChainDataSource:
        return self._source

    # ---------- 1 tx / 1 行のデコード ----------

    def decode_transaction(
        self, tx: ChainTransaction, *, fallback_block_time: int | None = None
    ) -> tuple[list[RawChainEvent], int]:
        """これは何をする関数？
        → tx のログ行から `Program data:` を拾ってデコードし、(イベント列, スキップ数) を返します。
          プログラム ID 指定時は、そのプログラムを呼んでいない tx を丸ごと無視します。
          ブロック時刻は tx → 署名一覧の blockTime の順に使い、どちらも無い tx は 1 件のスキップとして数えます。
        """
        if tx.err is not None:
            return [], 0
        if self._program_id and not any(
            line.startswith(f"Program {self._program_id} invoke") for line in tx.log_messages
        ):
            return [], 0

        raw_time = tx.block_time if tx.block_time is not None else fallback_block_time
        if raw_time is None:
            logger.warning("decode: skip tx sig={} reason=no block time", tx.signature)
            return [], 1
        block_time = parse_chain_ts(raw_time)
        events: list[RawChainEvent] = []
        skipped = 0
        data_index = 0
        for line in tx.log_messages:
            m = _PROGRAM_DATA.match(line)
            if not m:
                continue
            origin = EventOrigin(
                transaction_hash=tx.signature,
                slot=tx.slot,
                block_time=block_time,
                log_index=data_index,
            )
            data_index += 1
            try:
                payload = base64.b64decode(m.group(1), validate=True)
                events.append(parse_payload(payload, origin))
            except (binascii.Error, MalformedEventError) as e:
                skipped += 1
                logger.warning("decode: skip log sig={} idx={} reason={}", tx.signature, origin.log_index, e)
        return events, skipped

    # ---------- ページング取込 ----------

    async def _signatures_page(self, wallet: str, before: str | None, until: str | None) -> list[SignatureInfo]:
        try:
            return await self._get_signatures(wallet, before=before, until=until, limit=self._page_limit)
        except (ChainTransportError, ChainRateLimited, TimeoutError) as e:
            raise RetryGiveup(f"getSignaturesForAddress gave up: {e}") from e

    async def _transaction(self, signature: str) -> ChainTransaction | None:
        try:
            return await self._get_transaction(signature)
        except (ChainTransportError, ChainRateLimited, TimeoutError) as e:
            raise RetryGiveup(f"getTransaction gave up sig={signature}: {e}") from e

    async def fetch_events(
        self,
        wallet: str,
        *,
        until: str | None = None,
        before: str | None = None,
    ) -> DecodeResult:
        """これは何をする関数？
        → wallet の履歴を新しい順に遡って読み、古い→新しい順に並べ直したイベント列を返します。
          until を渡すとその署名より新しい分だけ、before を渡すとその署名より古い分から読みます。
          読み終えた署名は [oldest_cursor, newest_cursor] の切れ目ない範囲になり、
          再試行が尽きた/上限件数に達したときは has_more=True の部分結果として oldest_cursor から続きを読めます。
        """
        result = DecodeResult()

        while True:
            try:
                page = await self._signatures_page(wallet, before, until)
            except (RetryGiveup, IngestionError) as e:
                result.has_more = True
                result.error = str(e)
                break
            if not page:
                break

            stop = False
            for sig in page:
                if result.total_processed >= self._max_transactions:
                    result.has_more = True
                    stop = True
                    break
                if not sig.failed:
                    try:
                        tx = await self._transaction(sig.signature)
                    except (RetryGiveup, IngestionError) as e:
                        result.has_more = True
                        result.error = str(e)
                        stop = True
                        break
                    if tx is not None:
                        events, skipped = self.decode_transaction(tx, fallback_block_time=sig.block_time)
                        result.events.extend(events)
                        result.skipped += skipped
                result.total_processed += 1
                if result.newest_cursor is None:
                    result.newest_cursor = sig.signature
                result.oldest_cursor = sig.signature

            if stop or len(page) < self._page_limit:
                break
            before = page[-1].signature

        result.events.sort(key=event_sort_key)
        if result.error:
            logger.warning(
                "fetch.partial wallet={} processed={} events={} error={}",
                wallet,
                result.total_processed,
                len(result.events),
                result.error,
            )
        else:
            logger.debug(
                "fetch.done wallet={} processed={} events={} skipped={} has_more={}",
                wallet,
                result.total_processed,
                len(result.events),
                result.skipped,
                result.has_more,
            )
        return result
