"""このモジュールは『チェーンの読み取り口（署名一覧と tx 本体の取得）』です。
本番は Solana JSON-RPC を aiohttp で叩き、テストでは ChainDataSource を継承したモックを使います。
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any

import aiohttp
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ledger.core.errors import ChainRateLimited, ChainTransportError, IngestionError

from .types import ChainTransaction, SignatureInfo


class ChainDataSource:
    """読み取り専用のチェーンアクセス抽象インターフェース"""

    endpoint: str = ""

    async def get_signatures(
        self,
        address: str,
        *,
        before: str | None = None,
        until: str | None = None,
        limit: int = 100,
    ) -> list[SignatureInfo]:
        """address に関わる署名を新しい順に返す"""
        raise NotImplementedError

    async def get_transaction(self, signature: str) -> ChainTransaction | None:
        """署名の tx（ログ行とブロック時刻）を返す。見つからなければ None"""
        raise NotImplementedError

    async def close(self) -> None:
        """保持している接続を閉じる"""
        return None


class SolanaRpcSource(ChainDataSource):
    """Solana JSON-RPC（getSignaturesForAddress / getTransaction）を使う実装。"""

    def __init__(
        self,
        endpoint: str,
        *,
        timeout_s: float = 10.0,
        max_concurrency: int = 4,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """これは何をする関数？
        → 接続先・タイムアウト・同時実行数を受け取り、セッションは初回呼び出しで遅延生成します。
        """
        self.endpoint = endpoint
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        """これは何をする関数？
        → JSON-RPC を 1 回呼び、result を返します。
          通信断/タイムアウトは ChainTransportError、429 は ChainRateLimited に変換します（どちらも再試行対象）。
        """
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        session = await self._ensure_session()
        async with self._semaphore:
            try:
                async with session.post(self.endpoint, json=payload) as resp:
                    if resp.status == 429:
                        raise ChainRateLimited(f"{method}: HTTP 429 from {self.endpoint}")
                    if resp.status >= 500:
                        raise ChainTransportError(f"{method}: HTTP {resp.status} from {self.endpoint}")
                    if resp.status >= 400:
                        raise IngestionError(f"{method}: HTTP {resp.status} from {self.endpoint}")
                    try:
                        body = await resp.json(content_type=None)
                    except ValueError as e:
                        # ゲートウェイやプロキシのエラーページは一時的な通信障害として再試行する
                        raise ChainTransportError(f"{method}: non-JSON body (HTTP {resp.status})") from e
            except asyncio.TimeoutError as e:
                raise ChainTransportError(f"{method}: timeout") from e
            except aiohttp.ClientError as e:
                raise ChainTransportError(f"{method}: {e}") from e

        if not isinstance(body, dict):
            raise IngestionError(f"{method}: unexpected response {type(body).__name__}")
        err = body.get("error")
        if err:
            code = err.get("code") if isinstance(err, dict) else None
            if code == 429:
                raise ChainRateLimited(f"{method}: {err}")
            raise IngestionError(f"{method}: rpc error {err}")
        return body.get("result")

    async def get_signatures(
        self,
        address: str,
        *,
        before: str | None = None,
        until: str | None = None,
        limit: int = 100,
    ) -> list[SignatureInfo]:
        opts: dict[str, Any] = {"limit": int(limit)}
        if before:
            opts["before"] = before
        if until:
            opts["until"] = until
        result = await self._rpc("getSignaturesForAddress", [address, opts])
        if result is not None and not isinstance(result, list):
            raise IngestionError(f"getSignaturesForAddress: unexpected result {type(result).__name__}")
        try:
            return [SignatureInfo.model_validate(x) for x in (result or [])]
        except PydanticValidationError as e:
            raise IngestionError(f"getSignaturesForAddress: malformed entry: {e.errors()[0].get('msg')}") from e

    async def get_transaction(self, signature: str) -> ChainTransaction | None:
        result = await self._rpc(
            "getTransaction",
            [signature, {"encoding": "json", "maxSupportedTransactionVersion": 0, "commitment": "confirmed"}],
        )
        if not result:
            logger.debug("rpc: transaction not found sig={}", signature)
            return None
        if not isinstance(result, dict):
            raise IngestionError(f"getTransaction: unexpected result {type(result).__name__} sig={signature}")
        try:
            return ChainTransaction.from_rpc(signature, result)
        except PydanticValidationError as e:
            raise IngestionError(f"getTransaction: malformed result sig={signature}") from e

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
