# これは「ウォレットのトレード・レポート取得と分析レビューを HTTP で公開する」FastAPI アプリです。
# 起動例: uvicorn ledger.app.api:build_app --factory
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, Response
from loguru import logger

from ledger.config.loader import load_config
from ledger.core.errors import GatewayAuthError, IngestionError, RateLimitExceeded, ValidationError
from ledger.core.logging import setup_logging, setup_std_logging_bridge
from ledger.gateway.review import ReviewGateway
from ledger.orchestrator.fetcher import FetchOrchestrator


def _parse_prices(raw: list[str]) -> dict[str, float]:
    """これは何をする関数？→ "SOL-PERP=150.5" 形式のクエリ値を {symbol: price} にします。不正なら 400。"""

    prices: dict[str, float] = {}
    for item in raw:
        sym, sep, value = item.partition("=")
        if not sep or not sym:
            raise HTTPException(status_code=400, detail=f"invalid price: {item}")
        try:
            prices[sym] = float(value)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"invalid price: {item}") from None
    return prices


def _identity(request: Request) -> str:
    # ウォレット指定があればそれ、無ければ接続元アドレスで数える
    wallet = request.headers.get("x-wallet-address")
    if wallet:
        return wallet
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def create_wallets_router(*, orchestrator: FetchOrchestrator) -> APIRouter:
    router = APIRouter()

    @router.get("/wallets/{wallet}/trades")
    async def get_trades(wallet: str):
        """照合済みのトレード一覧（古い順）"""
        try:
            trades = await orchestrator.get_trades(wallet)
        except IngestionError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        return [t.to_dict() for t in trades]

    @router.get("/wallets/{wallet}/report")
    async def get_report(wallet: str, price: list[str] = Query(default=[])):
        """分析レポート。price=SYMBOL=値 を複数渡すと含み損益を計算する"""
        prices = _parse_prices(price)
        try:
            report = await orchestrator.get_report(wallet, prices or None)
        except IngestionError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        # profitFactor の Infinity を含むので pydantic の JSON をそのまま返す
        return Response(content=report.to_json(), media_type="application/json")

    @router.post("/wallets/{wallet}/refresh")
    async def refresh(wallet: str, full: bool = False):
        """手動リフレッシュ（鮮度に関係なく取り直す）"""
        try:
            entry = await orchestrator.refresh(wallet, full=full)
        except IngestionError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        return {
            "wallet": wallet,
            "trades": len(entry.trades),
            "complete": entry.complete,
            "lastCursor": entry.last_cursor,
            "backfillCursor": entry.backfill_cursor,
            "fetchedAt": entry.fetched_at.isoformat(),
        }

    return router


def create_review_router(*, gateway: ReviewGateway) -> APIRouter:
    router = APIRouter()

    @router.post("/ai/review")
    async def review(request: Request):
        """トレードと日誌から振り返りレビューを返す"""
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="request body must be JSON") from None
        identity = _identity(request)
        try:
            result = await gateway.review(identity, body)
        except RateLimitExceeded as e:
            raise HTTPException(
                status_code=429,
                detail="Rate limit exceeded. Please try again later.",
                headers={"Retry-After": str(int(e.retry_after) + 1)},
            ) from e
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except GatewayAuthError as e:
            raise HTTPException(status_code=e.status, detail=str(e)) from e
        return result.to_body()

    return router


def create_app(*, orchestrator: FetchOrchestrator, gateway: ReviewGateway) -> FastAPI:
    """これは何をする関数？
    → 組み立て済みのオーケストレータとゲートウェイを受け取り、ルータを載せた FastAPI を返します。
      終了時に両方を閉じます。
    """

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await orchestrator.aclose()
        await gateway.close()
        logger.info("api: shutdown complete")

    app = FastAPI(title="wallet-ledger", lifespan=lifespan)
    app.include_router(create_wallets_router(orchestrator=orchestrator))
    app.include_router(create_review_router(gateway=gateway))
    return app


def build_app() -> FastAPI:
    """これは何をする関数？→ 設定を読み、ログ・オーケストレータ・ゲートウェイを用意してアプリを返します（uvicorn の factory 用）。"""

    cfg = load_config()
    setup_logging(level=cfg.logging.level, log_dir=cfg.logging.log_dir)
    setup_std_logging_bridge()
    return create_app(
        orchestrator=FetchOrchestrator.from_config(cfg),
        gateway=ReviewGateway.from_config(cfg.review),
    )
