from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from ledger.app.api import create_app
from ledger.cache.store import MemoryCacheStore
from ledger.core.errors import ChainTransportError, GatewayAuthError
from ledger.core.types import Side, TradeRecord, TradeType
from ledger.gateway.limiter import SlidingWindowLimiter
from ledger.gateway.llm import ChatCompletionClient
from ledger.gateway.review import ReviewGateway
from ledger.ingest.pipeline import FetchResult
from ledger.orchestrator.fetcher import FetchOrchestrator

T0 = datetime(2024, 7, 1, 12, tzinfo=timezone.utc)


def _trade(n: int, side: Side, price: float) -> TradeRecord:
    return TradeRecord(
        id=f"tx{n}:0",
        timestamp=T0 + timedelta(minutes=n),
        symbol="SOL/USDC-PERP",
        side=side,
        entry_price=price,
        quantity=1.0,
        trade_type=TradeType.PERP,
        discriminator=19,
        transaction_hash=f"tx{n}",
        value=price,
        slot=n,
    )


class StaticPipeline:
    """いつも同じトレード列を返す取込パイプライン"""

    def __init__(self, endpoint: str, *, fail: bool = False) -> None:
        self.endpoint = endpoint
        self.fail = fail

    async def fetch(self, wallet: str, *, until: str | None = None, before: str | None = None) -> FetchResult:
        if self.fail:
            raise ChainTransportError("rpc unreachable")
        return FetchResult(
            trades=[_trade(1, Side.LONG, 100.0), _trade(2, Side.SHORT, 110.0)],
            newest_cursor="sig-2",
            oldest_cursor="sig-1",
        )

    async def close(self) -> None:
        pass


class FakeClient(ChatCompletionClient):
    def __init__(self, *, exc: Exception | None = None) -> None:
        super().__init__(api_key="sk-test")
        self.exc = exc

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        if self.exc is not None:
            raise self.exc
        return json.dumps(
            {
                "performanceCritique": "ok",
                "emotionalReview": "calm",
                "actionableInsights": ["a", "b", "c"],
                "riskAssessment": "low",
            }
        )


def _client(*, fail: bool = False, exc: Exception | None = None, max_requests: int = 50) -> TestClient:
    orch = FetchOrchestrator(
        store=MemoryCacheStore(),
        pipeline_factory=lambda ep: StaticPipeline(ep, fail=fail),  # type: ignore[arg-type,return-value]
        endpoint="rpc://test",
    )
    gw = ReviewGateway(
        client=FakeClient(exc=exc),
        limiter=SlidingWindowLimiter(max_requests=max_requests, window_s=3600.0),
        timeout_s=1.0,
    )
    return TestClient(create_app(orchestrator=orch, gateway=gw))


REVIEW_BODY = {
    "trade": {"symbol": "SOL/USDC-PERP", "entryPrice": 100.0, "pnl": 10.0, "value": 100.0},
    "journalContent": "Followed the plan.",
}


def test_trades_endpoint_returns_reconciled() -> None:
    with _client() as c:
        resp = c.get("/wallets/W1/trades")
    assert resp.status_code == 200
    rows = resp.json()
    assert [r["id"] for r in rows] == ["tx1:0", "tx2:0"]
    assert rows[1]["pnl"] == pytest.approx(10.0)
    assert rows[1]["status"] == "win"


def test_report_endpoint_keeps_infinity() -> None:
    """負けの無いレポートは profitFactor が Infinity のまま返ること"""
    with _client() as c:
        resp = c.get("/wallets/W1/report")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/json")
    assert '"profitFactor":Infinity' in resp.text
    assert '"realizedPnl":10.0' in resp.text


def test_report_endpoint_rejects_bad_price() -> None:
    with _client() as c:
        assert c.get("/wallets/W1/report", params={"price": "SOL"}).status_code == 400
        assert c.get("/wallets/W1/report", params={"price": "SOL=abc"}).status_code == 400
        assert c.get("/wallets/W1/report", params={"price": "SOL/USDC-PERP=120"}).status_code == 200


def test_refresh_endpoint() -> None:
    with _client() as c:
        resp = c.post("/wallets/W1/refresh", params={"full": "true"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["wallet"] == "W1"
    assert body["trades"] == 2
    assert body["complete"] is True
    assert body["lastCursor"] == "sig-2"
    assert body["backfillCursor"] is None


def test_ingestion_failure_is_502() -> None:
    with _client(fail=True) as c:
        assert c.get("/wallets/W1/trades").status_code == 502


def test_review_endpoint_ok() -> None:
    with _client() as c:
        resp = c.post("/ai/review", json=REVIEW_BODY)
    assert resp.status_code == 200
    body = resp.json()
    assert body["performanceCritique"] == "ok"
    assert body["disclaimer"].startswith("Not financial advice")


def test_review_endpoint_validation() -> None:
    with _client() as c:
        resp = c.post("/ai/review", json={"trade": REVIEW_BODY["trade"]})
        assert resp.status_code == 400
        assert "Missing required fields" in resp.json()["detail"]
        bad = c.post("/ai/review", content=b"{not json", headers={"content-type": "application/json"})
        assert bad.status_code == 400


def test_review_endpoint_rate_limited_per_wallet() -> None:
    """ウォレット単位で数え、上限を超えたら 429 と Retry-After を返すこと"""
    with _client(max_requests=1) as c:
        h = {"x-wallet-address": "W1"}
        assert c.post("/ai/review", json=REVIEW_BODY, headers=h).status_code == 200
        resp = c.post("/ai/review", json=REVIEW_BODY, headers=h)
        assert resp.status_code == 429
        assert resp.json()["detail"] == "Rate limit exceeded. Please try again later."
        assert int(resp.headers["retry-after"]) > 0
        other = c.post("/ai/review", json=REVIEW_BODY, headers={"x-wallet-address": "W2"})
        assert other.status_code == 200


def test_review_endpoint_auth_error() -> None:
    with _client(exc=GatewayAuthError("denied", status=401)) as c:
        assert c.post("/ai/review", json=REVIEW_BODY).status_code == 401
