"""このモジュールは『OpenAI 互換の chat/completions を aiohttp で叩く』薄いクライアントです。
応答本文（JSON 文字列）の取り出しまでを担当し、中身の検証は review.py 側で行います。
"""

from __future__ import annotations

from typing import Any

import aiohttp
from loguru import logger

from ledger.config.models import ReviewConfig
from ledger.core.errors import GatewayAuthError, GatewayError


class ChatCompletionClient:
    """chat/completions を 1 回呼んで、最初の choice の content を返すクライアント。"""

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o",
        temperature: float = 0.7,
        max_tokens: int = 800,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._api_key = api_key
        self._url = base_url.rstrip("/") + "/chat/completions"
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_config(cls, cfg: ReviewConfig) -> "ChatCompletionClient":
        return cls(
            api_key=cfg.api_key,
            base_url=cfg.base_url,
            model=cfg.model,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
        )

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        """これは何をする関数？
        → system/user の 2 メッセージで JSON 応答を要求し、content 文字列を返します。
          401/403 は GatewayAuthError、それ以外の失敗は GatewayError に変換します。
          時間切れの打ち切りは呼び出し側（asyncio.wait_for）に任せます。
        """
        if not self._api_key:
            raise GatewayError("review api key is not configured")
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        session = await self._ensure_session()
        try:
            async with session.post(self._url, json=payload, headers=headers) as resp:
                if resp.status in (401, 403):
                    raise GatewayAuthError(f"upstream rejected credentials (HTTP {resp.status})", status=resp.status)
                if resp.status >= 400:
                    text = await resp.text()
                    raise GatewayError(f"upstream HTTP {resp.status}: {text[:200]}")
                try:
                    body = await resp.json(content_type=None)
                except ValueError as e:
                    # プロキシの HTML など、200 でも JSON でない本文
                    raise GatewayError(f"upstream reply is not JSON (HTTP {resp.status})") from e
        except aiohttp.ClientError as e:
            raise GatewayError(f"upstream connection failed: {e}") from e

        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise GatewayError("no content in upstream response") from e
        if not content:
            raise GatewayError("no content in upstream response")
        logger.debug("gateway.upstream model={} chars={}", self._model, len(content))
        return str(content)

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
