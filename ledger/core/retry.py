# これは「チェーン読み取りの一時的な失敗を指数バックオフで再試行する」デコレータのファイルです。
from __future__ import annotations

import functools
import inspect
from typing import Any, Callable

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)

from .errors import ChainRateLimited, ChainTransportError

# 通信断・タイムアウト・RPC の 429 だけが再試行対象（デコード失敗などは即座に上げる）
DEFAULT_RETRY_ON: tuple[type[BaseException], ...] = (ChainTransportError, ChainRateLimited, TimeoutError)


def _log_before_sleep(name: str) -> Callable[[RetryCallState], None]:
    """これは何をする関数？
    → 次の再試行まで眠る直前に、呼び出し名・試行回数・例外・待機秒数を警告ログに出すコールバックを返します。
    """

    def _log(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "retryable: {fn} attempt={attempt} error={exc}{hint} next_wait={wait}s",
            fn=name,
            attempt=retry_state.attempt_number,
            exc=exc,
            hint=" (rpc rate limited)" if isinstance(exc, ChainRateLimited) else "",
            wait=getattr(retry_state.next_action, "sleep", None),
        )

    return _log


def retryable(
    *,
    tries: int = 5,
    wait_initial: float = 0.5,
    wait_max: float = 8.0,
    jitter: bool = True,
    retry_on: tuple[type[BaseException], ...] = DEFAULT_RETRY_ON,
    reraise: bool = True,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """これは何をする関数（デコレータ）？
    → 同期/非同期どちらの関数も「retry_on の例外なら最大 tries 回まで再試行」する形に包みます。
      jitter=True ならランダムゆらぎ付きの指数待機、reraise=True なら上限到達で最後の例外をそのまま上げます。
    """
    policy: dict[str, Any] = {
        "stop": stop_after_attempt(tries),
        "wait": (
            wait_random_exponential(multiplier=wait_initial, max=wait_max)
            if jitter
            else wait_exponential(multiplier=wait_initial, max=wait_max)
        ),
        "retry": retry_if_exception_type(retry_on),
        "reraise": reraise,
    }

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        before_sleep = _log_before_sleep(getattr(func, "__qualname__", repr(func)))
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                async for attempt in AsyncRetrying(**policy, before_sleep=before_sleep):
                    with attempt:
                        return await func(*args, **kwargs)

            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in Retrying(**policy, before_sleep=before_sleep):
                with attempt:
                    return func(*args, **kwargs)

        return sync_wrapper

    return decorator
