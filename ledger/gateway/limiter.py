# これは「呼び出し元ごとのスライディングウィンドウ回数制限」を提供するファイルです。
from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from ledger.core.errors import RateLimitExceeded


@dataclass
class _Window:
    """1 つの identity の受付時刻を保持するウィンドウ。"""

    events: deque[float] = field(default_factory=deque)

    def prune(self, now_ts: float, window_s: float) -> None:
        # ウィンドウ外の古いイベントを捨てる
        while self.events and (now_ts - self.events[0]) >= window_s:
            self.events.popleft()


class SlidingWindowLimiter:
    """
    identity（ウォレットや呼び出し元アドレス）ごとに、直近 window_s 秒の受付数を max_requests までに抑える。

    - acquire() は「数えて、上限なら拒否、そうでなければ記録」を 1 つのロックの中で行う
    - 拒否したリクエストは記録しない（拒否が続いても窓は延びない）
    - clock を差し替えるとテストで時間を進められる
    """

    def __init__(
        self,
        *,
        max_requests: int = 50,
        window_s: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        self._max = int(max_requests)
        self._window_s = float(window_s)
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def acquire(self, identity: str) -> int:
        """これは何をする関数？
        → identity の 1 回分を受け付け、ウィンドウ内の残り回数を返します。上限なら RateLimitExceeded。
        """
        now_ts = self._clock()
        with self._lock:
            self._sweep(now_ts)
            win = self._windows.setdefault(identity, _Window())
            win.prune(now_ts, self._window_s)
            if len(win.events) >= self._max:
                retry_after = self._window_s - (now_ts - win.events[0])
                raise RateLimitExceeded(identity, max(0.0, retry_after))
            win.events.append(now_ts)
            return self._max - len(win.events)

    def remaining(self, identity: str) -> int:
        now_ts = self._clock()
        with self._lock:
            win = self._windows.get(identity)
            if win is None:
                return self._max
            win.prune(now_ts, self._window_s)
            if not win.events:
                del self._windows[identity]
            return self._max - len(win.events)

    def reset(self, identity: str | None = None) -> None:
        with self._lock:
            if identity is None:
                self._windows.clear()
            else:
                self._windows.pop(identity, None)

    def _sweep(self, now_ts: float) -> None:
        # ウィンドウ 1 本分ごとに、受付が全部窓の外に出た identity を捨てる（ロック内で呼ぶ）
        if now_ts - self._last_sweep < self._window_s:
            return
        self._last_sweep = now_ts
        for identity in list(self._windows):
            win = self._windows[identity]
            win.prune(now_ts, self._window_s)
            if not win.events:
                del self._windows[identity]

    def __len__(self) -> int:
        """追跡中の identity 数"""
        with self._lock:
            return len(self._windows)
