from __future__ import annotations

# アプリ設定用の Pydantic モデル群（v2 対応）。
from typing import Any

from pydantic import BaseModel

DEFAULT_RPC_URL = "https://api.devnet.solana.com"


class ChainConfig(BaseModel):
    """チェーン取込（RPC 接続・ページング・デコード単位）の設定。"""

    rpc_url: str = DEFAULT_RPC_URL
    program_id: str | None = None  # 指定時はこのプログラムを呼んだ tx だけをデコードする
    page_limit: int = 100  # getSignaturesForAddress の 1 ページ件数
    max_transactions: int = 1000  # 1 回の取込で読む tx の上限。超えたら has_more
    request_timeout_s: float = 10.0
    max_concurrency: int = 4  # getTransaction の同時実行数（Semaphore）
    retry_tries: int = 4  # 通信失敗の最大試行回数
    retry_wait_initial: float = 0.5
    retry_wait_max: float = 8.0
    qty_decimals: int = 9  # 数量の固定小数点桁
    quote_decimals: int = 6  # 価格・金額・手数料の固定小数点桁


class CacheConfig(BaseModel):
    """キャッシュストアの種類とデータ種別ごとの鮮度（秒）。"""

    backend: str = "memory"  # "memory" / "sql"
    trades_ttl_s: float | None = 300.0
    financials_ttl_s: float | None = None  # None = 手動リフレッシュ時のみ取り直す
    analysis_ttl_s: float | None = 600.0


class ReviewConfig(BaseModel):
    """分析ゲートウェイ（OpenAI 互換エンドポイント）と回数制限の設定。"""

    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o"
    timeout_s: float = 15.0
    max_requests: int = 50  # window_s あたりの上限
    window_s: float = 3600.0
    temperature: float = 0.7
    max_tokens: int = 800


class AnalyticsConfig(BaseModel):
    """集計の閾値類。"""

    bias_threshold: float = 1.2  # long/short 比がこれを超えたら BULLISH、逆数未満で BEARISH


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "logs"


class AppConfig(BaseModel):
    """アプリ全体の設定ルート（.env / YAML をマージして生成）。"""

    chain: ChainConfig = ChainConfig()
    cache: CacheConfig = CacheConfig()
    review: ReviewConfig = ReviewConfig()
    analytics: AnalyticsConfig = AnalyticsConfig()
    logging: LoggingConfig = LoggingConfig()
    db_url: str = "sqlite+aiosqlite:///./db/ledger.db"

    # Pydantic v2 用設定
    model_config = {
        "extra": "ignore",
    }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppConfig":
        """生 dict から AppConfig を構築し、サブモデルも必要に応じて型付けする。"""

        payload = dict(data)
        sections: dict[str, type[BaseModel]] = {
            "chain": ChainConfig,
            "cache": CacheConfig,
            "review": ReviewConfig,
            "analytics": AnalyticsConfig,
            "logging": LoggingConfig,
        }
        for name, model in sections.items():
            raw = payload.get(name)
            if isinstance(raw, dict):
                payload[name] = model(**raw)
            elif raw is None:
                payload.pop(name, None)
        return cls(**payload)

    def to_dict(self) -> dict[str, Any]:
        """AppConfig をロギング等で扱いやすい dict 形式に変換する。"""

        return self.model_dump(mode="python")
