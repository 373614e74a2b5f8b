# これは「取込・照合・ゲートウェイで共通に使う例外クラス」を定義するファイルです。
from __future__ import annotations


class LedgerError(Exception):
    """このパッケージが投げる例外すべての基底。"""


class IngestionError(LedgerError):
    """チェーン履歴の取得/デコードまわりの一般的な失敗の基底例外。"""


class ChainTransportError(IngestionError):
    """RPC のタイムアウト・接続断など。再試行対象。"""


class ChainRateLimited(IngestionError):
    """RPC 側のレート制限（HTTP 429）に当たったときの例外。再試行対象。"""


class MalformedEventError(IngestionError):
    """ログ1行のデコード失敗（base64不正・長さ不足・未知の判別子）。スキップして続行する。"""


class ReconciliationError(LedgerError):
    """決済フィルに対応する建玉ロットが見つからないときの例外（open 扱いで回収する）。"""


class GatewayError(LedgerError):
    """分析ゲートウェイ上流の失敗（応答不正など）。テンプレートにフォールバックする。"""


class GatewayTimeout(GatewayError):
    """上流呼び出しが時間内に終わらなかったときの例外。"""


class GatewayAuthError(GatewayError):
    """署名不正・上流の 401/403。フォールバックせず即座に返す。"""

    def __init__(self, message: str, *, status: int = 401) -> None:
        super().__init__(message)
        self.status = status


class ValidationError(LedgerError):
    """リクエストの必須項目が欠けている/不正なときの例外（400）。"""


class RateLimitExceeded(LedgerError):
    """分析リクエストの回数上限に達したときの例外（429）。"""

    def __init__(self, identity: str, retry_after: float) -> None:
        super().__init__(f"rate limit exceeded for {identity}; retry after {retry_after:.0f}s")
        self.identity = identity
        self.retry_after = retry_after


class ConfigError(LedgerError):
    """設定ファイルや環境変数の不備があるときの例外。"""


class RetryGiveup(LedgerError):
    """再試行の上限に達してギブアップしたことを示す例外。"""
