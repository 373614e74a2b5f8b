from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timezone

from loguru import logger

from ledger.config.loader import load_config
from ledger.core.logging import setup_logging
from ledger.orchestrator.fetcher import FetchOrchestrator
from ledger.tools.export import ensure_out_dir, summarize, write_csv, write_json


def _now_tag() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")


async def _run(args: argparse.Namespace) -> int:
    """設定・ログ・オーケストレータを初期化し、ウォレットを同期してレポートを標準出力に出す。"""

    cfg = load_config(args.config)
    setup_logging(level=cfg.logging.level, log_dir=cfg.logging.log_dir)
    if args.rpc_url:
        cfg.chain.rpc_url = args.rpc_url

    orch = FetchOrchestrator.from_config(cfg)
    try:
        entry = await orch.refresh(args.wallet, full=args.full)
        if not entry.complete:
            logger.warning(
                "sync: history incomplete wallet={} cursor={} backfill={}", args.wallet, entry.last_cursor, entry.backfill_cursor
            )
        trades = await orch.get_trades(args.wallet)

        if args.export:
            out_dir = ensure_out_dir(args.out)
            path = out_dir / f"{args.wallet[:8]}-{_now_tag()}.{args.export}"
            n = write_csv(path, trades) if args.export == "csv" else write_json(path, trades)
            logger.info("export: wrote {} rows to {}", n, path)

        report = await orch.get_report(args.wallet)
        print(report.model_dump_json(by_alias=True, indent=2))
        logger.info("sync: {} {}", args.wallet, summarize(trades))
    finally:
        await orch.aclose()
    return 0 if entry.complete else 2


def main() -> None:
    """コマンドライン引数を受け取り、_run を起動するエントリポイント。"""

    parser = argparse.ArgumentParser(description="Sync a wallet's on-chain trades and print the analytics report")
    parser.add_argument("wallet", type=str, help="wallet address")
    parser.add_argument("--full", action="store_true", help="ignore the saved cursor and re-read the whole history")
    parser.add_argument("--export", choices=["csv", "json"], default=None, help="also write the reconciled trades")
    parser.add_argument("--out", type=str, default="reports/exports", help="output directory for --export")
    parser.add_argument("--rpc-url", type=str, default=None, help="override chain.rpc_url")
    parser.add_argument("--config", type=str, default=None, help="path to config/app.yaml (optional)")
    args = parser.parse_args()
    try:
        code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
