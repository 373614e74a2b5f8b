from __future__ import annotations

import logging  # 標準logging→loguru(JSONL)ブリッジ用
import os
import re
import sys
from pathlib import Path
from types import FrameType
from typing import Iterable

from loguru import logger

# 取込/照合/キャッシュの要所イベントはDEBUGで書いてもINFOへ昇格させる
PROMOTED_PREFIXES = (
    "fetch.done",
    "fetch.partial",
    "fill.unmatched",
    "cache.swap",
    "cache.invalidate",
    "gateway.fallback",
)

# 標準logging経由のメッセージでも同じ扱いにするためのパターン群
PROMOTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"fetch\.(done|partial)", re.IGNORECASE),
    re.compile(r"cache\.(swap|invalidate)", re.IGNORECASE),
    re.compile(r"fill\.unmatched", re.IGNORECASE),
)


def _origin_patcher(record: dict) -> None:
    """loguru直書きログにも origin* メタを付け、要所イベントはINFOへ昇格させるパッチャ。"""

    extra = record["extra"]
    if "origin" not in extra:
        extra["origin"] = record["name"]  # ロガー名
        extra["origin_module"] = record["module"]
        extra["origin_func"] = record["function"]
        extra["origin_file"] = record["file"].name
        extra["origin_line"] = record["line"]
    if record["level"].name == "DEBUG" and record["message"].startswith(PROMOTED_PREFIXES):
        record["level"].name = "INFO"
        record["level"].no = logger.level("INFO").no


def _parse_debug_modules(raw: str | Iterable[str] | None) -> tuple[str, ...]:
    """LOG_DEBUG_MODULES などで指定された「DEBUGを出すモジュール名」をタプルに整える。"""

    if raw is None:
        return ()
    if isinstance(raw, str):
        items = [x.strip() for x in raw.split(",")]
    else:
        items = [str(x).strip() for x in raw]
    return tuple(x for x in items if x)


def _level_filter_factory(base_level_no: int, debug_modules: tuple[str, ...]):
    """基準レベル以上は通し、DEBUGは debug_modules に前方一致するものだけ通すフィルタを作る。"""

    debug_no = logger.level("DEBUG").no

    def _filter(record: dict) -> bool:
        level_no = record["level"].no
        if level_no >= base_level_no:
            return True
        if level_no == debug_no and debug_modules:
            name = record["extra"].get("origin") or record.get("name")
            return any(name and name.startswith(m) for m in debug_modules)
        return False

    return _filter


class InterceptHandler(logging.Handler):
    """標準logging（aiohttp/sqlalchemy/uvicorn）のレコードをloguruへ転送する中継ハンドラ。"""

    def emit(self, record: logging.LogRecord) -> None:
        msg = record.getMessage()
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        if record.levelno < logging.INFO and any(p.search(msg) for p in PROMOTION_PATTERNS):
            level = "INFO"
        frame: FrameType | None = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.bind(
            origin=record.name,
            origin_module=record.module,
            origin_func=record.funcName,
            origin_file=record.filename,
            origin_line=record.lineno,
        ).opt(depth=depth, exception=record.exc_info).log(level, msg)


def setup_std_logging_bridge() -> None:
    """標準loggingのrootにInterceptHandlerを足してloguruへ橋渡しする。"""

    root = logging.getLogger()
    if not any(isinstance(h, InterceptHandler) for h in root.handlers):
        root.handlers.append(InterceptHandler())
    root.setLevel(logging.NOTSET)
    logging.captureWarnings(True)


def setup_logging(
    *,
    level: str = "INFO",
    log_dir: str = "logs",
    human_filename: str = "ledger.log",
    json_filename: str = "ledger.jsonl",
    debug_modules: Iterable[str] | None = None,
    console: bool = True,
) -> None:
    """Initialize logging files and console.

    Adds two rotating file sinks under `log_dir`:
      1) Human-readable: logs/ledger.log (rotated daily, keep 10 files)
      2) JSON structured: logs/ledger.jsonl (rotated daily, keep 10 files)
    """
    logger.remove()
    logger.configure(patcher=_origin_patcher)  # type: ignore[arg-type]

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    normalized_level = level.upper()
    try:
        base_level_no = logger.level(normalized_level).no
    except ValueError:
        base_level_no = logger.level("INFO").no
    debug_modules_raw = debug_modules if debug_modules is not None else os.getenv("LOG_DEBUG_MODULES")
    debug_modules_tuple = _parse_debug_modules(debug_modules_raw)
    level_filter = _level_filter_factory(base_level_no, debug_modules_tuple)

    human_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | {name}:{function}:{line} | {message}"
    )

    rotation = "00:00"
    retention = 10

    logger.add(
        str(log_path / human_filename),
        level="DEBUG",
        rotation=rotation,
        retention=retention,
        enqueue=True,
        backtrace=True,
        diagnose=False,
        encoding="utf-8",
        format=human_format,
        filter=level_filter,
    )

    logger.add(
        str(log_path / json_filename),
        level="DEBUG",
        rotation=rotation,
        retention=retention,
        enqueue=True,
        backtrace=True,
        diagnose=False,
        encoding="utf-8",
        serialize=True,
        filter=level_filter,
    )

    setup_std_logging_bridge()

    if console:
        logger.add(
            sys.stderr,
            level="DEBUG",
            backtrace=True,
            diagnose=False,
            format=human_format,
            filter=level_filter,
        )

    logger.info(
        "logging init level={} dir={} mods={} rotation={} retention={}",
        normalized_level,
        log_dir,
        debug_modules_tuple,
        rotation,
        retention,
    )
