"""ロギング設定をまとめて初期化するためのユーティリティ。"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from . import paths

LOG_FILE_NAME = "app.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s:%(funcName)s:%(lineno)d - %(message)s"

# Google API クライアントが出す冗長なログ。
_NOISY_LOGGERS = (
    "googleapiclient.discovery_cache",
    "google_auth_httplib2",
    "urllib3.connectionpool",
)
_HANDLER_MARK = "_meetsync_handler"


def log_file_path() -> Path:
    """アプリ標準のログファイルパスを返します。"""

    return paths.log_dir() / LOG_FILE_NAME


def _mark(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _HANDLER_MARK, True)
    return handler


def configure_logging(debug_mode: bool = False, *, log_path: Path | None = None) -> Path:
    """ルートロガーへコンソールとローテーションファイルの出力を設定します。

    入力
        debug_mode: ``bool``
            ``True`` の場合 DEBUG レベル。キューの claim や再試行待機まで出力します。
        log_path: ``Path | None``
            出力先。未指定時は ``logs/app.log``。
    出力
        ``Path``
            実際に使用したログファイルパス。
    処理概要
        1. 以前の呼び出しで追加したハンドラーだけを取り外します。
        2. 2 MB × 5 世代のファイルハンドラーとコンソールハンドラーを追加します。
        3. Google API 周辺の冗長なロガーを ERROR に引き上げます。
    """

    target = log_path or log_file_path()
    target.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug_mode else logging.INFO
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root_logger.removeHandler(handler)
            handler.close()

    file_handler = RotatingFileHandler(
        target, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    for handler in (logging.StreamHandler(), file_handler):
        handler.setFormatter(formatter)
        handler.setLevel(level)
        root_logger.addHandler(_mark(handler))
    root_logger.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)

    return target


__all__ = [
    "LOG_FORMAT",
    "configure_logging",
    "log_file_path",
]
