"""障害調査用のテキストログを出力するユーティリティ。

記載内容
    - :func:`log_error`: 任意のエラー情報を日付別テキストログへ記録。
    - :func:`log_db_error`: データベース関連エラーのラッパー。
    - :func:`log_upload_error`: リトライ上限に達したアップロード失敗の記録。

想定参照元
    - :mod:`meetsync.function.cmn_database` の例外ハンドリング部分。
    - :mod:`meetsync.function.core.upload_worker` の最終失敗処理。
"""

from __future__ import annotations

import traceback
from datetime import datetime
from pathlib import Path
from typing import Any

from meetsync.function.core import paths


def log_error(
    message: str,
    exc: BaseException | None = None,
    *,
    log_dir: Path | None = None,
    **context: Any,
) -> Path:
    """詳細なエラーログを出力しファイルパスを返します。

    入力
        message: ``str``
            ログ行に残したいメッセージ。
        exc: ``BaseException | None``
            例外オブジェクト。指定時はトレースバックを記録します。
        log_dir: ``Path | None``
            出力先ディレクトリ。未指定ならユーザーデータ配下の ``logs``。
        **context: ``Any``
            追加で残したい情報。``key=value`` 形式で整形されます。
    出力
        ``Path``
            追記されたログファイルのパス。
    """

    timestamp = datetime.now()
    directory = log_dir or paths.log_dir()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / f"{timestamp:%Y%m%d}.log"
    lines = [f"[{timestamp:%Y-%m-%d %H:%M:%S}] {message}"]

    if context:
        context_repr = ", ".join(f"{key}={value!r}" for key, value in context.items())
        lines.append(f"Context: {context_repr}")

    if exc is not None:
        lines.append("Traceback:")
        lines.extend(traceback.format_exception(type(exc), exc, exc.__traceback__))
    else:
        lines.append("No exception information available.")

    with log_path.open("a", encoding="utf-8") as stream:
        stream.write("\n".join(lines))
        stream.write("\n")

    return log_path


def log_db_error(context: str, exc: Exception | None = None, **info: Any) -> Path:
    """データベースエラーの詳細をログに記録します。"""

    return log_error(context, exc, **info)


def log_upload_error(
    meeting_id: int, attempts: int, exc: Exception | None = None, **info: Any
) -> Path:
    """リトライを使い切ったアップロード失敗をログに記録します。"""

    return log_error(
        f"Upload permanently failed for meeting {meeting_id}",
        exc,
        meeting_id=meeting_id,
        attempts=attempts,
        **info,
    )


__all__ = ["log_error", "log_db_error", "log_upload_error"]
