"""パス計算ロジックを集約したヘルパーモジュール。

記載内容
    - プロジェクト/リソース各種ディレクトリを返す関数群。
    - ユーザーデータ用ディレクトリ（DB・ログ・設定・会議アセット）の生成とキャッシュ。

想定参照元
    - 設定読み込み、DB/ログファイル操作、アップロード対象の探索などの共通基盤コード。
    - テストでのファイル配置確認。
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from platform import system


_PROJECT_ROOT = Path(__file__).resolve().parents[3]
_RESOURCE_ROOT = _PROJECT_ROOT / "resource"
_APP_DIR_NAME = "MeetSync"
_HOME_ENV = "MEETSYNC_HOME"


def resource_path(*parts: str) -> Path:
    """同梱リソース（``resource``）配下で追加パスを結合して返します。"""

    return _RESOURCE_ROOT.joinpath(*parts)


@lru_cache(maxsize=1)
def user_data_root() -> Path:
    """ユーザーデータを書き込むルートディレクトリを返し、存在を保証します。

    入力
        引数はありません。
    出力
        ``Path``
            OS ごとのユーザーデータルート。
    処理概要
        1. 環境変数 ``MEETSYNC_HOME`` があればそれを優先します。
        2. なければ OS 判定に応じたベースディレクトリを決定。
        3. ``MeetSync`` ディレクトリを作成し、パスを返却します。
    """

    override = os.environ.get(_HOME_ENV, "").strip()
    if override:
        target = Path(override).expanduser()
        target.mkdir(parents=True, exist_ok=True)
        return target

    platform_name = system()
    if platform_name == "Windows":
        base_dir = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    elif platform_name == "Darwin":
        base_dir = Path.home() / "Library" / "Application Support"
    else:
        base_dir = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    target = base_dir / _APP_DIR_NAME
    target.mkdir(parents=True, exist_ok=True)
    return target


def _ensure_subdir(name: str) -> Path:
    """ユーザーデータ配下に指定サブディレクトリを用意します。"""

    path = user_data_root() / name
    path.mkdir(parents=True, exist_ok=True)
    return path


def database_dir() -> Path:
    """SQLite データベースファイルを保存するディレクトリを返します。"""

    return _ensure_subdir("db")


def log_dir() -> Path:
    """アプリケーションログを格納するディレクトリを返します。"""

    return _ensure_subdir("logs")


def config_dir() -> Path:
    """設定ファイルや認証情報を保存するディレクトリを返します。"""

    return _ensure_subdir("config")


def app_settings_path() -> Path:
    """``app_settings.json`` の保存先パスを返します。"""

    return config_dir() / "app_settings.json"


def assets_dir() -> Path:
    """会議ごとのノート・録音が置かれるアセットルートを返します。

    入力
        引数はありません。
    出力
        ``Path``
            ``user_data_root/assets`` のパス。配下は ``YYYY-MM-DD/<会議フォルダ>``
            という日付バケット構成になります。
    """

    return _ensure_subdir("assets")


def web_root() -> Path:
    """同梱 Web(Eel) アセットのルートディレクトリを返します。"""

    return resource_path("web")


__all__ = [
    "app_settings_path",
    "assets_dir",
    "config_dir",
    "database_dir",
    "log_dir",
    "resource_path",
    "user_data_root",
    "web_root",
]
