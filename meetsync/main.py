"""Eel ベースの UI とアップロード同期エンジンを橋渡しするエントリーポイント。

記載内容
    - :class:`MeetingSyncService` クラス: DB・Drive・ワーカーの組み立てと調停役。
    - Eel へ公開される関数群: UI から呼び出されるキュー操作・認証 API。
    - アプリケーション起動関数 :func:`main`。

想定参照元
    - ``resource/web`` 配下の JavaScript から ``eel.<function>`` 経由で呼び出し。
    - ``cli/sync_uploads.py`` からのサービス層の直接利用。
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional

import eel

from meetsync.function import DatabaseError, DatabaseManager
from meetsync.function.cmn_logger import log_db_error
from meetsync.function.core import paths
from meetsync.function.core.config_handler import (
    DriveSettings,
    LoggingSettings,
    MaintenanceSettings,
    StorageSettings,
    UploadSettings,
    load_app_settings,
)
from meetsync.function.core.drive_auth import (
    DriveAuthManager,
    DriveTokenStore,
    load_client_config,
)
from meetsync.function.core.drive_service import DriveService
from meetsync.function.core.folder_reconciler import FolderReconciler
from meetsync.function.core.health_checker import MeetingHealthChecker
from meetsync.function.core.logging_setup import configure_logging
from meetsync.function.core.periodic_task import PeriodicTask
from meetsync.function.core.record_integrity import (
    find_integrity_anomalies,
    repair_integrity_anomalies,
)
from meetsync.function.core.status_notifier import StatusNotifier
from meetsync.function.core.upload_worker import UploadWorker
from meetsync.function.core.version import __version__

logger = logging.getLogger(__name__)
_WEB_ROOT = paths.web_root()
_INDEX_FILE = "index.html"
_SERVICE: Optional["MeetingSyncService"] = None


class MeetingSyncService:
    """アップロード同期エンジンの構成要素を一度だけ組み立てるサービス層クラス。

    役割
        - 設定を読み込み、DB・Drive 認証・Drive API・ワーカー・通知を生成する。
        - UI / CLI からの操作をワーカーと認証マネージャーへ委譲する。
    """

    def __init__(
        self,
        *,
        settings_path: Path | None = None,
        db_path: Path | str | None = None,
        background: bool = True,
        use_eel: bool = True,
    ) -> None:
        """サービス起動時の構成要素を初期化します。

        入力
            settings_path: ``Path | None``
                ``app_settings.json`` の場所。未指定時はユーザー設定ディレクトリ。
            db_path: ``Path | str | None``
                SQLite ファイル。未指定時は既定の DB。
            background: ``bool``
                ドレインを別スレッドで実行するか。CLI では ``False``。
            use_eel: ``bool``
                状態通知を Eel フロントエンドへ送るか。
        出力
            ``None``
        処理概要
            1. 設定を読み込み各セクションのデータクラスへ正規化。
            2. DB を初期化しマイグレーションを適用。
            3. 認証・Drive・通知・ワーカーを生成します。
        """

        settings = load_app_settings(settings_path)
        self.logging_settings = LoggingSettings.from_mapping(settings.get("logging") or {})
        self.upload_settings = UploadSettings.from_mapping(settings.get("upload") or {})
        self.storage_settings = StorageSettings.from_mapping(settings.get("storage") or {})
        self.drive_settings = DriveSettings.from_mapping(settings.get("drive") or {})
        self.maintenance_settings = MaintenanceSettings.from_mapping(
            settings.get("maintenance") or {}
        )

        self.db = DatabaseManager(db_path)
        self.db.ensure_database()

        self.auth = DriveAuthManager(
            token_store=DriveTokenStore(),
            client_config=load_client_config(self.drive_settings.to_dict()),
            redirect_port=self.drive_settings.oauth_redirect_port,
        )
        self.drive = DriveService(self.auth.ensure_credentials)
        self.notifier = StatusNotifier(use_eel=use_eel)
        self.worker = UploadWorker.from_settings(
            self.db,
            self.drive,
            upload_settings=self.upload_settings,
            storage_settings=self.storage_settings,
            notifier=self.notifier,
            background=background,
        )
        self.health_checker = MeetingHealthChecker(
            self.db,
            self.worker,
            failed_retry_after_sec=self.maintenance_settings.failed_retry_after_sec,
            stuck_upload_after_sec=self.maintenance_settings.stuck_upload_after_sec,
        )
        self.reconciler = FolderReconciler(self.db, self.worker)
        self._periodic_tasks: list[PeriodicTask] = []

    def bootstrap(self) -> dict[str, list[int]]:
        """起動時リカバリを実行します。"""

        return self.worker.recover_on_startup()

    def enqueue_upload(self, meeting_id: int) -> bool:
        return self.worker.enqueue_upload(meeting_id)

    def drain(self) -> bool:
        return self.worker.drain()

    def queue_status(self) -> dict[str, Any]:
        return self.worker.get_queue_status()

    def auth_status(self) -> dict[str, Any]:
        return self.auth.get_status()

    def authenticate(self) -> dict[str, Any]:
        """ブラウザ認証を行い、停止していたアップロードを再開します。"""

        status = self.auth.start_browser_flow()
        self.drive.reset()
        self.worker.resume()
        return status

    def check_integrity(self, *, repair: bool = False) -> dict[str, Any]:
        anomalies = find_integrity_anomalies(self.db, self.worker.validator)
        repaired: list[int] = []
        if repair and anomalies:
            repaired = repair_integrity_anomalies(self.db, self.worker, anomalies)
        return {
            "anomalies": [anomaly.to_dict() for anomaly in anomalies],
            "repaired": repaired,
        }

    def run_health_check(self) -> dict[str, Any]:
        report = self.health_checker.run_once()
        return report.to_dict() if report is not None else {"skipped": True}

    def run_reconciliation(self) -> dict[str, Any]:
        report = self.reconciler.run_once()
        return report.to_dict() if report is not None else {"skipped": True}

    def start_maintenance(self) -> list[str]:
        """ヘルスチェックとフォルダ整合の定期実行を開始し、起動したタスク名を返します。"""

        if not self._periodic_tasks:
            self._periodic_tasks = [
                PeriodicTask(
                    "health-check",
                    self.maintenance_settings.health_check_interval_sec,
                    self.health_checker.run_once,
                ),
                PeriodicTask(
                    "folder-reconcile",
                    self.maintenance_settings.reconcile_interval_sec,
                    self.reconciler.run_once,
                ),
            ]
        return [task.name for task in self._periodic_tasks if task.start()]

    def stop_maintenance(self) -> None:
        for task in self._periodic_tasks:
            task.stop()


def _ensure_service() -> MeetingSyncService:
    """シングルトンな :class:`MeetingSyncService` を取得します。"""

    global _SERVICE
    if _SERVICE is None:
        service = MeetingSyncService()
        service.bootstrap()
        _SERVICE = service
    return _SERVICE


def _operation_response(func) -> dict[str, Any]:
    """操作実行とレスポンス整形を共通化します。"""

    try:
        result = func()
    except DatabaseError as exc:
        log_db_error("Database operation failed", exc)
        return {"ok": False, "error": str(exc)}
    except ValueError as exc:
        return {"ok": False, "error": str(exc)}
    return {"ok": True, "result": result, "version": __version__}


@eel.expose
def fetch_upload_queue(_: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """キューの状態を返します。"""

    service = _ensure_service()
    return _operation_response(service.queue_status)


@eel.expose
def enqueue_meeting_upload(payload: dict[str, Any]) -> dict[str, Any]:
    """UI から送信された会議のアップロード要求を処理します。

    入力
        payload: ``dict[str, Any]``
            ``meetingId`` を含むリクエスト辞書。
    出力
        ``dict[str, Any]``
            ``{"ok": bool, "result": bool}`` 形式。``result`` は新規投入かどうか。
    """

    service = _ensure_service()
    try:
        meeting_id = int((payload or {}).get("meetingId"))
    except (TypeError, ValueError):
        return {"ok": False, "error": "meetingId が指定されていません"}
    return _operation_response(lambda: service.enqueue_upload(meeting_id))


@eel.expose
def fetch_drive_auth_status(_: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    service = _ensure_service()
    return _operation_response(service.auth_status)


@eel.expose
def start_drive_auth(_: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    service = _ensure_service()
    return _operation_response(service.authenticate)


@eel.expose
def check_upload_integrity(payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    service = _ensure_service()
    repair = bool((payload or {}).get("repair"))
    return _operation_response(lambda: service.check_integrity(repair=repair))


@eel.expose
def run_upload_health_check(_: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    service = _ensure_service()
    return _operation_response(service.run_health_check)


@eel.expose
def run_folder_reconciliation(_: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    service = _ensure_service()
    return _operation_response(service.run_reconciliation)


def main() -> None:
    """Eel アプリケーションを起動します。

    処理概要
        1. ロギング設定とサービス初期化（起動時リカバリを含む）を行います。
        2. ヘルスチェックとフォルダ整合の定期実行を開始します。
        3. フロントエンドリソースを読み込み :func:`eel.start` で UI を起動します。
    """

    service = MeetingSyncService()
    configure_logging(service.logging_settings.debug_mode)
    logger.info("Starting MeetSync %s", __version__)

    global _SERVICE
    _SERVICE = service

    eel.init(str(_WEB_ROOT))
    service.bootstrap()

    eel_mode = os.environ.get("MEETSYNC_EEL_MODE", "default")
    block = os.environ.get("MEETSYNC_NO_UI") != "1"

    service.start_maintenance()
    try:
        eel.start(
            _INDEX_FILE,
            mode=eel_mode,
            size=(960, 640),
            host="127.0.0.1",
            port=0,
            block=block,
        )
    finally:
        if block:
            service.stop_maintenance()


if __name__ == "__main__":
    main()
