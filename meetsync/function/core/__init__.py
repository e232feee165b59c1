"""アップロード同期エンジンのコアモジュール群。

記載内容
    - 探索・検証（:mod:`.directory_resolver`、:mod:`.content_validator`）。
    - Drive 連携（:mod:`.drive_auth`、:mod:`.drive_service`、:mod:`.folder_provisioner`、
      :mod:`.file_synchronizer`）。
    - キュー処理と通知（:mod:`.upload_worker`、:mod:`.status_notifier`）。
    - 定期保守（:mod:`.health_checker`、:mod:`.folder_reconciler`、:mod:`.periodic_task`、
      :mod:`.record_integrity`）。
    - 基盤（:mod:`.paths`、:mod:`.config_handler`、:mod:`.logging_setup`、:mod:`.version`）。
"""

__all__ = [
    "config_handler",
    "content_validator",
    "directory_resolver",
    "drive_auth",
    "drive_service",
    "file_sanitizer",
    "file_synchronizer",
    "folder_provisioner",
    "folder_reconciler",
    "health_checker",
    "logging_setup",
    "paths",
    "periodic_task",
    "record_integrity",
    "status_notifier",
    "sync_types",
    "upload_worker",
    "version",
]
