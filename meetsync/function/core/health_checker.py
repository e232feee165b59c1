"""Periodic health pass over the upload state.

記載内容
    - :class:`HealthReport`: 1 回の実行結果。
    - :class:`MeetingHealthChecker`: 失敗分の再投入、停止したアップロードの
      リセット、孤立した録音セッションの検出、未投入会議の拾い上げ。
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

__all__ = ["HealthReport", "MeetingHealthChecker"]

logger = logging.getLogger(__name__)

FAILED_RETRY_LIMIT = 10


@dataclass(slots=True)
class HealthReport:
    retried_failed: list[int] = field(default_factory=list)
    reset_stuck: list[int] = field(default_factory=list)
    orphaned_recordings: list[int] = field(default_factory=list)
    requeued: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "retriedFailed": list(self.retried_failed),
            "resetStuck": list(self.reset_stuck),
            "orphanedRecordings": list(self.orphaned_recordings),
            "requeued": list(self.requeued),
        }


class MeetingHealthChecker:
    """アップロード状態の定期点検を行うクラス。

    ``worker`` は :class:`~meetsync.function.core.upload_worker.UploadWorker`
    相当のオブジェクトです。``clock`` はテスト用に差し替えられます。
    """

    def __init__(
        self,
        db: Any,
        worker: Any,
        *,
        failed_retry_after_sec: int = 3600,
        stuck_upload_after_sec: int = 1800,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = db
        self._worker = worker
        self._failed_retry_after_sec = failed_retry_after_sec
        self._stuck_upload_after_sec = stuck_upload_after_sec
        self._clock = clock
        self._lock = threading.Lock()

    def run_once(self) -> HealthReport | None:
        """点検を 1 回実行します。

        出力
            ``HealthReport | None``
                別スレッドで実行中だった場合は何もせず ``None``。
        処理概要
            1. 一定時間以上前に ``failed`` となった会議を新しい順に最大 10 件再投入。
            2. ``uploading`` のまま更新の止まった会議を ``pending`` に戻して再投入。
            3. 会議の存在しない録音セッションを警告ログに記録。
            4. キューに載っていない未完了会議でローカルファイルのあるものを投入。
        """

        if not self._lock.acquire(blocking=False):
            logger.info("Health check already running; skipping")
            return None
        try:
            return self._run()
        finally:
            self._lock.release()

    def _run(self) -> HealthReport:
        report = HealthReport()
        now = int(self._clock())

        failed_cutoff = now - self._failed_retry_after_sec
        for row in self._db.fetch_failed_meetings_before(failed_cutoff, limit=FAILED_RETRY_LIMIT):
            meeting_id = int(row["id"])
            logger.info("Retrying failed upload of meeting %s", meeting_id)
            if self._worker.enqueue_upload(meeting_id):
                report.retried_failed.append(meeting_id)

        stuck_cutoff = now - self._stuck_upload_after_sec
        for row in self._db.fetch_stuck_uploading_meetings(stuck_cutoff):
            meeting_id = int(row["id"])
            if self._worker.reset_stuck_upload(meeting_id):
                report.reset_stuck.append(meeting_id)

        for row in self._db.fetch_orphaned_recordings():
            session_id = int(row["id"])
            report.orphaned_recordings.append(session_id)
            logger.warning(
                "Orphaned recording session %s (meeting %s missing): %s",
                session_id,
                row.get("meeting_id"),
                row.get("final_path"),
            )

        report.requeued = self._worker.enqueue_meetings_with_local_files()

        logger.info(
            "Health check: retried=%s reset=%s orphaned=%s requeued=%s",
            report.retried_failed,
            report.reset_stuck,
            report.orphaned_recordings,
            report.requeued,
        )
        return report
