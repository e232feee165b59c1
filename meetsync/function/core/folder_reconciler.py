"""Bring recording paths in the database back in line with the files on disk.

Users rename meeting folders while a recording is running, so a
``...-session<N>.opus`` file can end up somewhere other than the
``final_path`` stored for session ``N``. Each pass either moves the file back
to the recorded folder or, when that folder is gone, points the database at
where the file actually is. Completed meetings whose files were found outside
their canonical folder and changed after the upload are queued again.
"""

from __future__ import annotations

import logging
import re
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from meetsync.function.cmn_database import DatabaseError

from .directory_resolver import scan_date_bucket, session_id_in_name
from .sync_types import MeetingRecord, UploadStatus

__all__ = [
    "FolderReconciler",
    "ReconcileReport",
    "RecordingMismatch",
    "find_mislocated_recordings",
]

logger = logging.getLogger(__name__)

_DATE_DIR = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_REQUEUE_STATUSES = (UploadStatus.PENDING.value, UploadStatus.FAILED.value)


@dataclass(slots=True, frozen=True)
class RecordingMismatch:
    session_id: int
    meeting_id: int
    actual_path: Path
    expected_path: Path | None

    @property
    def actual_folder(self) -> str:
        return self.actual_path.parent.name


@dataclass(slots=True)
class ReconcileReport:
    moved: list[int] = field(default_factory=list)
    relinked: list[int] = field(default_factory=list)
    requeued: list[int] = field(default_factory=list)
    reevaluated: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "moved": list(self.moved),
            "relinked": list(self.relinked),
            "requeued": list(self.requeued),
            "reevaluated": list(self.reevaluated),
        }


def find_mislocated_recordings(
    db: Any, assets_root: Path, audio_extensions: tuple[str, ...]
) -> list[RecordingMismatch]:
    """``<assets>/<YYYY-MM-DD>/<folder>`` 配下の録音と DB の ``final_path`` を突き合わせます。

    入力
        db: ``DatabaseManager``
            録音セッションの参照先。
        assets_root: ``Path``
            ローカル成果物のルート。
        audio_extensions: ``tuple[str, ...]``
            録音とみなす拡張子（小文字、ドット付き）。
    出力
        ``list[RecordingMismatch]``
            ファイル名のセッション ID が DB に存在し、``final_path`` が実際の
            場所と異なるもの。DB に無いセッション ID のファイルは対象外です。
    """

    mismatches: list[RecordingMismatch] = []
    if not assets_root.is_dir():
        return mismatches

    for date_dir in sorted(assets_root.iterdir()):
        if not date_dir.is_dir() or not _DATE_DIR.match(date_dir.name):
            continue
        listing = scan_date_bucket(date_dir)
        for folder, names in listing.items():
            for name in names:
                if not name.lower().endswith(audio_extensions):
                    continue
                session_id = session_id_in_name(name)
                if session_id is None:
                    continue
                session = db.get_recording_session(session_id)
                if session is None:
                    continue
                actual = date_dir / folder / name
                final_path = session.get("final_path")
                expected = Path(str(final_path)) if final_path else None
                if expected == actual:
                    continue
                mismatches.append(
                    RecordingMismatch(
                        session_id=session_id,
                        meeting_id=int(session["meeting_id"]),
                        actual_path=actual,
                        expected_path=expected,
                    )
                )
    return mismatches


class FolderReconciler:
    """Periodic pass that repairs recording locations and re-checks completed meetings."""

    def __init__(self, db: Any, worker: Any) -> None:
        self._db = db
        self._worker = worker
        self._lock = threading.Lock()

    def run_once(self) -> ReconcileReport | None:
        """整合処理を 1 回実行します。別スレッドで実行中なら ``None``。"""

        if not self._lock.acquire(blocking=False):
            logger.info("Folder reconciliation already running; skipping")
            return None
        try:
            return self._run()
        finally:
            self._lock.release()

    def _run(self) -> ReconcileReport:
        report = ReconcileReport()
        validator = self._worker.validator
        mismatches = find_mislocated_recordings(
            self._db, validator.assets_root, validator.audio_extensions
        )
        if mismatches:
            logger.info("Found %d recording(s) away from their recorded path", len(mismatches))

        for mismatch in mismatches:
            try:
                self._reconcile(mismatch, report)
            except (OSError, DatabaseError):
                logger.exception("Could not reconcile recording session %s", mismatch.session_id)

        report.reevaluated = self._reevaluate_completed()

        logger.info(
            "Folder reconciliation: moved=%s relinked=%s requeued=%s reevaluated=%s",
            report.moved,
            report.relinked,
            report.requeued,
            report.reevaluated,
        )
        return report

    def _reconcile(self, mismatch: RecordingMismatch, report: ReconcileReport) -> None:
        meeting = self._db.get_record_by_id(mismatch.meeting_id)
        if meeting is None:
            logger.warning(
                "Meeting %s not found for recording session %s",
                mismatch.meeting_id,
                mismatch.session_id,
            )
            return

        expected = mismatch.expected_path
        if expected is not None and expected.exists():
            logger.warning(
                "Recording session %s exists at %s and %s; leaving both in place",
                mismatch.session_id,
                expected,
                mismatch.actual_path,
            )
            return

        if expected is not None and expected.parent.is_dir():
            logger.info("Moving %s to %s", mismatch.actual_path, expected)
            shutil.move(str(mismatch.actual_path), str(expected))
            report.moved.append(mismatch.session_id)
        else:
            logger.info(
                "Pointing recording session %s at %s", mismatch.session_id, mismatch.actual_path
            )
            self._db.update_recording_path(mismatch.session_id, mismatch.actual_path)
            if mismatch.actual_folder != meeting.get("folder_name"):
                logger.info(
                    "Renaming folder of meeting %s from %r to %r",
                    mismatch.meeting_id,
                    meeting.get("folder_name"),
                    mismatch.actual_folder,
                )
                self._db.update_meeting_folder_name(mismatch.meeting_id, mismatch.actual_folder)
            report.relinked.append(mismatch.session_id)

        if meeting.get("upload_status") in _REQUEUE_STATUSES:
            if self._worker.enqueue_upload(mismatch.meeting_id):
                report.requeued.append(mismatch.meeting_id)

    def _reevaluate_completed(self) -> list[int]:
        """完了済みだが検証で問題の出た会議を再確認します。

        ファイルがアップロード時刻より後に更新されている場合のみ ``pending`` に
        戻して再投入します。ローカルにファイルが残っていない完了済みの会議は
        ログに残すだけで状態は変えません。
        """

        requeued: list[int] = []
        validator = self._worker.validator
        for row in self._db.fetch_meetings_by_upload_status(UploadStatus.COMPLETED):
            meeting_id = int(row["id"])
            recordings = self._db.get_recordings_for_record(meeting_id)
            record = MeetingRecord.from_mapping(
                row, session_ids=tuple(int(rec["id"]) for rec in recordings)
            )
            result = validator.validate(record, recordings)
            if not result.issues:
                continue
            if not result.files:
                logger.info("Completed meeting %s has no local files left: %s", meeting_id, result.issues)
                continue

            uploaded_at = record.uploaded_at or 0
            changed = [c.name for c in result.files if _mtime(c.path) > uploaded_at]
            if not changed:
                logger.debug("Completed meeting %s unchanged since upload: %s", meeting_id, result.issues)
                continue

            logger.info("Re-uploading completed meeting %s; changed since upload: %s", meeting_id, changed)
            self._db.reset_upload_status(meeting_id)
            self._worker.enqueue_upload(meeting_id)
            requeued.append(meeting_id)
        return requeued


def _mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except OSError:
        return 0.0
