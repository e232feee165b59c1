"""Persistent upload queue worker.

記載内容
    - :class:`UploadWorker`: キュー投入、ドレインループ、起動時リカバリ、再認証後の再開。

処理の流れ
    1. ``enqueue_upload`` が ``upload_queue`` に ``pending`` 行を作り、ドレインを起動する。
    2. ドレインは古い ``pending`` 行から順に ``processing`` へ遷移させて処理する。
    3. 検証 → 認証 → フォルダ準備 → ノート、録音の順に転送。
    4. 結果に応じて完了・部分完了・再試行・失敗へ遷移し、通知を送る。

ドレインは同時に 1 つだけ動作します。バックオフ待機はドレインループ自体を
ブロックし、その間は次のキュー行へ進みません。
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Mapping, Sequence

from meetsync.function.cmn_database import DatabaseError
from meetsync.function.cmn_logger import log_db_error, log_upload_error

from .config_handler import StorageSettings, UploadSettings
from .content_validator import ContentValidator
from .file_synchronizer import FileSynchronizer
from .folder_provisioner import RemoteFolderProvisioner
from .status_notifier import StatusNotifier
from .sync_types import (
    AuthExpiredError,
    MeetingRecord,
    PartialUploadError,
    QueueStatus,
    TransientUploadError,
    UploadFailure,
    UploadStatus,
)

__all__ = ["UploadWorker"]

LOGGER = logging.getLogger(__name__)

_DB_NOTES_ONLY = "notes exist only in the database; no exported file to upload"


class UploadWorker:
    """Drain ``upload_queue`` one meeting at a time.

    ``db`` is a :class:`~meetsync.function.cmn_database.DatabaseManager` and
    ``drive`` anything providing the folder/file operations of
    :class:`~meetsync.function.core.drive_service.DriveService`.
    """

    def __init__(
        self,
        db: Any,
        validator: ContentValidator,
        drive: Any,
        *,
        notifier: StatusNotifier | None = None,
        settings: UploadSettings | None = None,
        authenticate: Callable[[], None] | None = None,
        sleep: Callable[[float], None] | None = None,
        background: bool = True,
    ) -> None:
        self._db = db
        self._validator = validator
        self._settings = settings or UploadSettings()
        self._provisioner = RemoteFolderProvisioner(drive, root_name=self._settings.root_folder_name)
        self._synchronizer = FileSynchronizer(drive)
        self._authenticate = authenticate or getattr(drive, "authenticate", None)
        self._notifier = notifier or StatusNotifier(use_eel=False)
        self._sleep = sleep or time.sleep
        self._background = background

        self._lock = threading.Lock()
        self._draining = False
        self._auth_required = False
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        db: Any,
        drive: Any,
        *,
        upload_settings: UploadSettings,
        storage_settings: StorageSettings,
        **kwargs: Any,
    ) -> "UploadWorker":
        validator = ContentValidator(
            storage_settings.assets_root,
            note_extensions=upload_settings.note_extensions,
            audio_extensions=upload_settings.audio_extensions,
        )
        return cls(db, validator, drive, settings=upload_settings, **kwargs)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def is_draining(self) -> bool:
        with self._lock:
            return self._draining

    @property
    def auth_required(self) -> bool:
        return self._auth_required

    @property
    def validator(self) -> ContentValidator:
        return self._validator

    def enqueue_upload(self, meeting_id: int) -> bool:
        """会議をキューへ追加し、ドレインを起動します。

        入力
            meeting_id: ``int``
                対象の会議 ID。
        出力
            ``bool``
                新たに ``pending`` 行が作成（または再活性化）された場合 ``True``。
                既に完了済み・キュー済み・エラー時は ``False``。例外は送出しません。
        """

        try:
            row = self._db.get_record_by_id(meeting_id)
            if row is None:
                LOGGER.warning("Cannot enqueue meeting %s: not found", meeting_id)
                return False
            if row.get("upload_status") == UploadStatus.COMPLETED.value:
                LOGGER.info("Meeting %s is already uploaded; skipping enqueue", meeting_id)
                return False
            added = self._db.add_to_upload_queue(meeting_id)
            if added:
                self._set_status(meeting_id, UploadStatus.PENDING)
                LOGGER.info("Queued meeting %s for upload", meeting_id)
        except Exception:
            LOGGER.exception("Failed to enqueue meeting %s", meeting_id)
            return False

        self._start_drain()
        return added

    def drain(self) -> bool:
        """Process pending queue items until none remain.

        Returns ``False`` without doing anything when another drain is active.
        """

        with self._lock:
            if self._draining:
                LOGGER.debug("Drain already running")
                return False
            self._draining = True

        stopped = False
        try:
            while not stopped and not self._auth_required:
                pending = self._db.fetch_upload_queue(QueueStatus.PENDING)
                if not pending:
                    break
                LOGGER.info("Upload drain pass: %d pending item(s)", len(pending))
                for item in pending:
                    if not self._process_item(int(item["meeting_id"])):
                        stopped = True
                        break
        finally:
            with self._lock:
                self._draining = False

        # Items enqueued while the last pass was finishing.
        if stopped or self._auth_required:
            return True
        if self._db.fetch_upload_queue(QueueStatus.PENDING):
            self._start_drain()
        return True

    def recover_on_startup(self) -> dict[str, list[int]]:
        """クラッシュ後の状態を修復し、未アップロードの会議をキューに戻します。

        処理概要
            1. ``processing`` のまま残ったキュー行を ``pending`` に戻す。
            2. 未完了でローカルにファイルがある会議をキューへ戻す。
            3. ドレインを起動する。
        """

        reset_ids = self._db.reset_processing_upload_items()
        for meeting_id in reset_ids:
            LOGGER.info("Recovered interrupted upload for meeting %s", meeting_id)
            self._set_status(meeting_id, UploadStatus.PENDING)

        enqueued = self.enqueue_meetings_with_local_files(start=False)
        if reset_ids or enqueued:
            LOGGER.info(
                "Startup recovery: reset=%s enqueued=%s", reset_ids, enqueued
            )
        self._start_drain()
        return {"reset": reset_ids, "enqueued": enqueued}

    def enqueue_meetings_with_local_files(self, *, start: bool = True) -> list[int]:
        """Queue unfinished (or ``no_content``) meetings that now have local files.

        Used by startup recovery and the periodic health pass so that meetings
        whose notes were exported after their last attempt are picked up again.
        """

        enqueued: list[int] = []
        for row in self._db.fetch_meetings_needing_upload():
            meeting_id = int(row["id"])
            recordings = self._db.get_recordings_for_record(meeting_id)
            record = MeetingRecord.from_mapping(row, session_ids=self._session_ids(recordings))
            result = self._validator.validate(record, recordings)
            if not result.files:
                continue
            if self._db.add_to_upload_queue(meeting_id):
                self._set_status(meeting_id, UploadStatus.PENDING)
                enqueued.append(meeting_id)
        if start and enqueued:
            self._start_drain()
        return enqueued

    def reset_stuck_upload(self, meeting_id: int) -> bool:
        """``uploading`` のまま止まった会議を ``pending`` に戻して再投入します。

        入力
            meeting_id: ``int``
                対象の会議 ID。
        出力
            ``bool``
                リセットした場合 ``True``。このプロセスのドレインが処理中の行は
                触らずに ``False`` を返します。
        """

        item = self._db.fetch_upload_queue_item(meeting_id)
        if item is not None and item["status"] == QueueStatus.PROCESSING.value:
            if self.is_draining:
                LOGGER.debug("Meeting %s is being uploaded right now; not resetting", meeting_id)
                return False
            self._db.update_upload_queue_item(
                meeting_id, status=QueueStatus.PENDING, last_error="upload stalled; reset"
            )
        else:
            self._db.add_to_upload_queue(meeting_id)
        self._set_status(meeting_id, UploadStatus.PENDING)
        LOGGER.warning("Reset stalled upload of meeting %s to pending", meeting_id)
        self._start_drain()
        return True

    def resume(self) -> None:
        """Clear the authentication stop and drain again."""

        if self._auth_required:
            LOGGER.info("Resuming uploads after re-authentication")
        self._auth_required = False
        self._start_drain()

    def get_queue_status(self) -> dict[str, Any]:
        active = [
            item
            for item in self._db.fetch_upload_queue()
            if item["status"] in (QueueStatus.PENDING.value, QueueStatus.PROCESSING.value)
        ]
        active.sort(key=lambda item: (item["status"] != QueueStatus.PROCESSING.value, item["created_at"], item["id"]))
        return {
            "queueLength": len(active),
            "isUploading": self.is_draining,
            "authRequired": self._auth_required,
            "queue": [
                {
                    "meetingId": item["meeting_id"],
                    "status": item["status"],
                    "attempts": item["attempts"],
                    "lastError": item["last_error"],
                    "createdAt": item["created_at"],
                }
                for item in active
            ],
        }

    def join(self, timeout: float | None = None) -> None:
        """Wait for the background drain thread, if any."""

        thread = self._thread
        if thread is not None and thread.is_alive():
            thread.join(timeout)

    # ------------------------------------------------------------------
    # Drain internals
    # ------------------------------------------------------------------
    def _start_drain(self) -> None:
        if self._auth_required:
            LOGGER.info("Upload drain deferred until Drive is re-authenticated")
            return
        if self.is_draining:
            return
        if not self._background:
            self._drain_safely()
            return
        self._thread = threading.Thread(
            target=self._drain_safely, name="meetsync-upload-drain", daemon=True
        )
        self._thread.start()

    def _drain_safely(self) -> None:
        try:
            self.drain()
        except Exception:
            LOGGER.exception("Upload drain stopped unexpectedly")

    def _process_item(self, meeting_id: int) -> bool:
        """Handle one queue item. Returns ``False`` when the drain must stop."""

        item = self._db.claim_upload_item(meeting_id)
        if item is None:
            LOGGER.debug("Queue item for meeting %s was claimed elsewhere", meeting_id)
            return True

        row = self._db.get_record_by_id(meeting_id)
        if row is None:
            LOGGER.warning("Meeting %s disappeared; dropping queue item", meeting_id)
            self._db.update_upload_queue_item(
                meeting_id, status=QueueStatus.FAILED, last_error="meeting not found"
            )
            return True

        recordings = self._db.get_recordings_for_record(meeting_id)
        record = MeetingRecord.from_mapping(row, session_ids=self._session_ids(recordings))
        try:
            try:
                self._upload_record(record, recordings)
            except AuthExpiredError as exc:
                self._handle_auth_expired(record, exc)
                return False
            except UploadFailure as exc:
                self._handle_failure(record, item, exc)
            except Exception as exc:
                LOGGER.exception("Unexpected error while uploading meeting %s", meeting_id)
                self._handle_failure(record, item, exc)
        except DatabaseError as exc:
            log_db_error("Failed to record upload outcome", exc, meeting_id=meeting_id)
            LOGGER.error("Stopping upload drain: could not record outcome for meeting %s", meeting_id)
            self._release_item(meeting_id, str(exc))
            return False
        return True

    def _release_item(self, meeting_id: int, message: str) -> None:
        """Return a claimed item to ``pending`` without charging an attempt."""

        try:
            self._db.update_upload_queue_item(
                meeting_id, status=QueueStatus.PENDING, last_error=message
            )
        except DatabaseError as exc:
            log_db_error("Failed to release upload queue item", exc, meeting_id=meeting_id)
            LOGGER.error("Queue item for meeting %s stays processing until restart", meeting_id)

    def _upload_record(self, record: MeetingRecord, recordings: Sequence[Mapping[str, Any]]) -> None:
        self._set_status(record.id, UploadStatus.UPLOADING)

        result = self._validator.validate(record, recordings)
        if not result.has_content:
            LOGGER.info("Meeting %s has nothing to upload", record.id)
            self._db.update_upload_queue_item(record.id, status=QueueStatus.COMPLETED, last_error="")
            self._set_status(record.id, UploadStatus.NO_CONTENT)
            return
        if not result.files:
            # Re-checked by startup recovery and the health pass once files are exported.
            LOGGER.info("Meeting %s: %s", record.id, _DB_NOTES_ONLY)
            self._db.update_upload_queue_item(
                record.id, status=QueueStatus.COMPLETED, last_error=_DB_NOTES_ONLY
            )
            self._set_status(record.id, UploadStatus.NO_CONTENT)
            return

        if self._authenticate is not None:
            self._authenticate()

        folder_id = self._provisioner.ensure_record_folder(record.date_bucket, record.folder_key)

        uploaded: list[str] = []
        failed: dict[str, str] = {}
        for candidate in result.files:
            try:
                self._synchronizer.sync_file(candidate, folder_id)
            except AuthExpiredError:
                raise
            except UploadFailure as exc:
                LOGGER.warning("Meeting %s: failed to upload %s: %s", record.id, candidate.name, exc)
                failed[candidate.name] = str(exc)
            else:
                uploaded.append(candidate.name)

        if not failed:
            self._db.set_upload_status(record.id, UploadStatus.COMPLETED, folder_id)
            self._db.update_upload_queue_item(
                record.id, status=QueueStatus.COMPLETED, partial_retries=0, last_error=""
            )
            self._notifier.notify(record.id, UploadStatus.COMPLETED)
            LOGGER.info("Meeting %s uploaded (%d file(s))", record.id, len(uploaded))
            return

        summary = "; ".join(f"{name}: {error}" for name, error in failed.items())
        if uploaded:
            raise PartialUploadError(
                f"{len(uploaded)} of {len(result.files)} file(s) uploaded; {summary}",
                uploaded=uploaded,
                failed=failed,
            )
        raise TransientUploadError(f"No files uploaded; {summary}")

    def _handle_auth_expired(self, record: MeetingRecord, exc: AuthExpiredError) -> None:
        LOGGER.warning("Drive authentication expired while uploading meeting %s: %s", record.id, exc)
        self._auth_required = True
        self._db.update_upload_queue_item(record.id, status=QueueStatus.PENDING, last_error=str(exc))
        self._set_status(record.id, UploadStatus.PENDING)
        self._notifier.notify_auth_required(record.id)

    def _handle_failure(
        self, record: MeetingRecord, item: Mapping[str, Any], exc: Exception
    ) -> None:
        message = str(exc) or type(exc).__name__

        if isinstance(exc, PartialUploadError) and not int(item.get("partial_retries") or 0):
            LOGGER.info(
                "Meeting %s partially uploaded; retrying once in %.1fs",
                record.id,
                self._settings.partial_retry_delay_sec,
            )
            self._db.update_upload_queue_item(
                record.id, status=QueueStatus.PENDING, partial_retries=1, last_error=message
            )
            self._set_status(record.id, UploadStatus.PARTIAL)
            self._sleep(self._settings.partial_retry_delay_sec)
            return

        attempts = int(item.get("attempts") or 0) + 1
        if attempts < self._settings.max_retries:
            delay = self._settings.backoff_base_sec * (2 ** attempts)
            LOGGER.warning(
                "Upload of meeting %s failed (attempt %d/%d): %s; retrying in %.1fs",
                record.id,
                attempts,
                self._settings.max_retries,
                message,
                delay,
            )
            self._db.update_upload_queue_item(
                record.id, status=QueueStatus.PENDING, attempts=attempts, last_error=message
            )
            self._set_status(
                record.id,
                UploadStatus.PARTIAL if isinstance(exc, PartialUploadError) else UploadStatus.PENDING,
            )
            self._sleep(delay)
            return

        LOGGER.error(
            "Upload of meeting %s failed after %d attempt(s): %s", record.id, attempts, message
        )
        self._db.update_upload_queue_item(
            record.id, status=QueueStatus.FAILED, attempts=attempts, last_error=message
        )
        self._set_status(record.id, UploadStatus.FAILED)
        log_upload_error(record.id, attempts, exc, title=record.title)

    def _set_status(self, meeting_id: int, status: UploadStatus) -> None:
        self._db.set_upload_status(meeting_id, status)
        self._notifier.notify(meeting_id, status)

    @staticmethod
    def _session_ids(recordings: Sequence[Mapping[str, Any]]) -> tuple[int, ...]:
        ids: list[int] = []
        for row in recordings:
            try:
                ids.append(int(row["id"]))
            except (KeyError, TypeError, ValueError):
                continue
        return tuple(ids)
