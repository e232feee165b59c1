"""アップロード同期処理で共通利用する列挙型・データクラス・例外を定義するモジュール。

``UploadStatus`` と ``QueueStatus`` は SQLite にテキストとして保存されるため、
DB・ワーカー・UI 通知の各レイヤーが同じ値で扱えるよう列挙型で定義しています。
失敗は :class:`UploadFailure` を基底とする閉じた例外階層で表現し、Drive 呼び出しの
境界で生成します。ワーカー側はメッセージ文字列ではなくクラスで分岐します。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from .file_sanitizer import sanitize_folder_name

__all__ = [
    "ArtifactCandidate",
    "ArtifactKind",
    "AuthExpiredError",
    "FailureKind",
    "MeetingRecord",
    "PartialUploadError",
    "QueueStatus",
    "TransientUploadError",
    "UploadFailure",
    "UploadStatus",
    "ValidationResult",
]


class UploadStatus(str, Enum):
    """会議レコードに非正規化して保持するアップロード状態。"""

    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    PARTIAL = "partial"
    NO_CONTENT = "no_content"
    """送るものが何もない。エラーではなく正常な終端状態。"""
    FAILED = "failed"


class QueueStatus(str, Enum):
    """``upload_queue`` テーブルの行状態。"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ArtifactKind(str, Enum):
    NOTE = "note"
    AUDIO = "audio"


class FailureKind(str, Enum):
    AUTH_EXPIRED = "auth_expired"
    TRANSIENT = "transient"
    PARTIAL = "partial"


class UploadFailure(RuntimeError):
    """アップロード処理で発生した失敗の基底例外。"""

    kind: FailureKind = FailureKind.TRANSIENT


class AuthExpiredError(UploadFailure):
    """認証情報が無効・失効している。再認証までリトライしても成功しない。"""

    kind = FailureKind.AUTH_EXPIRED


class TransientUploadError(UploadFailure):
    """フォルダ作成や転送中の一時的な失敗。リトライ回数を消費する。"""

    kind = FailureKind.TRANSIENT


class PartialUploadError(UploadFailure):
    """一部のファイルのみ転送に成功した。"""

    kind = FailureKind.PARTIAL

    def __init__(
        self,
        message: str,
        *,
        uploaded: list[str] | None = None,
        failed: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.uploaded = list(uploaded or [])
        self.failed = dict(failed or {})


@dataclass(slots=True)
class ArtifactCandidate:
    """アップロード候補ファイル。試行ごとに生成し永続化しない。"""

    name: str
    path: Path
    size: int
    kind: ArtifactKind
    duration: float | None = None


@dataclass(slots=True)
class ValidationResult:
    """:class:`~meetsync.function.core.content_validator.ContentValidator` の判定結果。"""

    notes: list[ArtifactCandidate] = field(default_factory=list)
    recordings: list[ArtifactCandidate] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    has_database_notes: bool = False

    @property
    def has_notes(self) -> bool:
        return bool(self.notes) or self.has_database_notes

    @property
    def has_recordings(self) -> bool:
        return bool(self.recordings)

    @property
    def has_content(self) -> bool:
        return self.has_notes or self.has_recordings

    @property
    def files(self) -> list[ArtifactCandidate]:
        """ノート → 録音の順で転送対象を返す。"""

        return [*self.notes, *self.recordings]


_DATE_PATTERN = re.compile(r"^(\d{4}-\d{2}-\d{2})")


@dataclass(slots=True)
class MeetingRecord:
    """``meetings`` テーブル 1 行分の読み取りモデル。"""

    id: int
    title: str
    folder_name: str
    start_time: str
    notes_content: str = ""
    upload_status: UploadStatus = UploadStatus.PENDING
    uploaded_at: int | None = None
    gdrive_folder_id: str | None = None
    created_at: int | None = None
    session_ids: tuple[int, ...] = ()

    @classmethod
    def from_mapping(
        cls, row: Mapping[str, Any], *, session_ids: tuple[int, ...] = ()
    ) -> "MeetingRecord":
        raw_status = str(row.get("upload_status") or UploadStatus.PENDING.value)
        try:
            status = UploadStatus(raw_status)
        except ValueError:
            status = UploadStatus.PENDING
        return cls(
            id=int(row["id"]),
            title=str(row.get("title") or ""),
            folder_name=str(row.get("folder_name") or ""),
            start_time=str(row.get("start_time") or ""),
            notes_content=str(row.get("notes_content") or ""),
            upload_status=status,
            uploaded_at=_coerce_optional_int(row.get("uploaded_at")),
            gdrive_folder_id=row.get("gdrive_folder_id") or None,
            created_at=_coerce_optional_int(row.get("created_at")),
            session_ids=tuple(session_ids),
        )

    @property
    def date_bucket(self) -> str:
        """``start_time`` の日付部分（``YYYY-MM-DD``）。"""

        match = _DATE_PATTERN.match(self.start_time.strip())
        if match is None:
            raise ValueError(f"Meeting {self.id} has no usable start_time: {self.start_time!r}")
        return match.group(1)

    @property
    def folder_key(self) -> str:
        """ローカル・リモート双方で使う会議フォルダ名。"""

        if self.folder_name.strip():
            return self.folder_name.strip()
        return sanitize_folder_name(self.title, default=f"meeting-{self.id}")


def _coerce_optional_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
