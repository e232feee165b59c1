"""SQLite データベース管理モジュール（MeetSync 用）

このモジュールは、アップロード同期エンジンが利用する SQLite データベースへの
アクセスを一元化します。ワーカーや UI 層は辞書（dict）ベースのデータだけを扱い、
SQL や ``sqlite3.Row`` を意識せずに済むようにしています。

主な保管対象:
- 会議情報とアップロード状態（`meetings`）
- 録音セッション（`recording_sessions`）
- 永続アップロードキュー（`upload_queue`）

設計のポイント:
- 外部キー制約を常時有効化（`PRAGMA foreign_keys = ON`）。
- タイムスタンプは **UNIX エポック秒（INTEGER）** で保存。
- キュー行の取得（claim）は `UPDATE ... WHERE status = 'pending'` の 1 文で行い、
  SQLite のトランザクション保証だけで二重処理を防ぐ。
- スキーマ更新は `MIGRATION_CHAIN` の順方向マイグレーションで適用。
"""

from __future__ import annotations

import sqlite3
import time
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from packaging.version import Version

from meetsync.function.core import paths
from meetsync.function.core.sync_types import QueueStatus, UploadStatus

from .cmn_logger import log_error


MigrationFunc = Callable[[sqlite3.Connection], None]
MigrationStep = tuple[Version, Version, MigrationFunc]

BASE_SCHEMA_VERSION = Version("1.0.0")
DB_FILE_NAME = "meetsync.sqlite3"

_UPLOAD_STATUS_VALUES = ", ".join(f"'{status.value}'" for status in UploadStatus)
_QUEUE_STATUS_VALUES = ", ".join(f"'{status.value}'" for status in QueueStatus)

_BASE_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS db_metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS meetings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    folder_name TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT,
    notes_content TEXT NOT NULL DEFAULT '',
    upload_status TEXT NOT NULL DEFAULT 'pending'
        CHECK (upload_status IN ({_UPLOAD_STATUS_VALUES})),
    uploaded_at INTEGER,
    gdrive_folder_id TEXT,
    created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
    updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
);

CREATE TABLE IF NOT EXISTS recording_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    meeting_id INTEGER NOT NULL,
    temp_path TEXT,
    final_path TEXT,
    started_at TEXT,
    ended_at TEXT,
    duration REAL,
    completed INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY(meeting_id) REFERENCES meetings(id)
        ON DELETE CASCADE
        ON UPDATE CASCADE
);

CREATE TABLE IF NOT EXISTS upload_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    meeting_id INTEGER NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ({_QUEUE_STATUS_VALUES})),
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
    updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
    FOREIGN KEY(meeting_id) REFERENCES meetings(id)
        ON DELETE CASCADE
        ON UPDATE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_meetings_start_time ON meetings(start_time);
CREATE INDEX IF NOT EXISTS idx_meetings_upload_status ON meetings(upload_status);
CREATE INDEX IF NOT EXISTS idx_recording_sessions_meeting_id ON recording_sessions(meeting_id);
"""


def migrate_100_to_110(connection: sqlite3.Connection) -> None:
    """Track the one free retry granted to partial uploads (v1.1.0)."""

    if not DatabaseManager._column_exists(connection, "upload_queue", "partial_retries"):
        connection.execute(
            "ALTER TABLE upload_queue ADD COLUMN partial_retries INTEGER NOT NULL DEFAULT 0"
        )
    connection.execute(
        "CREATE INDEX IF NOT EXISTS idx_upload_queue_status ON upload_queue(status, created_at)"
    )


MIGRATION_CHAIN: list[MigrationStep] = [
    (Version("1.0.0"), Version("1.1.0"), migrate_100_to_110),
]

SCHEMA_VERSION = MIGRATION_CHAIN[-1][1]


class DatabaseError(RuntimeError):
    """DB 操作時の想定外エラーを表す基底例外。"""


class RecordNotFoundError(DatabaseError):
    """指定した会議が存在しないことを表す例外。"""


class DatabaseManager:
    """アプリ用 SQLite データベースのユーティリティラッパー。

    Parameters
    ----------
    db_path: Optional[Path | str]
        データベースファイルのパス。未指定時はユーザーデータ配下の
        ``db/meetsync.sqlite3`` を使用。ディレクトリを渡した場合は、その直下に
        既定名で作成します。
    """

    def __init__(self, db_path: Optional[Path | str] = None) -> None:
        if db_path is None:
            db_path = paths.database_dir() / DB_FILE_NAME
        else:
            db_path = Path(db_path)
            if db_path.is_dir():
                db_path = db_path / DB_FILE_NAME

        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # 低レベルヘルパー
    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        """SQLite コネクションを生成して返します。

        - 行ファクトリを `sqlite3.Row` に設定（列名アクセスを可能に）
        - 外部キー制約を ON
        - ワーカースレッドと UI スレッドが同時に触れるため待機タイムアウトを長めに取る
        """
        connection = sqlite3.connect(self._db_path, timeout=30)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """トランザクションを伴う安全な実行ブロックを提供します。

        例外発生時は自動でロールバック、正常終了時はコミットします。
        """
        connection = self._connect()
        try:
            yield connection
            connection.commit()
        except sqlite3.DatabaseError as exc:
            connection.rollback()
            log_error("Database transaction failed", exc, db_path=str(self._db_path))
            raise DatabaseError("Database transaction failed") from exc
        except Exception:
            connection.rollback()
            raise
        finally:
            connection.close()

    def _fetch_all(self, query: str, params: tuple[object, ...] = ()) -> list[dict[str, object]]:
        try:
            with closing(self._connect()) as connection:
                rows = connection.execute(query, params).fetchall()
        except sqlite3.DatabaseError as exc:
            log_error("Database query failed", exc, query=query, params=params)
            raise DatabaseError("Database query failed") from exc
        return [dict(row) for row in rows]

    def _fetch_one(self, query: str, params: tuple[object, ...] = ()) -> dict[str, object] | None:
        rows = self._fetch_all(query, params)
        return rows[0] if rows else None

    @staticmethod
    def _now() -> int:
        return int(time.time())

    # ------------------------------------------------------------------
    # DB ライフサイクル管理
    # ------------------------------------------------------------------
    @property
    def db_path(self) -> Path:
        """現在使用している DB ファイルのパス（情報表示用）。"""
        return self._db_path

    def ensure_database(self) -> Version:
        """スキーマを作成し、必要なマイグレーションを適用してバージョンを返します。"""

        with self.transaction() as connection:
            connection.executescript(_BASE_SCHEMA)
            connection.execute(
                "INSERT OR IGNORE INTO db_metadata (key, value) VALUES ('schema_version', ?)",
                (str(BASE_SCHEMA_VERSION),),
            )
        current = self.get_schema_version()
        if current < SCHEMA_VERSION:
            reached = self.migrate_semver_chain(current, SCHEMA_VERSION)
            self.set_schema_version(reached)
            return reached
        return current

    def migrate_semver_chain(self, current: Version, target: Version) -> Version:
        """定義済みのセマンティックバージョン遷移チェーンを順番に実行します。"""

        while current < target:
            step = next((item for item in MIGRATION_CHAIN if item[0] == current), None)
            if step is None:
                raise DatabaseError(f"No migration step found from {current}")
            _, next_version, migration = step
            with self.transaction() as connection:
                migration(connection)
            current = next_version
        return current

    def get_schema_version(self) -> Version:
        value = self.get_metadata("schema_version", str(BASE_SCHEMA_VERSION))
        try:
            return Version(str(value))
        except ValueError:
            return BASE_SCHEMA_VERSION

    def set_schema_version(self, version: Version) -> None:
        self.set_metadata("schema_version", str(version))

    def get_metadata(self, key: str, default: str | None = None) -> str | None:
        row = self._fetch_one("SELECT value FROM db_metadata WHERE key = ?", (key,))
        if row is None:
            return default
        return str(row["value"])

    def set_metadata(self, key: str, value: str) -> None:
        with self.transaction() as connection:
            connection.execute(
                "INSERT OR REPLACE INTO db_metadata (key, value) VALUES (?, ?)",
                (key, value),
            )

    # ------------------------------------------------------------------
    # 会議・録音（上流ワークフローから書き込まれる）
    # ------------------------------------------------------------------
    def create_meeting(
        self,
        title: str,
        folder_name: str,
        start_time: str,
        *,
        end_time: str | None = None,
        notes_content: str = "",
        created_at: int | None = None,
    ) -> int:
        """会議を登録し ID を返します。"""

        created = int(created_at) if created_at is not None else self._now()
        with self.transaction() as connection:
            cursor = connection.execute(
                """
                INSERT INTO meetings (
                    title, folder_name, start_time, end_time, notes_content,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (title, folder_name, start_time, end_time, notes_content or "", created, created),
            )
            return int(cursor.lastrowid)

    def update_notes_content(self, meeting_id: int, notes_content: str) -> None:
        with self.transaction() as connection:
            cursor = connection.execute(
                "UPDATE meetings SET notes_content = ?, updated_at = ? WHERE id = ?",
                (notes_content or "", self._now(), meeting_id),
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(f"Meeting {meeting_id} not found")

    def record_recording(
        self,
        meeting_id: int,
        final_path: Path | str | None,
        *,
        duration: float | None = None,
        completed: bool = True,
        started_at: str | None = None,
        session_id: int | None = None,
    ) -> int:
        """録音セッションを登録してセッション ID を返します。"""

        path_text = str(Path(final_path)) if final_path else None
        with self.transaction() as connection:
            cursor = connection.execute(
                """
                INSERT INTO recording_sessions (
                    id, meeting_id, final_path, started_at, duration, completed
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (session_id, meeting_id, path_text, started_at, duration, int(bool(completed))),
            )
            return int(cursor.lastrowid)

    def get_record_by_id(self, meeting_id: int) -> dict[str, object] | None:
        """会議 1 件を辞書で返します。存在しなければ ``None``。"""

        return self._fetch_one("SELECT * FROM meetings WHERE id = ?", (meeting_id,))

    def get_recordings_for_record(
        self, meeting_id: int, *, completed_only: bool = False
    ) -> list[dict[str, object]]:
        """会議に紐付く録音セッションを ID 順で返します。"""

        query = "SELECT * FROM recording_sessions WHERE meeting_id = ?"
        if completed_only:
            query += " AND completed = 1"
        return self._fetch_all(query + " ORDER BY id", (meeting_id,))

    def fetch_meetings_by_upload_status(self, *statuses: UploadStatus | str) -> list[dict[str, object]]:
        values = tuple(UploadStatus(status).value for status in statuses)
        if not values:
            return self._fetch_all("SELECT * FROM meetings ORDER BY start_time, id")
        placeholders = ", ".join("?" for _ in values)
        return self._fetch_all(
            f"SELECT * FROM meetings WHERE upload_status IN ({placeholders}) ORDER BY start_time, id",
            values,
        )

    # ------------------------------------------------------------------
    # アップロード状態（meetings 上の非正規化カラム）
    # ------------------------------------------------------------------
    def set_upload_status(
        self,
        meeting_id: int,
        status: UploadStatus | str,
        remote_folder_ref: str | None = None,
    ) -> None:
        """会議のアップロード状態を更新します。

        ``completed`` の場合はフォルダ ID が必須で、``uploaded_at`` は会議の
        ``created_at`` を下回らないよう補正して記録します。
        """

        status = UploadStatus(status)
        now = self._now()
        with self.transaction() as connection:
            row = connection.execute(
                "SELECT created_at FROM meetings WHERE id = ?", (meeting_id,)
            ).fetchone()
            if row is None:
                raise RecordNotFoundError(f"Meeting {meeting_id} not found")

            if status is UploadStatus.COMPLETED:
                if not remote_folder_ref:
                    raise DatabaseError("completed status requires a remote folder reference")
                uploaded_at = max(now, int(row["created_at"] or 0))
                connection.execute(
                    """
                    UPDATE meetings
                    SET upload_status = ?, uploaded_at = ?, gdrive_folder_id = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (status.value, uploaded_at, remote_folder_ref, now, meeting_id),
                )
            else:
                connection.execute(
                    "UPDATE meetings SET upload_status = ?, updated_at = ? WHERE id = ?",
                    (status.value, now, meeting_id),
                )

    def reset_upload_status(self, meeting_id: int) -> None:
        """完了情報を消去して ``pending`` に戻します（整合性修復用）。"""

        with self.transaction() as connection:
            cursor = connection.execute(
                """
                UPDATE meetings
                SET upload_status = 'pending', uploaded_at = NULL, gdrive_folder_id = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (self._now(), meeting_id),
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(f"Meeting {meeting_id} not found")

    def get_upload_status(self, meeting_id: int) -> dict[str, object]:
        row = self._fetch_one(
            "SELECT upload_status, uploaded_at, gdrive_folder_id FROM meetings WHERE id = ?",
            (meeting_id,),
        )
        return row or {"upload_status": UploadStatus.PENDING.value, "uploaded_at": None, "gdrive_folder_id": None}

    # ------------------------------------------------------------------
    # アップロードキュー
    # ------------------------------------------------------------------
    def add_to_upload_queue(self, meeting_id: int) -> bool:
        """キューへ ``pending`` 行を追加します。

        既に ``pending`` / ``processing`` の行がある場合は何もしません。終端状態の
        行は試行回数をリセットして ``pending`` に戻します。状態が変わった場合に
        ``True`` を返します。
        """

        now = self._now()
        with self.transaction() as connection:
            cursor = connection.execute(
                """
                INSERT OR IGNORE INTO upload_queue (meeting_id, status, attempts, created_at, updated_at)
                VALUES (?, 'pending', 0, ?, ?)
                """,
                (meeting_id, now, now),
            )
            if cursor.rowcount:
                return True
            cursor = connection.execute(
                """
                UPDATE upload_queue
                SET status = 'pending', attempts = 0, partial_retries = 0, last_error = NULL,
                    created_at = ?, updated_at = ?
                WHERE meeting_id = ? AND status IN ('completed', 'failed')
                """,
                (now, now, meeting_id),
            )
            return bool(cursor.rowcount)

    def fetch_upload_queue(self, status: QueueStatus | str | None = None) -> list[dict[str, object]]:
        """キュー行を古い順に返します。"""

        if status is None:
            return self._fetch_all("SELECT * FROM upload_queue ORDER BY created_at, id")
        return self._fetch_all(
            "SELECT * FROM upload_queue WHERE status = ? ORDER BY created_at, id",
            (QueueStatus(status).value,),
        )

    def fetch_upload_queue_item(self, meeting_id: int) -> dict[str, object] | None:
        return self._fetch_one("SELECT * FROM upload_queue WHERE meeting_id = ?", (meeting_id,))

    def claim_upload_item(self, meeting_id: int) -> dict[str, object] | None:
        """``pending`` 行を ``processing`` に遷移させ、成功した場合のみ行を返します。"""

        with self.transaction() as connection:
            cursor = connection.execute(
                """
                UPDATE upload_queue
                SET status = 'processing', updated_at = ?
                WHERE meeting_id = ? AND status = 'pending'
                """,
                (self._now(), meeting_id),
            )
            if cursor.rowcount == 0:
                return None
            row = connection.execute(
                "SELECT * FROM upload_queue WHERE meeting_id = ?", (meeting_id,)
            ).fetchone()
            return dict(row) if row is not None else None

    def update_upload_queue_item(
        self,
        meeting_id: int,
        *,
        status: QueueStatus | str | None = None,
        attempts: int | None = None,
        partial_retries: int | None = None,
        last_error: str | None = None,
    ) -> None:
        """キュー行を部分更新します。``last_error=""`` はエラーの消去を意味します。"""

        updates: list[str] = []
        params: list[object] = []
        if status is not None:
            updates.append("status = ?")
            params.append(QueueStatus(status).value)
        if attempts is not None:
            updates.append("attempts = ?")
            params.append(int(attempts))
        if partial_retries is not None:
            updates.append("partial_retries = ?")
            params.append(int(partial_retries))
        if last_error is not None:
            updates.append("last_error = ?")
            params.append(last_error or None)

        if not updates:
            return

        updates.append("updated_at = ?")
        params.append(self._now())
        params.append(meeting_id)
        query = f"UPDATE upload_queue SET {', '.join(updates)} WHERE meeting_id = ?"

        with self.transaction() as connection:
            cursor = connection.execute(query, tuple(params))
            if cursor.rowcount == 0:
                raise DatabaseError(f"Upload queue item for meeting {meeting_id} not found")

    def reset_processing_upload_items(self) -> list[int]:
        """クラッシュで ``processing`` のまま残った行を ``pending`` に戻します。"""

        with self.transaction() as connection:
            rows = connection.execute(
                "SELECT meeting_id FROM upload_queue WHERE status = 'processing'"
            ).fetchall()
            meeting_ids = [int(row["meeting_id"]) for row in rows]
            if meeting_ids:
                connection.execute(
                    "UPDATE upload_queue SET status = 'pending', updated_at = ? WHERE status = 'processing'",
                    (self._now(),),
                )
        return meeting_ids

    def fetch_meetings_needing_upload(self) -> list[dict[str, object]]:
        """起動時リカバリの対象となる会議を返します。

        キュー行を持たない未完了の会議と、キュー処理は終わったが会議側が
        ``pending`` または ``no_content`` の会議が対象です。後者は後からノートが
        書き出された場合に備えて再検証します。
        """

        return self._fetch_all(
            """
            SELECT m.*
            FROM meetings m
            LEFT JOIN upload_queue q ON q.meeting_id = m.id
            WHERE m.upload_status != 'completed'
              AND (
                q.id IS NULL
                OR (q.status = 'completed' AND m.upload_status IN ('pending', 'no_content'))
              )
            ORDER BY m.start_time, m.id
            """
        )

    # ------------------------------------------------------------------
    # 整合性チェック用クエリ
    # ------------------------------------------------------------------
    def fetch_inconsistent_completed_meetings(self) -> list[dict[str, object]]:
        """``completed`` なのにフォルダ ID や時刻の整合しない会議を返します。"""

        return self._fetch_all(
            """
            SELECT * FROM meetings
            WHERE upload_status = 'completed'
              AND (
                uploaded_at IS NULL
                OR uploaded_at < created_at
                OR gdrive_folder_id IS NULL
                OR gdrive_folder_id = ''
              )
            ORDER BY id
            """
        )

    def fetch_no_content_meetings_with_recordings(self) -> list[dict[str, object]]:
        return self._fetch_all(
            """
            SELECT DISTINCT m.*
            FROM meetings m
            INNER JOIN recording_sessions r ON r.meeting_id = m.id
            WHERE m.upload_status = 'no_content' AND r.completed = 1
            ORDER BY m.id
            """
        )

    # ------------------------------------------------------------------
    # ヘルスチェック・フォルダ整合用クエリ
    # ------------------------------------------------------------------
    def get_recording_session(self, session_id: int) -> dict[str, object] | None:
        return self._fetch_one("SELECT * FROM recording_sessions WHERE id = ?", (session_id,))

    def update_recording_path(self, session_id: int, final_path: Path | str) -> None:
        """録音セッションの ``final_path`` を実際の配置場所に合わせます。"""

        with self.transaction() as connection:
            cursor = connection.execute(
                "UPDATE recording_sessions SET final_path = ? WHERE id = ?",
                (str(Path(final_path)), session_id),
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(f"Recording session {session_id} not found")

    def update_meeting_folder_name(self, meeting_id: int, folder_name: str) -> None:
        with self.transaction() as connection:
            cursor = connection.execute(
                "UPDATE meetings SET folder_name = ?, updated_at = ? WHERE id = ?",
                (folder_name, self._now(), meeting_id),
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(f"Meeting {meeting_id} not found")

    def fetch_failed_meetings_before(self, cutoff: int, *, limit: int = 10) -> list[dict[str, object]]:
        """``cutoff`` より前に ``failed`` となった会議を新しい順に返します。"""

        return self._fetch_all(
            """
            SELECT * FROM meetings
            WHERE upload_status = 'failed' AND updated_at < ?
            ORDER BY start_time DESC, id DESC
            LIMIT ?
            """,
            (int(cutoff), int(limit)),
        )

    def fetch_stuck_uploading_meetings(self, cutoff: int) -> list[dict[str, object]]:
        """``cutoff`` 以降更新されていない ``uploading`` の会議を返します。"""

        return self._fetch_all(
            """
            SELECT * FROM meetings
            WHERE upload_status = 'uploading' AND updated_at < ?
            ORDER BY id
            """,
            (int(cutoff),),
        )

    def fetch_orphaned_recordings(self) -> list[dict[str, object]]:
        """会議が存在しない録音セッションを返します。

        外部キー制約は有効ですが、制約なしで書き込まれた旧データでは残り得ます。
        """

        return self._fetch_all(
            """
            SELECT r.*
            FROM recording_sessions r
            LEFT JOIN meetings m ON m.id = r.meeting_id
            WHERE m.id IS NULL
            ORDER BY r.id
            """
        )

    @staticmethod
    def _column_exists(
        connection: sqlite3.Connection, table_name: str, column_name: str
    ) -> bool:
        """指定テーブルにカラムが存在するか確認します。"""
        try:
            cursor = connection.execute(f"PRAGMA table_info({table_name})")
        except sqlite3.DatabaseError:
            return False
        for row in cursor.fetchall():
            # (cid, name, type, notnull, dflt_value, pk)
            if len(row) > 1 and row[1] == column_name:
                return True
        return False


__all__ = [
    "DatabaseError",
    "DatabaseManager",
    "MIGRATION_CHAIN",
    "RecordNotFoundError",
    "SCHEMA_VERSION",
]
