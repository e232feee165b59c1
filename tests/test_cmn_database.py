import sqlite3
import time
from pathlib import Path

import pytest
from packaging.version import Version

from meetsync.function import DatabaseError, DatabaseManager, RecordNotFoundError
from meetsync.function.cmn_database import SCHEMA_VERSION
from meetsync.function.core import paths


@pytest.fixture()
def temp_db(tmp_path: Path) -> Path:
    return tmp_path / "meetsync.sqlite3"


def _columns(manager: DatabaseManager, table: str) -> set[str]:
    with manager._connect() as connection:
        return {row["name"] for row in connection.execute(f"PRAGMA table_info({table})")}


def test_ensure_database_creates_schema_and_migrates(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)

    version = manager.ensure_database()

    assert version == SCHEMA_VERSION == Version("1.1.0")
    assert manager.get_schema_version() == SCHEMA_VERSION
    assert "partial_retries" in _columns(manager, "upload_queue")
    assert {"upload_status", "uploaded_at", "gdrive_folder_id"} <= _columns(manager, "meetings")


def test_ensure_database_preserves_existing_rows(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)
    manager.ensure_database()
    meeting_id = manager.create_meeting("Sync", "sync", "2024-01-02T10:00:00")

    manager.ensure_database()

    assert manager.get_record_by_id(meeting_id)["title"] == "Sync"


def test_migration_from_legacy_queue_table(temp_db: Path) -> None:
    with sqlite3.connect(temp_db) as connection:
        connection.executescript(
            """
            CREATE TABLE db_metadata (key TEXT PRIMARY KEY, value TEXT NOT NULL DEFAULT '');
            INSERT INTO db_metadata (key, value) VALUES ('schema_version', '1.0.0');
            CREATE TABLE meetings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                folder_name TEXT NOT NULL,
                start_time TEXT NOT NULL,
                end_time TEXT,
                notes_content TEXT NOT NULL DEFAULT '',
                upload_status TEXT NOT NULL DEFAULT 'pending',
                uploaded_at INTEGER,
                gdrive_folder_id TEXT,
                created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
            );
            CREATE TABLE upload_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                meeting_id INTEGER NOT NULL UNIQUE,
                status TEXT NOT NULL DEFAULT 'pending',
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
            );
            INSERT INTO meetings (title, folder_name, start_time) VALUES ('Legacy', 'legacy', '2023-12-01T08:00:00');
            INSERT INTO upload_queue (meeting_id, status, attempts) VALUES (1, 'pending', 2);
            """
        )

    manager = DatabaseManager(temp_db)
    assert manager.ensure_database() == SCHEMA_VERSION

    item = manager.fetch_upload_queue_item(1)
    assert item["attempts"] == 2
    assert item["partial_retries"] == 0


def test_default_location_uses_user_data_dir() -> None:
    manager = DatabaseManager()
    assert manager.db_path.parent == paths.database_dir()


def test_add_to_upload_queue_is_idempotent_until_terminal(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)
    manager.ensure_database()
    meeting_id = manager.create_meeting("Sync", "sync", "2024-01-02T10:00:00")

    assert manager.add_to_upload_queue(meeting_id) is True
    assert manager.add_to_upload_queue(meeting_id) is False
    assert manager.claim_upload_item(meeting_id) is not None
    assert manager.add_to_upload_queue(meeting_id) is False

    manager.update_upload_queue_item(
        meeting_id, status="failed", attempts=3, partial_retries=1, last_error="down"
    )
    assert manager.add_to_upload_queue(meeting_id) is True

    item = manager.fetch_upload_queue_item(meeting_id)
    assert item["status"] == "pending"
    assert item["attempts"] == 0
    assert item["partial_retries"] == 0
    assert item["last_error"] is None
    assert len(manager.fetch_upload_queue()) == 1


def test_claim_upload_item_only_succeeds_once(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)
    manager.ensure_database()
    meeting_id = manager.create_meeting("Sync", "sync", "2024-01-02T10:00:00")
    manager.add_to_upload_queue(meeting_id)

    first = manager.claim_upload_item(meeting_id)
    second = manager.claim_upload_item(meeting_id)

    assert first is not None and first["status"] == "processing"
    assert second is None


def test_fetch_upload_queue_orders_oldest_first(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)
    manager.ensure_database()
    first = manager.create_meeting("A", "a", "2024-01-02T10:00:00")
    second = manager.create_meeting("B", "b", "2024-01-02T11:00:00")
    manager.add_to_upload_queue(second)
    manager.add_to_upload_queue(first)
    with manager.transaction() as connection:
        connection.execute("UPDATE upload_queue SET created_at = 100 WHERE meeting_id = ?", (first,))
        connection.execute("UPDATE upload_queue SET created_at = 200 WHERE meeting_id = ?", (second,))

    pending = manager.fetch_upload_queue("pending")

    assert [item["meeting_id"] for item in pending] == [first, second]


def test_set_upload_status_completed_never_precedes_creation(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)
    manager.ensure_database()
    created_at = int(time.time()) + 86_400
    meeting_id = manager.create_meeting("Future", "future", "2024-01-02T10:00:00", created_at=created_at)

    manager.set_upload_status(meeting_id, "completed", "folder-1")

    record = manager.get_record_by_id(meeting_id)
    assert record["upload_status"] == "completed"
    assert record["gdrive_folder_id"] == "folder-1"
    assert record["uploaded_at"] == created_at


def test_set_upload_status_completed_requires_folder(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)
    manager.ensure_database()
    meeting_id = manager.create_meeting("Sync", "sync", "2024-01-02T10:00:00")

    with pytest.raises(DatabaseError):
        manager.set_upload_status(meeting_id, "completed")
    assert manager.get_record_by_id(meeting_id)["upload_status"] == "pending"


def test_set_upload_status_unknown_meeting(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)
    manager.ensure_database()

    with pytest.raises(RecordNotFoundError):
        manager.set_upload_status(404, "failed")
    with pytest.raises(ValueError):
        manager.set_upload_status(404, "bogus")


def test_reset_upload_status_clears_completion(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)
    manager.ensure_database()
    meeting_id = manager.create_meeting("Sync", "sync", "2024-01-02T10:00:00")
    manager.set_upload_status(meeting_id, "completed", "folder-1")

    manager.reset_upload_status(meeting_id)

    status = manager.get_upload_status(meeting_id)
    assert status == {"upload_status": "pending", "uploaded_at": None, "gdrive_folder_id": None}


def test_reset_processing_upload_items(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)
    manager.ensure_database()
    stuck = manager.create_meeting("Stuck", "stuck", "2024-01-02T10:00:00")
    waiting = manager.create_meeting("Waiting", "waiting", "2024-01-02T11:00:00")
    manager.add_to_upload_queue(stuck)
    manager.add_to_upload_queue(waiting)
    manager.claim_upload_item(stuck)

    assert manager.reset_processing_upload_items() == [stuck]
    assert {item["status"] for item in manager.fetch_upload_queue()} == {"pending"}
    assert manager.reset_processing_upload_items() == []


def test_recordings_and_notes_accessors(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)
    manager.ensure_database()
    meeting_id = manager.create_meeting("Sync", "sync", "2024-01-02T10:00:00")
    done = manager.record_recording(meeting_id, "/tmp/sync/a-session1.opus", duration=12.0)
    manager.record_recording(meeting_id, None, completed=False)
    manager.update_notes_content(meeting_id, "# Notes")

    assert [row["id"] for row in manager.get_recordings_for_record(meeting_id, completed_only=True)] == [done]
    assert len(manager.get_recordings_for_record(meeting_id)) == 2
    assert manager.get_record_by_id(meeting_id)["notes_content"] == "# Notes"
    with pytest.raises(RecordNotFoundError):
        manager.update_notes_content(999, "x")


def test_fetch_meetings_by_upload_status(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)
    manager.ensure_database()
    first = manager.create_meeting("A", "a", "2024-01-02T10:00:00")
    second = manager.create_meeting("B", "b", "2024-01-02T11:00:00")
    manager.set_upload_status(second, "no_content")

    assert [row["id"] for row in manager.fetch_meetings_by_upload_status("no_content")] == [second]
    assert [row["id"] for row in manager.fetch_meetings_by_upload_status()] == [first, second]


def test_transaction_wraps_sqlite_errors(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)
    manager.ensure_database()

    with pytest.raises(DatabaseError):
        with manager.transaction() as connection:
            connection.execute("INSERT INTO meetings (title) VALUES ('missing columns')")

    assert any(paths.log_dir().glob("*.log"))
    assert manager.fetch_meetings_by_upload_status() == []


def test_queue_rows_follow_meeting_deletion(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)
    manager.ensure_database()
    meeting_id = manager.create_meeting("Sync", "sync", "2024-01-02T10:00:00")
    manager.add_to_upload_queue(meeting_id)

    with manager.transaction() as connection:
        connection.execute("DELETE FROM meetings WHERE id = ?", (meeting_id,))

    assert manager.fetch_upload_queue() == []


def test_recording_path_and_folder_updates(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)
    manager.ensure_database()
    meeting_id = manager.create_meeting("Sync", "sync", "2024-01-02T10:00:00")
    session_id = manager.record_recording(meeting_id, "/tmp/sync/a-session1.opus")

    manager.update_recording_path(session_id, Path("/tmp/sync-v2/a-session1.opus"))
    manager.update_meeting_folder_name(meeting_id, "sync-v2")

    assert manager.get_recording_session(session_id)["final_path"] == str(Path("/tmp/sync-v2/a-session1.opus"))
    assert manager.get_record_by_id(meeting_id)["folder_name"] == "sync-v2"
    assert manager.get_recording_session(999) is None
    with pytest.raises(RecordNotFoundError):
        manager.update_recording_path(999, "/tmp/x.opus")
    with pytest.raises(RecordNotFoundError):
        manager.update_meeting_folder_name(999, "x")


def test_maintenance_queries_use_update_time(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)
    manager.ensure_database()
    failed = manager.create_meeting("Failed", "failed", "2024-01-02T10:00:00")
    stuck = manager.create_meeting("Stuck", "stuck", "2024-01-02T11:00:00")
    manager.set_upload_status(failed, "failed")
    manager.set_upload_status(stuck, "uploading")
    now = int(time.time())

    assert manager.fetch_failed_meetings_before(now - 60) == []
    assert [row["id"] for row in manager.fetch_failed_meetings_before(now + 60)] == [failed]
    assert manager.fetch_failed_meetings_before(now + 60, limit=0) == []
    assert manager.fetch_stuck_uploading_meetings(now - 60) == []
    assert [row["id"] for row in manager.fetch_stuck_uploading_meetings(now + 60)] == [stuck]


def test_no_content_meetings_are_rechecked_after_queue_completion(temp_db: Path) -> None:
    manager = DatabaseManager(temp_db)
    manager.ensure_database()
    meeting_id = manager.create_meeting("Notes", "notes", "2024-01-02T10:00:00")
    manager.add_to_upload_queue(meeting_id)
    manager.update_upload_queue_item(meeting_id, status="completed")
    manager.set_upload_status(meeting_id, "no_content")

    assert [row["id"] for row in manager.fetch_meetings_needing_upload()] == [meeting_id]

    manager.update_upload_queue_item(meeting_id, status="failed")
    assert manager.fetch_meetings_needing_upload() == []
