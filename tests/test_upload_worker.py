from __future__ import annotations

from pathlib import Path

import pytest

from meetsync.function.cmn_database import DatabaseError
from meetsync.function.core import paths
from meetsync.function.core.config_handler import UploadSettings
from meetsync.function.core.sync_types import AuthExpiredError, TransientUploadError

DATE = "2024-03-01"


def _meeting(db, title="Weekly Standup", folder="weekly-standup", **kwargs) -> int:
    return db.create_meeting(title, folder, f"{DATE}T09:30:00", **kwargs)


def _statuses(events, meeting_id):
    return [event["status"] for event in events["status"] if event["recordId"] == meeting_id]


def test_enqueue_uploads_notes_before_recordings(db, worker, fake_drive, write_asset, events, future_epoch):
    meeting_id = _meeting(db, created_at=future_epoch)
    session_id = db.record_recording(meeting_id, None, duration=61.5)
    write_asset(DATE, "weekly-standup", f"audio-session{session_id}.opus")
    write_asset(DATE, "weekly-standup", "notes.md", b"# Standup")

    assert worker.enqueue_upload(meeting_id) is True

    record = db.get_record_by_id(meeting_id)
    assert record["upload_status"] == "completed"
    assert record["uploaded_at"] >= record["created_at"]
    assert fake_drive.folder_path(record["gdrive_folder_id"]) == f"Notes/{DATE}/weekly-standup"
    assert fake_drive.file_names(record["gdrive_folder_id"]) == [
        f"audio-session{session_id}.opus",
        "notes.md",
    ]
    assert fake_drive.uploaded_names() == ["notes.md", f"audio-session{session_id}.opus"]

    item = db.fetch_upload_queue_item(meeting_id)
    assert item["status"] == "completed"
    assert item["attempts"] == 0
    assert _statuses(events, meeting_id) == ["pending", "uploading", "completed"]
    assert all("timestamp" in event for event in events["status"])


def test_enqueue_skips_completed_meeting(db, worker, fake_drive, write_asset):
    meeting_id = _meeting(db)
    write_asset(DATE, "weekly-standup", "notes.md")
    db.set_upload_status(meeting_id, "completed", "folder-x")

    assert worker.enqueue_upload(meeting_id) is False
    assert db.fetch_upload_queue_item(meeting_id) is None
    assert fake_drive.calls == []


def test_enqueue_unknown_meeting_returns_false(worker):
    assert worker.enqueue_upload(999) is False


def test_enqueue_while_pending_keeps_single_row(db, make_worker, write_asset):
    meeting_id = _meeting(db)
    write_asset(DATE, "weekly-standup", "notes.md")
    db.add_to_upload_queue(meeting_id)
    db.claim_upload_item(meeting_id)

    worker = make_worker()
    assert worker.enqueue_upload(meeting_id) is False
    assert len(db.fetch_upload_queue()) == 1
    assert db.fetch_upload_queue_item(meeting_id)["status"] == "processing"


def test_transient_failures_stop_after_three_attempts(db, worker, fake_drive, write_asset, sleeps, events):
    meeting_id = _meeting(db)
    write_asset(DATE, "weekly-standup", "notes.md")
    fake_drive.upload_failures["notes.md"] = [TransientUploadError(f"boom {n}") for n in range(5)]

    worker.enqueue_upload(meeting_id)

    item = db.fetch_upload_queue_item(meeting_id)
    assert item["status"] == "failed"
    assert item["attempts"] == 3
    assert "boom 2" in item["last_error"]
    assert db.get_record_by_id(meeting_id)["upload_status"] == "failed"
    assert sleeps == [2.0, 4.0]
    assert fake_drive.uploaded_names().count("notes.md") == 3
    assert _statuses(events, meeting_id)[-1] == "failed"
    assert any(paths.log_dir().glob("*.log"))


def test_two_failures_then_success_keeps_attempt_count(db, make_worker, fake_drive, write_asset):
    meeting_id = _meeting(db)
    write_asset(DATE, "weekly-standup", "notes.md")
    fake_drive.upload_failures["notes.md"] = [
        TransientUploadError("first outage"),
        TransientUploadError("second outage"),
    ]
    snapshots: list[dict] = []

    def _sleep(delay: float) -> None:
        snapshots.append(dict(db.fetch_upload_queue_item(meeting_id), delay=delay))

    worker = make_worker(sleep=_sleep)
    worker.enqueue_upload(meeting_id)

    assert [snap["attempts"] for snap in snapshots] == [1, 2]
    assert [snap["delay"] for snap in snapshots] == [2.0, 4.0]
    assert "second outage" in snapshots[-1]["last_error"]
    assert snapshots[-1]["status"] == "pending"

    item = db.fetch_upload_queue_item(meeting_id)
    assert item["status"] == "completed"
    assert item["attempts"] == 2
    assert db.get_record_by_id(meeting_id)["upload_status"] == "completed"


def test_auth_expiry_stops_drain_without_charging_attempts(db, worker, fake_drive, write_asset, events):
    first = _meeting(db, title="Design Review", folder="design-review")
    second = _meeting(db, title="Retro Meeting", folder="retro-meeting")
    write_asset(DATE, "design-review", "notes.md")
    write_asset(DATE, "retro-meeting", "notes.md")
    fake_drive.auth_failures.append(AuthExpiredError("token revoked"))

    worker.enqueue_upload(first)

    assert worker.auth_required is True
    item = db.fetch_upload_queue_item(first)
    assert item["status"] == "pending"
    assert item["attempts"] == 0
    assert db.get_record_by_id(first)["upload_status"] == "pending"
    assert events["auth"] == [{"recordId": first}]

    worker.enqueue_upload(second)
    assert db.fetch_upload_queue_item(second)["status"] == "pending"
    assert fake_drive.uploaded_names() == []

    worker.resume()

    assert worker.auth_required is False
    for meeting_id in (first, second):
        assert db.fetch_upload_queue_item(meeting_id)["status"] == "completed"
        assert db.fetch_upload_queue_item(meeting_id)["attempts"] == 0
        assert db.get_record_by_id(meeting_id)["upload_status"] == "completed"


def test_auth_expiry_during_file_upload_is_not_partial(db, worker, fake_drive, write_asset):
    meeting_id = _meeting(db)
    write_asset(DATE, "weekly-standup", "notes.md")
    write_asset(DATE, "weekly-standup", "audio.opus")
    fake_drive.upload_failures["audio.opus"] = [AuthExpiredError("401")]

    worker.enqueue_upload(meeting_id)

    item = db.fetch_upload_queue_item(meeting_id)
    assert item["status"] == "pending"
    assert item["attempts"] == 0
    assert item["partial_retries"] == 0
    assert db.get_record_by_id(meeting_id)["upload_status"] == "pending"


def test_partial_upload_gets_one_free_retry(db, worker, fake_drive, write_asset, sleeps, events):
    meeting_id = _meeting(db)
    write_asset(DATE, "weekly-standup", "notes.md")
    write_asset(DATE, "weekly-standup", "audio.opus")
    fake_drive.upload_failures["audio.opus"] = [TransientUploadError("connection reset")]

    worker.enqueue_upload(meeting_id)

    assert sleeps == [5.0]
    item = db.fetch_upload_queue_item(meeting_id)
    assert item["status"] == "completed"
    assert item["attempts"] == 0
    assert item["partial_retries"] == 0
    assert "partial" in _statuses(events, meeting_id)

    folder_id = db.get_record_by_id(meeting_id)["gdrive_folder_id"]
    assert fake_drive.file_names(folder_id) == ["audio.opus", "notes.md"]


def test_second_partial_counts_as_failure(db, worker, fake_drive, write_asset, sleeps):
    meeting_id = _meeting(db)
    write_asset(DATE, "weekly-standup", "notes.md")
    write_asset(DATE, "weekly-standup", "audio.opus")
    fake_drive.upload_failures["audio.opus"] = [TransientUploadError("reset") for _ in range(4)]

    worker.enqueue_upload(meeting_id)

    assert sleeps == [5.0, 2.0, 4.0]
    item = db.fetch_upload_queue_item(meeting_id)
    assert item["status"] == "failed"
    assert item["attempts"] == 3
    assert db.get_record_by_id(meeting_id)["upload_status"] == "failed"


def test_meeting_without_content_is_marked_no_content(db, worker, fake_drive, events):
    meeting_id = _meeting(db, notes_content='{"ops":[{"insert":"\\n"}]}')

    worker.enqueue_upload(meeting_id)

    assert db.get_record_by_id(meeting_id)["upload_status"] == "no_content"
    assert db.fetch_upload_queue_item(meeting_id)["status"] == "completed"
    assert ("authenticate",) not in fake_drive.calls
    assert _statuses(events, meeting_id) == ["pending", "uploading", "no_content"]


def test_database_notes_only_is_no_content_until_exported(db, make_worker, fake_drive, write_asset, events):
    meeting_id = _meeting(db, notes_content="Agenda: hiring plan")
    worker = make_worker()

    worker.enqueue_upload(meeting_id)

    assert db.get_record_by_id(meeting_id)["upload_status"] == "no_content"
    item = db.fetch_upload_queue_item(meeting_id)
    assert item["status"] == "completed"
    assert "database" in item["last_error"]
    assert fake_drive.uploaded_names() == []
    assert _statuses(events, meeting_id) == ["pending", "uploading", "no_content"]

    write_asset(DATE, "weekly-standup", "notes.md")
    summary = make_worker().recover_on_startup()

    assert summary["enqueued"] == [meeting_id]
    assert db.get_record_by_id(meeting_id)["upload_status"] == "completed"
    assert fake_drive.uploaded_names() == ["notes.md"]


def test_no_content_meeting_without_files_is_not_requeued(db, make_worker):
    meeting_id = _meeting(db, notes_content="Agenda: hiring plan")
    make_worker().enqueue_upload(meeting_id)

    summary = make_worker().recover_on_startup()

    assert summary == {"reset": [], "enqueued": []}
    assert db.get_record_by_id(meeting_id)["upload_status"] == "no_content"



def test_startup_recovery_resumes_interrupted_upload(db, make_worker, fake_drive, write_asset):
    meeting_id = _meeting(db)
    write_asset(DATE, "weekly-standup", "notes.md")
    db.add_to_upload_queue(meeting_id)
    db.claim_upload_item(meeting_id)
    db.set_upload_status(meeting_id, "uploading")

    summary = make_worker().recover_on_startup()

    assert summary["reset"] == [meeting_id]
    assert db.fetch_upload_queue_item(meeting_id)["status"] == "completed"
    assert db.get_record_by_id(meeting_id)["upload_status"] == "completed"


def test_startup_recovery_only_enqueues_meetings_with_files(db, make_worker, write_asset):
    with_files = _meeting(db, title="Planning", folder="planning")
    without_files = _meeting(db, title="Empty", folder="empty")
    done = _meeting(db, title="Done", folder="done")
    write_asset(DATE, "planning", "notes.md")
    write_asset(DATE, "done", "notes.md")
    db.set_upload_status(done, "completed", "folder-done")

    summary = make_worker().recover_on_startup()

    assert summary == {"reset": [], "enqueued": [with_files]}
    assert db.fetch_upload_queue_item(without_files) is None
    assert db.fetch_upload_queue_item(done) is None


def test_renamed_folder_uploads_under_canonical_name(db, worker, fake_drive, write_asset):
    meeting_id = _meeting(db, title="Quarterly Budget", folder="quarterly-budget")
    session_id = db.record_recording(meeting_id, None)
    write_asset(DATE, "budget-q3-renamed", f"rec-session{session_id}.opus")

    worker.enqueue_upload(meeting_id)

    record = db.get_record_by_id(meeting_id)
    assert record["upload_status"] == "completed"
    assert fake_drive.folder_path(record["gdrive_folder_id"]) == f"Notes/{DATE}/quarterly-budget"


def test_reenqueue_after_failure_resets_attempts(db, worker, fake_drive, write_asset):
    meeting_id = _meeting(db)
    write_asset(DATE, "weekly-standup", "notes.md")
    fake_drive.upload_failures["notes.md"] = [TransientUploadError("down") for _ in range(3)]
    worker.enqueue_upload(meeting_id)
    assert db.fetch_upload_queue_item(meeting_id)["status"] == "failed"

    assert worker.enqueue_upload(meeting_id) is True

    item = db.fetch_upload_queue_item(meeting_id)
    assert item["status"] == "completed"
    assert item["attempts"] == 0


def test_drain_is_single_flight(db, make_worker, fake_drive, write_asset):
    meeting_id = _meeting(db)
    write_asset(DATE, "weekly-standup", "notes.md")
    fake_drive.upload_failures["notes.md"] = [TransientUploadError("slow")]
    nested: list[bool] = []
    holder: dict[str, object] = {}

    def _sleep(_: float) -> None:
        nested.append(holder["worker"].drain())

    worker = make_worker(sleep=_sleep)
    holder["worker"] = worker
    worker.enqueue_upload(meeting_id)

    assert nested == [False]
    assert worker.is_draining is False
    assert db.fetch_upload_queue_item(meeting_id)["status"] == "completed"


def test_custom_retry_settings(db, make_worker, fake_drive, write_asset, sleeps):
    meeting_id = _meeting(db)
    write_asset(DATE, "weekly-standup", "notes.md")
    fake_drive.upload_failures["notes.md"] = [TransientUploadError("x") for _ in range(2)]
    worker = make_worker(settings=UploadSettings(max_retries=2, backoff_base_sec=0.5, root_folder_name="Meetings"))

    worker.enqueue_upload(meeting_id)

    assert sleeps == [1.0]
    assert db.fetch_upload_queue_item(meeting_id)["status"] == "failed"
    assert fake_drive.find_folders("Meetings")


def test_queue_status_lists_processing_first(db, worker, write_asset):
    older = _meeting(db, title="Older", folder="older")
    newer = _meeting(db, title="Newer", folder="newer")
    db.add_to_upload_queue(older)
    db.add_to_upload_queue(newer)
    db.claim_upload_item(newer)

    status = worker.get_queue_status()

    assert status["queueLength"] == 2
    assert status["isUploading"] is False
    assert status["authRequired"] is False
    assert [entry["meetingId"] for entry in status["queue"]] == [newer, older]
    assert status["queue"][0]["status"] == "processing"


def test_background_drain_completes(db, make_worker, write_asset):
    meeting_id = _meeting(db)
    write_asset(DATE, "weekly-standup", "notes.md")
    worker = make_worker(background=True)

    worker.enqueue_upload(meeting_id)
    worker.join(timeout=10)

    assert db.get_record_by_id(meeting_id)["upload_status"] == "completed"


def test_startup_recovery_replaces_files_already_on_drive(db, make_worker, fake_drive, write_asset):
    meeting_id = _meeting(db)
    notes = write_asset(DATE, "weekly-standup", "notes.md", b"# Final notes")
    write_asset(DATE, "weekly-standup", "audio.opus", b"opus")
    root_id = fake_drive.create_folder("Notes")
    date_id = fake_drive.create_folder(DATE, root_id)
    folder_id = fake_drive.create_folder("weekly-standup", date_id)
    stale = fake_drive.upload_file(notes, "notes.md", folder_id, mimetype="text/markdown")
    db.add_to_upload_queue(meeting_id)
    db.claim_upload_item(meeting_id)
    db.set_upload_status(meeting_id, "uploading")

    summary = make_worker().recover_on_startup()

    assert summary["reset"] == [meeting_id]
    assert ("delete_file", stale["id"]) in fake_drive.calls
    assert fake_drive.uploaded_names() == ["notes.md", "notes.md", "audio.opus"]
    assert fake_drive.file_names(folder_id) == ["audio.opus", "notes.md"]
    record = db.get_record_by_id(meeting_id)
    assert record["upload_status"] == "completed"
    assert record["gdrive_folder_id"] == folder_id


def test_meeting_without_sessions_ignores_other_meetings_recordings(db, worker, fake_drive, write_asset):
    budget = _meeting(db, title="Budget Sync", folder="budget-sync")
    for filler in range(3):
        _meeting(db, title=f"Filler {filler}", folder=f"filler-{filler}")
    other = _meeting(db, title="Other Topic", folder="other-topic")
    assert other == 5
    db.record_recording(budget, None, session_id=5)
    write_asset(DATE, "budget-sync", "rec-session5.opus")

    worker.enqueue_upload(other)

    assert fake_drive.uploaded_names() == []
    assert db.get_record_by_id(other)["upload_status"] == "no_content"


def test_recording_found_by_registered_session_id(db, worker, fake_drive, write_asset):
    meeting_id = _meeting(db, title="Design Review", folder="design-review")
    db.record_recording(meeting_id, None, session_id=42)
    write_asset(DATE, "zz-moved", "call-session42.opus")

    worker.enqueue_upload(meeting_id)

    record = db.get_record_by_id(meeting_id)
    assert record["upload_status"] == "completed"
    assert fake_drive.uploaded_names() == ["call-session42.opus"]
    assert fake_drive.folder_path(record["gdrive_folder_id"]) == f"Notes/{DATE}/design-review"


def test_database_error_while_recording_failure_releases_item(db, worker, fake_drive, write_asset, monkeypatch):
    meeting_id = _meeting(db)
    write_asset(DATE, "weekly-standup", "notes.md")
    fake_drive.upload_failures["notes.md"] = [TransientUploadError("timeout")]
    original = db.update_upload_queue_item
    raised: list[bool] = []

    def _update(meeting, **kwargs):
        if "attempts" in kwargs and not raised:
            raised.append(True)
            raise DatabaseError("database is locked")
        return original(meeting, **kwargs)

    monkeypatch.setattr(db, "update_upload_queue_item", _update)

    worker.enqueue_upload(meeting_id)

    assert raised == [True]
    item = db.fetch_upload_queue_item(meeting_id)
    assert item["status"] == "pending"
    assert item["attempts"] == 0
    assert "database is locked" in item["last_error"]
    assert worker.is_draining is False
    assert fake_drive.uploaded_names() == ["notes.md"]
    assert any(paths.log_dir().glob("*.log"))


def test_reset_stuck_upload_requeues_and_uploads(db, worker, write_asset, events):
    meeting_id = _meeting(db)
    write_asset(DATE, "weekly-standup", "notes.md")
    db.add_to_upload_queue(meeting_id)
    db.claim_upload_item(meeting_id)
    db.set_upload_status(meeting_id, "uploading")

    assert worker.reset_stuck_upload(meeting_id) is True

    assert _statuses(events, meeting_id)[0] == "pending"
    assert db.fetch_upload_queue_item(meeting_id)["status"] == "completed"
    assert db.get_record_by_id(meeting_id)["upload_status"] == "completed"


def test_reset_stuck_upload_leaves_active_item_alone(db, worker, fake_drive, write_asset):
    meeting_id = _meeting(db)
    write_asset(DATE, "weekly-standup", "notes.md")
    upload = fake_drive.upload_file
    results: list[bool] = []

    def _upload(path, name, parent_id, *, mimetype):
        results.append(worker.reset_stuck_upload(meeting_id))
        return upload(path, name, parent_id, mimetype=mimetype)

    fake_drive.upload_file = _upload

    worker.enqueue_upload(meeting_id)

    assert results == [False]
    assert db.fetch_upload_queue_item(meeting_id)["status"] == "completed"
