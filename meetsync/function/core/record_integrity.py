"""Detect and repair upload-state anomalies in the meetings table."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from .content_validator import ContentValidator
from .sync_types import MeetingRecord

__all__ = [
    "IntegrityAnomaly",
    "find_integrity_anomalies",
    "repair_integrity_anomalies",
]

logger = logging.getLogger(__name__)

COMPLETED_BEFORE_CREATED = "completed_before_created"
COMPLETED_WITHOUT_FOLDER = "completed_without_folder"
NO_CONTENT_WITH_CONTENT = "no_content_with_content"


@dataclass(slots=True, frozen=True)
class IntegrityAnomaly:
    meeting_id: int
    kind: str
    detail: str

    def to_dict(self) -> dict[str, Any]:
        return {"meetingId": self.meeting_id, "kind": self.kind, "detail": self.detail}


def find_integrity_anomalies(db: Any, validator: ContentValidator) -> list[IntegrityAnomaly]:
    """Return meetings whose upload status contradicts the stored data.

    ``completed`` rows must carry a folder id and an ``uploaded_at`` no earlier
    than ``created_at``. ``no_content`` rows must have no completed recordings
    and no local files; note text kept only in the database is allowed.
    """

    anomalies: list[IntegrityAnomaly] = []

    for row in db.fetch_inconsistent_completed_meetings():
        meeting_id = int(row["id"])
        if not row.get("gdrive_folder_id"):
            anomalies.append(
                IntegrityAnomaly(meeting_id, COMPLETED_WITHOUT_FOLDER, "completed without a Drive folder id")
            )
        else:
            anomalies.append(
                IntegrityAnomaly(
                    meeting_id,
                    COMPLETED_BEFORE_CREATED,
                    f"uploaded_at={row.get('uploaded_at')} created_at={row.get('created_at')}",
                )
            )

    flagged: set[int] = set()
    for row in db.fetch_no_content_meetings_with_recordings():
        meeting_id = int(row["id"])
        flagged.add(meeting_id)
        anomalies.append(
            IntegrityAnomaly(meeting_id, NO_CONTENT_WITH_CONTENT, "completed recordings exist")
        )

    for row in db.fetch_meetings_by_upload_status("no_content"):
        meeting_id = int(row["id"])
        if meeting_id in flagged:
            continue
        recordings = db.get_recordings_for_record(meeting_id)
        session_ids = tuple(int(rec["id"]) for rec in recordings)
        record = MeetingRecord.from_mapping(row, session_ids=session_ids)
        result = validator.validate(record, recordings)
        if result.files:
            anomalies.append(
                IntegrityAnomaly(
                    meeting_id,
                    NO_CONTENT_WITH_CONTENT,
                    f"{len(result.files)} local file(s) found",
                )
            )

    for anomaly in anomalies:
        logger.warning("Integrity anomaly: meeting=%s kind=%s (%s)", anomaly.meeting_id, anomaly.kind, anomaly.detail)
    return anomalies


def repair_integrity_anomalies(
    db: Any, worker: Any, anomalies: Iterable[IntegrityAnomaly]
) -> list[int]:
    """Reset each anomalous meeting to ``pending`` and enqueue it again."""

    repaired: list[int] = []
    for meeting_id in dict.fromkeys(anomaly.meeting_id for anomaly in anomalies):
        db.reset_upload_status(meeting_id)
        worker.enqueue_upload(meeting_id)
        repaired.append(meeting_id)
        logger.info("Reset meeting %s to pending for re-upload", meeting_id)
    return repaired
