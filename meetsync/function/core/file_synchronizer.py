"""Upload one artifact, replacing any remote copy with the same name."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

from .sync_types import ArtifactCandidate, ArtifactKind, TransientUploadError

__all__ = ["FileBackend", "FileSynchronizer", "media_type_for"]

logger = logging.getLogger(__name__)

_AUDIO_MEDIA_TYPES = {
    ".opus": "audio/opus",
    ".m4a": "audio/mp4",
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
}


def media_type_for(candidate: ArtifactCandidate) -> str:
    if candidate.kind is ArtifactKind.NOTE:
        return "text/markdown"
    return _AUDIO_MEDIA_TYPES.get(Path(candidate.name).suffix.lower(), "audio/opus")


class FileBackend(Protocol):
    def find_files(self, name: str, parent_id: str) -> list[dict[str, Any]]: ...

    def delete_file(self, file_id: str) -> None: ...

    def upload_file(
        self, path: Path | str, name: str, parent_id: str, *, mimetype: str
    ) -> dict[str, Any]: ...


class FileSynchronizer:
    """Delete-then-create replacement of a single remote file.

    Drive only guarantees atomic create and delete, so a failure between the
    two leaves the file absent remotely until the worker retries the meeting.
    """

    def __init__(self, backend: FileBackend) -> None:
        self._backend = backend

    def sync_file(self, candidate: ArtifactCandidate, folder_id: str) -> str:
        for existing in self._backend.find_files(candidate.name, folder_id):
            logger.info("Deleting existing remote copy of %s (%s)", candidate.name, existing["id"])
            self._backend.delete_file(str(existing["id"]))

        response = self._backend.upload_file(
            candidate.path,
            candidate.name,
            folder_id,
            mimetype=media_type_for(candidate),
        )
        file_id = str(response.get("id") or "")
        if not file_id:
            raise TransientUploadError(f"Upload of {candidate.name} returned no file id")
        logger.info(
            "Uploaded %s (%.2f MB) as %s", candidate.name, candidate.size / 1024 / 1024, file_id
        )
        return file_id
