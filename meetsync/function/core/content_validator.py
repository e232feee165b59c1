"""Decide whether a meeting has anything to upload and enumerate the files."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

from .directory_resolver import (
    DirectoryListing,
    embedded_session_id,
    resolve_candidate_directories,
    scan_date_bucket,
)
from .sync_types import ArtifactCandidate, ArtifactKind, MeetingRecord, ValidationResult

__all__ = [
    "DEFAULT_AUDIO_EXTENSIONS",
    "DEFAULT_NOTE_EXTENSIONS",
    "ContentValidator",
    "is_trivial_notes",
]

logger = logging.getLogger(__name__)

DEFAULT_NOTE_EXTENSIONS: tuple[str, ...] = (".md", ".markdown")
DEFAULT_AUDIO_EXTENSIONS: tuple[str, ...] = (".opus", ".m4a", ".wav", ".mp3", ".audio")

_TRIVIAL_SENTINELS = {"", "{}", "[]", "null"}


def is_trivial_notes(text: str | None) -> bool:
    """Return ``True`` for empty note text or an empty-object/array sentinel.

    An editor delta whose inserts are all whitespace counts as empty too.
    """

    stripped = (text or "").strip()
    if stripped in _TRIVIAL_SENTINELS:
        return True
    if not stripped.startswith(("{", "[")):
        return False
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return False
    ops = payload.get("ops") if isinstance(payload, Mapping) else payload
    if not isinstance(ops, list):
        return not payload
    for op in ops:
        insert = op.get("insert") if isinstance(op, Mapping) else op
        if not isinstance(insert, str) or insert.strip():
            return False
    return True


def _normalise_extensions(values: Iterable[str]) -> tuple[str, ...]:
    result = []
    for value in values:
        text = str(value).strip().lower()
        if not text:
            continue
        result.append(text if text.startswith(".") else f".{text}")
    return tuple(result)


class ContentValidator:
    """Inspect resolved directories (plus database note text) for uploadable content."""

    def __init__(
        self,
        assets_root: Path | str,
        *,
        note_extensions: Iterable[str] = DEFAULT_NOTE_EXTENSIONS,
        audio_extensions: Iterable[str] = DEFAULT_AUDIO_EXTENSIONS,
        scanner: Callable[[Path], DirectoryListing] | None = None,
    ) -> None:
        self.assets_root = Path(assets_root)
        self.note_extensions = _normalise_extensions(note_extensions)
        self.audio_extensions = _normalise_extensions(audio_extensions)
        self._scanner = scanner or scan_date_bucket

    def classify(self, filename: str) -> ArtifactKind | None:
        lowered = filename.lower()
        if lowered.endswith(self.note_extensions):
            return ArtifactKind.NOTE
        if lowered.endswith(self.audio_extensions):
            return ArtifactKind.AUDIO
        return None

    def validate(
        self,
        record: MeetingRecord,
        recordings: Sequence[Mapping[str, Any]] = (),
    ) -> ValidationResult:
        result = ValidationResult()
        try:
            bucket_root = self.assets_root / record.date_bucket
        except ValueError as exc:
            result.issues.append(str(exc))
            bucket_root = None

        if bucket_root is not None:
            listing = self._scanner(bucket_root)
            directories = resolve_candidate_directories(record, bucket_root, listing)
            self._collect(record, directories, listing, recordings, result)

        if not result.notes and not result.recordings:
            result.has_database_notes = not is_trivial_notes(record.notes_content)
            if result.has_database_notes:
                logger.info("Meeting %s has notes in the database only", record.id)

        logger.debug(
            "Validated meeting %s: notes=%d recordings=%d issues=%d",
            record.id,
            len(result.notes),
            len(result.recordings),
            len(result.issues),
        )
        return result

    def _collect(
        self,
        record: MeetingRecord,
        directories: list[Path],
        listing: DirectoryListing,
        recordings: Sequence[Mapping[str, Any]],
        result: ValidationResult,
    ) -> None:
        canonical = directories[0]
        durations = _durations_by_name(recordings)
        seen: set[Path] = set()

        for directory in directories:
            for name in listing.get(directory.name, ()):
                kind = self.classify(name)
                if kind is None:
                    continue
                path = directory / name
                if path in seen:
                    continue
                seen.add(path)
                try:
                    size = path.stat().st_size
                except OSError:
                    result.issues.append(f"unreadable: {directory.name}/{name}")
                    continue

                candidate = ArtifactCandidate(
                    name=name,
                    path=path,
                    size=size,
                    kind=kind,
                    duration=durations.get(name) if kind is ArtifactKind.AUDIO else None,
                )
                if kind is ArtifactKind.NOTE:
                    result.notes.append(candidate)
                else:
                    result.recordings.append(candidate)

                if directory != canonical:
                    if embedded_session_id(name, record.session_ids) is not None:
                        issue = f"foundBySessionId: {directory.name}/{name}"
                    else:
                        issue = f"foundOutsideCanonical: {directory.name}/{name}"
                    result.issues.append(issue)
                    logger.warning("Meeting %s: %s", record.id, issue)


def _durations_by_name(recordings: Sequence[Mapping[str, Any]]) -> dict[str, float]:
    durations: dict[str, float] = {}
    for row in recordings:
        final_path = row.get("final_path")
        duration = row.get("duration")
        if not final_path or duration in (None, ""):
            continue
        try:
            durations[Path(str(final_path)).name] = float(duration)
        except (TypeError, ValueError):
            continue
    return durations
