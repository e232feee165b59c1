"""Locate the on-disk directories that may hold a meeting's artifacts.

Meeting folders live under ``<assets>/<YYYY-MM-DD>/<folder_name>``. Users rename
titles (and therefore folders) after recording has started, so resolution falls
back from the canonical folder to heuristic matches instead of failing:

1. the canonical ``folder_key`` directory under the date bucket;
2. sibling directories holding a file that embeds one of the meeting's
   recording session ids (``...-session42.opus``);
3. sibling directories whose name contains a significant title word.

:func:`resolve_candidate_directories` is pure and works on a listing mapping
each sub-directory name to its file names; :func:`scan_date_bucket` is the only
function here that touches the filesystem.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from .file_sanitizer import significant_words
from .sync_types import MeetingRecord

__all__ = [
    "DirectoryListing",
    "directories_with_session_files",
    "embedded_session_id",
    "resolve_candidate_directories",
    "scan_date_bucket",
    "session_id_in_name",
]

logger = logging.getLogger(__name__)

DirectoryListing = Mapping[str, Sequence[str]]

_SESSION_PATTERN = re.compile(r"session(\d+)", re.IGNORECASE)


def session_id_in_name(filename: str) -> int | None:
    """Return the first session id embedded in *filename*, if any."""

    match = _SESSION_PATTERN.search(filename)
    return int(match.group(1)) if match else None


def embedded_session_id(filename: str, session_ids: Iterable[int]) -> int | None:
    """Return the session id embedded in *filename* when it belongs to *session_ids*."""

    wanted = set(session_ids)
    for match in _SESSION_PATTERN.finditer(filename):
        value = int(match.group(1))
        if value in wanted:
            return value
    return None


def directories_with_session_files(
    bucket_root: Path, listing: DirectoryListing, session_ids: Iterable[int]
) -> list[Path]:
    """Return sub-directories of *bucket_root* holding a file for one of *session_ids*."""

    ids = tuple(session_ids)
    if not ids:
        return []
    matches: list[Path] = []
    for dir_name in sorted(listing):
        if any(embedded_session_id(name, ids) is not None for name in listing[dir_name]):
            matches.append(bucket_root / dir_name)
    return matches


def resolve_candidate_directories(
    record: MeetingRecord, bucket_root: Path, listing: DirectoryListing
) -> list[Path]:
    """Return candidate directories for *record*, most likely first.

    The canonical directory is always first even when it does not exist;
    callers decide whether a candidate holds anything.
    """

    ordered: list[Path] = [bucket_root / record.folder_key]
    ordered.extend(directories_with_session_files(bucket_root, listing, record.session_ids))

    words = significant_words(record.title)
    if words:
        for dir_name in sorted(listing):
            lowered = dir_name.lower()
            if any(word in lowered for word in words):
                ordered.append(bucket_root / dir_name)

    seen: set[Path] = set()
    unique: list[Path] = []
    for path in ordered:
        if path in seen:
            continue
        seen.add(path)
        unique.append(path)
    return unique


def scan_date_bucket(bucket_root: Path) -> dict[str, list[str]]:
    """Read the sub-directories of *bucket_root* and the files they contain."""

    listing: dict[str, list[str]] = {}
    if not bucket_root.is_dir():
        return listing
    try:
        children = sorted(bucket_root.iterdir())
    except OSError:
        logger.warning("Could not scan date bucket %s", bucket_root, exc_info=True)
        return listing
    for child in children:
        if not child.is_dir():
            continue
        try:
            listing[child.name] = sorted(entry.name for entry in child.iterdir() if entry.is_file())
        except OSError:
            logger.warning("Could not list %s", child, exc_info=True)
    return listing
