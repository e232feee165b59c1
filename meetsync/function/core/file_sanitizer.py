"""Utility helpers for creating filesystem-safe folder names."""

from __future__ import annotations

import re

__all__ = ["sanitize_folder_name", "significant_words"]

_INVALID_PATTERN = re.compile(r"[^0-9a-z._-]+")
_SEPARATOR_PATTERN = re.compile(r"-{2,}")
_DEFAULT_NAME = "meeting"


def sanitize_folder_name(
    name: str | None, *, default: str = _DEFAULT_NAME, max_length: int = 96
) -> str:
    """Return a lower-case slug usable as a meeting folder name."""

    candidate = (name or "").strip().lower()
    if not candidate:
        return default
    sanitized = _INVALID_PATTERN.sub("-", candidate)
    sanitized = _SEPARATOR_PATTERN.sub("-", sanitized).strip("._-")
    if not sanitized:
        return default
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length].rstrip("._-")
    return sanitized


def significant_words(title: str | None, *, min_length: int = 4) -> list[str]:
    """Return lower-cased title words long enough to identify a renamed folder."""

    words = re.split(r"\s+", (title or "").strip().lower())
    return [word for word in words if len(word) >= min_length]
