"""Find-or-create the ``root / date / meeting`` folder hierarchy on Drive."""

from __future__ import annotations

import logging
from typing import Any, Protocol

__all__ = ["DEFAULT_ROOT_FOLDER", "FolderBackend", "RemoteFolderProvisioner"]

logger = logging.getLogger(__name__)

DEFAULT_ROOT_FOLDER = "Notes"


class FolderBackend(Protocol):
    def find_folders(self, name: str, parent_id: str | None = None) -> list[dict[str, Any]]: ...

    def create_folder(self, name: str, parent_id: str | None = None) -> str: ...


class RemoteFolderProvisioner:
    """Idempotent folder provisioning built on query-before-create.

    Folder ids are never cached locally: a crash halfway through simply
    re-resolves the same folders on the next attempt. Two truly concurrent
    callers can still both miss the query and create a duplicate; with a
    single upload worker that does not happen in practice.
    """

    def __init__(self, backend: FolderBackend, *, root_name: str = DEFAULT_ROOT_FOLDER) -> None:
        self._backend = backend
        self.root_name = root_name or DEFAULT_ROOT_FOLDER

    def ensure_folder(self, name: str, parent_id: str | None = None) -> str:
        existing = self._backend.find_folders(name, parent_id)
        if existing:
            folder_id = str(existing[0]["id"])
            if len(existing) > 1:
                logger.warning(
                    "Found %d folders named %r under %s; using %s",
                    len(existing),
                    name,
                    parent_id or "<root>",
                    folder_id,
                )
            logger.debug("Found existing folder %r (%s)", name, folder_id)
            return folder_id

        folder_id = self._backend.create_folder(name, parent_id)
        logger.info("Created folder %r (%s) under %s", name, folder_id, parent_id or "<root>")
        return folder_id

    def ensure_record_folder(self, date_bucket: str, record_key: str) -> str:
        """Return the id of ``<root>/<date_bucket>/<record_key>``."""

        root_id = self.ensure_folder(self.root_name)
        date_id = self.ensure_folder(date_bucket, root_id)
        return self.ensure_folder(record_key, date_id)
