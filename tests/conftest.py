from __future__ import annotations

import itertools
import time
from pathlib import Path
from typing import Any, Callable

import pytest

from meetsync.function.cmn_database import DatabaseManager
from meetsync.function.core import paths
from meetsync.function.core.config_handler import UploadSettings
from meetsync.function.core.content_validator import ContentValidator
from meetsync.function.core.status_notifier import StatusNotifier
from meetsync.function.core.upload_worker import UploadWorker


class FakeDrive:
    """In-memory stand-in for ``DriveService``."""

    def __init__(self) -> None:
        self.folders: dict[str, dict[str, Any]] = {}
        self.files: dict[str, dict[str, Any]] = {}
        self.upload_failures: dict[str, list[Exception]] = {}
        self.auth_failures: list[Exception] = []
        self.calls: list[tuple[Any, ...]] = []
        self._ids = itertools.count(1)

    def authenticate(self) -> None:
        self.calls.append(("authenticate",))
        if self.auth_failures:
            raise self.auth_failures.pop(0)

    def find_folders(self, name: str, parent_id: str | None = None) -> list[dict[str, Any]]:
        self.calls.append(("find_folders", name, parent_id))
        return [
            {"id": folder_id, "name": folder["name"]}
            for folder_id, folder in self.folders.items()
            if folder["name"] == name and folder["parent"] == parent_id
        ]

    def create_folder(self, name: str, parent_id: str | None = None) -> str:
        folder_id = f"folder-{next(self._ids)}"
        self.calls.append(("create_folder", name, parent_id))
        self.folders[folder_id] = {"name": name, "parent": parent_id}
        return folder_id

    def find_files(self, name: str, parent_id: str) -> list[dict[str, Any]]:
        self.calls.append(("find_files", name, parent_id))
        return [
            {"id": file_id, "name": entry["name"]}
            for file_id, entry in self.files.items()
            if entry["name"] == name and entry["parent"] == parent_id
        ]

    def delete_file(self, file_id: str) -> None:
        self.calls.append(("delete_file", file_id))
        self.files.pop(file_id)

    def upload_file(self, path: Path | str, name: str, parent_id: str, *, mimetype: str) -> dict[str, Any]:
        self.calls.append(("upload_file", name, parent_id, mimetype))
        failures = self.upload_failures.get(name)
        if failures:
            raise failures.pop(0)
        file_id = f"file-{next(self._ids)}"
        self.files[file_id] = {
            "name": name,
            "parent": parent_id,
            "mimetype": mimetype,
            "content": Path(path).read_bytes(),
        }
        return {"id": file_id, "name": name}

    def folder_path(self, folder_id: str) -> str:
        parts: list[str] = []
        current: str | None = folder_id
        while current is not None:
            folder = self.folders[current]
            parts.append(folder["name"])
            current = folder["parent"]
        return "/".join(reversed(parts))

    def file_names(self, folder_id: str) -> list[str]:
        return sorted(entry["name"] for entry in self.files.values() if entry["parent"] == folder_id)

    def uploaded_names(self) -> list[str]:
        return [call[1] for call in self.calls if call[0] == "upload_file"]


@pytest.fixture(autouse=True)
def _isolated_user_data(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MEETSYNC_HOME", str(tmp_path / "userdata"))
    paths.user_data_root.cache_clear()
    yield
    paths.user_data_root.cache_clear()


@pytest.fixture()
def db(tmp_path: Path) -> DatabaseManager:
    manager = DatabaseManager(tmp_path / "meetsync.sqlite3")
    manager.ensure_database()
    return manager


@pytest.fixture()
def assets_root(tmp_path: Path) -> Path:
    root = tmp_path / "assets"
    root.mkdir()
    return root


@pytest.fixture()
def write_asset(assets_root: Path) -> Callable[..., Path]:
    def _write(date: str, folder: str, name: str, content: bytes = b"data") -> Path:
        target = assets_root / date / folder / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return target

    return _write


@pytest.fixture()
def fake_drive() -> FakeDrive:
    return FakeDrive()


@pytest.fixture()
def events() -> dict[str, list[dict[str, Any]]]:
    return {"status": [], "auth": []}


@pytest.fixture()
def notifier(events: dict[str, list[dict[str, Any]]]) -> StatusNotifier:
    instance = StatusNotifier(use_eel=False)
    instance.subscribe(events["status"].append)
    instance.subscribe_auth_required(events["auth"].append)
    return instance


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def make_worker(
    db: DatabaseManager,
    assets_root: Path,
    fake_drive: FakeDrive,
    notifier: StatusNotifier,
    sleeps: list[float],
) -> Callable[..., UploadWorker]:
    def _make(**overrides: Any) -> UploadWorker:
        options: dict[str, Any] = {
            "notifier": notifier,
            "settings": UploadSettings(),
            "sleep": sleeps.append,
            "background": False,
        }
        options.update(overrides)
        return UploadWorker(db, ContentValidator(assets_root), fake_drive, **options)

    return _make


@pytest.fixture()
def worker(make_worker: Callable[..., UploadWorker]) -> UploadWorker:
    return make_worker()


@pytest.fixture()
def future_epoch() -> int:
    return int(time.time()) + 3600
