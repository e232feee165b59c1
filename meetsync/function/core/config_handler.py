"""アプリ設定を ``app_settings.json`` に保存・読込するためのヘルパー群。"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, MutableMapping

from . import paths
from .content_validator import DEFAULT_AUDIO_EXTENSIONS, DEFAULT_NOTE_EXTENSIONS
from .folder_provisioner import DEFAULT_ROOT_FOLDER

__all__ = [
    "DEFAULT_APP_SETTINGS",
    "DriveSettings",
    "LoggingSettings",
    "MaintenanceSettings",
    "StorageSettings",
    "UploadSettings",
    "load_app_settings",
    "load_storage_settings",
    "load_upload_settings",
    "save_app_settings",
]


_LOGGER = logging.getLogger(__name__)


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    """Normalize loose truthy values to :class:`bool`."""

    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if not text:
        return default
    return text in {"1", "true", "yes", "on"}


def _coerce_int(value: Any, *, default: int, minimum: int = 0) -> int:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return number if number >= minimum else default


def _coerce_float(value: Any, *, default: float, minimum: float = 0.0) -> float:
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return default
    return number if number >= minimum else default


def _coerce_extensions(value: Any, default: Iterable[str]) -> tuple[str, ...]:
    if isinstance(value, str):
        items = [part for part in value.split(",")]
    elif isinstance(value, (list, tuple)):
        items = [str(part) for part in value]
    else:
        return tuple(default)
    normalized = []
    for item in items:
        text = item.strip().lower()
        if not text:
            continue
        normalized.append(text if text.startswith(".") else f".{text}")
    return tuple(normalized) or tuple(default)


DEFAULT_APP_SETTINGS: dict[str, Any] = {
    "logging": {
        "debug_mode": False,
    },
    "upload": {
        "max_retries": 3,
        "backoff_base_sec": 1.0,
        "partial_retry_delay_sec": 5.0,
        "root_folder_name": DEFAULT_ROOT_FOLDER,
        "note_extensions": list(DEFAULT_NOTE_EXTENSIONS),
        "audio_extensions": list(DEFAULT_AUDIO_EXTENSIONS),
    },
    "storage": {
        "assets_root": "",
    },
    "maintenance": {
        "health_check_interval_sec": 3600,
        "failed_retry_after_sec": 3600,
        "stuck_upload_after_sec": 1800,
        "reconcile_interval_sec": 300,
    },
    "drive": {
        "client_secret_path": "",
        "client_id": "",
        "client_secret": "",
        "oauth_redirect_port": 8765,
    },
}


@dataclass(slots=True)
class LoggingSettings:
    """アプリのデバッグ設定を保持するデータクラス。"""

    debug_mode: bool = False

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "LoggingSettings":
        return cls(debug_mode=_coerce_bool(mapping.get("debug_mode"), default=False))

    def to_dict(self) -> dict[str, Any]:
        return {"debug_mode": self.debug_mode}


@dataclass(slots=True)
class UploadSettings:
    """アップロードキューの再試行・命名設定。

    ``max_retries`` は 1 以上、遅延は 0 以上に丸めます。不正値は既定値へ
    フォールバックし、設定ミスでワーカーが停止しないようにします。
    """

    max_retries: int = 3
    backoff_base_sec: float = 1.0
    partial_retry_delay_sec: float = 5.0
    root_folder_name: str = DEFAULT_ROOT_FOLDER
    note_extensions: tuple[str, ...] = field(default=DEFAULT_NOTE_EXTENSIONS)
    audio_extensions: tuple[str, ...] = field(default=DEFAULT_AUDIO_EXTENSIONS)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "UploadSettings":
        root_name = str(mapping.get("root_folder_name") or "").strip() or DEFAULT_ROOT_FOLDER
        return cls(
            max_retries=_coerce_int(mapping.get("max_retries"), default=3, minimum=1),
            backoff_base_sec=_coerce_float(mapping.get("backoff_base_sec"), default=1.0),
            partial_retry_delay_sec=_coerce_float(
                mapping.get("partial_retry_delay_sec"), default=5.0
            ),
            root_folder_name=root_name,
            note_extensions=_coerce_extensions(
                mapping.get("note_extensions"), DEFAULT_NOTE_EXTENSIONS
            ),
            audio_extensions=_coerce_extensions(
                mapping.get("audio_extensions"), DEFAULT_AUDIO_EXTENSIONS
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "backoff_base_sec": self.backoff_base_sec,
            "partial_retry_delay_sec": self.partial_retry_delay_sec,
            "root_folder_name": self.root_folder_name,
            "note_extensions": list(self.note_extensions),
            "audio_extensions": list(self.audio_extensions),
        }


@dataclass(slots=True)
class StorageSettings:
    """Location of the date-bucketed meeting assets."""

    assets_root: Path

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "StorageSettings":
        raw = str(mapping.get("assets_root") or "").strip()
        return cls(assets_root=Path(raw).expanduser() if raw else paths.assets_dir())

    def to_dict(self) -> dict[str, Any]:
        return {"assets_root": str(self.assets_root)}


@dataclass(slots=True)
class MaintenanceSettings:
    """ヘルスチェックとフォルダ整合の実行間隔・判定しきい値（秒）。

    間隔に 0 を指定するとその定期処理は起動しません（手動実行のみ）。
    """

    health_check_interval_sec: int = 3600
    failed_retry_after_sec: int = 3600
    stuck_upload_after_sec: int = 1800
    reconcile_interval_sec: int = 300

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "MaintenanceSettings":
        return cls(
            health_check_interval_sec=_coerce_int(
                mapping.get("health_check_interval_sec"), default=3600
            ),
            failed_retry_after_sec=_coerce_int(
                mapping.get("failed_retry_after_sec"), default=3600
            ),
            stuck_upload_after_sec=_coerce_int(
                mapping.get("stuck_upload_after_sec"), default=1800
            ),
            reconcile_interval_sec=_coerce_int(
                mapping.get("reconcile_interval_sec"), default=300
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "health_check_interval_sec": self.health_check_interval_sec,
            "failed_retry_after_sec": self.failed_retry_after_sec,
            "stuck_upload_after_sec": self.stuck_upload_after_sec,
            "reconcile_interval_sec": self.reconcile_interval_sec,
        }


@dataclass(slots=True)
class DriveSettings:
    client_secret_path: str = ""
    client_id: str = ""
    client_secret: str = ""
    oauth_redirect_port: int = 8765

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "DriveSettings":
        return cls(
            client_secret_path=str(mapping.get("client_secret_path") or "").strip(),
            client_id=str(mapping.get("client_id") or "").strip(),
            client_secret=str(mapping.get("client_secret") or "").strip(),
            oauth_redirect_port=_coerce_int(
                mapping.get("oauth_redirect_port"), default=8765, minimum=1
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_secret_path": self.client_secret_path,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "oauth_redirect_port": self.oauth_redirect_port,
        }


def _deep_update(base: MutableMapping[str, Any], updates: Mapping[str, Any]) -> None:
    for key, value in updates.items():
        if (
            key in base
            and isinstance(base[key], MutableMapping)
            and isinstance(value, Mapping)
        ):
            _deep_update(base[key], value)
        else:
            base[key] = value


def load_app_settings(path: Path | None = None) -> dict[str, Any]:
    """Load `app_settings.json`, merging it with :data:`DEFAULT_APP_SETTINGS`."""

    target = path or paths.app_settings_path()
    merged: dict[str, Any] = json.loads(json.dumps(DEFAULT_APP_SETTINGS))
    if target.exists():
        try:
            payload = json.loads(target.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            _LOGGER.warning("Invalid %s detected; using defaults", target.name, exc_info=exc)
        else:
            if isinstance(payload, Mapping):
                _deep_update(merged, payload)
    return merged


def save_app_settings(settings: Mapping[str, Any], path: Path | None = None) -> None:
    """Persist *settings* to `app_settings.json`."""

    target = path or paths.app_settings_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    serialized = json.dumps(settings, ensure_ascii=False, indent=2, sort_keys=True)
    target.write_text(serialized + "\n", encoding="utf-8")


def _section(settings: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = settings.get(name, {})
    return value if isinstance(value, Mapping) else {}


def load_upload_settings(path: Path | None = None) -> UploadSettings:
    return UploadSettings.from_mapping(_section(load_app_settings(path), "upload"))


def load_storage_settings(path: Path | None = None) -> StorageSettings:
    return StorageSettings.from_mapping(_section(load_app_settings(path), "storage"))
