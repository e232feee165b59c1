"""Google Drive API v3 への薄いラッパー。

フォルダ検索・作成、ファイル検索・削除・アップロードの 5 操作だけを提供します。
Drive 呼び出しで発生した例外はこの境界で :class:`AuthExpiredError` と
:class:`TransientUploadError` に振り分け、上位層がメッセージ文字列を
解析しなくて済むようにしています。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Optional

from google.auth import exceptions as google_exceptions
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload

from .sync_types import AuthExpiredError, TransientUploadError

try:  # pragma: no cover - optional dependency typing guard
    from google.oauth2.credentials import Credentials
except Exception:  # pragma: no cover - import guard
    Credentials = object  # type: ignore[assignment]

LOGGER = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

_AUTH_MARKERS = ("invalid_grant", "token has been expired or revoked", "invalid_credentials")


def escape_query_value(value: str) -> str:
    """Drive 検索クエリの文字列リテラル用にエスケープします。"""

    return str(value).replace("\\", "\\\\").replace("'", "\\'")


def _http_status(exc: HttpError) -> int | None:
    status = getattr(exc, "status_code", None) or getattr(exc.resp, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _is_auth_error(exc: HttpError) -> bool:
    if _http_status(exc) == 401:
        return True
    content = getattr(exc, "content", b"") or b""
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    text = f"{exc} {content}".lower()
    return any(marker in text for marker in _AUTH_MARKERS)


class DriveService:
    """Google Drive API v3 を用いた最小限のファイル操作ラッパー。"""

    def __init__(
        self,
        credentials_provider: Callable[[], "Credentials"],
        *,
        service_factory: Optional[Callable[["Credentials"], object]] = None,
    ) -> None:
        self._credentials_provider = credentials_provider
        self._service_factory = service_factory
        self._service: object | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def authenticate(self) -> None:
        """認証済みのサービスを用意します。失敗時は :class:`AuthExpiredError`。"""

        self._ensure_service()

    def reset(self) -> None:
        """キャッシュしたサービスを破棄し、次回呼び出しで再構築させます。"""

        self._service = None

    def find_folders(self, name: str, parent_id: str | None = None) -> list[dict[str, Any]]:
        query = (
            f"name='{escape_query_value(name)}' and mimeType='{FOLDER_MIME_TYPE}' "
            "and trashed=false"
        )
        if parent_id:
            query += f" and '{escape_query_value(parent_id)}' in parents"
        response = self._execute(
            f"find folder {name!r}",
            lambda service: service.files().list(q=query, fields="files(id, name)", spaces="drive"),
        )
        return list(response.get("files", []))

    def create_folder(self, name: str, parent_id: str | None = None) -> str:
        body: dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME_TYPE}
        if parent_id:
            body["parents"] = [parent_id]
        response = self._execute(
            f"create folder {name!r}",
            lambda service: service.files().create(body=body, fields="id"),
        )
        folder_id = str(response.get("id", ""))
        if not folder_id:
            raise TransientUploadError(f"Drive returned no id for folder {name!r}")
        return folder_id

    def find_files(self, name: str, parent_id: str) -> list[dict[str, Any]]:
        query = (
            f"name='{escape_query_value(name)}' and '{escape_query_value(parent_id)}' in parents "
            "and trashed=false"
        )
        response = self._execute(
            f"find file {name!r}",
            lambda service: service.files().list(q=query, fields="files(id, name)", spaces="drive"),
        )
        return list(response.get("files", []))

    def delete_file(self, file_id: str) -> None:
        self._execute(
            f"delete file {file_id}",
            lambda service: service.files().delete(fileId=file_id),
        )

    def upload_file(
        self, path: Path | str, name: str, parent_id: str, *, mimetype: str
    ) -> dict[str, Any]:
        source = Path(path)
        if not source.is_file():
            raise TransientUploadError(f"Local file is missing: {source}")
        media = MediaFileUpload(str(source), mimetype=mimetype, resumable=False)
        body = {"name": name, "parents": [parent_id]}
        response = self._execute(
            f"upload {name!r}",
            lambda service: service.files().create(
                body=body, media_body=media, fields="id,name,size"
            ),
        )
        if not response.get("id"):
            raise TransientUploadError(f"Drive returned no id for file {name!r}")
        return dict(response)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _ensure_service(self) -> object:
        if self._service is None:
            credentials = self._credentials_provider()
            if self._service_factory is not None:
                self._service = self._service_factory(credentials)
            else:
                self._service = build(
                    "drive",
                    "v3",
                    credentials=credentials,
                    cache_discovery=False,
                )
        return self._service

    def _execute(self, action: str, request_builder: Callable[[Any], Any]) -> dict[str, Any]:
        service = self._ensure_service()
        try:
            response = request_builder(service).execute()
        except HttpError as exc:
            status = _http_status(exc)
            if _is_auth_error(exc):
                LOGGER.error("Drive rejected credentials during %s: status=%s", action, status)
                self.reset()
                raise AuthExpiredError(f"Drive authentication expired during {action}") from exc
            LOGGER.warning("Drive API error during %s: status=%s", action, status)
            raise TransientUploadError(f"Drive API error during {action}: {exc}") from exc
        except google_exceptions.RefreshError as exc:
            LOGGER.error("Drive token refresh failed during %s", action, exc_info=exc)
            self.reset()
            raise AuthExpiredError(f"Drive token refresh failed during {action}") from exc
        except (OSError, google_exceptions.TransportError) as exc:
            LOGGER.warning("Network failure during %s: %s", action, exc)
            raise TransientUploadError(f"Network failure during {action}: {exc}") from exc
        return response or {}


__all__ = ["DriveService", "FOLDER_MIME_TYPE", "escape_query_value"]
