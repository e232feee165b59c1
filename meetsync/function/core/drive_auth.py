"""Google Drive 用 OAuth 2.0 認証とトークン保管。

記載内容
    - :class:`DriveTokenStore`: 認証情報をローカルに封印（暗号化 + 改ざん検知）して保存。
    - :class:`DriveAuthManager`: ブラウザ認証フロー、トークン更新、状態取得。
    - :func:`load_client_config` / :func:`resolve_redirect_port`: 設定値の解釈。

認証が失われた場合、:meth:`DriveAuthManager.ensure_credentials` は
:class:`AuthExpiredError` を送出します。アップロードワーカーはこれを受けて
キューを停止し、UI へ再認証を促します。
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Sequence

from google.auth import exceptions as google_exceptions
from google.auth.transport.requests import Request
from google.oauth2 import credentials as google_credentials

from . import paths
from .sync_types import AuthExpiredError, TransientUploadError

LOGGER = logging.getLogger(__name__)

DEFAULT_SCOPES: tuple[str, ...] = ("https://www.googleapis.com/auth/drive.file",)
DEFAULT_REDIRECT_PORT = 8765

CLIENT_ID_ENV = "GOOGLE_CLIENT_ID"
CLIENT_SECRET_ENV = "GOOGLE_CLIENT_SECRET"

_KEY_FILE_NAME = "drive_token.key"
_TOKEN_FILE_NAME = "drive_token.json.sealed"
_STORED_AT_KEY = "__stored_at__"

_NONCE_SIZE = 16
_TAG_SIZE = 32


class TokenStoreError(RuntimeError):
    """トークンファイルの読み書きに失敗した場合の例外。"""


@dataclass(slots=True)
class _TokenSeal:
    """鍵付き BLAKE2b によるカウンターモード暗号 + HMAC タグ。"""

    key: bytes

    def seal(self, plaintext: bytes) -> bytes:
        nonce = secrets.token_bytes(_NONCE_SIZE)
        body = self._xor(plaintext, nonce)
        tag = hmac.new(self.key, nonce + body, hashlib.sha256).digest()
        return base64.urlsafe_b64encode(nonce + tag + body)

    def open(self, sealed: bytes) -> bytes:
        try:
            raw = base64.urlsafe_b64decode(sealed)
        except (ValueError, TypeError) as exc:
            raise ValueError("Token file is not valid base64") from exc
        if len(raw) < _NONCE_SIZE + _TAG_SIZE:
            raise ValueError("Token file is truncated")
        nonce, tag, body = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:_NONCE_SIZE + _TAG_SIZE], raw[_NONCE_SIZE + _TAG_SIZE:]
        expected = hmac.new(self.key, nonce + body, hashlib.sha256).digest()
        if not hmac.compare_digest(tag, expected):
            raise ValueError("Token file failed integrity check")
        return self._xor(body, nonce)

    def _xor(self, data: bytes, nonce: bytes) -> bytes:
        blocks = bytearray()
        counter = 0
        while len(blocks) < len(data):
            blocks += hashlib.blake2b(
                nonce + counter.to_bytes(8, "big"), key=self.key, digest_size=64
            ).digest()
            counter += 1
        return bytes(a ^ b for a, b in zip(data, blocks))


class DriveTokenStore:
    """Drive 認証情報の永続化ストア。

    トークン本体と鍵はどちらもユーザー設定ディレクトリに ``0o600`` で保存します。
    読み取れない・改ざんされたファイルは破棄して ``None`` を返し、再認証を促します。
    """

    def __init__(self, *, token_path: Path | None = None, key_path: Path | None = None) -> None:
        self._token_path = token_path or (paths.config_dir() / _TOKEN_FILE_NAME)
        self._key_path = key_path or (paths.config_dir() / _KEY_FILE_NAME)
        self._seal: _TokenSeal | None = None

    @property
    def token_path(self) -> Path:
        return self._token_path

    def load(self) -> dict[str, Any] | None:
        if not self._token_path.exists():
            return None
        try:
            sealed = self._token_path.read_bytes()
        except OSError as exc:  # pragma: no cover - filesystem
            raise TokenStoreError(f"Failed to read {self._token_path}") from exc
        if not sealed:
            return None
        try:
            payload = json.loads(self._get_seal().open(sealed).decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            LOGGER.warning("Discarding unreadable Drive token file %s", self._token_path)
            self.clear()
            return None
        return dict(payload) if isinstance(payload, Mapping) else None

    def save(self, payload: Mapping[str, Any]) -> None:
        sealed = self._get_seal().seal(json.dumps(dict(payload), ensure_ascii=False).encode("utf-8"))
        self._write_private(self._token_path, sealed)

    def clear(self) -> None:
        try:
            self._token_path.unlink(missing_ok=True)
        except OSError:  # pragma: no cover - best effort cleanup
            LOGGER.warning("Failed to remove Drive token file", exc_info=True)

    def _get_seal(self) -> _TokenSeal:
        if self._seal is None:
            self._seal = _TokenSeal(self._load_or_create_key())
        return self._seal

    def _load_or_create_key(self) -> bytes:
        if self._key_path.exists():
            try:
                key = base64.urlsafe_b64decode(self._key_path.read_bytes())
            except (OSError, ValueError):
                LOGGER.warning("Drive token key is unreadable; generating a new one")
            else:
                if len(key) >= 32:
                    return key
        key = secrets.token_bytes(32)
        try:
            self._write_private(self._key_path, base64.urlsafe_b64encode(key))
        except TokenStoreError:
            LOGGER.warning("Failed to persist Drive token key", exc_info=True)
        return key

    @staticmethod
    def _write_private(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            path.write_bytes(data)
        except OSError as exc:  # pragma: no cover - filesystem
            raise TokenStoreError(f"Failed to write {path}") from exc
        try:
            path.chmod(0o600)
        except OSError:  # pragma: no cover - platform specific
            LOGGER.debug("Could not restrict permissions of %s", path)


class DriveAuthManager:
    """Drive 用 OAuth フローとトークン更新を扱います。"""

    def __init__(
        self,
        *,
        token_store: DriveTokenStore,
        client_config: Mapping[str, Any] | None = None,
        scopes: Sequence[str] | None = None,
        redirect_port: int | None = None,
    ) -> None:
        self._token_store = token_store
        self._client_config = dict(client_config) if client_config else None
        self._scopes = tuple(scopes or DEFAULT_SCOPES)
        self._redirect_port = redirect_port or DEFAULT_REDIRECT_PORT

    def has_client_config(self) -> bool:
        return self._client_config is not None

    def start_browser_flow(self) -> dict[str, Any]:
        """ローカルサーバーでブラウザ認証を行い、取得したトークンを保存します。"""

        if not self._client_config:
            raise ValueError("Google OAuth クライアント情報が設定されていません")
        from google_auth_oauthlib.flow import InstalledAppFlow

        LOGGER.info("Starting Drive OAuth browser flow on port %s", self._redirect_port)
        flow = InstalledAppFlow.from_client_config(self._client_config, scopes=self._scopes)
        credentials = flow.run_local_server(
            host="127.0.0.1",
            port=self._redirect_port,
            authorization_prompt_message="ブラウザで Google アカウントを認証してください。",
            success_message="Google Drive の認証が完了しました。このウィンドウを閉じてください。",
            open_browser=True,
        )
        self._store(credentials)
        return self.get_status()

    def ensure_credentials(self) -> google_credentials.Credentials:
        """有効な認証情報を返します。

        入力
            なし
        出力
            ``google.oauth2.credentials.Credentials``
                必要に応じてリフレッシュ済み。
        例外
            :class:`AuthExpiredError`
                未認証、保存内容の破損、リフレッシュトークン欠落、更新失敗のいずれか。
        """

        credentials = self._load_credentials()
        if credentials is None:
            raise AuthExpiredError("Google Drive is not authorised")
        if credentials.valid:
            return credentials
        if not credentials.refresh_token:
            self._token_store.clear()
            raise AuthExpiredError("Stored Drive credentials cannot be refreshed")
        try:
            credentials.refresh(Request())
        except google_exceptions.RefreshError as exc:
            LOGGER.error("Drive token refresh was rejected", exc_info=exc)
            self._token_store.clear()
            raise AuthExpiredError("Drive token refresh was rejected") from exc
        except google_exceptions.TransportError as exc:
            raise TransientUploadError(f"Drive token refresh failed: {exc}") from exc
        self._store(credentials)
        return credentials

    def has_credentials(self) -> bool:
        credentials = self._load_credentials()
        return bool(credentials and (credentials.valid or credentials.refresh_token))

    def sign_out(self) -> None:
        self._token_store.clear()

    def get_status(self) -> dict[str, Any]:
        """UI 表示用の認証状態を返します。"""

        base = {"scopes": list(self._scopes), "configured": self.has_client_config()}
        payload = self._token_store.load()
        if not payload:
            return {
                **base,
                "status": "unauthorized" if self._client_config else "unconfigured",
                "authenticated": False,
            }
        credentials = self._parse(payload)
        if credentials is None:
            return {**base, "status": "invalid", "authenticated": False}

        expires_at: str | None = None
        if credentials.expiry is not None:
            expiry = credentials.expiry
            if expiry.tzinfo is None:
                expiry = expiry.replace(tzinfo=timezone.utc)
            expires_at = expiry.astimezone(timezone.utc).isoformat()

        if credentials.valid:
            status, authenticated = "authorized", True
        elif credentials.refresh_token:
            status, authenticated = "expired", True
        else:
            status, authenticated = "invalid", False
        return {
            **base,
            "status": status,
            "authenticated": authenticated,
            "expires_at": expires_at,
            "stored_at": payload.get(_STORED_AT_KEY),
        }

    def _load_credentials(self) -> google_credentials.Credentials | None:
        payload = self._token_store.load()
        if not payload:
            return None
        return self._parse(payload)

    def _parse(self, payload: Mapping[str, Any]) -> google_credentials.Credentials | None:
        info = {key: value for key, value in payload.items() if key != _STORED_AT_KEY}
        try:
            return google_credentials.Credentials.from_authorized_user_info(info, scopes=self._scopes)
        except ValueError:
            LOGGER.warning("Stored Drive credentials are malformed; clearing")
            self._token_store.clear()
            return None

    def _store(self, credentials: google_credentials.Credentials) -> None:
        payload = json.loads(credentials.to_json())
        payload[_STORED_AT_KEY] = datetime.now(timezone.utc).isoformat()
        self._token_store.save(payload)


def resolve_redirect_port(settings: Mapping[str, Any], default: int = DEFAULT_REDIRECT_PORT) -> int:
    raw = settings.get("oauth_redirect_port") if isinstance(settings, Mapping) else None
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return value if 0 < value < 65536 else default


def load_client_config(
    settings: Mapping[str, Any], *, environ: Mapping[str, str] | None = None
) -> dict[str, Any] | None:
    """OAuth クライアント情報を組み立てます。

    優先順位は ``client_secret_path`` の JSON、設定の ``client_id`` /
    ``client_secret``、環境変数 ``GOOGLE_CLIENT_ID`` / ``GOOGLE_CLIENT_SECRET`` です。
    """

    settings = settings if isinstance(settings, Mapping) else {}
    environ = os.environ if environ is None else environ

    path_value = settings.get("client_secret_path")
    if path_value:
        path = Path(str(path_value)).expanduser()
        if path.is_file():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                LOGGER.warning("Ignoring unreadable OAuth client file %s", path)
            else:
                if isinstance(data, Mapping) and ("installed" in data or "web" in data):
                    return dict(data)
        else:
            LOGGER.warning("OAuth client file %s does not exist", path)

    client_id = str(settings.get("client_id") or environ.get(CLIENT_ID_ENV, "")).strip()
    client_secret = str(settings.get("client_secret") or environ.get(CLIENT_SECRET_ENV, "")).strip()
    if not (client_id and client_secret):
        return None
    return {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uris": [f"http://127.0.0.1:{resolve_redirect_port(settings)}"],
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": "https://oauth2.googleapis.com/token",
        }
    }


__all__ = [
    "CLIENT_ID_ENV",
    "CLIENT_SECRET_ENV",
    "DEFAULT_SCOPES",
    "DriveAuthManager",
    "DriveTokenStore",
    "TokenStoreError",
    "load_client_config",
    "resolve_redirect_port",
]
