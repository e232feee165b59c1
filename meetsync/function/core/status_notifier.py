"""アップロード状態の遷移を外部（UI・ログ）へ通知するヘルパー。

記載内容
    - :class:`StatusNotifier`: リスナー登録と Eel フロントエンドへのブロードキャスト。

想定参照元
    - :mod:`meetsync.function.core.upload_worker` の状態遷移処理。
    - :mod:`meetsync.main` での UI 連携。

通知は fire-and-forget です。リスナーや Eel 呼び出しが失敗してもワーカーには
例外を返さず、ログに残すだけにします。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from .sync_types import UploadStatus

try:  # pragma: no cover - import guard for optional dependency
    import eel  # type: ignore
except Exception:  # pragma: no cover - UI bridge unavailable in headless runs
    eel = None  # type: ignore

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], None]

STATUS_CHANGED_EVENT = "upload_status_changed"
AUTH_REQUIRED_EVENT = "upload_auth_required"


class StatusNotifier:
    """状態遷移イベントを購読者と Eel UI へ配信します。"""

    def __init__(self, *, use_eel: bool = True) -> None:
        self._status_listeners: list[Listener] = []
        self._auth_listeners: list[Listener] = []
        self._use_eel = use_eel

    def subscribe(self, listener: Listener) -> None:
        """``on_upload_status_changed`` 相当の購読者を追加します。"""

        self._status_listeners.append(listener)

    def subscribe_auth_required(self, listener: Listener) -> None:
        """``on_authentication_required`` 相当の購読者を追加します。"""

        self._auth_listeners.append(listener)

    def notify(self, record_id: int, status: UploadStatus | str) -> None:
        """状態遷移を通知します。

        入力
            record_id: ``int``
                対象の会議 ID。
            status: ``UploadStatus | str``
                遷移後の状態。中間状態 ``uploading`` も通知対象です。
        出力
            ``None``
                例外は送出しません。
        """

        value = status.value if isinstance(status, UploadStatus) else str(status)
        payload = {
            "recordId": record_id,
            "status": value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        logger.info("Upload status changed: meeting=%s status=%s", record_id, value)
        self._dispatch(STATUS_CHANGED_EVENT, self._status_listeners, payload)

    def notify_auth_required(self, record_id: int) -> None:
        """Drive 再認証が必要になったことを通知します。"""

        payload = {"recordId": record_id}
        logger.warning("Drive authentication required (meeting=%s)", record_id)
        self._dispatch(AUTH_REQUIRED_EVENT, self._auth_listeners, payload)

    def _dispatch(self, event: str, listeners: list[Listener], payload: dict[str, Any]) -> None:
        for listener in list(listeners):
            try:
                listener(dict(payload))
            except Exception:
                logger.warning("Listener for %s raised; ignoring", event, exc_info=True)

        if not self._use_eel or eel is None:
            return
        try:
            getattr(eel, event)(payload)
        except AttributeError:
            logger.debug("Eel has no %r exposed; payload=%r", event, payload)
        except Exception as exc:  # pragma: no cover - runtime specific
            logger.warning(
                "Eel notify failed: %s; event=%s",
                type(exc).__name__,
                event,
                exc_info=True,
            )


__all__ = ["AUTH_REQUIRED_EVENT", "STATUS_CHANGED_EVENT", "StatusNotifier"]
