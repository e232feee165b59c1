"""MeetSync アプリケーションのトップレベルパッケージ。

記載内容
    - ``__version__`` の再エクスポート。

想定参照元
    - CLI やサービス層からのバージョン取得。
"""

from meetsync.function.core.version import __version__

__all__ = ["__version__"]
