"""``meetsync.function`` パッケージで共通利用されるヘルパー群。

``from meetsync.function import DatabaseManager`` のように簡潔にインポートできるよう、
データベース層の公開 API を再エクスポートします。
"""

from .cmn_database import DatabaseError, DatabaseManager, RecordNotFoundError

__all__ = [
    "DatabaseError",
    "DatabaseManager",
    "RecordNotFoundError",
]
