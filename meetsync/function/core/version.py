"""Package metadata for MeetSync.

``__version__`` はパッケージングとログ出力用です。DB スキーマのバージョンは
``db_metadata`` テーブルの ``schema_version`` で別に管理します。
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "1.1.0"
