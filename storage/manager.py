# storage/manager.py
from __future__ import annotations
from typing import Any, Dict

from storage.sqlite_backend import SQLiteStorage


def get_storage(backend: str, **opts: Dict[str, Any]):
    """
    Factory for storage backends. Accepts flexible option names.
      - sqlite: db_path | sqlite_path | path
    """
    b = (backend or "").lower()
    if b == "sqlite":
        db_path = opts.get("db_path") or opts.get("sqlite_path") or opts.get("path") or "data/indexer.db"
        return SQLiteStorage(db_path)
    raise ValueError(f"Unknown storage backend: {backend!r}")
