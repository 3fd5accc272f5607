"""Persistence layer for flowgate runs."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowgateConfig, load_config
from .inmemory import InMemoryRunStore
from .models import RunFilter
from .repository import RunStore
from .sqlite import SQLiteRunStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresRunStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresRunStore = None  # type: ignore

_store_instance: RunStore | None = None


def get_run_store(
    database_url: Optional[str] = None, config: Optional[FlowgateConfig] = None
) -> RunStore:
    """Factory function to obtain a run store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``FLOWGATE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FLOWGATE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _store_instance = InMemoryRunStore()
        return _store_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _store_instance = SQLiteRunStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresRunStore is None:
            raise RuntimeError("Postgres support not available")
        _store_instance = PostgresRunStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "RunFilter",
    "RunStore",
    "InMemoryRunStore",
    "SQLiteRunStore",
    "PostgresRunStore",
    "get_run_store",
]
