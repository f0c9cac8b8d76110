"""
Storage abstraction layer for the x402 distributor.

This package provides a pluggable backend for the distribution ledger and
the revenue stream configuration table:

- JSON files (default, the x402-config.json / x402-distributions.json layout)
- PostgreSQL (for multi-instance deployments)
- Memory (for testing and demos)

Usage:
    from storage import get_storage_backend

    storage = get_storage_backend()
    storage.append(record)
    history = storage.list_records(stream_id, limit=10)
"""

import os
from typing import TYPE_CHECKING

from storage.base import (
    DuplicateRecordError,
    LedgerStore,
    LedgerSummary,
    StorageBackend,
    StorageError,
    StreamConfigStore,
)
from storage.json_file import JSONFileStorage
from storage.memory import MemoryStorage

# Lazy import for PostgreSQL to avoid requiring psycopg2
if TYPE_CHECKING:
    from storage.postgresql import PostgreSQLStorage

__all__ = [
    "DuplicateRecordError",
    "JSONFileStorage",
    "LedgerStore",
    "LedgerSummary",
    "MemoryStorage",
    "StorageBackend",
    "StorageError",
    "StreamConfigStore",
    "get_storage_backend",
]


def get_storage_backend(
    backend_type: str | None = None,
    data_dir: str | None = None,
    database_url: str | None = None,
) -> StorageBackend:
    """
    Get the configured storage backend.

    Arguments override the environment variables:
        X402_STORAGE: Backend type ("json", "postgresql", "memory")
        X402_DATA_DIR: Directory for JSON file storage (default: data)
        DATABASE_URL: PostgreSQL connection URL

    Returns:
        Configured StorageBackend instance
    """
    backend_type = (backend_type or os.getenv("X402_STORAGE", "json")).lower()

    if backend_type == "json":
        return JSONFileStorage(data_dir or os.getenv("X402_DATA_DIR", "data"))

    elif backend_type == "postgresql" or backend_type == "postgres":
        database_url = database_url or os.getenv("DATABASE_URL")
        if not database_url:
            raise StorageError("DATABASE_URL environment variable required for PostgreSQL backend")
        from storage.postgresql import PostgreSQLStorage

        return PostgreSQLStorage(database_url)

    elif backend_type == "memory":
        return MemoryStorage()

    else:
        raise StorageError(f"Unknown storage backend: {backend_type}")
