"""
In-memory storage backend.

Keeps the ledger and stream configurations in process memory, useful for:
- Unit testing
- Development and demo runs

Everything is lost when the process exits.
"""

import threading
from typing import Any

from distribution_types import DistributionRecord, RevenueStreamConfig
from storage.base import DuplicateRecordError, StorageBackend, ledger_key


class MemoryStorage(StorageBackend):
    """
    In-memory storage backend.

    Records are kept as serialized dicts so callers never share mutable
    state with the store. Thread-safe operations.
    """

    def __init__(self):
        """Initialize empty memory storage."""
        self._records: list[dict[str, Any]] = []
        self._keys: set[tuple[str, str, int]] = set()
        self._configs: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()

    # Ledger

    def append(self, record: DistributionRecord) -> None:
        key = ledger_key(record)
        with self._lock:
            if key is not None and key in self._keys:
                raise DuplicateRecordError(
                    f"Record already exists for {record.stream_id}/"
                    f"{record.funding_reference} attempt {record.attempt}"
                )
            self._records.append(record.to_dict())
            if key is not None:
                self._keys.add(key)

    def find_by_funding_reference(
        self, stream_id: str, funding_reference: str
    ) -> DistributionRecord | None:
        with self._lock:
            matches = [
                r for r in self._records
                if r["stream_id"] == stream_id and r["funding_reference"] == funding_reference
            ]
        if not matches:
            return None
        newest = max(matches, key=lambda r: r["attempt"])
        return DistributionRecord.from_dict(newest)

    def list_records(
        self, stream_id: str, limit: int = 10, offset: int = 0
    ) -> list[DistributionRecord]:
        with self._lock:
            # Reverse first so equal timestamps keep newest-appended first
            rows = [r for r in reversed(self._records) if r["stream_id"] == stream_id]
        rows.sort(key=lambda r: r["timestamp_ms"], reverse=True)
        return [DistributionRecord.from_dict(r) for r in rows[offset:offset + limit]]

    def count(self, stream_id: str) -> int:
        with self._lock:
            return sum(1 for r in self._records if r["stream_id"] == stream_id)

    # Stream configurations

    def save_stream_config(self, config: RevenueStreamConfig) -> None:
        with self._lock:
            self._configs[config.stream_id] = config.to_dict()

    def get_stream_config(self, stream_id: str) -> RevenueStreamConfig | None:
        with self._lock:
            data = self._configs.get(stream_id)
        return RevenueStreamConfig.from_dict(data) if data else None

    def list_stream_configs(self) -> list[RevenueStreamConfig]:
        with self._lock:
            rows = list(self._configs.values())
        return [RevenueStreamConfig.from_dict(r) for r in rows]

    def is_available(self) -> bool:
        """Memory storage is always available."""
        return True

    def get_info(self) -> dict[str, Any]:
        """Get storage backend information."""
        info = super().get_info()
        with self._lock:
            info.update(
                {
                    "record_count": len(self._records),
                    "stream_count": len(self._configs),
                }
            )
        return info

    def clear(self) -> None:
        """Clear all stored data."""
        with self._lock:
            self._records.clear()
            self._keys.clear()
            self._configs.clear()
