"""
JSON file storage backend.

Default backend for single-instance deployments. Keeps two files in a
data directory, in the layout the x402 backend service has always used:

    x402-config.json          {"data": [stream configs], "lastUpdated": ...}
    x402-distributions.json   {"data": [records], "lastUpdated": ...}

Writes go to a temporary file that is atomically renamed into place.
"""

import json
import os
import threading
from datetime import UTC, datetime
from typing import Any

from distribution_types import DistributionRecord, RevenueStreamConfig
from storage.base import (
    DuplicateRecordError,
    StorageBackend,
    StorageReadError,
    StorageWriteError,
    ledger_key,
)

CONFIG_FILE = "x402-config.json"
DISTRIBUTIONS_FILE = "x402-distributions.json"


class JSONFileStorage(StorageBackend):
    """
    JSON file storage backend.

    Thread-safe within one process; a single lock guards both files so a
    read never observes a half-applied append.
    """

    def __init__(self, data_dir: str = "data"):
        """
        Initialize JSON file storage.

        Args:
            data_dir: Directory holding the config and distribution files
        """
        self.data_dir = data_dir
        self.config_path = os.path.join(data_dir, CONFIG_FILE)
        self.distributions_path = os.path.join(data_dir, DISTRIBUTIONS_FILE)
        self._lock = threading.Lock()

        try:
            os.makedirs(data_dir, exist_ok=True)
        except OSError as e:
            raise StorageWriteError(f"Cannot create data directory {data_dir}: {e}") from e

    def _read(self, path: str) -> list[dict[str, Any]]:
        """Read the ``data`` array of a file (caller holds the lock)."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw_data = f.read()
        except FileNotFoundError:
            return []
        except PermissionError as e:
            raise StorageReadError(f"Permission denied: {path}") from e
        except OSError as e:
            raise StorageReadError(f"Failed to read {path}: {e}") from e

        if not raw_data.strip():
            return []

        try:
            document = json.loads(raw_data)
        except json.JSONDecodeError as e:
            raise StorageReadError(f"Invalid JSON format in {path}: {e}") from e

        data = document.get("data") if isinstance(document, dict) else None
        if not isinstance(data, list):
            raise StorageReadError(f"Unexpected document layout in {path}")
        return data

    def _write(self, path: str, rows: list[dict[str, Any]]) -> None:
        """Atomically replace a file's contents (caller holds the lock)."""
        document = {
            "data": rows,
            "lastUpdated": datetime.now(UTC).isoformat(),
        }
        temp_path = f"{path}.tmp"
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, ensure_ascii=False)
            os.replace(temp_path, path)
        except PermissionError as e:
            raise StorageWriteError(f"Permission denied: {path}") from e
        except (OSError, TypeError, ValueError) as e:
            raise StorageWriteError(f"Failed to write {path}: {e}") from e

    # Ledger

    def append(self, record: DistributionRecord) -> None:
        key = ledger_key(record)
        with self._lock:
            rows = self._read(self.distributions_path)
            if key is not None:
                for row in rows:
                    if (row["stream_id"], row.get("funding_reference"), row.get("attempt", 1)) == key:
                        raise DuplicateRecordError(
                            f"Record already exists for {record.stream_id}/"
                            f"{record.funding_reference} attempt {record.attempt}"
                        )
            rows.append(record.to_dict())
            self._write(self.distributions_path, rows)

    def find_by_funding_reference(
        self, stream_id: str, funding_reference: str
    ) -> DistributionRecord | None:
        with self._lock:
            rows = self._read(self.distributions_path)
        matches = [
            r for r in rows
            if r["stream_id"] == stream_id and r.get("funding_reference") == funding_reference
        ]
        if not matches:
            return None
        return DistributionRecord.from_dict(max(matches, key=lambda r: r.get("attempt", 1)))

    def list_records(
        self, stream_id: str, limit: int = 10, offset: int = 0
    ) -> list[DistributionRecord]:
        with self._lock:
            rows = self._read(self.distributions_path)
        rows = [r for r in reversed(rows) if r["stream_id"] == stream_id]
        rows.sort(key=lambda r: r["timestamp_ms"], reverse=True)
        return [DistributionRecord.from_dict(r) for r in rows[offset:offset + limit]]

    def count(self, stream_id: str) -> int:
        with self._lock:
            rows = self._read(self.distributions_path)
        return sum(1 for r in rows if r["stream_id"] == stream_id)

    # Stream configurations

    def save_stream_config(self, config: RevenueStreamConfig) -> None:
        with self._lock:
            rows = [r for r in self._read(self.config_path) if r["stream_id"] != config.stream_id]
            rows.append(config.to_dict())
            self._write(self.config_path, rows)

    def get_stream_config(self, stream_id: str) -> RevenueStreamConfig | None:
        with self._lock:
            rows = self._read(self.config_path)
        for row in rows:
            if row["stream_id"] == stream_id:
                return RevenueStreamConfig.from_dict(row)
        return None

    def list_stream_configs(self) -> list[RevenueStreamConfig]:
        with self._lock:
            rows = self._read(self.config_path)
        return [RevenueStreamConfig.from_dict(r) for r in rows]

    def is_available(self) -> bool:
        """
        Check if file storage is available.

        Returns:
            True if the data directory is writable
        """
        return os.path.isdir(self.data_dir) and os.access(self.data_dir, os.W_OK)

    def get_info(self) -> dict[str, Any]:
        """Get storage backend information."""
        info = super().get_info()
        info.update({
            "data_dir": self.data_dir,
            "config_file_exists": os.path.exists(self.config_path),
            "distributions_file_exists": os.path.exists(self.distributions_path),
        })

        if os.path.exists(self.distributions_path):
            try:
                stat = os.stat(self.distributions_path)
                info["distributions_size_bytes"] = stat.st_size
                info["last_modified"] = stat.st_mtime
            except OSError:
                pass

        return info
