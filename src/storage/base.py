"""
Abstract base classes for storage backends.

Two logical tables make up the persisted state:

- the distribution ledger: append-only DistributionRecords, looked up by
  (stream_id, funding_reference) and listed by (stream_id, timestamp desc)
- stream configurations: one RevenueStreamConfig per stream_id
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from distribution_types import (
    DistributionRecord,
    DistributionStatus,
    RevenueStreamConfig,
)


class StorageError(Exception):
    """Base exception for storage-related errors."""
    pass


class StorageConnectionError(StorageError):
    """Raised when connection to storage backend fails."""
    pass


class StorageReadError(StorageError):
    """Raised when reading from storage fails."""
    pass


class StorageWriteError(StorageError):
    """Raised when writing to storage fails."""
    pass


class DuplicateRecordError(StorageWriteError):
    """Raised when (stream_id, funding_reference, attempt) is already recorded."""
    pass


@dataclass
class LedgerSummary:
    """Aggregate view of one stream's ledger."""

    completed_count: int = 0
    completed_total: int = 0
    mock_count: int = 0
    mock_total: int = 0
    failed_count: int = 0
    last_timestamp_ms: int | None = None

    def add(self, record: DistributionRecord) -> None:
        if record.status == DistributionStatus.COMPLETED:
            self.completed_count += 1
            self.completed_total += record.total_amount
        elif record.status == DistributionStatus.MOCK:
            self.mock_count += 1
            self.mock_total += record.total_amount
        else:
            self.failed_count += 1
        if self.last_timestamp_ms is None or record.timestamp_ms > self.last_timestamp_ms:
            self.last_timestamp_ms = record.timestamp_ms


def ledger_key(record: DistributionRecord) -> tuple[str, str, int] | None:
    """Uniqueness key of a record; records without a funding reference have none."""
    if record.funding_reference is None:
        return None
    return (record.stream_id, record.funding_reference, record.attempt)


class LedgerStore(ABC):
    """
    Append-only distribution ledger.

    No updates or deletes are exposed. A correction is a new record whose
    ``supersedes`` field names the record it replaces.
    """

    @abstractmethod
    def append(self, record: DistributionRecord) -> None:
        """
        Persist a new record.

        Raises:
            DuplicateRecordError: If the record's uniqueness key already exists
            StorageWriteError: If writing fails
        """
        pass

    @abstractmethod
    def find_by_funding_reference(
        self, stream_id: str, funding_reference: str
    ) -> DistributionRecord | None:
        """Return the newest attempt recorded for a funding reference."""
        pass

    @abstractmethod
    def list_records(
        self, stream_id: str, limit: int = 10, offset: int = 0
    ) -> list[DistributionRecord]:
        """Return a page of a stream's records, newest first."""
        pass

    @abstractmethod
    def count(self, stream_id: str) -> int:
        """Number of records for a stream."""
        pass

    def summarize(self, stream_id: str, page_size: int = 500) -> LedgerSummary:
        """
        Aggregate a stream's ledger.

        Default implementation pages through list_records - backends with
        a query engine should override.
        """
        summary = LedgerSummary()
        offset = 0
        while True:
            page = self.list_records(stream_id, limit=page_size, offset=offset)
            for record in page:
                summary.add(record)
            if len(page) < page_size:
                return summary
            offset += page_size


class StreamConfigStore(ABC):
    """Keyed store of revenue stream configurations."""

    @abstractmethod
    def save_stream_config(self, config: RevenueStreamConfig) -> None:
        """Insert or replace the configuration for config.stream_id."""
        pass

    @abstractmethod
    def get_stream_config(self, stream_id: str) -> RevenueStreamConfig | None:
        pass

    @abstractmethod
    def list_stream_configs(self) -> list[RevenueStreamConfig]:
        pass


class StorageBackend(LedgerStore, StreamConfigStore):
    """A backend providing both the ledger and the stream configuration table."""

    @abstractmethod
    def is_available(self) -> bool:
        """
        Check if the storage backend is available and ready.

        Returns:
            True if storage is accessible, False otherwise
        """
        pass

    def get_info(self) -> dict[str, Any]:
        """
        Get information about the storage backend.

        Returns:
            Dictionary with backend type, status, and configuration
        """
        return {
            "backend_type": self.__class__.__name__,
            "available": self.is_available(),
        }

    def close(self) -> None:
        """
        Close the storage connection and release resources.

        Default implementation does nothing - backends with connections
        should override this.
        """
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - closes connection."""
        self.close()
        return False
