"""Record store collaborator.

The scan pipeline only ever appends records. ``InMemoryRecordStore``
backs the CLI and API in a single process and also takes corrections
and deletions. Durable storage plugs in through the ``RecordStore``
protocol.
"""

from typing import Protocol

from src.utils.logger import get_logger

from .models import BillRecord

logger = get_logger(__name__)


class RecordStore(Protocol):
    """Append-only sink for accepted bill records."""

    def add(self, record: BillRecord) -> None: ...


class InMemoryRecordStore:
    """Process-local record list, newest first."""

    def __init__(self) -> None:
        self._records: list[BillRecord] = []

    def add(self, record: BillRecord) -> None:
        if any(existing.id == record.id for existing in self._records):
            raise ValueError(f"Duplicate record id {record.id}")
        self._records.insert(0, record)
        logger.info("Stored bill %d for %r", record.id, record.organization)

    def get(self, record_id: int) -> BillRecord | None:
        return next((r for r in self._records if r.id == record_id), None)

    def replace(self, record: BillRecord) -> None:
        """Swap in a corrected record, keeping its position.

        Raises:
            KeyError: If no record with the same id is stored.
        """
        for index, existing in enumerate(self._records):
            if existing.id == record.id:
                self._records[index] = record
                logger.info("Updated bill %d for %r", record.id, record.organization)
                return
        raise KeyError(record.id)

    def delete(self, record_id: int) -> bool:
        before = len(self._records)
        self._records = [r for r in self._records if r.id != record_id]
        return len(self._records) < before

    def list_records(self) -> list[BillRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)
