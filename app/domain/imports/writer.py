"""
Batched upsert writer.

Validated records are buffered per natural key and flushed to the repository
in batches. Within a job the last occurrence of a key wins: an earlier row in
the same batch is replaced before it reaches storage, and a key already
written by an earlier batch is overwritten. Both cases count as duplicates
removed rather than as new writes, so ``written`` is the number of distinct
keys durably committed by the job.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Set

from app.db.models import NaturalKey, RecordRepository
from app.domain.imports.jobs import FailedRecord, FailureStage
from app.domain.imports.records import TypedRecord
from app.domain.imports.schema_mapper import SchemaType

logger = logging.getLogger(__name__)


@dataclass
class PendingRow:
    record: TypedRecord
    original_index: int
    raw_record: Dict[str, Any]
    line_number: int = 0


@dataclass
class WriteStats:
    created: int = 0
    updated: int = 0
    duplicates_removed: int = 0
    written: int = 0

    def merge(self, other: "WriteStats") -> None:
        self.created += other.created
        self.updated += other.updated
        self.duplicates_removed += other.duplicates_removed
        self.written += other.written


@dataclass
class FlushResult:
    """What one flush changed; applied to the job by the runner."""

    stats: WriteStats = field(default_factory=WriteStats)
    failures: List[FailedRecord] = field(default_factory=list)
    rows_flushed: int = 0


class BatchWriter:
    def __init__(self, repository: RecordRepository, schema_type: SchemaType, batch_size: int):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._repository = repository
        self._schema_type = schema_type
        self.batch_size = batch_size
        self._pending: "OrderedDict[NaturalKey, PendingRow]" = OrderedDict()
        self._pending_duplicates = 0
        self._written_keys: Set[NaturalKey] = set()
        self.stats = WriteStats()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_full(self) -> bool:
        return len(self._pending) >= self.batch_size

    def add(self, row: PendingRow) -> None:
        key = row.record.natural_key()
        if key in self._pending:
            # Keep the position of the first occurrence, the value of the last.
            self._pending_duplicates += 1
        self._pending[key] = row

    def discard_pending(self) -> int:
        """Drop buffered rows without writing them (cancellation)."""
        dropped = len(self._pending)
        self._pending.clear()
        self._pending_duplicates = 0
        return dropped

    def flush(self) -> FlushResult:
        """
        Write the buffered batch.

        Blocking; the runner calls it from a worker thread. Raises
        ``StorageUnavailable`` if the database cannot be reached, in which case
        nothing from this batch counts as written.
        """
        result = FlushResult()
        if not self._pending:
            return result

        rows = list(self._pending.values())
        duplicates = self._pending_duplicates
        upsert = self._repository.upsert(self._schema_type, [row.record for row in rows])
        self._pending.clear()
        self._pending_duplicates = 0

        created = set(upsert.created_keys)
        result.rows_flushed = len(rows)
        result.stats.duplicates_removed = duplicates

        for row in rows:
            key = row.record.natural_key()
            reason = upsert.failures.get(key)
            if reason is not None:
                result.failures.append(FailedRecord(
                    original_index=row.original_index,
                    raw_record=row.raw_record,
                    error_reason=reason,
                    stage=FailureStage.WRITE,
                    line_number=row.line_number,
                ))
                continue
            if key in self._written_keys:
                result.stats.duplicates_removed += 1
                continue
            self._written_keys.add(key)
            result.stats.written += 1
            if key in created:
                result.stats.created += 1
            else:
                result.stats.updated += 1

        self.stats.merge(result.stats)
        logger.debug(
            "Flushed %d %s rows: %d written, %d duplicates, %d rejected",
            len(rows), self._schema_type.value, result.stats.written,
            result.stats.duplicates_removed, len(result.failures),
        )
        return result
