"""
Versioned snapshot writes for derived tables.

Derived tables (daily_metrics, weekly_metrics, quality_scores) are never
updated row by row. A recomputation pass replaces a whole partition, meaning
one entity's rows within the recomputed range, in a single transaction.

Key concepts:
- partition: (table_name, partition_key), e.g. ("daily_metrics", "pipeline:sales")
- generation: monotonic number allocated at pass start from a DuckDB sequence
- snapshot_generations: last committed generation per partition

Design decisions:
- A process-wide lock per partition serializes writers of the same partition
- A write whose generation is not newer than the stored one is rejected,
  so a slow pass can never overwrite the result of a later pass
- Delete + insert + generation stamp commit together or not at all, for one
  partition or for a whole pass (write_many); a failed write rolls back
  and prior rows stay authoritative
- Each write runs on its own DuckDB cursor so partitions can be written
  from different threads
"""
import logging
import threading
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from clock import Clock, SystemClock
from .database import Database


logger = logging.getLogger(__name__)

_registry_lock = threading.Lock()
_partition_locks: Dict[Tuple[str, str], threading.Lock] = {}


class StaleGenerationError(RuntimeError):
    """Raised when a write carries a generation not newer than the committed one."""


def partition_lock(table_name: str, partition_key: str) -> threading.Lock:
    """Return the process-wide lock guarding one partition."""
    key = (table_name, partition_key)
    with _registry_lock:
        lock = _partition_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _partition_locks[key] = lock
        return lock


@dataclass
class PartitionSnapshot:
    """
    Complete replacement content for one partition.

    Attributes:
        table_name: Derived table to write
        partition_key: Partition identifier recorded in snapshot_generations
        delete_where: SQL predicate selecting the rows this snapshot replaces
        delete_params: Parameters for delete_where
        columns: Column names of the inserted rows
        rows: Row tuples in column order (may be empty)
    """
    table_name: str
    partition_key: str
    delete_where: str
    delete_params: List[Any]
    columns: Sequence[str]
    rows: List[Tuple[Any, ...]] = field(default_factory=list)


@dataclass
class SnapshotBatch:
    """Write counters of one write_many call."""
    rows_written: int = 0
    partitions_written: int = 0
    stale_partitions: List[str] = field(default_factory=list)


class SnapshotWriter:
    """
    Writes partition snapshots with generation checks.

    Operations:
    1. allocate_generation: reserve a generation for a pass
    2. current_generation: last committed generation of a partition
    3. write: atomically replace one partition
    4. write_many: atomically replace a set of partitions in one transaction
    """

    def __init__(self, database: Database, clock: Optional[Clock] = None):
        self.db = database
        self.clock = clock or SystemClock()

    def allocate_generation(self) -> int:
        """Reserve the next generation number."""
        return self.db.connect().execute("SELECT nextval('snapshot_generation_seq')").fetchone()[0]

    def current_generation(self, table_name: str, partition_key: str) -> int:
        """
        Get the last committed generation for a partition.

        Returns:
            Generation number, or 0 if the partition was never written
        """
        return self._read_generation(self.db.connect(), table_name, partition_key)

    def write(self, snapshot: PartitionSnapshot, generation: int) -> int:
        """
        Replace a partition with the snapshot contents.

        Args:
            snapshot: Rows and scope of the partition to replace
            generation: Generation allocated for the writing pass

        Returns:
            Number of rows written

        Raises:
            StaleGenerationError: If a newer or equal generation is already committed
        """
        return self.write_many([snapshot], generation, skip_stale=False).rows_written

    def write_many(
        self,
        snapshots: Sequence[PartitionSnapshot],
        generation: int,
        skip_stale: bool = True,
        before_commit: Optional[Callable[[Any, SnapshotBatch], None]] = None
    ) -> SnapshotBatch:
        """
        Replace several partitions in a single transaction.

        Either every non-stale partition is replaced or none is. Partition
        locks are taken in sorted order so concurrent batches cannot deadlock.

        Args:
            snapshots: Partitions to replace
            generation: Generation allocated for the writing pass
            skip_stale: Skip partitions already at a newer or equal generation
                instead of failing the batch
            before_commit: Called with the open cursor and the batch counters
                after all partitions are written; an exception rolls back the
                whole batch

        Returns:
            SnapshotBatch with rows written, partitions written and skipped
            stale partitions

        Raises:
            StaleGenerationError: If skip_stale is False and a partition is stale
        """
        batch = SnapshotBatch()
        keys = sorted({(s.table_name, s.partition_key) for s in snapshots})

        with ExitStack() as locks:
            for table_name, partition_key in keys:
                locks.enter_context(partition_lock(table_name, partition_key))

            cursor = self.db.connect().cursor()
            try:
                cursor.execute("BEGIN TRANSACTION")
                try:
                    for snapshot in snapshots:
                        stored = self._read_generation(cursor, snapshot.table_name, snapshot.partition_key)
                        if generation <= stored:
                            error = StaleGenerationError(
                                f"{snapshot.table_name}[{snapshot.partition_key}]: generation {generation} "
                                f"is not newer than committed generation {stored}"
                            )
                            if not skip_stale:
                                raise error
                            logger.warning(f"Skipping stale write: {error}")
                            batch.stale_partitions.append(f"{snapshot.table_name}:{snapshot.partition_key}")
                            continue

                        batch.rows_written += self.replace_partition(cursor, snapshot, generation)
                        batch.partitions_written += 1

                    if before_commit is not None:
                        before_commit(cursor, batch)

                    cursor.execute("COMMIT")
                except Exception:
                    cursor.execute("ROLLBACK")
                    raise
            finally:
                cursor.close()

        logger.debug(
            f"Wrote {batch.rows_written} rows to {batch.partitions_written} partitions "
            f"at generation {generation}"
        )
        return batch

    def replace_partition(self, cursor, snapshot: PartitionSnapshot, generation: int) -> int:
        """Delete, insert and stamp one partition on an open transaction."""
        cursor.execute(
            f"DELETE FROM {snapshot.table_name} WHERE {snapshot.delete_where}",
            snapshot.delete_params
        )

        if snapshot.rows:
            placeholders = ", ".join("?" for _ in snapshot.columns)
            cursor.executemany(
                f"INSERT INTO {snapshot.table_name} ({', '.join(snapshot.columns)}) "
                f"VALUES ({placeholders})",
                [list(row) for row in snapshot.rows]
            )

        cursor.execute("""
            INSERT OR REPLACE INTO snapshot_generations
            (table_name, partition_key, generation, written_at)
            VALUES (?, ?, ?, ?)
        """, [snapshot.table_name, snapshot.partition_key, generation, self.clock.now()])
        return len(snapshot.rows)

    def _read_generation(self, conn, table_name: str, partition_key: str) -> int:
        row = conn.execute("""
            SELECT generation FROM snapshot_generations
            WHERE table_name = ? AND partition_key = ?
        """, [table_name, partition_key]).fetchone()
        return row[0] if row else 0
