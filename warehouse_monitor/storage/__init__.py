"""
Storage layer for the warehouse monitor.

This module provides persistence on DuckDB: append-only event logs and
generation-stamped overwrite tables for derived data.

Components:
- Database: Connection management and schema initialization
- EventLogStore: Ingestion API and typed reads of the event logs
- SnapshotWriter: Atomic, generation-checked partition replacement
- RunLifecycle: Pipeline run status transitions

Usage:
    from storage import Database, EventLogStore

    db = Database("warehouse_monitor.duckdb")
    db.initialize_schema()

    store = EventLogStore(db)
    run_id = store.record_pipeline_start("sales_pipeline")
    store.record_pipeline_end(run_id, "completed")
"""

from .database import Database
from .event_log import (
    EventLogStore,
    InvalidReference,
    ModelExecution,
    PipelineRun,
    RunAlreadyClosed,
    TestResult,
)
from .run_lifecycle import RunLifecycle
from .snapshots import PartitionSnapshot, SnapshotBatch, SnapshotWriter, StaleGenerationError

__all__ = [
    "Database",
    "EventLogStore",
    "InvalidReference",
    "ModelExecution",
    "PartitionSnapshot",
    "PipelineRun",
    "RunAlreadyClosed",
    "RunLifecycle",
    "SnapshotBatch",
    "SnapshotWriter",
    "StaleGenerationError",
    "TestResult",
]
