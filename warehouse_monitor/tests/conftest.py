"""
Shared pytest fixtures for warehouse monitor tests.

This module provides reusable fixtures that simplify test setup
and reduce code duplication across test modules.
"""
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from clock import FixedClock
from observability.metrics import MetricsAggregator
from storage import Database, EventLogStore, SnapshotWriter


NOW = datetime(2024, 1, 15, 12, 0, 0)


class RecordingSink:
    """Alert sink that keeps delivered alerts in memory."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.delivered = []

    def deliver(self, alert):
        if self.fail:
            raise ConnectionError("sink unavailable")
        self.delivered.append(alert)


@pytest.fixture
def temp_db():
    """
    Create a temporary database for testing.

    Yields:
        Database instance with schema initialized

    Cleanup:
        Automatically closes connection and removes file after test
    """
    with tempfile.NamedTemporaryFile(suffix=".duckdb", delete=True) as f:
        db_path = f.name

    db = Database(db_path)
    db.initialize_schema()
    yield db
    db.close()

    # Cleanup
    Path(db_path).unlink(missing_ok=True)
    Path(db_path + ".wal").unlink(missing_ok=True)


@pytest.fixture
def clock():
    """Fixed clock at 2024-01-15 12:00:00 UTC."""
    return FixedClock(NOW)


@pytest.fixture
def store(temp_db, clock):
    return EventLogStore(temp_db, clock)


@pytest.fixture
def writer(temp_db, clock):
    return SnapshotWriter(temp_db, clock)


@pytest.fixture
def aggregator(temp_db, store, writer, clock):
    return MetricsAggregator(temp_db, store, writer, clock, max_workers=2)


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def failing_sink():
    return RecordingSink(fail=True)


@pytest.fixture
def record_run(store, clock):
    """
    Record a closed pipeline run at a given time.

    Returns:
        Callable(pipeline_name, started_at, minutes, status="completed") -> run_id.
        A negative duration closes the run before it started.
    """
    def _record(pipeline_name, started_at, minutes=10, status="completed"):
        saved = clock.now()
        clock.set(started_at)
        run_id = store.record_pipeline_start(pipeline_name)
        clock.set(started_at + timedelta(minutes=minutes))
        store.record_pipeline_end(run_id, status)
        clock.set(saved)
        return run_id

    return _record


@pytest.fixture
def record_execution(store, clock):
    """
    Record a model execution at a given time.

    Returns:
        Callable(model_name, executed_at, status="success", rows=None, seconds=None) -> execution_id
    """
    def _record(model_name, executed_at, status="success", rows=None, seconds=None):
        saved = clock.now()
        clock.set(executed_at)
        execution_id = store.record_model_execution(model_name, status, rows, seconds)
        clock.set(saved)
        return execution_id

    return _record


@pytest.fixture
def record_test(store, clock):
    """Record a test result at a given time."""
    def _record(model_name, test_name, status, executed_at):
        saved = clock.now()
        clock.set(executed_at)
        result_id = store.record_test_result(model_name, test_name, status)
        clock.set(saved)
        return result_id

    return _record
