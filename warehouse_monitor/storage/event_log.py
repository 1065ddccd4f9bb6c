"""
Append-only event log for pipeline runs, model executions and test results.

This is the ingestion API consumed by pipeline and model execution frameworks.
Every write is timestamped by the store's clock; callers never pass a
timestamp, so a caller with a skewed clock cannot inject times.

Design decisions:
- One dataclass per log, mirroring the table columns
- Pipeline runs are the only mutable rows: started -> completed | failed, once
- Store-assigned identifiers for every row so invalid rows can be referenced
- Reads use half-open [start, end) windows and a fixed ORDER BY so that
  derived computations see events in a deterministic order
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from clock import Clock, SystemClock
from .database import Database
from .run_lifecycle import RunLifecycle


logger = logging.getLogger(__name__)

MODEL_STATUSES = ("success", "failed")
TEST_STATUSES = ("pass", "fail")


class InvalidReference(LookupError):
    """Raised when an operation references a run_id the store has never seen."""


class RunAlreadyClosed(RuntimeError):
    """Raised when a completed or failed run is closed a second time."""


@dataclass
class PipelineRun:
    """One pipeline run as stored in pipeline_runs."""
    run_id: str
    pipeline_name: str
    status: str  # started | completed | failed
    started_at: datetime
    completed_at: Optional[datetime] = None
    message: Optional[str] = None


@dataclass
class ModelExecution:
    """One model execution attempt as stored in model_execution_logs."""
    execution_id: str
    model_name: str
    status: str  # success | failed
    executed_at: datetime
    rows_affected: Optional[int] = None
    execution_time_seconds: Optional[float] = None


@dataclass
class TestResult:
    """One data test run as stored in test_results."""
    result_id: str
    model_name: str
    test_name: str
    status: str  # pass | fail
    executed_at: datetime


class EventLogStore:
    """
    Records and reads execution events.

    Operations:
    1. record_pipeline_start / record_pipeline_end: pipeline run lifecycle
    2. record_model_execution: one row per model execution attempt
    3. record_test_result: one row per data test run
    4. Read helpers returning typed records for a time window
    """

    def __init__(self, database: Database, clock: Optional[Clock] = None):
        """
        Initialize the store.

        Args:
            database: Database instance with initialized schema
            clock: Clock used to timestamp writes (defaults to SystemClock)
        """
        self.db = database
        self.clock = clock or SystemClock()
        self.lifecycle = RunLifecycle()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_pipeline_start(self, pipeline_name: str) -> str:
        """
        Record the start of a pipeline run.

        Args:
            pipeline_name: Pipeline identifier

        Returns:
            Newly assigned run_id
        """
        _require_name("pipeline_name", pipeline_name)
        now = self.clock.now()
        run_id = f"run_{now.strftime('%Y%m%d_%H%M%S')}_{uuid4().hex[:8]}"

        with self._lock:
            self.db.connect().execute("""
                INSERT INTO pipeline_runs
                (run_id, pipeline_name, status, started_at, completed_at, message)
                VALUES (?, ?, 'started', ?, NULL, ?)
            """, [run_id, pipeline_name, now, f"Pipeline {pipeline_name} started"])

        logger.debug(f"Pipeline {pipeline_name} started as {run_id}")
        return run_id

    def record_pipeline_end(self, run_id: str, status: str, message: Optional[str] = None) -> None:
        """
        Close a pipeline run as completed or failed.

        Args:
            run_id: Identifier returned by record_pipeline_start
            status: completed | failed
            message: Optional free-text message

        Raises:
            InvalidReference: If run_id is unknown
            RunAlreadyClosed: If the run was already completed or failed
            ValueError: If status is not a terminal run status
        """
        if not self.lifecycle.is_terminal(status):
            raise ValueError(f"Invalid end status {status!r}; expected one of {sorted(self.lifecycle.TERMINAL)}")

        with self._lock:
            conn = self.db.connect()
            row = conn.execute(
                "SELECT pipeline_name, status FROM pipeline_runs WHERE run_id = ?", [run_id]
            ).fetchone()

            if row is None:
                raise InvalidReference(f"Unknown run_id: {run_id}")

            pipeline_name, current_status = row
            is_valid, reason = self.lifecycle.validate_transition(current_status, status)
            if not is_valid:
                raise RunAlreadyClosed(f"Run {run_id}: {reason}")

            now = self.clock.now()
            updated = conn.execute("""
                UPDATE pipeline_runs
                SET status = ?, completed_at = ?, message = ?
                WHERE run_id = ? AND status = 'started'
            """, [status, now, message or f"Pipeline {pipeline_name} {status}", run_id]).fetchone()[0]

            # Another store closed the run between the status read and the update
            if updated == 0:
                raise RunAlreadyClosed(f"Run {run_id}: already closed by a concurrent writer")

        logger.debug(f"Run {run_id} closed as {status}")

    def record_model_execution(
        self,
        model_name: str,
        status: str,
        rows_affected: Optional[int] = None,
        execution_time_seconds: Optional[float] = None
    ) -> str:
        """
        Record one model execution attempt.

        Negative execution times are stored as reported; aggregation routes
        them to the invalid sink.

        Returns:
            Newly assigned execution_id
        """
        _require_name("model_name", model_name)
        _require_status("model execution", status, MODEL_STATUSES)
        execution_id = uuid4().hex

        with self._lock:
            self.db.connect().execute("""
                INSERT INTO model_execution_logs
                (execution_id, model_name, status, rows_affected, execution_time_seconds, executed_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [execution_id, model_name, status, rows_affected, execution_time_seconds, self.clock.now()])

        return execution_id

    def record_test_result(self, model_name: str, test_name: str, status: str) -> str:
        """Record one data test outcome. Returns the result_id."""
        _require_name("model_name", model_name)
        _require_name("test_name", test_name)
        _require_status("test result", status, TEST_STATUSES)
        result_id = uuid4().hex

        with self._lock:
            self.db.connect().execute("""
                INSERT INTO test_results (result_id, model_name, test_name, status, executed_at)
                VALUES (?, ?, ?, ?, ?)
            """, [result_id, model_name, test_name, status, self.clock.now()])

        return result_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        rows = self._fetch("SELECT * FROM pipeline_runs WHERE run_id = ?", [run_id])
        return PipelineRun(**rows[0]) if rows else None

    def pipeline_runs(
        self,
        start: datetime,
        end: datetime,
        pipeline_name: Optional[str] = None
    ) -> List[PipelineRun]:
        """Pipeline runs started in [start, end), oldest first."""
        sql, params = _windowed("pipeline_runs", "started_at", "pipeline_name", start, end, pipeline_name)
        return [PipelineRun(**row) for row in self._fetch(sql + " ORDER BY started_at, run_id", params)]

    def model_executions(
        self,
        start: datetime,
        end: datetime,
        model_name: Optional[str] = None
    ) -> List[ModelExecution]:
        """Model executions in [start, end), oldest first."""
        sql, params = _windowed("model_execution_logs", "executed_at", "model_name", start, end, model_name)
        return [ModelExecution(**row) for row in self._fetch(sql + " ORDER BY executed_at, execution_id", params)]

    def test_results(
        self,
        start: datetime,
        end: datetime,
        model_name: Optional[str] = None
    ) -> List[TestResult]:
        """Test results in [start, end), oldest first."""
        sql, params = _windowed("test_results", "executed_at", "model_name", start, end, model_name)
        return [TestResult(**row) for row in self._fetch(sql + " ORDER BY executed_at, result_id", params)]

    def pipeline_names(self) -> List[str]:
        rows = self.db.connect().execute(
            "SELECT DISTINCT pipeline_name FROM pipeline_runs ORDER BY pipeline_name"
        ).fetchall()
        return [r[0] for r in rows]

    def model_names(self) -> List[str]:
        """Every model seen in either the execution log or the test log."""
        rows = self.db.connect().execute("""
            SELECT model_name FROM model_execution_logs
            UNION
            SELECT model_name FROM test_results
            ORDER BY model_name
        """).fetchall()
        return [r[0] for r in rows]

    def last_model_execution(self, model_name: str) -> Optional[datetime]:
        """Most recent execution time of a model, or None if it never ran."""
        row = self.db.connect().execute(
            "SELECT max(executed_at) FROM model_execution_logs WHERE model_name = ?", [model_name]
        ).fetchone()
        return row[0] if row else None

    def _fetch(self, sql: str, params: List[Any]) -> List[Dict[str, Any]]:
        conn = self.db.connect()
        results = conn.execute(sql, params).fetchall()
        columns = [desc[0] for desc in conn.description]
        return [dict(zip(columns, row)) for row in results]


def _windowed(
    table: str,
    time_column: str,
    key_column: str,
    start: datetime,
    end: datetime,
    key: Optional[str]
) -> Tuple[str, List[Any]]:
    sql = f"SELECT * FROM {table} WHERE {time_column} >= ? AND {time_column} < ?"
    params: List[Any] = [start, end]
    if key is not None:
        sql += f" AND {key_column} = ?"
        params.append(key)
    return sql, params


def _require_name(field_name: str, value: str) -> None:
    if not value or not str(value).strip():
        raise ValueError(f"{field_name} must be a non-empty string")


def _require_status(kind: str, status: str, allowed: Tuple[str, ...]) -> None:
    if status not in allowed:
        raise ValueError(f"Invalid {kind} status {status!r}; expected one of {list(allowed)}")
