"""
Database connection and schema management for the warehouse monitor.

This module provides:
- DuckDB connection lifecycle management
- Append-only event logs (pipeline runs, model executions, test results)
- The invalid-row sink for events that fail validation
- Overwrite tables for derived metrics and quality scores
- Generation ledger backing versioned snapshot writes
- Alert delivery ledger used for duplicate suppression
- Monitor pass metadata

Design decisions:
- DuckDB stands in for the host warehouse; watched relations live in the same database
- Derived tables carry the generation that wrote them
- Timestamps are naive UTC, supplied by the caller's clock (no column defaults)
- Sessions run in the UTC time zone so watched TIMESTAMPTZ columns compare
  correctly with naive UTC timestamps
- Indexed on entity keys and event timestamps for window scans
"""
import duckdb
from datetime import datetime
from typing import Optional
from uuid import uuid4


class Database:
    """
    Manages DuckDB connection and schema initialization.

    This class is responsible for:
    - Creating and maintaining a single database connection
    - Initializing event log, derived and ledger tables
    - Generating identifiers for monitor passes
    """

    def __init__(self, db_path: str = "warehouse_monitor.duckdb"):
        """
        Initialize database manager.

        Args:
            db_path: Path to DuckDB database file (created if doesn't exist),
                or ":memory:" for an in-process database
        """
        self.db_path = db_path
        self.conn: Optional[duckdb.DuckDBPyConnection] = None

    def connect(self) -> duckdb.DuckDBPyConnection:
        """
        Get or create database connection.

        Returns:
            Active DuckDB connection
        """
        if self.conn is None:
            self.conn = duckdb.connect(self.db_path)
            # TIMESTAMPTZ values convert to naive timestamps as UTC wall time
            self.conn.execute("SET TimeZone = 'UTC'")
        return self.conn

    def close(self):
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def initialize_schema(self):
        """
        Create all required tables if they don't exist.

        Tables created:
        - pipeline_runs: One row per pipeline run, closed once
        - model_execution_logs: One row per model execution attempt
        - test_results: One row per data test run
        - invalid_rows: Events excluded from aggregates
        - daily_metrics / weekly_metrics: Per-entity execution statistics
        - quality_scores: Test pass-rate score per model
        - snapshot_generations: Last committed generation per partition
        - alert_deliveries: Alerts already delivered (dedup lookback)
        - monitor_passes: Recomputation pass metadata
        """
        conn = self.connect()

        conn.execute("""
            CREATE TABLE IF NOT EXISTS pipeline_runs (
                run_id VARCHAR PRIMARY KEY,
                pipeline_name VARCHAR NOT NULL,
                status VARCHAR NOT NULL,
                started_at TIMESTAMP NOT NULL,
                completed_at TIMESTAMP,
                message VARCHAR
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS model_execution_logs (
                execution_id VARCHAR PRIMARY KEY,
                model_name VARCHAR NOT NULL,
                status VARCHAR NOT NULL,
                rows_affected BIGINT,
                execution_time_seconds DOUBLE,
                executed_at TIMESTAMP NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS test_results (
                result_id VARCHAR PRIMARY KEY,
                model_name VARCHAR NOT NULL,
                test_name VARCHAR NOT NULL,
                status VARCHAR NOT NULL,
                executed_at TIMESTAMP NOT NULL
            )
        """)

        # Re-detecting the same bad row is a no-op thanks to the composite key
        conn.execute("""
            CREATE TABLE IF NOT EXISTS invalid_rows (
                source_table VARCHAR NOT NULL,
                source_id VARCHAR NOT NULL,
                entity_key VARCHAR,
                reason VARCHAR NOT NULL,
                detected_at TIMESTAMP NOT NULL,
                PRIMARY KEY (source_table, source_id)
            )
        """)

        # No primary keys on derived tables: a snapshot write deletes and re-inserts
        # the same keys in one transaction. Keys stay unique per partition write.
        conn.execute("""
            CREATE TABLE IF NOT EXISTS daily_metrics (
                entity_type VARCHAR NOT NULL,
                entity_key VARCHAR NOT NULL,
                metric_date DATE NOT NULL,
                total_runs INTEGER NOT NULL,
                successful_runs INTEGER NOT NULL,
                failed_runs INTEGER NOT NULL,
                invalid_runs INTEGER NOT NULL,
                timed_runs INTEGER NOT NULL,
                avg_execution_time DOUBLE,
                max_execution_time DOUBLE,
                min_execution_time DOUBLE,
                execution_time_change DOUBLE,
                generation BIGINT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS weekly_metrics (
                entity_type VARCHAR NOT NULL,
                entity_key VARCHAR NOT NULL,
                week_start DATE NOT NULL,
                total_runs INTEGER NOT NULL,
                successful_runs INTEGER NOT NULL,
                failed_runs INTEGER NOT NULL,
                invalid_runs INTEGER NOT NULL,
                timed_runs INTEGER NOT NULL,
                avg_execution_time DOUBLE,
                max_execution_time DOUBLE,
                min_execution_time DOUBLE,
                generation BIGINT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS quality_scores (
                model_name VARCHAR NOT NULL,
                window_start TIMESTAMP NOT NULL,
                window_end TIMESTAMP NOT NULL,
                total_tests INTEGER NOT NULL,
                passed_tests INTEGER NOT NULL,
                score DOUBLE,
                rating VARCHAR,
                generation BIGINT NOT NULL
            )
        """)

        # Generations are allocated from a sequence so they are unique and increasing
        conn.execute("CREATE SEQUENCE IF NOT EXISTS snapshot_generation_seq START 1")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS snapshot_generations (
                table_name VARCHAR NOT NULL,
                partition_key VARCHAR NOT NULL,
                generation BIGINT NOT NULL,
                written_at TIMESTAMP NOT NULL,
                PRIMARY KEY (table_name, partition_key)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS alert_deliveries (
                alert_type VARCHAR NOT NULL,
                entity_key VARCHAR NOT NULL,
                bucket_start TIMESTAMP NOT NULL,
                raised_at TIMESTAMP NOT NULL,
                message VARCHAR,
                delivered_at TIMESTAMP NOT NULL,
                PRIMARY KEY (alert_type, entity_key, bucket_start)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS monitor_passes (
                pass_id VARCHAR PRIMARY KEY,
                started_at TIMESTAMP NOT NULL,
                completed_at TIMESTAMP,
                status VARCHAR NOT NULL,
                metrics JSON
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_pipeline
            ON pipeline_runs(pipeline_name, started_at)
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_exec_model
            ON model_execution_logs(model_name, executed_at)
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_exec_time
            ON model_execution_logs(executed_at)
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_tests_model
            ON test_results(model_name, executed_at)
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_daily_entity
            ON daily_metrics(entity_key, metric_date)
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_weekly_entity
            ON weekly_metrics(entity_key, week_start)
        """)

    def new_pass_id(self, now: datetime) -> str:
        """
        Generate a unique identifier for a monitor pass.

        Args:
            now: Pass start time from the injected clock

        Returns:
            Pass ID in format: pass_YYYYMMDD_HHMMSS_xxxxxxxx
        """
        return f"pass_{now.strftime('%Y%m%d_%H%M%S')}_{uuid4().hex[:8]}"

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
