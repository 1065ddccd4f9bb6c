"""
Consistency checks over the monitor's own tables.

This module implements IntegrityChecker, which runs SQL-based validation
checks before each monitoring pass commits.

Checks implemented:
- Unique keys: one derived row per entity and period
- Metric counts consistent: successful + failed never exceeds total runs
- Score bounds: quality scores stay within [0, 100], passed tests never
  exceed total tests and an undefined score carries no rating
- Generation ledger: no derived row carries a generation newer than its
  partition's ledger entry
- Stuck runs: pipeline runs still 'started' long after they began
- Invalid rows: events routed to the invalid-row sink in the pass window

Design decisions:
- Each check returns an IntegrityCheckResult with pass/fail and details
- Checks are SQL-based and run against the database, or against an open
  cursor so a pass can check its derived writes before committing them
- Time-based checks take "now" from the injected clock
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from clock import Clock, SystemClock


@dataclass
class IntegrityCheckResult:
    """
    Result of a single integrity check.

    Attributes:
        check_name: Unique identifier for the check
        passed: True if check passed, False otherwise
        message: Human-readable summary of the result
        details: Optional dict with additional context (e.g., counts)
    """
    check_name: str
    passed: bool
    message: str
    details: Dict[str, Any] = None


class IntegrityChecker:
    """
    Runs integrity checks against the event logs and derived tables.
    """

    def __init__(self, database, clock: Optional[Clock] = None, stuck_after_hours: int = 24):
        """
        Initialize integrity checker.

        Args:
            database: Database instance with active connection
            clock: Clock defining "now" for time-based checks
            stuck_after_hours: Age after which an unfinished run counts as stuck
        """
        self.db = database
        self.clock = clock or SystemClock()
        self.stuck_after_hours = stuck_after_hours

    def run_all_checks(self, since: Optional[datetime] = None, conn=None) -> List[IntegrityCheckResult]:
        """
        Run all integrity checks.

        Args:
            since: Start of the window for the invalid-row check
                (defaults to 24 hours before now)
            conn: Open cursor to check through (defaults to the shared connection)
        """
        return [
            self.check_unique_keys(conn),
            self.check_metric_counts(conn),
            self.check_score_bounds(conn),
            self.check_generation_ledger(conn),
            self.check_stuck_runs(conn),
            self.check_invalid_rows(since, conn),
        ]

    def _connection(self, conn):
        return self.db.connect() if conn is None else conn

    def check_unique_keys(self, conn=None) -> IntegrityCheckResult:
        """Derived tables hold at most one row per key."""
        conn = self._connection(conn)
        duplicates = {}
        for table, key in (
            ("daily_metrics", "entity_type, entity_key, metric_date"),
            ("weekly_metrics", "entity_type, entity_key, week_start"),
            ("quality_scores", "model_name"),
        ):
            duplicates[table] = conn.execute(f"""
                SELECT count(*) FROM (
                    SELECT {key} FROM {table} GROUP BY {key} HAVING count(*) > 1
                )
            """).fetchone()[0]
        total = sum(duplicates.values())

        return IntegrityCheckResult(
            check_name="unique_keys",
            passed=total == 0,
            message=f"{total} duplicated derived keys" if total > 0 else "Derived keys unique",
            details={"duplicates": duplicates}
        )

    def check_metric_counts(self, conn=None) -> IntegrityCheckResult:
        """Successful and failed runs of a day never exceed its total."""
        conn = self._connection(conn)
        result = conn.execute("""
            SELECT count(*) FROM daily_metrics
            WHERE successful_runs + failed_runs > total_runs
               OR timed_runs > total_runs
        """).fetchone()[0]

        return IntegrityCheckResult(
            check_name="metric_counts",
            passed=result == 0,
            message=f"{result} daily rows with inconsistent counts" if result > 0 else "Daily counts consistent",
            details={"inconsistent_count": result}
        )

    def check_score_bounds(self, conn=None) -> IntegrityCheckResult:
        """Quality scores stay within [0, 100] and undefined scores carry no rating."""
        conn = self._connection(conn)
        result = conn.execute("""
            SELECT count(*) FROM quality_scores
            WHERE (score IS NOT NULL AND (score < 0 OR score > 100))
               OR (score IS NULL AND rating IS NOT NULL)
               OR passed_tests > total_tests
        """).fetchone()[0]

        return IntegrityCheckResult(
            check_name="score_bounds",
            passed=result == 0,
            message=f"{result} quality scores out of bounds" if result > 0 else "Quality scores within bounds",
            details={"out_of_bounds_count": result}
        )

    def check_generation_ledger(self, conn=None) -> IntegrityCheckResult:
        """
        Every derived row's generation is covered by its partition's ledger entry.

        Rows older than the ledger entry are fine: they belong to dates the
        latest write did not cover.
        """
        conn = self._connection(conn)
        result = conn.execute("""
            SELECT count(*) FROM daily_metrics d
            LEFT JOIN snapshot_generations g
              ON g.table_name = 'daily_metrics'
             AND g.partition_key = d.entity_type || ':' || d.entity_key
            WHERE g.generation IS NULL OR d.generation > g.generation
        """).fetchone()[0]

        return IntegrityCheckResult(
            check_name="generation_ledger",
            passed=result == 0,
            message=f"{result} daily rows ahead of the generation ledger" if result > 0 else "Generation ledger consistent",
            details={"orphan_count": result}
        )

    def check_stuck_runs(self, conn=None) -> IntegrityCheckResult:
        """
        Detect pipeline runs that started but never finished.

        Warning threshold: any run still open after stuck_after_hours.
        """
        cutoff = self.clock.now() - timedelta(hours=self.stuck_after_hours)
        conn = self._connection(conn)
        rows = conn.execute("""
            SELECT run_id FROM pipeline_runs
            WHERE status = 'started' AND started_at < ?
            ORDER BY started_at
        """, [cutoff]).fetchall()
        run_ids = [r[0] for r in rows]

        return IntegrityCheckResult(
            check_name="stuck_runs",
            passed=not run_ids,
            message=(
                f"{len(run_ids)} runs open for more than {self.stuck_after_hours}h"
                if run_ids else "No stuck runs"
            ),
            details={"stuck_count": len(run_ids), "run_ids": run_ids[:10]}
        )

    def check_invalid_rows(self, since: Optional[datetime] = None, conn=None) -> IntegrityCheckResult:
        """Events routed to the invalid-row sink since the given time."""
        since = since or self.clock.now() - timedelta(hours=24)
        conn = self._connection(conn)
        rows = conn.execute("""
            SELECT source_table, count(*) FROM invalid_rows
            WHERE detected_at >= ?
            GROUP BY source_table
            ORDER BY source_table
        """, [since]).fetchall()
        by_table = {r[0]: r[1] for r in rows}
        total = sum(by_table.values())

        return IntegrityCheckResult(
            check_name="invalid_rows",
            passed=total == 0,
            message=f"{total} invalid events quarantined" if total > 0 else "No invalid events",
            details={"invalid_count": total, "by_table": by_table}
        )
