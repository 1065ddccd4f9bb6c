"""
Execution metrics aggregation for pipelines and models.

This module rolls raw execution events into per-day and per-week statistics
per entity (a pipeline or a model):
- Staging: pipeline runs and model executions become ExecutionEvents with a
  derived outcome, execution time, performance category and validity
- Daily: run counts and min/avg/max execution time per entity and day
- Weekly: aggregates of the daily aggregates per Monday-start week
- Day-over-day execution time change from the entity's sorted daily series
- Trailing-window summaries used by health classification
- Counts of valid runs per performance category over the recomputed range

Design decisions:
- All computation is plain functions over event lists; MetricsAggregator only
  loads events and writes snapshots, so results are a pure function of the logs
- Invalid events (completed_at < started_at, negative or non-finite duration)
  are excluded from every aggregate and counted separately
- Averages use math.fsum so the result does not depend on summation order
- Weekly average is the daily averages weighted by each day's timed_runs
"""
import logging
import math
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from clock import Clock, SystemClock
from storage.database import Database
from storage.event_log import EventLogStore, ModelExecution, PipelineRun
from storage.snapshots import PartitionSnapshot, SnapshotBatch, SnapshotWriter


logger = logging.getLogger(__name__)

PIPELINE = "pipeline"
MODEL = "model"

SLOW_RUN_SECONDS = 3600
MEDIUM_RUN_SECONDS = 1800
PERFORMANCE_CATEGORIES = ("fast", "medium", "slow")

DAILY_COLUMNS = (
    "entity_type", "entity_key", "metric_date", "total_runs", "successful_runs",
    "failed_runs", "invalid_runs", "timed_runs", "avg_execution_time",
    "max_execution_time", "min_execution_time", "execution_time_change", "generation",
)

WEEKLY_COLUMNS = (
    "entity_type", "entity_key", "week_start", "total_runs", "successful_runs",
    "failed_runs", "invalid_runs", "timed_runs", "avg_execution_time",
    "max_execution_time", "min_execution_time", "generation",
)

EntityId = Tuple[str, str]  # (entity_type, entity_key)


@dataclass
class ExecutionEvent:
    """
    A pipeline run or model execution, normalized for aggregation.

    outcome is success | error | running. invalid_reason is set when the
    event must be routed to the invalid sink.
    """
    source_table: str
    source_id: str
    entity_type: str
    entity_key: str
    occurred_at: datetime
    outcome: str
    execution_time_seconds: Optional[float] = None
    invalid_reason: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.invalid_reason is None

    @property
    def performance_category(self) -> Optional[str]:
        return performance_category(self.execution_time_seconds)


@dataclass
class DailyMetric:
    """Execution statistics for one entity on one day."""
    entity_type: str
    entity_key: str
    metric_date: date
    total_runs: int
    successful_runs: int
    failed_runs: int
    invalid_runs: int
    timed_runs: int
    avg_execution_time: Optional[float] = None
    max_execution_time: Optional[float] = None
    min_execution_time: Optional[float] = None
    execution_time_change: Optional[float] = None

    @property
    def success_rate(self) -> Optional[float]:
        return success_rate(self.successful_runs, self.total_runs)

    def as_row(self, generation: int) -> Tuple:
        return (
            self.entity_type, self.entity_key, self.metric_date, self.total_runs,
            self.successful_runs, self.failed_runs, self.invalid_runs, self.timed_runs,
            self.avg_execution_time, self.max_execution_time, self.min_execution_time,
            self.execution_time_change, generation,
        )


@dataclass
class WeeklyMetric:
    """Execution statistics for one entity over one Monday-start week."""
    entity_type: str
    entity_key: str
    week_start: date
    total_runs: int
    successful_runs: int
    failed_runs: int
    invalid_runs: int
    timed_runs: int
    avg_execution_time: Optional[float] = None
    max_execution_time: Optional[float] = None
    min_execution_time: Optional[float] = None

    @property
    def success_rate(self) -> Optional[float]:
        return success_rate(self.successful_runs, self.total_runs)

    def as_row(self, generation: int) -> Tuple:
        return (
            self.entity_type, self.entity_key, self.week_start, self.total_runs,
            self.successful_runs, self.failed_runs, self.invalid_runs, self.timed_runs,
            self.avg_execution_time, self.max_execution_time, self.min_execution_time,
            generation,
        )


@dataclass
class WindowSummary:
    """Valid run counts for one entity over an arbitrary time window."""
    entity_type: str
    entity_key: str
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    invalid_runs: int = 0

    @property
    def success_rate(self) -> Optional[float]:
        return success_rate(self.successful_runs, self.total_runs)


@dataclass
class AggregationResult:
    """Outcome of one recomputation over a date range."""
    start_date: date
    end_date: date
    generation: Optional[int] = None
    daily: List[DailyMetric] = field(default_factory=list)
    weekly: List[WeeklyMetric] = field(default_factory=list)
    invalid_events: List[ExecutionEvent] = field(default_factory=list)
    rows_written: int = 0
    partitions_written: int = 0
    stale_partitions: List[str] = field(default_factory=list)
    performance_counts: Dict[str, int] = field(default_factory=dict)

    def apply_batch(self, batch: SnapshotBatch):
        self.rows_written += batch.rows_written
        self.partitions_written += batch.partitions_written
        self.stale_partitions.extend(batch.stale_partitions)


# ----------------------------------------------------------------------
# Pure computation
# ----------------------------------------------------------------------

def success_rate(successful: int, total: int) -> Optional[float]:
    """Percentage of successful runs, or None when there were no runs."""
    if not total:
        return None
    return round(successful / total * 100, 2)


def performance_category(seconds: Optional[float]) -> Optional[str]:
    """Classify a run duration as slow (> 1h), medium (> 30m) or fast."""
    if seconds is None:
        return None
    if seconds > SLOW_RUN_SECONDS:
        return "slow"
    if seconds > MEDIUM_RUN_SECONDS:
        return "medium"
    return "fast"


def count_performance(events: Iterable[ExecutionEvent]) -> Dict[str, int]:
    """Valid timed events per performance category (fast, medium, slow)."""
    counts: Dict[str, int] = {}
    for event in events:
        category = event.performance_category if event.is_valid else None
        if category is not None:
            counts[category] = counts.get(category, 0) + 1
    return counts


def stage_pipeline_run(run: PipelineRun) -> ExecutionEvent:
    """Normalize a pipeline run, deriving its duration and validity."""
    outcome = {"completed": "success", "failed": "error"}.get(run.status, "running")
    execution_time = None
    invalid_reason = None

    if run.completed_at is not None and run.started_at is not None:
        if run.completed_at < run.started_at:
            invalid_reason = "completed_at before started_at"
        else:
            execution_time = (run.completed_at - run.started_at).total_seconds()

    return ExecutionEvent(
        source_table="pipeline_runs",
        source_id=run.run_id,
        entity_type=PIPELINE,
        entity_key=run.pipeline_name,
        occurred_at=run.started_at,
        outcome=outcome,
        execution_time_seconds=execution_time,
        invalid_reason=invalid_reason,
    )


def stage_model_execution(execution: ModelExecution) -> ExecutionEvent:
    """Normalize a model execution; a negative duration means it completed before it started."""
    seconds = execution.execution_time_seconds
    invalid_reason = None

    if seconds is not None:
        if not math.isfinite(seconds):
            invalid_reason = "non-finite execution time"
        elif seconds < 0:
            invalid_reason = "completed_at before started_at"

    return ExecutionEvent(
        source_table="model_execution_logs",
        source_id=execution.execution_id,
        entity_type=MODEL,
        entity_key=execution.model_name,
        occurred_at=execution.executed_at,
        outcome="success" if execution.status == "success" else "error",
        execution_time_seconds=None if invalid_reason else seconds,
        invalid_reason=invalid_reason,
    )


def summarize_day(entity_type: str, entity_key: str, day: date, events: Iterable[ExecutionEvent]) -> DailyMetric:
    """Aggregate one entity's events for one day."""
    valid = [e for e in events if e.is_valid]
    invalid_runs = sum(1 for e in events if not e.is_valid)
    times = [e.execution_time_seconds for e in valid if e.execution_time_seconds is not None]

    return DailyMetric(
        entity_type=entity_type,
        entity_key=entity_key,
        metric_date=day,
        total_runs=len(valid),
        successful_runs=sum(1 for e in valid if e.outcome == "success"),
        failed_runs=sum(1 for e in valid if e.outcome == "error"),
        invalid_runs=invalid_runs,
        timed_runs=len(times),
        avg_execution_time=math.fsum(times) / len(times) if times else None,
        max_execution_time=max(times) if times else None,
        min_execution_time=min(times) if times else None,
    )


def aggregate_daily(events: Iterable[ExecutionEvent]) -> Dict[EntityId, List[DailyMetric]]:
    """
    Group events by entity and day.

    Returns:
        Mapping of (entity_type, entity_key) to that entity's daily series,
        sorted by date, with execution_time_change filled in
    """
    buckets: Dict[EntityId, Dict[date, List[ExecutionEvent]]] = defaultdict(lambda: defaultdict(list))
    for event in events:
        buckets[(event.entity_type, event.entity_key)][event.occurred_at.date()].append(event)

    series = {}
    for entity_id in sorted(buckets):
        days = buckets[entity_id]
        metrics = [summarize_day(entity_id[0], entity_id[1], day, days[day]) for day in sorted(days)]
        series[entity_id] = apply_execution_time_changes(metrics)
    return series


def apply_execution_time_changes(series: List[DailyMetric]) -> List[DailyMetric]:
    """
    Set execution_time_change on a date-sorted series.

    The change is this day's average minus the previous entry's average;
    None for the first entry or when either average is undefined.
    """
    ordered = sorted(series, key=lambda m: m.metric_date)
    for index, metric in enumerate(ordered):
        previous = ordered[index - 1] if index > 0 else None
        if previous is None or previous.avg_execution_time is None or metric.avg_execution_time is None:
            metric.execution_time_change = None
        else:
            metric.execution_time_change = metric.avg_execution_time - previous.avg_execution_time
    return ordered


def week_start(day: date) -> date:
    """Monday of the week containing day."""
    return day - timedelta(days=day.weekday())


def rollup_weekly(daily: Iterable[DailyMetric]) -> List[WeeklyMetric]:
    """Combine daily metrics of one or more entities into weekly metrics."""
    buckets: Dict[Tuple[str, str, date], List[DailyMetric]] = defaultdict(list)
    for metric in daily:
        buckets[(metric.entity_type, metric.entity_key, week_start(metric.metric_date))].append(metric)

    weekly = []
    for (entity_type, entity_key, start) in sorted(buckets):
        days = buckets[(entity_type, entity_key, start)]
        timed = [d for d in days if d.timed_runs and d.avg_execution_time is not None]
        timed_runs = sum(d.timed_runs for d in timed)
        weekly.append(WeeklyMetric(
            entity_type=entity_type,
            entity_key=entity_key,
            week_start=start,
            total_runs=sum(d.total_runs for d in days),
            successful_runs=sum(d.successful_runs for d in days),
            failed_runs=sum(d.failed_runs for d in days),
            invalid_runs=sum(d.invalid_runs for d in days),
            timed_runs=timed_runs,
            avg_execution_time=(
                math.fsum(d.avg_execution_time * d.timed_runs for d in timed) / timed_runs
                if timed_runs else None
            ),
            max_execution_time=max(d.max_execution_time for d in timed) if timed else None,
            min_execution_time=min(d.min_execution_time for d in timed) if timed else None,
        ))
    return weekly


def summarize_window(entity_type: str, entity_key: str, events: Iterable[ExecutionEvent]) -> WindowSummary:
    summary = WindowSummary(entity_type=entity_type, entity_key=entity_key)
    for event in events:
        if not event.is_valid:
            summary.invalid_runs += 1
            continue
        summary.total_runs += 1
        if event.outcome == "success":
            summary.successful_runs += 1
        elif event.outcome == "error":
            summary.failed_runs += 1
    return summary


def day_bounds(start_date: date, end_date: date) -> Tuple[datetime, datetime]:
    """Half-open datetime range covering start_date through end_date inclusive."""
    return datetime.combine(start_date, time.min), datetime.combine(end_date + timedelta(days=1), time.min)


# ----------------------------------------------------------------------
# Loading and persistence
# ----------------------------------------------------------------------

class MetricsAggregator:
    """
    Recomputes daily and weekly metrics from the event logs.

    Each recomputation:
    1. Loads events covering the range, the weeks it touches and a lookback
       for the first day's execution time change
    2. Computes each entity's series in a thread pool (pure, no shared state)
    3. Routes invalid events in the range to the invalid sink
    4. Replaces every entity's daily and weekly partitions in one
       SnapshotWriter batch
    """

    def __init__(
        self,
        database: Database,
        store: EventLogStore,
        writer: SnapshotWriter,
        clock: Optional[Clock] = None,
        max_workers: int = 4,
        delta_lookback_days: int = 30
    ):
        """
        Initialize aggregator.

        Args:
            database: Database holding the logs and derived tables
            store: Event log reader
            writer: Snapshot writer for derived partitions
            clock: Clock used for invalid-row detection times
            max_workers: Thread pool size for per-entity computation
            delta_lookback_days: How far back to look for the previous day
                when computing the first day's execution time change
        """
        self.db = database
        self.store = store
        self.writer = writer
        self.clock = clock or SystemClock()
        self.max_workers = max_workers
        self.delta_lookback_days = delta_lookback_days

    def load_events(
        self,
        start: datetime,
        end: datetime,
        entity_type: Optional[str] = None,
        entity_key: Optional[str] = None
    ) -> List[ExecutionEvent]:
        """Stage pipeline runs and/or model executions in [start, end)."""
        events: List[ExecutionEvent] = []
        if entity_type in (None, PIPELINE):
            events.extend(stage_pipeline_run(r) for r in self.store.pipeline_runs(start, end, entity_key))
        if entity_type in (None, MODEL):
            events.extend(stage_model_execution(e) for e in self.store.model_executions(start, end, entity_key))
        return events

    def compute(self, start_date: date, end_date: date) -> AggregationResult:
        """
        Compute metrics for [start_date, end_date] without writing anything.

        Weekly metrics cover every week the range touches, using full weeks.
        """
        if end_date < start_date:
            raise ValueError(f"end_date {end_date} is before start_date {start_date}")

        load_start_date = min(week_start(start_date), start_date - timedelta(days=self.delta_lookback_days))
        load_end_date = week_start(end_date) + timedelta(days=6)
        load_start, load_end = day_bounds(load_start_date, load_end_date)

        events = self.load_events(load_start, load_end)
        by_entity: Dict[EntityId, List[ExecutionEvent]] = defaultdict(list)
        for event in events:
            by_entity[(event.entity_type, event.entity_key)].append(event)

        entity_ids = sorted(by_entity)
        with ThreadPoolExecutor(max_workers=max(1, self.max_workers)) as pool:
            series_list = list(pool.map(lambda eid: aggregate_daily(by_entity[eid]).get(eid, []), entity_ids))

        first_week = week_start(start_date)
        last_week = week_start(end_date)
        result = AggregationResult(start_date=start_date, end_date=end_date)

        for series in series_list:
            result.daily.extend(m for m in series if start_date <= m.metric_date <= end_date)
            result.weekly.extend(w for w in rollup_weekly(series) if first_week <= w.week_start <= last_week)

        range_start, range_end = day_bounds(start_date, end_date)
        result.invalid_events = [
            e for e in events if not e.is_valid and range_start <= e.occurred_at < range_end
        ]
        result.performance_counts = count_performance(
            e for e in events if range_start <= e.occurred_at < range_end
        )
        return result

    def partition_snapshots(self, result: AggregationResult) -> List[PartitionSnapshot]:
        """
        Daily and weekly replacement snapshots for every entity in a computed result.

        result.generation must be set; it is stamped on every row.
        """
        daily_by_entity: Dict[EntityId, List[DailyMetric]] = defaultdict(list)
        for metric in result.daily:
            daily_by_entity[(metric.entity_type, metric.entity_key)].append(metric)
        weekly_by_entity: Dict[EntityId, List[WeeklyMetric]] = defaultdict(list)
        for metric in result.weekly:
            weekly_by_entity[(metric.entity_type, metric.entity_key)].append(metric)

        first_week, last_week = week_start(result.start_date), week_start(result.end_date)

        snapshots = []
        for entity_id in sorted(set(daily_by_entity) | set(weekly_by_entity)):
            entity_type, entity_key = entity_id
            snapshots.append(PartitionSnapshot(
                table_name="daily_metrics",
                partition_key=f"{entity_type}:{entity_key}",
                delete_where="entity_type = ? AND entity_key = ? AND metric_date BETWEEN ? AND ?",
                delete_params=[entity_type, entity_key, result.start_date, result.end_date],
                columns=DAILY_COLUMNS,
                rows=[m.as_row(result.generation) for m in daily_by_entity.get(entity_id, [])],
            ))
            snapshots.append(PartitionSnapshot(
                table_name="weekly_metrics",
                partition_key=f"{entity_type}:{entity_key}",
                delete_where="entity_type = ? AND entity_key = ? AND week_start BETWEEN ? AND ?",
                delete_params=[entity_type, entity_key, first_week, last_week],
                columns=WEEKLY_COLUMNS,
                rows=[m.as_row(result.generation) for m in weekly_by_entity.get(entity_id, [])],
            ))
        return snapshots

    def recompute(self, start_date: date, end_date: date, generation: Optional[int] = None) -> AggregationResult:
        """
        Recompute and overwrite metrics for [start_date, end_date].

        All entities' daily and weekly partitions are replaced in one
        transaction, together with the invalid-row routing.

        Args:
            start_date: First day to recompute
            end_date: Last day to recompute (inclusive)
            generation: Generation of the calling pass (allocated if omitted)

        Returns:
            AggregationResult with the computed rows and write counts

        Raises:
            Exception: Any write failure other than a stale generation; every
                partition of the range is rolled back
        """
        result = self.compute(start_date, end_date)
        result.generation = generation if generation is not None else self.writer.allocate_generation()

        batch = self.writer.write_many(
            self.partition_snapshots(result),
            result.generation,
            before_commit=lambda cursor, _: self.route_invalid(result.invalid_events, cursor),
        )
        result.apply_batch(batch)

        logger.info(
            f"Recomputed metrics {start_date}..{end_date}: {len(result.daily)} daily, "
            f"{len(result.weekly)} weekly, {len(result.invalid_events)} invalid"
        )
        return result

    def route_invalid(self, events: Iterable[ExecutionEvent], conn=None) -> int:
        """
        Record invalid events in the invalid_rows sink.

        Already-recorded rows are left as they are.

        Args:
            events: Invalid events to record
            conn: Open cursor to write through (defaults to the shared connection)

        Returns:
            Number of events routed
        """
        if conn is None:
            conn = self.db.connect()
        routed = 0
        detected_at = self.clock.now()
        for event in events:
            logger.warning(
                f"Invalid {event.source_table} row {event.source_id} for {event.entity_key}: "
                f"{event.invalid_reason}"
            )
            conn.execute("""
                INSERT OR IGNORE INTO invalid_rows
                (source_table, source_id, entity_key, reason, detected_at)
                VALUES (?, ?, ?, ?, ?)
            """, [event.source_table, event.source_id, event.entity_key, event.invalid_reason, detected_at])
            routed += 1
        return routed

    def window_summary(self, entity_type: str, entity_key: str, start: datetime, end: datetime) -> WindowSummary:
        """Valid run counts for one entity with events in [start, end)."""
        events = self.load_events(start, end, entity_type, entity_key)
        return summarize_window(entity_type, entity_key, events)
