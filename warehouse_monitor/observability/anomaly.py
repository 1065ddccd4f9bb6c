"""
Volume anomaly detection against a trailing baseline.

For an evaluation day D the baseline is the mean and sample standard
deviation of daily volumes on days D-30 <= d < D-7. The most recent week is
left out so that ongoing volatility does not contaminate the baseline.

Classification of the volume observed on D:
- below mean - 2 sigma: LOW_VOLUME_ALERT
- above mean + 2 sigma: HIGH_VOLUME_ALERT
- otherwise: NORMAL
- fewer than min_history_days days of history: INSUFFICIENT_BASELINE

Design decisions:
- Days with no rows are absent from the history, not zeros
- A day with no rows at evaluation time has volume 0
- Volume sources are pluggable: model rows_affected from the event log, or
  row counts of any watched warehouse relation
"""
import logging
import re
import statistics
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from clock import Clock, SystemClock
from storage.database import Database
from storage.event_log import EventLogStore
from .metrics import day_bounds


logger = logging.getLogger(__name__)

NORMAL = "NORMAL"
LOW_VOLUME_ALERT = "LOW_VOLUME_ALERT"
HIGH_VOLUME_ALERT = "HIGH_VOLUME_ALERT"
INSUFFICIENT_BASELINE = "INSUFFICIENT_BASELINE"

ALERT_STATUSES = (LOW_VOLUME_ALERT, HIGH_VOLUME_ALERT)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


@dataclass
class BaselineConfig:
    """
    Baseline window and thresholds.

    Attributes:
        window_days: Length of the trailing window ending at the evaluation day
        exclude_recent_days: Most recent days left out of the baseline
        sigma_multiplier: Width of the normal band in standard deviations
        min_history_days: Minimum days with data needed for a baseline
    """
    window_days: int = 30
    exclude_recent_days: int = 7
    sigma_multiplier: float = 2.0
    min_history_days: int = 7

    def __post_init__(self):
        if self.exclude_recent_days >= self.window_days:
            raise ValueError("exclude_recent_days must be smaller than window_days")
        if self.min_history_days < 2:
            raise ValueError("min_history_days must be at least 2 to compute a standard deviation")
        if self.sigma_multiplier <= 0:
            raise ValueError("sigma_multiplier must be positive")


@dataclass
class AnomalyRecord:
    """Volume classification of one entity on one day."""
    entity_key: str
    evaluation_date: date
    observed_value: float
    baseline_mean: Optional[float]
    baseline_stddev: Optional[float]
    history_days: int
    status: str

    @property
    def is_alert(self) -> bool:
        return self.status in ALERT_STATUSES


def baseline_window(evaluation_date: date, config: BaselineConfig) -> Tuple[date, date]:
    """Return (first_day, stop_day): history days satisfy first_day <= d < stop_day."""
    return (
        evaluation_date - timedelta(days=config.window_days),
        evaluation_date - timedelta(days=config.exclude_recent_days),
    )


def classify_volume(current: float, mean: float, stddev: float, sigma_multiplier: float = 2.0) -> str:
    """Place a volume relative to the mean +/- sigma band. Band edges are NORMAL."""
    if current < mean - sigma_multiplier * stddev:
        return LOW_VOLUME_ALERT
    if current > mean + sigma_multiplier * stddev:
        return HIGH_VOLUME_ALERT
    return NORMAL


def evaluate_counts(
    entity_key: str,
    evaluation_date: date,
    daily_counts: Dict[date, float],
    config: Optional[BaselineConfig] = None
) -> AnomalyRecord:
    """
    Classify the evaluation day's volume against its baseline.

    Args:
        entity_key: Monitored entity
        evaluation_date: Day being evaluated
        daily_counts: Volume per day; may include days outside the window
        config: Baseline settings (defaults apply when omitted)

    Returns:
        AnomalyRecord; status is INSUFFICIENT_BASELINE when history is short
    """
    config = config or BaselineConfig()
    first_day, stop_day = baseline_window(evaluation_date, config)
    history = [float(daily_counts[d]) for d in sorted(daily_counts) if first_day <= d < stop_day]
    current = float(daily_counts.get(evaluation_date, 0))

    mean = statistics.fmean(history) if history else None
    stddev = statistics.stdev(history) if len(history) >= 2 else None

    if len(history) < config.min_history_days:
        status = INSUFFICIENT_BASELINE
    else:
        status = classify_volume(current, mean, stddev, config.sigma_multiplier)

    return AnomalyRecord(
        entity_key=entity_key,
        evaluation_date=evaluation_date,
        observed_value=current,
        baseline_mean=mean,
        baseline_stddev=stddev,
        history_days=len(history),
        status=status,
    )


class VolumeSource(ABC):
    """A daily volume series for one monitored entity."""

    def __init__(self, entity_key: str):
        self.entity_key = entity_key

    @abstractmethod
    def daily_counts(self, start_date: date, end_date: date) -> Dict[date, float]:
        """
        Volume per day for start_date through end_date inclusive.

        Days without rows are omitted.
        """
        pass


class ModelVolumeSource(VolumeSource):
    """Daily sum of rows_affected over a model's successful executions."""

    def __init__(self, store: EventLogStore, model_name: str):
        super().__init__(model_name)
        self.store = store

    def daily_counts(self, start_date: date, end_date: date) -> Dict[date, float]:
        start, end = day_bounds(start_date, end_date)
        counts: Dict[date, float] = {}
        for execution in self.store.model_executions(start, end, self.entity_key):
            if execution.status != "success" or execution.rows_affected is None:
                continue
            day = execution.executed_at.date()
            counts[day] = counts.get(day, 0) + execution.rows_affected
        return counts


class TableVolumeSource(VolumeSource):
    """
    Daily row counts of a warehouse relation, bucketed by a timestamp column.

    Args:
        database: Database containing the relation
        table_name: Relation name, optionally schema-qualified
        timestamp_column: Column used to assign rows to days
        entity_key: Name reported in anomaly records (defaults to table_name)
    """

    def __init__(self, database: Database, table_name: str, timestamp_column: str, entity_key: Optional[str] = None):
        super().__init__(entity_key or table_name)
        self.db = database
        self.table_name = checked_identifier(table_name)
        self.timestamp_column = checked_identifier(timestamp_column)

    def daily_counts(self, start_date: date, end_date: date) -> Dict[date, float]:
        start, end = day_bounds(start_date, end_date)
        rows = self.db.connect().execute(f"""
            SELECT CAST({quoted_identifier(self.timestamp_column)} AS DATE) AS day, count(*)
            FROM {quoted_identifier(self.table_name)}
            WHERE {quoted_identifier(self.timestamp_column)} >= ? AND {quoted_identifier(self.timestamp_column)} < ?
            GROUP BY 1
            ORDER BY 1
        """, [start, end]).fetchall()
        return {row[0]: float(row[1]) for row in rows}


class AnomalyDetector:
    """
    Evaluates volume sources against their trailing baselines.

    The evaluation day defaults to the clock's current date.
    """

    def __init__(self, config: Optional[BaselineConfig] = None, clock: Optional[Clock] = None):
        self.config = config or BaselineConfig()
        self.clock = clock or SystemClock()

    def evaluate(self, source: VolumeSource, evaluation_date: Optional[date] = None) -> AnomalyRecord:
        evaluation_date = evaluation_date or self.clock.now().date()
        first_day, _ = baseline_window(evaluation_date, self.config)
        counts = source.daily_counts(first_day, evaluation_date)
        record = evaluate_counts(source.entity_key, evaluation_date, counts, self.config)

        if record.is_alert:
            logger.warning(
                f"{record.status} for {record.entity_key} on {evaluation_date}: "
                f"{record.observed_value:.0f} vs baseline {record.baseline_mean:.1f} +/- {record.baseline_stddev:.1f}"
            )
        elif record.status == INSUFFICIENT_BASELINE:
            logger.info(
                f"Insufficient baseline for {record.entity_key} on {evaluation_date}: "
                f"{record.history_days} of {self.config.min_history_days} days"
            )
        return record

    def evaluate_all(self, sources: Iterable[VolumeSource], evaluation_date: Optional[date] = None) -> List[AnomalyRecord]:
        return [self.evaluate(source, evaluation_date) for source in sources]


def checked_identifier(name: str) -> str:
    if not name or not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def quoted_identifier(name: str) -> str:
    return ".".join(f'"{part}"' for part in name.split("."))
