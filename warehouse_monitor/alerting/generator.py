"""
Alert generation from failures, staleness and volume anomalies.

Scans a trailing window (default 1 hour) of the event logs and emits one
Alert per qualifying row:
- MODEL_FAILURE: failed model execution, raised at its executed_at
- TEST_FAILURE: failed test result, raised at its executed_at
- STALE_DATA: watched table or model not updated for 24 hours, raised now
- LOW_VOLUME_ALERT / HIGH_VOLUME_ALERT: from anomaly records, raised now

The generator does not deduplicate. Overlapping scans emit the same alert
again with the same raised_at; AlertDispatcher suppresses the repeats.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

from clock import Clock, SystemClock, trailing_window
from observability.anomaly import AnomalyRecord, checked_identifier, quoted_identifier
from storage.database import Database
from storage.event_log import EventLogStore


logger = logging.getLogger(__name__)

MODEL_FAILURE = "MODEL_FAILURE"
TEST_FAILURE = "TEST_FAILURE"
STALE_DATA = "STALE_DATA"

ALERT_TYPES = (MODEL_FAILURE, TEST_FAILURE, STALE_DATA, "LOW_VOLUME_ALERT", "HIGH_VOLUME_ALERT")


@dataclass(frozen=True)
class Alert:
    """One alert condition. entity_key names the pipeline, model, test or table."""
    alert_type: str
    entity_key: str
    message: str
    raised_at: datetime


@dataclass
class WatchedTable:
    """
    A warehouse relation checked for freshness.

    Attributes:
        name: Relation name, optionally schema-qualified
        timestamp_column: Column holding the row update time
        entity_key: Name used in alerts (defaults to name)
    """
    name: str
    timestamp_column: str
    entity_key: Optional[str] = None

    def __post_init__(self):
        checked_identifier(self.name)
        checked_identifier(self.timestamp_column)

    @property
    def key(self) -> str:
        return self.entity_key or self.name


class AlertGenerator:
    """
    Produces alerts for the current window.

    Args:
        database: Database holding the logs and watched tables
        store: Event log reader
        clock: Clock defining "now"
        window_minutes: Length of the failure scan window
        stale_after_hours: Age after which a watched entity is stale
        watched_tables: Relations checked for staleness
        watched_models: Models checked for staleness by last execution
    """

    def __init__(
        self,
        database: Database,
        store: EventLogStore,
        clock: Optional[Clock] = None,
        window_minutes: int = 60,
        stale_after_hours: int = 24,
        watched_tables: Sequence[WatchedTable] = (),
        watched_models: Sequence[str] = ()
    ):
        self.db = database
        self.store = store
        self.clock = clock or SystemClock()
        self.window_minutes = window_minutes
        self.stale_after_hours = stale_after_hours
        self.watched_tables = list(watched_tables)
        self.watched_models = list(watched_models)

    def generate(
        self,
        anomalies: Iterable[AnomalyRecord] = (),
        window_minutes: Optional[int] = None
    ) -> List[Alert]:
        """
        Generate every alert for the window ending now.

        Args:
            anomalies: Anomaly records to turn into volume alerts
            window_minutes: Override of the configured scan window

        Returns:
            Alerts ordered by raised_at, type and entity
        """
        start, end = self.window(window_minutes)
        alerts: List[Alert] = []
        alerts.extend(self.model_failure_alerts(start, end))
        alerts.extend(self.test_failure_alerts(start, end))
        alerts.extend(self.stale_data_alerts())
        alerts.extend(self.anomaly_alerts(anomalies))
        alerts.sort(key=lambda a: (a.raised_at, a.alert_type, a.entity_key))

        if alerts:
            logger.info(f"Generated {len(alerts)} alerts")
        return alerts

    def window(self, window_minutes: Optional[int] = None) -> Tuple[datetime, datetime]:
        minutes = self.window_minutes if window_minutes is None else window_minutes
        return trailing_window(self.clock.now(), timedelta(minutes=minutes))

    def model_failure_alerts(self, start: datetime, end: datetime) -> List[Alert]:
        return [
            Alert(
                alert_type=MODEL_FAILURE,
                entity_key=e.model_name,
                message=f"Model {e.model_name} failed at {e.executed_at.isoformat()}",
                raised_at=e.executed_at,
            )
            for e in self.store.model_executions(start, end)
            if e.status == "failed"
        ]

    def test_failure_alerts(self, start: datetime, end: datetime) -> List[Alert]:
        # Keyed by model:test so two failing tests of one model are separate alerts
        return [
            Alert(
                alert_type=TEST_FAILURE,
                entity_key=f"{r.model_name}:{r.test_name}",
                message=f"Test {r.test_name} failed for model {r.model_name}",
                raised_at=r.executed_at,
            )
            for r in self.store.test_results(start, end)
            if r.status == "fail"
        ]

    def stale_data_alerts(self) -> List[Alert]:
        now = self.clock.now()
        cutoff = now - timedelta(hours=self.stale_after_hours)
        alerts = []

        for table in self.watched_tables:
            # DATE and TIMESTAMPTZ columns normalize to naive UTC timestamps
            last_update = self.db.connect().execute(
                f"SELECT CAST(max({quoted_identifier(table.timestamp_column)}) AS TIMESTAMP) "
                f"FROM {quoted_identifier(table.name)}"
            ).fetchone()[0]
            if last_update is None or last_update < cutoff:
                alerts.append(self._stale_alert(table.key, last_update, now))

        for model_name in self.watched_models:
            last_update = self.store.last_model_execution(model_name)
            if last_update is None or last_update < cutoff:
                alerts.append(self._stale_alert(model_name, last_update, now))

        return alerts

    def anomaly_alerts(self, anomalies: Iterable[AnomalyRecord]) -> List[Alert]:
        now = self.clock.now()
        return [
            Alert(
                alert_type=record.status,
                entity_key=record.entity_key,
                message=(
                    f"{record.entity_key} volume {record.observed_value:.0f} on {record.evaluation_date} "
                    f"outside baseline {record.baseline_mean:.1f} +/- {record.baseline_stddev:.1f}"
                ),
                raised_at=now,
            )
            for record in anomalies
            if record.is_alert
        ]

    def _stale_alert(self, entity_key: str, last_update: Optional[datetime], now: datetime) -> Alert:
        seen = last_update.isoformat() if last_update else "never"
        return Alert(
            alert_type=STALE_DATA,
            entity_key=entity_key,
            message=f"{entity_key} data is older than {self.stale_after_hours} hours (last update: {seen})",
            raised_at=now,
        )
