"""
Alert dispatcher: duplicate suppression and delivery.

Alerts are keyed by (alert_type, entity_key, raised_at bucket). A key that
is already in the alert_deliveries ledger is suppressed, so overlapping
generator windows and repeated passes deliver each alert once.

Design decisions:
- A key is recorded only after the sink accepted the alert
- A failed delivery is logged and counted; the next pass retries it
- Ledger rows older than the lookback are pruned on each dispatch
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from clock import Clock, SystemClock
from storage.database import Database
from .generator import Alert
from .http_client import WebhookClient


logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1)

DedupKey = Tuple[str, str, datetime]


def bucket_start(raised_at: datetime, bucket_minutes: int = 60) -> datetime:
    """Floor raised_at to the start of its bucket."""
    if bucket_minutes <= 0:
        raise ValueError(f"bucket_minutes must be positive, got {bucket_minutes}")
    width = timedelta(minutes=bucket_minutes)
    return _EPOCH + ((raised_at - _EPOCH) // width) * width


def dedup_key(alert: Alert, bucket_minutes: int = 60) -> DedupKey:
    return alert.alert_type, alert.entity_key, bucket_start(alert.raised_at, bucket_minutes)


def collapse_duplicates(alerts: Iterable[Alert], bucket_minutes: int = 60) -> List[Alert]:
    """Keep the first alert of each dedup key, preserving order."""
    seen = set()
    unique = []
    for alert in alerts:
        key = dedup_key(alert, bucket_minutes)
        if key not in seen:
            seen.add(key)
            unique.append(alert)
    return unique


def alert_payload(alert: Alert) -> Dict[str, Any]:
    return {
        'alert_type': alert.alert_type,
        'entity_key': alert.entity_key,
        'message': alert.message,
        'raised_at': alert.raised_at.isoformat(),
    }


class AlertSink(ABC):
    """Destination for delivered alerts."""

    @abstractmethod
    def deliver(self, alert: Alert) -> None:
        """Deliver one alert. Raises on failure."""
        pass


class LoggingAlertSink(AlertSink):
    """Writes alerts to the log at WARNING."""

    def __init__(self, logger_name: str = "warehouse_monitor.alerts"):
        self.log = logging.getLogger(logger_name)

    def deliver(self, alert: Alert) -> None:
        self.log.warning(f"[{alert.alert_type}] {alert.entity_key}: {alert.message}")


class WebhookAlertSink(AlertSink):
    """POSTs each alert as JSON to a webhook URL."""

    def __init__(self, url: str, client: Optional[WebhookClient] = None, headers: Optional[Dict[str, str]] = None):
        if not url:
            raise ValueError("Webhook URL is required")
        self.url = url
        self.client = client or WebhookClient()
        self.headers = headers

    def deliver(self, alert: Alert) -> None:
        self.client.post_json(self.url, alert_payload(alert), headers=self.headers)


@dataclass
class DispatchResult:
    delivered: List[Alert] = field(default_factory=list)
    suppressed: List[Alert] = field(default_factory=list)
    failed: List[Alert] = field(default_factory=list)


class AlertDispatcher:
    """
    Delivers alerts once per dedup key.

    Args:
        database: Database holding the alert_deliveries ledger
        sink: Delivery target
        clock: Clock for delivery timestamps and pruning
        bucket_minutes: Width of the raised_at bucket in the dedup key
        lookback_hours: How long delivered keys are remembered
    """

    def __init__(
        self,
        database: Database,
        sink: Optional[AlertSink] = None,
        clock: Optional[Clock] = None,
        bucket_minutes: int = 60,
        lookback_hours: int = 48
    ):
        if bucket_minutes <= 0:
            raise ValueError(f"bucket_minutes must be positive, got {bucket_minutes}")
        self.db = database
        self.sink = sink or LoggingAlertSink()
        self.clock = clock or SystemClock()
        self.bucket_minutes = bucket_minutes
        self.lookback_hours = lookback_hours

    def dispatch(self, alerts: Iterable[Alert]) -> DispatchResult:
        """
        Deliver alerts whose key has not been delivered yet.

        Returns:
            DispatchResult listing delivered, suppressed and failed alerts
        """
        self.prune()
        result = DispatchResult()

        for alert in alerts:
            key = dedup_key(alert, self.bucket_minutes)
            if self.is_delivered(key):
                result.suppressed.append(alert)
                continue

            try:
                self.sink.deliver(alert)
            except Exception as e:
                logger.error(
                    f"Delivery failed for {alert.alert_type} {alert.entity_key}: {e}",
                    exc_info=True
                )
                result.failed.append(alert)
                continue

            self._record(key, alert)
            result.delivered.append(alert)

        logger.info(
            f"Dispatched alerts: {len(result.delivered)} delivered, "
            f"{len(result.suppressed)} suppressed, {len(result.failed)} failed"
        )
        return result

    def is_delivered(self, key: DedupKey) -> bool:
        row = self.db.connect().execute("""
            SELECT 1 FROM alert_deliveries
            WHERE alert_type = ? AND entity_key = ? AND bucket_start = ?
        """, list(key)).fetchone()
        return row is not None

    def prune(self) -> int:
        """Delete ledger rows whose bucket is older than the lookback."""
        cutoff = self.clock.now() - timedelta(hours=self.lookback_hours)
        conn = self.db.connect()
        count = conn.execute(
            "SELECT count(*) FROM alert_deliveries WHERE bucket_start < ?", [cutoff]
        ).fetchone()[0]
        if count:
            conn.execute("DELETE FROM alert_deliveries WHERE bucket_start < ?", [cutoff])
            logger.debug(f"Pruned {count} alert delivery records")
        return count

    def delivered_since(self, since: datetime) -> List[Alert]:
        rows = self.db.connect().execute("""
            SELECT alert_type, entity_key, message, raised_at
            FROM alert_deliveries
            WHERE raised_at >= ?
            ORDER BY raised_at, alert_type, entity_key
        """, [since]).fetchall()
        return [
            Alert(alert_type=r[0], entity_key=r[1], message=r[2], raised_at=r[3])
            for r in rows
        ]

    def _record(self, key: DedupKey, alert: Alert) -> None:
        alert_type, entity_key, bucket = key
        self.db.connect().execute("""
            INSERT OR IGNORE INTO alert_deliveries
            (alert_type, entity_key, bucket_start, raised_at, message, delivered_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, [alert_type, entity_key, bucket, alert.raised_at, alert.message, self.clock.now()])
