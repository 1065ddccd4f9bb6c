"""
Read-side Query API for dashboards.

MonitoringService reads the derived tables written by recomputation
passes and evaluates on-demand signals (anomalies, health, active alerts)
against the current clock. It never writes derived state.

Design decisions:
- Pipeline -> model association comes only from the configured mapping
- Anomaly status is evaluated on demand; it is not persisted
- Active alerts are collapsed by dedup key but do not touch the
  dispatcher's delivery ledger
"""
import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional

from alerting.dispatcher import collapse_duplicates
from alerting.generator import Alert, AlertGenerator, WatchedTable
from clock import Clock, SystemClock
from decisioning.health import HealthClassifier, PipelineHealth
from monitor_config import MonitorConfig
from observability.anomaly import (
    AnomalyDetector,
    AnomalyRecord,
    ModelVolumeSource,
    TableVolumeSource,
    VolumeSource,
)
from observability.metrics import DAILY_COLUMNS, WEEKLY_COLUMNS, DailyMetric, MetricsAggregator, WeeklyMetric
from observability.quality import QualityScore, QualityScorer
from storage.database import Database
from storage.event_log import EventLogStore, InvalidReference
from storage.snapshots import SnapshotWriter


logger = logging.getLogger(__name__)


class MonitoringService:
    """
    Query API over the monitor's state.

    Holds the components a monitoring pass also uses, so the orchestrator
    and the read side share one wiring.
    """

    def __init__(
        self,
        database: Database,
        clock: Optional[Clock] = None,
        pipeline_models: Optional[Mapping[str, Iterable[str]]] = None,
        volume_tables: Iterable[WatchedTable] = (),
        store: Optional[EventLogStore] = None,
        aggregator: Optional[MetricsAggregator] = None,
        detector: Optional[AnomalyDetector] = None,
        scorer: Optional[QualityScorer] = None,
        classifier: Optional[HealthClassifier] = None,
        generator: Optional[AlertGenerator] = None,
        bucket_minutes: int = 60
    ):
        self.db = database
        self.clock = clock or SystemClock()
        self.pipeline_models = {k: list(v) for k, v in (pipeline_models or {}).items()}
        self.volume_tables = list(volume_tables)

        self.store = store or EventLogStore(database, self.clock)
        self.writer = SnapshotWriter(database, self.clock)
        self.aggregator = aggregator or MetricsAggregator(database, self.store, self.writer, self.clock)
        self.detector = detector or AnomalyDetector(clock=self.clock)
        self.scorer = scorer or QualityScorer(database, self.store, self.writer, self.clock)
        self.classifier = classifier or HealthClassifier(
            self.aggregator, self.clock, pipeline_models=self.pipeline_models
        )
        self.generator = generator or AlertGenerator(database, self.store, self.clock)
        self.bucket_minutes = bucket_minutes

    @classmethod
    def from_config(cls, database: Database, config: MonitorConfig, clock: Optional[Clock] = None) -> "MonitoringService":
        """Wire every component from a MonitorConfig."""
        clock = clock or SystemClock()
        store = EventLogStore(database, clock)
        writer = SnapshotWriter(database, clock)
        aggregator = MetricsAggregator(
            database, store, writer, clock,
            max_workers=config.metrics.max_workers,
            delta_lookback_days=config.metrics.delta_lookback_days,
        )
        return cls(
            database,
            clock=clock,
            pipeline_models=config.pipelines,
            volume_tables=config.volume_tables,
            store=store,
            aggregator=aggregator,
            detector=AnomalyDetector(config.baseline, clock),
            scorer=QualityScorer(database, store, writer, clock, window_days=config.quality_window_days),
            classifier=HealthClassifier(
                aggregator, clock,
                pipeline_models=config.pipelines,
                thresholds=config.health.thresholds(),
                window_days=config.health.window_days,
            ),
            generator=AlertGenerator(
                database, store, clock,
                window_minutes=config.alerts.window_minutes,
                stale_after_hours=config.alerts.stale_after_hours,
                watched_tables=config.alerts.watched_tables,
                watched_models=config.alerts.watched_models,
            ),
            bucket_minutes=config.alerts.bucket_minutes,
        )

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def get_daily_metrics(
        self,
        entity_key: str,
        start_date: date,
        end_date: date,
        entity_type: Optional[str] = None
    ) -> List[DailyMetric]:
        """Persisted daily metrics for an entity, start_date..end_date inclusive."""
        rows = self._metric_rows("daily_metrics", "metric_date", DAILY_COLUMNS, entity_key, start_date, end_date, entity_type)
        return [DailyMetric(**{k: v for k, v in row.items() if k != "generation"}) for row in rows]

    def get_weekly_metrics(
        self,
        entity_key: str,
        start_date: date,
        end_date: date,
        entity_type: Optional[str] = None
    ) -> List[WeeklyMetric]:
        """Persisted weekly metrics whose week starts within start_date..end_date."""
        rows = self._metric_rows("weekly_metrics", "week_start", WEEKLY_COLUMNS, entity_key, start_date, end_date, entity_type)
        return [WeeklyMetric(**{k: v for k, v in row.items() if k != "generation"}) for row in rows]

    # ------------------------------------------------------------------
    # Anomalies, quality, health
    # ------------------------------------------------------------------

    def volume_sources(self) -> List[VolumeSource]:
        """Every monitored volume series: known models plus configured tables."""
        models = set(self.store.model_names())
        for mapped in self.pipeline_models.values():
            models.update(mapped)
        sources: List[VolumeSource] = [ModelVolumeSource(self.store, m) for m in sorted(models)]
        sources.extend(
            TableVolumeSource(self.db, t.name, t.timestamp_column, t.key) for t in self.volume_tables
        )
        return sources

    def get_anomaly_status(self, entity_key: str, evaluation_date: Optional[date] = None) -> AnomalyRecord:
        """
        Volume classification of an entity on a day (default: today).

        Configured tables are matched by their entity key; any other key is
        treated as a model.
        """
        for table in self.volume_tables:
            if table.key == entity_key:
                source: VolumeSource = TableVolumeSource(self.db, table.name, table.timestamp_column, table.key)
                break
        else:
            source = ModelVolumeSource(self.store, entity_key)
        return self.detector.evaluate(source, evaluation_date)

    def current_anomalies(self, evaluation_date: Optional[date] = None) -> List[AnomalyRecord]:
        return self.detector.evaluate_all(self.volume_sources(), evaluation_date)

    def get_quality_score(self, model_name: str) -> QualityScore:
        return self.scorer.get_score(model_name)

    def pipeline_names(self) -> List[str]:
        return sorted(set(self.pipeline_models) | set(self.store.pipeline_names()))

    def get_pipeline_health(
        self,
        pipeline_name: str,
        anomalies: Optional[Mapping[str, AnomalyRecord]] = None
    ) -> PipelineHealth:
        """
        Classify one pipeline now.

        Raises:
            InvalidReference: If the pipeline is neither configured nor logged
        """
        if pipeline_name not in self.pipeline_names():
            raise InvalidReference(f"Unknown pipeline: {pipeline_name}")

        if anomalies is None:
            models = self.pipeline_models.get(pipeline_name, [])
            anomalies = {m: self.get_anomaly_status(m) for m in models}
        return self.classifier.classify(pipeline_name, anomalies)

    # ------------------------------------------------------------------
    # Alerts and dashboard
    # ------------------------------------------------------------------

    def list_active_alerts(
        self,
        window_minutes: Optional[int] = None,
        anomalies: Optional[Iterable[AnomalyRecord]] = None
    ) -> List[Alert]:
        """
        Alerts for the window ending now, one per dedup key.

        Args:
            window_minutes: Scan window (defaults to the generator's)
            anomalies: Precomputed anomaly records (evaluated now if omitted)
        """
        if anomalies is None:
            anomalies = self.current_anomalies()
        alerts = self.generator.generate(anomalies, window_minutes)
        return collapse_duplicates(alerts, self.bucket_minutes)

    def get_dashboard(self, anomalies: Optional[Iterable[AnomalyRecord]] = None) -> List[Dict[str, Any]]:
        """
        One row per (pipeline, mapped model) with health, last execution
        and quality. Pipelines without mapped models get a single row with
        model_name None.
        """
        if anomalies is None:
            anomalies = self.current_anomalies()
        by_key = {record.entity_key: record for record in anomalies}

        rows = []
        for pipeline_name in self.pipeline_names():
            health = self.classifier.classify(pipeline_name, by_key)
            models = self.pipeline_models.get(pipeline_name) or [None]
            for model_name in models:
                quality = self.get_quality_score(model_name) if model_name else None
                anomaly = by_key.get(model_name) if model_name else None
                rows.append({
                    "pipeline_name": pipeline_name,
                    "health_status": health.status,
                    "success_rate": health.success_rate,
                    "recent_failures": health.recent_failures,
                    "model_name": model_name,
                    "last_execution": self.store.last_model_execution(model_name) if model_name else None,
                    "volume_status": anomaly.status if anomaly else None,
                    "quality_score": quality.score if quality else None,
                    "quality_rating": quality.rating if quality else None,
                })
        return rows

    def _metric_rows(
        self,
        table: str,
        date_column: str,
        columns,
        entity_key: str,
        start_date: date,
        end_date: date,
        entity_type: Optional[str]
    ) -> List[Dict[str, Any]]:
        if end_date < start_date:
            raise ValueError(f"end_date {end_date} is before start_date {start_date}")

        sql = f"""
            SELECT {', '.join(columns)} FROM {table}
            WHERE entity_key = ? AND {date_column} BETWEEN ? AND ?
        """
        params: List[Any] = [entity_key, start_date, end_date]
        if entity_type is not None:
            sql += " AND entity_type = ?"
            params.append(entity_type)
        sql += f" ORDER BY entity_type, {date_column}"

        conn = self.db.connect()
        results = conn.execute(sql, params).fetchall()
        names = [desc[0] for desc in conn.description]
        return [dict(zip(names, row)) for row in results]
