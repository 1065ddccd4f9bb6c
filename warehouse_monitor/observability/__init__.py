"""
Observability layer for the warehouse monitor.

Metrics aggregation, volume anomaly detection, quality scoring, integrity
checks and reporting.

Main exports:
- MetricsAggregator: Daily/weekly metrics and invalid-row routing
- AnomalyDetector: Trailing-baseline volume classification
- QualityScorer: Test pass-rate scores and ratings
- IntegrityChecker: Consistency checks over the monitor's tables
- PassMetrics: Counters for one monitoring pass
- HealthReporter: Generates Markdown reports
"""
from .metrics import (
    MODEL,
    PIPELINE,
    AggregationResult,
    DailyMetric,
    ExecutionEvent,
    MetricsAggregator,
    WeeklyMetric,
    WindowSummary,
)
from .anomaly import (
    HIGH_VOLUME_ALERT,
    INSUFFICIENT_BASELINE,
    LOW_VOLUME_ALERT,
    NORMAL,
    AnomalyDetector,
    AnomalyRecord,
    BaselineConfig,
    ModelVolumeSource,
    TableVolumeSource,
    VolumeSource,
)
from .quality import QualityScore, QualityScorer, quality_rating, quality_score
from .integrity_checks import IntegrityChecker, IntegrityCheckResult
from .run_metrics import PassMetrics
from .reporter import HealthReporter

__all__ = [
    "MODEL",
    "PIPELINE",
    "HIGH_VOLUME_ALERT",
    "INSUFFICIENT_BASELINE",
    "LOW_VOLUME_ALERT",
    "NORMAL",
    "AggregationResult",
    "AnomalyDetector",
    "AnomalyRecord",
    "BaselineConfig",
    "DailyMetric",
    "ExecutionEvent",
    "HealthReporter",
    "IntegrityCheckResult",
    "IntegrityChecker",
    "MetricsAggregator",
    "ModelVolumeSource",
    "PassMetrics",
    "QualityScore",
    "QualityScorer",
    "TableVolumeSource",
    "VolumeSource",
    "WeeklyMetric",
    "WindowSummary",
    "quality_rating",
    "quality_score",
]
