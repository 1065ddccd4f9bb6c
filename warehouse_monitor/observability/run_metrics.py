"""
Counters for a single monitoring pass.

This module provides PassMetrics, a dataclass that tracks what one
recomputation pass did:
- Partitions and rows written to the derived tables
- Invalid events routed to the invalid-row sink
- Valid timed runs per performance category
- Partitions skipped because a newer generation had already written them
- Anomaly outcomes per status
- Alerts raised, delivered, suppressed and failed
- Health status distribution
- Errors encountered

Design decisions:
- Single metrics object per pass
- Defaultdict used for automatic initialization of counters
- Serializable to_dict() for storage in the monitor_passes table
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class PassMetrics:
    """
    Metrics for a single monitoring pass.

    Serialized to JSON for storage in the monitor_passes table.
    """
    pass_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    generation: Optional[int] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None

    # Recomputation
    partitions_written: int = 0
    rows_written: int = 0
    invalid_events: int = 0
    stale_partitions: List[str] = field(default_factory=list)
    models_scored: int = 0

    # Key: performance category (fast, medium, slow), Value: count of valid timed runs
    performance_counts: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    # Key: anomaly status (e.g., "LOW_VOLUME_ALERT"), Value: count
    anomaly_counts: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    # Key: health status, Value: count of pipelines
    health_counts: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    # Alerts
    alerts_raised: int = 0
    alerts_delivered: int = 0
    alerts_suppressed: int = 0
    alerts_failed: int = 0

    errors: int = 0
    issues: List[Dict] = field(default_factory=list)

    def record_anomaly(self, status: str):
        self.anomaly_counts[status] += 1

    def record_health(self, status: str):
        self.health_counts[status] += 1

    def record_error(self, error: str, context: Dict = None):
        """
        Record an error encountered during the pass.

        Args:
            error: Error message
            context: Optional dict with additional context (e.g., entity_key)
        """
        self.errors += 1
        self.issues.append({
            "type": "error",
            "message": error,
            "context": context or {}
        })

    @property
    def duration_seconds(self) -> Optional[float]:
        if not self.completed_at:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert metrics to a JSON-serializable dictionary.

        Defaultdicts are converted to regular dicts.
        """
        return {
            "pass_id": self.pass_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "generation": self.generation,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "partitions_written": self.partitions_written,
            "rows_written": self.rows_written,
            "invalid_events": self.invalid_events,
            "stale_partitions": list(self.stale_partitions),
            "models_scored": self.models_scored,
            "performance_counts": dict(self.performance_counts),
            "anomaly_counts": dict(self.anomaly_counts),
            "health_counts": dict(self.health_counts),
            "alerts_raised": self.alerts_raised,
            "alerts_delivered": self.alerts_delivered,
            "alerts_suppressed": self.alerts_suppressed,
            "alerts_failed": self.alerts_failed,
            "errors": self.errors,
            "issues": self.issues
        }
