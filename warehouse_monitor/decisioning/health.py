"""
Pipeline health classification.

Combines a pipeline's trailing-window run counts with the volume anomaly
status of the models mapped to it, and runs the result through the rule
engine. The pipeline -> models association is an explicit mapping; model
names are never parsed to guess their pipeline.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Mapping, Optional

from clock import Clock, SystemClock, trailing_window
from observability.anomaly import AnomalyRecord
from observability.metrics import PIPELINE, MetricsAggregator
from .rule_engine import RuleEngine
from .rules import HEALTHY, HealthInputs, HealthThresholds, get_default_rules


logger = logging.getLogger(__name__)


@dataclass
class PipelineHealth:
    """Health classification of one pipeline."""
    pipeline_name: str
    status: str
    success_rate: Optional[float]
    recent_failures: int
    total_runs: int
    evaluated_at: datetime
    matched_rule: str
    explanation: str
    anomalous_models: List[str] = field(default_factory=list)


class HealthClassifier:
    """
    Classifies pipelines as HEALTHY, WARNING or CRITICAL.

    Success rate and recent failures are taken over the same trailing
    window (window_days, default 7) ending at the clock's now.
    """

    def __init__(
        self,
        aggregator: MetricsAggregator,
        clock: Optional[Clock] = None,
        pipeline_models: Optional[Mapping[str, Iterable[str]]] = None,
        thresholds: Optional[HealthThresholds] = None,
        window_days: int = 7
    ):
        """
        Initialize classifier.

        Args:
            aggregator: Metrics aggregator providing window summaries
            clock: Clock defining the end of the health window
            pipeline_models: Explicit mapping of pipeline name to its models
            thresholds: Rule thresholds (defaults apply when omitted)
            window_days: Length of the health window
        """
        self.aggregator = aggregator
        self.clock = clock or SystemClock()
        self.pipeline_models = {k: list(v) for k, v in (pipeline_models or {}).items()}
        self.engine = RuleEngine(get_default_rules(thresholds))
        self.window_days = window_days

    def gather_inputs(
        self,
        pipeline_name: str,
        anomalies: Optional[Mapping[str, AnomalyRecord]] = None
    ) -> HealthInputs:
        """
        Collect the signals for one pipeline.

        Args:
            pipeline_name: Pipeline to classify
            anomalies: Latest anomaly record per entity key
        """
        start, end = trailing_window(self.clock.now(), timedelta(days=self.window_days))
        summary = self.aggregator.window_summary(PIPELINE, pipeline_name, start, end)

        anomalies = anomalies or {}
        anomalous = [
            model for model in self.pipeline_models.get(pipeline_name, [])
            if model in anomalies and anomalies[model].is_alert
        ]

        return HealthInputs(
            pipeline_name=pipeline_name,
            total_runs=summary.total_runs,
            successful_runs=summary.successful_runs,
            recent_failures=summary.failed_runs,
            anomalous_models=anomalous,
        )

    def classify(
        self,
        pipeline_name: str,
        anomalies: Optional[Mapping[str, AnomalyRecord]] = None
    ) -> PipelineHealth:
        inputs = self.gather_inputs(pipeline_name, anomalies)
        decision = self.engine.decide(inputs)

        if decision.status != HEALTHY:
            logger.warning(f"Pipeline {pipeline_name} is {decision.status}: {decision.explanation}")

        return PipelineHealth(
            pipeline_name=pipeline_name,
            status=decision.status,
            success_rate=inputs.success_rate,
            recent_failures=inputs.recent_failures,
            total_runs=inputs.total_runs,
            evaluated_at=self.clock.now(),
            matched_rule=decision.evidence['applied_rule'],
            explanation=decision.explanation,
            anomalous_models=inputs.anomalous_models,
        )

    def classify_all(
        self,
        pipeline_names: Iterable[str],
        anomalies: Optional[Mapping[str, AnomalyRecord]] = None
    ) -> Dict[str, PipelineHealth]:
        return {name: self.classify(name, anomalies) for name in sorted(set(pipeline_names))}
