"""
Rule definitions for pipeline health classification.

Each rule is a (predicate, result) pair: evaluate() returns a decision if
the rule's condition holds for the health inputs, or None if it doesn't.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from abc import ABC, abstractmethod


HEALTHY = "HEALTHY"
WARNING = "WARNING"
CRITICAL = "CRITICAL"


@dataclass
class HealthInputs:
    """Signals the health rules look at for one pipeline."""
    pipeline_name: str
    total_runs: int
    successful_runs: int
    recent_failures: int
    anomalous_models: List[str] = field(default_factory=list)

    @property
    def success_rate(self) -> Optional[float]:
        if not self.total_runs:
            return None
        return round(self.successful_runs / self.total_runs * 100, 2)


@dataclass
class HealthDecision:
    """Result of applying a rule to a pipeline's health inputs."""
    status: str  # HEALTHY | WARNING | CRITICAL
    reason_code: str
    explanation: str
    evidence: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthThresholds:
    """
    Thresholds for the default rule chain.

    Attributes:
        critical_failures: More failures than this in the window is CRITICAL
        warning_failures: More failures than this in the window is WARNING
        min_success_rate: A success rate strictly below this is WARNING
    """
    critical_failures: int = 3
    warning_failures: int = 1
    min_success_rate: float = 95.0


class Rule(ABC):
    """Base class for all health rules."""

    def __init__(self, rule_id: str, priority: int, reason_code: str):
        self.rule_id = rule_id
        self.priority = priority
        self.reason_code = reason_code

    @abstractmethod
    def evaluate(self, inputs: HealthInputs) -> Optional[HealthDecision]:
        """
        Evaluate the rule against health inputs.

        Returns HealthDecision if rule applies, None otherwise.
        """
        pass


class FailureCountRule(Rule):
    """Too many failed runs in the trailing window."""

    def __init__(self, rule_id: str, priority: int, status: str, threshold: int):
        super().__init__(rule_id, priority, f"FAILURES_GT_{threshold}")
        self.status = status
        self.threshold = threshold

    def evaluate(self, inputs: HealthInputs) -> Optional[HealthDecision]:
        if inputs.recent_failures > self.threshold:
            return HealthDecision(
                status=self.status,
                reason_code=self.reason_code,
                explanation=(
                    f"{inputs.recent_failures} failed runs in the health window "
                    f"(threshold: more than {self.threshold})."
                ),
                evidence={'recent_failures': inputs.recent_failures, 'threshold': self.threshold},
            )
        return None


class SuccessRateRule(Rule):
    """Success rate below the minimum. An undefined rate never matches."""

    def __init__(self, min_success_rate: float):
        super().__init__("H2", 2, "LOW_SUCCESS_RATE")
        self.min_success_rate = min_success_rate

    def evaluate(self, inputs: HealthInputs) -> Optional[HealthDecision]:
        rate = inputs.success_rate
        if rate is not None and rate < self.min_success_rate:
            return HealthDecision(
                status=WARNING,
                reason_code=self.reason_code,
                explanation=f"Success rate {rate:.2f}% is below {self.min_success_rate:.2f}%.",
                evidence={'success_rate': rate, 'min_success_rate': self.min_success_rate},
            )
        return None


class VolumeAnomalyRule(Rule):
    """A model belonging to the pipeline has a volume anomaly."""

    def __init__(self):
        super().__init__("H3", 3, "VOLUME_ANOMALY")

    def evaluate(self, inputs: HealthInputs) -> Optional[HealthDecision]:
        if inputs.anomalous_models:
            models = ', '.join(sorted(inputs.anomalous_models))
            return HealthDecision(
                status=WARNING,
                reason_code=self.reason_code,
                explanation=f"Volume anomaly detected for: {models}.",
                evidence={'anomalous_models': sorted(inputs.anomalous_models)},
            )
        return None


class HealthyRule(Rule):
    """Default rule - no problem found."""

    def __init__(self):
        super().__init__("H4", 4, "HEALTHY")

    def evaluate(self, inputs: HealthInputs) -> Optional[HealthDecision]:
        rate = inputs.success_rate
        rate_text = f"{rate:.2f}%" if rate is not None else "n/a (no runs)"
        return HealthDecision(
            status=HEALTHY,
            reason_code=self.reason_code,
            explanation=f"{inputs.recent_failures} recent failures, success rate {rate_text}.",
            evidence={'success_rate': rate, 'recent_failures': inputs.recent_failures},
        )


def get_default_rules(thresholds: Optional[HealthThresholds] = None) -> List[Rule]:
    """
    Get the default rule chain in priority order.

    Returns:
        List of rules to evaluate; the first match wins
    """
    thresholds = thresholds or HealthThresholds()
    return [
        FailureCountRule("H0", 0, CRITICAL, thresholds.critical_failures),
        FailureCountRule("H1", 1, WARNING, thresholds.warning_failures),
        SuccessRateRule(thresholds.min_success_rate),
        VolumeAnomalyRule(),
        HealthyRule(),
    ]
