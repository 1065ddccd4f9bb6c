"""
Pipeline health decisioning layer.

Classifies pipelines using a priority-ordered, first-match rule chain.
"""
from .rules import (
    CRITICAL,
    HEALTHY,
    WARNING,
    HealthDecision,
    HealthInputs,
    HealthThresholds,
    Rule,
    get_default_rules,
)
from .rule_engine import RuleEngine
from .health import HealthClassifier, PipelineHealth


__all__ = [
    'CRITICAL',
    'HEALTHY',
    'WARNING',
    'HealthClassifier',
    'HealthDecision',
    'HealthInputs',
    'HealthThresholds',
    'PipelineHealth',
    'Rule',
    'RuleEngine',
    'get_default_rules',
]
