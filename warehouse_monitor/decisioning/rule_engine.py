"""
Rule engine that evaluates pipeline health inputs against a rule chain.

The engine applies rules in priority order (lowest first) and returns
the first matching decision, so CRITICAL overrides WARNING even when
both conditions hold.
"""
from typing import List, Dict, Any, Optional
import logging

from .rules import Rule, HealthDecision, HealthInputs, get_default_rules


logger = logging.getLogger(__name__)


class RuleEngine:
    """
    Deterministic first-match rule engine.

    Rules are evaluated in priority order (0 is highest priority).
    First rule that matches determines the health status.
    """

    def __init__(self, rules: Optional[List[Rule]] = None):
        """
        Initialize the rule engine.

        Args:
            rules: List of rules to evaluate. If None, uses default rules.
        """
        self.rules = sorted(rules or get_default_rules(), key=lambda r: r.priority)

    def decide(self, inputs: HealthInputs) -> HealthDecision:
        """
        Apply rule chain to health inputs.

        Raises:
            ValueError: If no rule matches (only possible without a fallback rule)
        """
        for rule in self.rules:
            decision = rule.evaluate(inputs)
            if decision:
                logger.debug(
                    f"Pipeline {inputs.pipeline_name}: Rule {rule.rule_id} matched -> {decision.status}"
                )
                decision.evidence['applied_rule'] = rule.rule_id
                return decision

        raise ValueError(f"No rule matched for pipeline {inputs.pipeline_name}")

    def explain_decision(self, inputs: HealthInputs) -> Dict[str, Any]:
        """
        Get detailed explanation of decision process.

        Every rule is evaluated so the trace shows all conditions that hold,
        not only the one that won.

        Returns:
            Dictionary with decision, matching rule, and evaluation trace
        """
        trace = []
        matched_decision = None

        for rule in self.rules:
            decision = rule.evaluate(inputs)
            trace.append({
                'rule_id': rule.rule_id,
                'priority': rule.priority,
                'matched': decision is not None,
                'result': decision.status if decision else None
            })

            if decision and matched_decision is None:
                matched_decision = decision
                decision.evidence['applied_rule'] = rule.rule_id

        return {
            'pipeline_name': inputs.pipeline_name,
            'decision': matched_decision,
            'evaluation_trace': trace,
            'total_rules_evaluated': len(trace)
        }
