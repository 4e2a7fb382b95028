"""
Rule Engine Module

Prioritized, condition-gated rules shared by two consumers:
- Eligibility/pricing evaluation of a business context
- Confidence scoring of financial record pairs for reconciliation
"""

from rules_engine.models import (
    RuleType,
    Operator,
    ContextField,
    EvaluationContext,
    Condition,
    Rule,
    MatchingRule,
    RuleSet,
    EligibilityResult,
    FinancialRecord,
    RecordKind,
    MatchScore,
    MatchReason
)
from rules_engine.conditions import ConditionEvaluator, condition_evaluator
from rules_engine.store import (
    ConfigurationUnavailable,
    RuleSource,
    StaticRuleSource,
    SqlRuleSource,
    RuleStore
)
from rules_engine.eligibility import EligibilityEngine, price_breakdown
from rules_engine.matching import MatchScorer

__all__ = [
    # Models
    'RuleType',
    'Operator',
    'ContextField',
    'EvaluationContext',
    'Condition',
    'Rule',
    'MatchingRule',
    'RuleSet',
    'EligibilityResult',
    'FinancialRecord',
    'RecordKind',
    'MatchScore',
    'MatchReason',
    # Evaluation
    'ConditionEvaluator',
    'condition_evaluator',
    'EligibilityEngine',
    'price_breakdown',
    'MatchScorer',
    # Store
    'ConfigurationUnavailable',
    'RuleSource',
    'StaticRuleSource',
    'SqlRuleSource',
    'RuleStore'
]
