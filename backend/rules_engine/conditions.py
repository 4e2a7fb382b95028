"""
Condition evaluation.

Comparisons are case-insensitive for strings. A condition naming a field
the engine does not recognise, or using an unknown operator, evaluates
to False rather than raising.
"""

import logging
from typing import Any, Optional

from rules_engine.models import Condition, EvaluationContext, Operator, canonical_field

logger = logging.getLogger(__name__)


def _fold(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


class ConditionEvaluator:
    """Pure predicate evaluation of one condition against a context."""

    def resolve_field(self, field: str, context: EvaluationContext) -> Optional[str]:
        """Value of `field` (or any of its aliases) in the context; None when absent."""
        ctx_field = canonical_field(field)
        if ctx_field is None:
            return None
        return context.get(ctx_field)

    def evaluate(self, condition: Condition, context: EvaluationContext) -> bool:
        if canonical_field(condition.field) is None:
            logger.debug(f"Unknown condition field: {condition.field!r}")
            return False

        field_value = _fold(self.resolve_field(condition.field, context))
        expected = condition.value
        op = condition.operator

        if op == Operator.EQUALS:
            return field_value is not None and field_value == _fold(expected)

        if op == Operator.NOT_EQUALS:
            # An absent field always satisfies not_equals
            return field_value is None or field_value != _fold(expected)

        if op == Operator.CONTAINS:
            return (
                isinstance(field_value, str)
                and isinstance(expected, str)
                and expected.lower() in field_value
            )

        if op in (Operator.IN, Operator.NOT_IN):
            if not isinstance(expected, (list, tuple, set, frozenset)):
                return False
            # Member by member: configured members need not be hashable
            is_member = field_value is not None and any(field_value == _fold(v) for v in expected)
            return is_member if op == Operator.IN else not is_member

        return False

    def matches_all(self, conditions, context: EvaluationContext) -> bool:
        """Logical AND over `conditions`; an empty list always matches."""
        return all(self.evaluate(c, context) for c in conditions)


condition_evaluator = ConditionEvaluator()
