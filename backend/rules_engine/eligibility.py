"""
Eligibility & Pricing Engine

Folds the actions of every fully-matched rule into one EligibilityResult.

Evaluation does not stop at a `block` action. Later rules still run so
their fees, warnings and documents are shown alongside the block; callers
gate submission on `blocked`.
"""

import logging
from typing import Any, Dict, Optional, Sequence

from rules_engine.conditions import ConditionEvaluator, condition_evaluator
from rules_engine.models import (
    AddFee, ApplyDiscount, Block, DiscountType, EligibilityResult, EvaluationContext,
    ContextField, MultiplyPrice, RecommendBank, RequireDocument, Rule, RuleType, SetFlag,
    SetNextStep, SetProcessingTime, ShowStep, ShowWarning, SkipStep,
)
from rules_engine.store import ConfigurationUnavailable, RuleStore

logger = logging.getLogger(__name__)

ELIGIBILITY_RULE_TYPES = frozenset({
    RuleType.ELIGIBILITY, RuleType.PRICING, RuleType.DOCUMENT, RuleType.WORKFLOW, RuleType.CASCADE,
})


def apply_action(action, result: EligibilityResult, context: EvaluationContext):
    """Apply one action to the accumulator."""
    if isinstance(action, MultiplyPrice):
        result.price_multiplier *= action.factor
    elif isinstance(action, AddFee):
        result.additional_fees += action.amount
    elif isinstance(action, SetFlag):
        result.flags[action.name] = action.value
    elif isinstance(action, RequireDocument):
        result.required_documents.append(action.name)
    elif isinstance(action, ShowWarning):
        result.warnings.append(action.message)
    elif isinstance(action, Block):
        result.blocked = True
        result.block_message = action.message
    elif isinstance(action, SetProcessingTime):
        # Longest estimate wins
        if result.processing_time_days is None:
            result.processing_time_days = action.days
        else:
            result.processing_time_days = max(result.processing_time_days, action.days)
    elif isinstance(action, RecommendBank):
        for bank in action.banks:
            if bank not in result.recommended_banks:
                result.recommended_banks.append(bank)
    elif isinstance(action, SkipStep):
        if action.step_key not in result.skipped_steps:
            result.skipped_steps.append(action.step_key)
    elif isinstance(action, ShowStep):
        if action.step_key not in result.visible_steps:
            result.visible_steps.append(action.step_key)
    elif isinstance(action, SetNextStep):
        result.next_step = action.step_key
    elif isinstance(action, ApplyDiscount):
        result.promo_discount = action.value
        result.promo_discount_type = action.discount_type
        result.applied_promo_code = context.get(ContextField.PROMO_CODE)
    else:
        raise TypeError(f"Unhandled action: {action!r}")


class EligibilityEngine:
    """
    Evaluates eligibility/pricing rules against one context.

    Safe to share across concurrent callers: it holds no mutable state of
    its own and reads one immutable rule snapshot per call.
    """

    def __init__(self, rule_store: Optional[RuleStore] = None, evaluator: ConditionEvaluator = condition_evaluator):
        self.rule_store = rule_store
        self.evaluator = evaluator

    def evaluate(self, context: EvaluationContext, rules: Optional[Sequence[Rule]] = None) -> EligibilityResult:
        """
        Evaluate `rules` (or the store's current snapshot) against `context`.

        Never raises: an unavailable rule store or an internal error yields
        the neutral result (multiplier 1, nothing else set).
        """
        try:
            if rules is None:
                if self.rule_store is None:
                    raise ConfigurationUnavailable("No rule store configured")
                rules = self.rule_store.snapshot().eligibility_rules
            return self._fold(context, rules)
        except ConfigurationUnavailable as e:
            logger.warning(f"Rules unavailable, returning neutral result: {e}")
            return EligibilityResult()
        except Exception as e:
            logger.error(f"Eligibility evaluation error, returning neutral result: {e}", exc_info=True)
            return EligibilityResult()

    def _fold(self, context: EvaluationContext, rules: Sequence[Rule]) -> EligibilityResult:
        result = EligibilityResult()

        for rule in rules:
            if not rule.is_active or rule.type not in ELIGIBILITY_RULE_TYPES:
                continue
            if not self.evaluator.matches_all(rule.conditions, context):
                continue

            for action in rule.actions:
                apply_action(action, result, context)
            result.applied_rules.append(rule.name)

        return result


def price_breakdown(
    result: EligibilityResult,
    base_price: float,
    jurisdiction_fee: float = 0.0,
    activity_modifier: float = 0.0,
) -> Dict[str, Any]:
    """
    Apply an eligibility result to a plan price.

    (base + jurisdiction fee + activity modifier) x multiplier + fees,
    less any promo discount, never below zero.
    """
    base_total = base_price + jurisdiction_fee + activity_modifier
    after_multiplier = base_total * result.price_multiplier
    subtotal = after_multiplier + result.additional_fees

    discount = 0.0
    if result.promo_discount_type == DiscountType.PERCENTAGE:
        discount = subtotal * result.promo_discount / 100
    elif result.promo_discount_type == DiscountType.FIXED:
        discount = result.promo_discount
    discount = min(max(discount, 0.0), max(subtotal, 0.0))

    return {
        "basePrice": base_price,
        "jurisdictionFee": jurisdiction_fee,
        "activityModifier": activity_modifier,
        "priceMultiplier": result.price_multiplier,
        "ruleAdjustments": (after_multiplier - base_total) + result.additional_fees,
        "additionalFees": result.additional_fees,
        "subtotal": subtotal,
        "discount": discount,
        "totalPrice": max(subtotal - discount, 0.0),
        "blocked": result.blocked,
        "appliedRules": list(result.applied_rules),
    }
