"""
Match Scorer

Scores how well a source record (bill/invoice) corresponds to a target
record (payment/receipt) using the active matching rules.

Confidence Scoring:
    confidence = sum(score_i * weight_i) / sum(weight_i)

taken only over rules whose score is > 0 (weight = 100 - priority).
Rules that stay silent are left out of both sums, so one strong,
heavily-weighted signal can carry a pair on its own. This best-evidence
normalization is deliberate; penalizing against every configured rule
would change which pairs reach the auto-match threshold.
"""

from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from rules_engine.models import (
    AmountExact, AmountTolerance, CurrencyMatch, DateRange, FinancialRecord,
    MatchReason, MatchScore, MatchingRule, ReferenceMatch, UnsupportedCriterion,
)

AMOUNT_EPSILON = Decimal("0.01")
PARTIAL_REFERENCE_SCORE = 0.8

NO_MATCH: Tuple[float, str] = (0.0, "")


class MatchScorer:
    """
    Deterministic, side-effect free scorer.

    The result depends only on the rules passed in and the two records.
    """

    def __init__(self, default_currency: str = "AED", default_tolerance_percent: float = 2.0):
        self.default_currency = default_currency.upper()
        self.default_tolerance_percent = default_tolerance_percent

    def score(
        self,
        source: FinancialRecord,
        target: FinancialRecord,
        rules: Sequence[MatchingRule],
        jurisdiction: Optional[str] = None,
    ) -> MatchScore:
        reasons: List[MatchReason] = []
        total_weight = 0
        weighted_score = 0.0

        for rule in rules:
            if not rule.is_active or not rule.applies_to(jurisdiction):
                continue

            score, reason = self.score_rule(rule, source, target)
            weight = rule.weight
            if score <= 0 or weight <= 0:
                continue

            reasons.append(MatchReason(rule_name=rule.name, score=score, reason=reason))
            total_weight += weight
            weighted_score += score * weight

        confidence = weighted_score / total_weight if total_weight > 0 else 0.0
        # Guard float drift so "every contributor scored 1.0" is exactly 1.0
        confidence = min(max(confidence, 0.0), 1.0)
        return MatchScore(confidence=confidence, reasons=tuple(reasons))

    def score_rule(self, rule: MatchingRule, source: FinancialRecord, target: FinancialRecord) -> Tuple[float, str]:
        criterion = rule.criterion

        if isinstance(criterion, AmountExact):
            return self._amount_exact(source, target)
        if isinstance(criterion, AmountTolerance):
            return self._amount_tolerance(criterion, source, target)
        if isinstance(criterion, DateRange):
            return self._date_range(criterion, source, target)
        if isinstance(criterion, ReferenceMatch):
            return self._reference_match(criterion, source, target)
        if isinstance(criterion, CurrencyMatch):
            return self._currency_match(source, target)
        if isinstance(criterion, UnsupportedCriterion):
            return NO_MATCH
        raise TypeError(f"Unhandled matching criterion: {criterion!r}")

    # ==================== CRITERIA ====================

    def _amount_exact(self, source: FinancialRecord, target: FinancialRecord) -> Tuple[float, str]:
        if abs(source.amount - target.amount) < AMOUNT_EPSILON:
            return 1.0, "Exact amount match"
        return NO_MATCH

    def _amount_tolerance(
        self, criterion: AmountTolerance, source: FinancialRecord, target: FinancialRecord
    ) -> Tuple[float, str]:
        tolerance_percent = criterion.tolerance_percent
        if tolerance_percent is None:
            tolerance_percent = self.default_tolerance_percent

        diff = abs(source.amount - target.amount)
        max_diff = abs(source.amount) * Decimal(str(tolerance_percent)) / Decimal(100)

        if max_diff <= 0:
            # Zero-width window: only an identical amount counts
            return (1.0, f"Within {tolerance_percent}% tolerance") if diff == 0 else NO_MATCH
        if diff > max_diff:
            return NO_MATCH
        return float(1 - diff / max_diff), f"Within {tolerance_percent}% tolerance (diff: {diff:.2f})"

    def _date_range(
        self, criterion: DateRange, source: FinancialRecord, target: FinancialRecord
    ) -> Tuple[float, str]:
        if source.date is None or target.date is None:
            return NO_MATCH

        diff_days = abs((target.date - source.date).days)
        max_days = max(criterion.days_before, criterion.days_after)

        if max_days <= 0:
            return (1.0, "Same date") if diff_days == 0 else NO_MATCH
        if diff_days > max_days:
            return NO_MATCH
        return 1 - diff_days / max_days, f"Date within {diff_days} days"

    def _reference_match(
        self, criterion: ReferenceMatch, source: FinancialRecord, target: FinancialRecord
    ) -> Tuple[float, str]:
        source_ref = (source.reference or "").strip().lower()
        target_ref = (target.reference or "").strip().lower()
        if not source_ref or not target_ref:
            return NO_MATCH

        if source_ref == target_ref:
            return 1.0, "Exact reference match"
        if criterion.partial_match and (source_ref in target_ref or target_ref in source_ref):
            return PARTIAL_REFERENCE_SCORE, "Partial reference match"
        return NO_MATCH

    def _currency_match(self, source: FinancialRecord, target: FinancialRecord) -> Tuple[float, str]:
        source_currency = (source.currency or self.default_currency).strip().upper()
        target_currency = (target.currency or self.default_currency).strip().upper()
        if source_currency == target_currency:
            return 1.0, f"Currency match ({source_currency})"
        return NO_MATCH
