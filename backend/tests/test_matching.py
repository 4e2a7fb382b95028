"""
Unit Tests for the Match Scorer

Run with: pytest backend/tests/test_matching.py -v
"""

from datetime import date
from decimal import Decimal

import pytest

from rules_engine.matching import MatchScorer
from rules_engine.models import (
    AmountExact, AmountTolerance, CurrencyMatch, DateRange, FinancialRecord,
    MatchingRule, RecordKind, ReferenceMatch, UnsupportedCriterion,
)


def bill(amount, on=date(2024, 1, 10), **kwargs):
    return FinancialRecord(id="B1", kind=RecordKind.BILL, amount=Decimal(str(amount)), date=on, **kwargs)


def payment(amount, on=date(2024, 1, 10), **kwargs):
    return FinancialRecord(id="P1", kind=RecordKind.PAYMENT, amount=Decimal(str(amount)), date=on, **kwargs)


def matching_rule(criterion, priority=50, name=None, **kwargs):
    return MatchingRule(
        id=name or type(criterion).__name__,
        name=name or type(criterion).__name__,
        criterion=criterion,
        priority=priority,
        **kwargs,
    )


@pytest.fixture
def scorer():
    return MatchScorer()


class TestConfidence:

    def test_tolerance_and_date_window(self, scorer):
        rules = [
            matching_rule(AmountTolerance(2), priority=10, name="Amount tolerance"),
            matching_rule(DateRange(7, 3), priority=10, name="Date window"),
        ]

        result = scorer.score(
            bill(1000.00, date(2024, 1, 10)),
            payment(995.00, date(2024, 1, 12)),
            rules,
        )

        assert result.confidence == pytest.approx(0.732, abs=1e-3)
        assert [r.rule_name for r in result.reasons] == ["Amount tolerance", "Date window"]
        assert result.reasons[0].score == pytest.approx(0.75)
        assert result.reasons[1].score == pytest.approx(5 / 7)

    def test_no_contributing_rule_is_exactly_zero(self, scorer):
        rules = [matching_rule(AmountExact()), matching_rule(ReferenceMatch())]

        result = scorer.score(bill(100), payment(250), rules)

        assert result.confidence == 0.0
        assert result.reasons == ()

    def test_all_contributors_perfect_is_exactly_one(self, scorer):
        rules = [
            matching_rule(AmountExact(), priority=10),
            matching_rule(ReferenceMatch(), priority=35),
            matching_rule(CurrencyMatch(), priority=77),
        ]

        result = scorer.score(
            bill(123.45, reference="INV-7", currency="AED"),
            payment(123.45, reference="inv-7", currency="aed"),
            rules,
        )

        assert result.confidence == 1.0

    def test_silent_rules_do_not_dilute(self, scorer):
        rules = [
            matching_rule(AmountExact(), priority=10),
            matching_rule(ReferenceMatch(), priority=5),
        ]

        result = scorer.score(bill(100), payment(100), rules)

        assert result.confidence == 1.0
        assert len(result.reasons) == 1

    def test_weights_follow_priority(self, scorer):
        rules = [
            matching_rule(AmountTolerance(2), priority=10),
            matching_rule(DateRange(7, 3), priority=90),
        ]

        result = scorer.score(bill(1000), payment(1010), rules)

        # (0.5 * 90 + 1.0 * 10) / 100
        assert result.confidence == pytest.approx(0.55)

    def test_zero_weight_rule_is_excluded(self, scorer):
        rules = [
            matching_rule(AmountTolerance(2), priority=10),
            matching_rule(DateRange(7, 3), priority=100),
            matching_rule(CurrencyMatch(), priority=150),
        ]

        result = scorer.score(bill(1000), payment(1010), rules)

        assert result.confidence == pytest.approx(0.5)
        assert len(result.reasons) == 1

    def test_inactive_rules_are_ignored(self, scorer):
        rules = [matching_rule(AmountExact(), is_active=False)]
        assert scorer.score(bill(10), payment(10), rules).confidence == 0.0

    def test_jurisdiction_filter(self, scorer):
        rules = [matching_rule(AmountExact(), jurisdiction="UAE")]

        assert scorer.score(bill(10), payment(10), rules, jurisdiction="KSA").confidence == 0.0
        assert scorer.score(bill(10), payment(10), rules, jurisdiction="UAE").confidence == 1.0
        assert scorer.score(bill(10), payment(10), rules).confidence == 1.0

    def test_deterministic(self, scorer):
        rules = [matching_rule(AmountTolerance(5)), matching_rule(DateRange(7, 3))]
        source, target = bill(500, date(2024, 3, 1)), payment(490, date(2024, 3, 4))

        assert scorer.score(source, target, rules) == scorer.score(source, target, rules)

    def test_to_dict(self, scorer):
        data = scorer.score(bill(10), payment(10), [matching_rule(AmountExact(), name="Exact")]).to_dict()

        assert data["confidence"] == 1.0
        assert data["matchReasons"] == [{"rule": "Exact", "score": 1.0, "reason": "Exact amount match"}]


class TestCriteria:

    def test_amount_exact_within_a_cent(self, scorer):
        rule = matching_rule(AmountExact())

        assert scorer.score_rule(rule, bill("100.00"), payment("100.009"))[0] == 1.0
        assert scorer.score_rule(rule, bill("100.00"), payment("100.01"))[0] == 0.0

    def test_amount_tolerance_outside_window(self, scorer):
        rule = matching_rule(AmountTolerance(2))
        assert scorer.score_rule(rule, bill(1000), payment(1021))[0] == 0.0

    def test_amount_tolerance_uses_default(self):
        rule = matching_rule(AmountTolerance())

        assert MatchScorer(default_tolerance_percent=2.0).score_rule(rule, bill(1000), payment(995))[0] == pytest.approx(0.75)
        assert MatchScorer(default_tolerance_percent=1.0).score_rule(rule, bill(1000), payment(995))[0] == pytest.approx(0.5)

    def test_zero_amount_source(self, scorer):
        rule = matching_rule(AmountTolerance(2))

        assert scorer.score_rule(rule, bill(0), payment(0))[0] == 1.0
        assert scorer.score_rule(rule, bill(0), payment("0.01"))[0] == 0.0

    def test_date_range_uses_wider_side(self, scorer):
        rule = matching_rule(DateRange(days_before=2, days_after=10))

        score, _ = scorer.score_rule(rule, bill(1, date(2024, 1, 10)), payment(1, date(2024, 1, 5)))
        assert score == pytest.approx(0.5)

    def test_date_range_outside_window(self, scorer):
        rule = matching_rule(DateRange(7, 3))
        assert scorer.score_rule(rule, bill(1, date(2024, 1, 1)), payment(1, date(2024, 1, 9)))[0] == 0.0

    def test_date_range_missing_date(self, scorer):
        rule = matching_rule(DateRange(7, 3))
        assert scorer.score_rule(rule, bill(1, None), payment(1))[0] == 0.0

    def test_reference_exact_ignores_case_and_whitespace(self, scorer):
        rule = matching_rule(ReferenceMatch())
        assert scorer.score_rule(rule, bill(1, reference=" INV-001 "), payment(1, reference="inv-001"))[0] == 1.0

    def test_reference_partial(self, scorer):
        source, target = bill(1, reference="INV-001"), payment(1, reference="Payment for INV-001")

        assert scorer.score_rule(matching_rule(ReferenceMatch()), source, target)[0] == 0.0
        assert scorer.score_rule(matching_rule(ReferenceMatch(partial_match=True)), source, target)[0] == 0.8

    def test_reference_missing(self, scorer):
        rule = matching_rule(ReferenceMatch(partial_match=True))
        assert scorer.score_rule(rule, bill(1, reference=""), payment(1, reference="INV-1"))[0] == 0.0

    def test_currency_defaults(self):
        rule = matching_rule(CurrencyMatch())

        assert MatchScorer().score_rule(rule, bill(1), payment(1, currency="aed"))[0] == 1.0
        assert MatchScorer().score_rule(rule, bill(1), payment(1, currency="USD"))[0] == 0.0
        assert MatchScorer(default_currency="usd").score_rule(rule, bill(1), payment(1, currency="USD"))[0] == 1.0

    def test_unsupported_criterion_scores_zero(self, scorer):
        rule = matching_rule(UnsupportedCriterion("vendor_fuzzy"))
        assert scorer.score_rule(rule, bill(1), payment(1)) == (0.0, "")

    def test_unknown_condition_type_from_config(self, scorer):
        rule = MatchingRule.from_config({"id": "x", "condition_type": "vendor_fuzzy", "priority": 10})

        assert isinstance(rule.criterion, UnsupportedCriterion)
        assert scorer.score(bill(1), payment(1), [rule]).confidence == 0.0
