"""
Unit Tests for the Reconciliation Orchestrator

Runs against the in-memory record store. Failure injection uses a store
subclass that raises from its write hook.

Run with: pytest backend/tests/test_orchestrator.py -v
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from reconciliation.models import (
    ReconciliationType, RiskFlagType, RiskSeverity, SuggestionStatus,
)
from reconciliation.orchestrator import ReconciliationOrchestrator, ScanBudget
from reconciliation.store import (
    ClaimConflict, InMemoryRecordStore, InvalidSuggestionState, PersistenceFailure, SuggestionNotFound,
)
from rules_engine.matching import MatchScorer
from rules_engine.models import FinancialRecord, MatchingRule, RecordKind
from rules_engine.store import ConfigurationUnavailable, RuleSource, RuleStore, StaticRuleSource


TODAY = date(2024, 3, 1)
TWO_DAYS_LATER = date(2024, 1, 12)
LATER = date(2024, 2, 20)
UNRELATED = date(2023, 6, 1)

MATCHING_RULES = [
    {"id": "amount", "rule_name": "Exact amount", "condition_type": "amount_exact", "priority": 10},
    {"id": "reference", "rule_name": "Reference", "condition_type": "reference_match", "priority": 20},
    {"id": "date", "rule_name": "Date window", "condition_type": "date_range",
     "params": {"days_before": 7, "days_after": 3}, "priority": 30},
]


def record(record_id, kind, amount, on=date(2024, 1, 10), reference=None, created_minute=0, **kwargs):
    return FinancialRecord(
        id=record_id,
        kind=kind,
        amount=Decimal(str(amount)),
        date=on,
        reference=reference,
        created_at=datetime(2024, 1, 1, 9, created_minute, tzinfo=timezone.utc),
        **kwargs,
    )


def bill(record_id, amount, **kwargs):
    return record(record_id, RecordKind.BILL, amount, **kwargs)


def payment(record_id, amount, **kwargs):
    return record(record_id, RecordKind.PAYMENT, amount, **kwargs)


async def make_orchestrator(store, matching_rules=MATCHING_RULES, **kwargs):
    rule_store = RuleStore(StaticRuleSource({"matching_rules": matching_rules}))
    await rule_store.load()
    kwargs.setdefault("today", lambda: TODAY)
    return ReconciliationOrchestrator(store, rule_store, **kwargs)


def flags_of(store, flag_type):
    return [f for f in store.risk_flags.values() if f.flag_type == flag_type]


class FailingStore(InMemoryRecordStore):
    """Raises PersistenceFailure for the configured (operation, entity) writes."""

    def __init__(self, *args, fail_on=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_on = set(fail_on)

    def _check_write(self, operation, entity_id):
        if (operation, entity_id) in self.fail_on:
            raise PersistenceFailure(f"{operation} failed for {entity_id}")


class TestAutoMatching:

    @pytest.mark.asyncio
    async def test_exact_pair_is_auto_matched(self):
        store = InMemoryRecordStore([
            bill("B1", 1000, reference="INV-1"),
            payment("P1", 1000, reference="INV-1"),
        ])
        orchestrator = await make_orchestrator(store)

        result = await orchestrator.run()

        assert result.auto_matched == 1
        assert result.needs_review == 0
        assert result.failures == []
        assert result.suggestions[0].status == SuggestionStatus.AUTO_MATCHED
        assert result.suggestions[0].confidence_score == 1.0
        assert store.records[RecordKind.BILL]["B1"].settled is True
        assert store.records[RecordKind.PAYMENT]["P1"].linked_source_id == "B1"

    @pytest.mark.asyncio
    async def test_threshold_is_inclusive(self):
        rules = [
            {"id": "tol", "condition_type": "amount_tolerance", "params": {"tolerance_percent": 2}, "priority": 10},
            {"id": "date", "condition_type": "date_range", "priority": 10},
        ]
        source = bill("B1", 1000, on=date(2024, 1, 10))
        target = payment("P1", 995, on=date(2024, 1, 12))
        confidence = MatchScorer().score(
            source, target, [MatchingRule.from_config(r) for r in rules]
        ).confidence

        at = InMemoryRecordStore([source, target], settings={"min_confidence_score": 0.5})
        result = await (await make_orchestrator(at, rules)).run(auto_approve_threshold=confidence)
        assert result.auto_matched == 1

        below = InMemoryRecordStore([source, target], settings={"min_confidence_score": 0.5})
        result = await (await make_orchestrator(below, rules)).run(auto_approve_threshold=confidence + 1e-9)
        assert result.auto_matched == 0
        assert result.needs_review == 1
        assert result.suggestions[0].status == SuggestionStatus.PENDING
        assert below.records[RecordKind.BILL]["B1"].settled is False

    @pytest.mark.asyncio
    async def test_source_never_linked_twice(self):
        store = InMemoryRecordStore([
            bill("B1", 500, reference="INV-5"),
            payment("P1", 500, reference="INV-5", created_minute=1),
            payment("P2", 500, reference="INV-5", created_minute=2),
        ])
        orchestrator = await make_orchestrator(store)

        result = await orchestrator.run()

        linked = [p for p in store.records[RecordKind.PAYMENT].values() if p.linked_source_id == "B1"]
        assert [p.id for p in linked] == ["P1"]
        assert result.auto_matched == 1
        assert [s.target_id for s in result.suggestions] == ["P1"]

    @pytest.mark.asyncio
    async def test_target_never_linked_twice(self):
        store = InMemoryRecordStore([
            bill("B1", 500, reference="INV-5", created_minute=1),
            bill("B2", 500, reference="INV-5", created_minute=2),
            payment("P1", 500, reference="INV-5"),
        ])
        orchestrator = await make_orchestrator(store)

        result = await orchestrator.run()

        assert result.auto_matched == 1
        assert store.records[RecordKind.PAYMENT]["P1"].linked_source_id == "B1"
        assert store.records[RecordKind.BILL]["B2"].settled is False
        unreconciled = flags_of(store, RiskFlagType.UNRECONCILED)
        assert [f.entity_id for f in unreconciled] == ["B2"]

    @pytest.mark.asyncio
    async def test_auto_match_disabled_leaves_pending(self):
        store = InMemoryRecordStore(
            [bill("B1", 1000, reference="INV-1"), payment("P1", 1000, reference="INV-1")],
            settings={"auto_match_enabled": False},
        )
        orchestrator = await make_orchestrator(store)

        result = await orchestrator.run()

        assert result.auto_matched == 0
        assert result.needs_review == 1
        assert store.records[RecordKind.BILL]["B1"].settled is False

    @pytest.mark.asyncio
    async def test_run_type_limits_ledgers(self):
        store = InMemoryRecordStore([
            bill("B1", 100, reference="R1"),
            payment("P1", 100, reference="R1"),
            record("I1", RecordKind.INVOICE, 200, reference="R2"),
            record("C1", RecordKind.RECEIPT, 200, reference="R2"),
        ])
        orchestrator = await make_orchestrator(store)

        result = await orchestrator.run(ReconciliationType.PAYABLE)

        assert result.auto_matched == 1
        assert store.records[RecordKind.INVOICE]["I1"].settled is False

        result = await orchestrator.run(ReconciliationType.RECEIVABLE)
        assert result.auto_matched == 1
        assert result.suggestions[0].suggestion_type == "invoice_receipt"
        assert store.records[RecordKind.RECEIPT]["C1"].linked_source_id == "I1"


class TestPartialFailure:

    @pytest.mark.asyncio
    async def test_failed_pair_rolls_back_and_run_continues(self):
        store = FailingStore(
            [
                bill("B1", 100, reference="R1", created_minute=1),
                bill("B2", 200, reference="R2", on=LATER, created_minute=2),
                payment("P1", 100, reference="R1"),
                payment("P2", 200, reference="R2", on=LATER),
            ],
            fail_on={("settle_source", "B1")},
        )
        orchestrator = await make_orchestrator(store)

        result = await orchestrator.run()

        assert result.auto_matched == 1
        assert store.records[RecordKind.BILL]["B2"].settled is True

        # Nothing of the failed group was applied
        assert store.records[RecordKind.BILL]["B1"].settled is False
        assert store.records[RecordKind.PAYMENT]["P1"].linked_source_id is None

        assert len(result.failures) == 1
        assert result.failures[0].source_id == "B1"
        assert result.failures[0].target_id == "P1"
        assert result.needs_review == 1
        pending = [s for s in store.suggestions.values() if s.source_id == "B1"]
        assert [s.status for s in pending] == [SuggestionStatus.PENDING]

    @pytest.mark.asyncio
    async def test_failed_suggestion_write_is_reported(self):
        class FailCreate(InMemoryRecordStore):
            def _check_write(self, operation, entity_id):
                if operation == "create_suggestion":
                    raise PersistenceFailure("insert failed")

        store = FailCreate([bill("B1", 100, reference="R1"), payment("P1", 100, reference="R1")])
        orchestrator = await make_orchestrator(store)

        result = await orchestrator.run()

        assert result.auto_matched == 0
        assert [f.source_id for f in result.failures] == ["B1"]
        assert store.suggestions == {}

    @pytest.mark.asyncio
    async def test_read_failure_fails_run_before_any_write(self):
        class BrokenReads(InMemoryRecordStore):
            async def list_targets(self):
                raise PersistenceFailure("ledger unavailable")

        store = BrokenReads([bill("B1", 100, reference="R1"), payment("P1", 100, reference="R1")])
        orchestrator = await make_orchestrator(store)

        with pytest.raises(PersistenceFailure):
            await orchestrator.run()

        assert store.suggestions == {}
        assert store.risk_flags == {}
        assert store.records[RecordKind.BILL]["B1"].settled is False

    @pytest.mark.asyncio
    async def test_rules_unavailable_fails_run(self):
        class DownSource(RuleSource):
            async def fetch(self):
                raise ConfigurationUnavailable("no configuration")

        store = InMemoryRecordStore([bill("B1", 100)])
        orchestrator = ReconciliationOrchestrator(store, RuleStore(DownSource()))

        with pytest.raises(ConfigurationUnavailable):
            await orchestrator.run()


class TestIdempotency:

    @pytest.mark.asyncio
    async def test_rerun_creates_nothing_new(self):
        store = InMemoryRecordStore(
            [
                bill("B1", 1000, reference="INV-1", due_date=date(2024, 2, 1)),
                payment("P1", 990, reference="INV-1", on=TWO_DAYS_LATER),
                bill("B2", 50, on=UNRELATED, due_date=date(2024, 4, 1)),
            ],
            settings={"min_confidence_score": 0.5},
        )
        orchestrator = await make_orchestrator(store)

        first = await orchestrator.run()
        suggestions, flags = dict(store.suggestions), dict(store.risk_flags)
        second = await orchestrator.run()

        assert first.needs_review == 1
        assert store.suggestions.keys() == suggestions.keys()
        assert store.risk_flags.keys() == flags.keys()
        assert second.risk_flags == []
        assert second.suggestions[0].id == first.suggestions[0].id

    @pytest.mark.asyncio
    async def test_rejected_pair_is_not_suggested_again(self):
        store = InMemoryRecordStore(
            [bill("B1", 1000, reference="INV-1"), payment("P1", 990, reference="INV-1", on=TWO_DAYS_LATER)],
            settings={"min_confidence_score": 0.5},
        )
        orchestrator = await make_orchestrator(store)

        first = await orchestrator.run()
        await orchestrator.reject_suggestion(first.suggestions[0].id, "Different vendor")
        second = await orchestrator.run()

        assert second.suggestions == []
        assert len(store.suggestions) == 1
        assert [f.entity_id for f in flags_of(store, RiskFlagType.UNRECONCILED)] == ["B1"]


class TestRiskFlags:

    @pytest.mark.asyncio
    async def test_duplicate_payment_flagged_once(self):
        later = payment("P2", 200, on=date(2024, 2, 1), reference="INV-9", created_minute=30)
        earlier = payment("P1", 200, on=date(2024, 2, 1), reference="INV-9", created_minute=10)
        store = InMemoryRecordStore([later, earlier])
        orchestrator = await make_orchestrator(store)

        result = await orchestrator.run()
        await orchestrator.run()

        duplicates = flags_of(store, RiskFlagType.DUPLICATE_PAYMENT)
        assert len(duplicates) == 1
        assert duplicates[0].entity_id == "P2"
        assert duplicates[0].related_entity_id == "P1"
        assert duplicates[0].severity == RiskSeverity.HIGH
        assert [f.flag_type for f in result.risk_flags] == [RiskFlagType.DUPLICATE_PAYMENT]

    @pytest.mark.asyncio
    async def test_unreconciled_severity(self):
        store = InMemoryRecordStore([
            bill("OVERDUE", 10, due_date=date(2024, 2, 1), created_minute=1),
            bill("CURRENT", 20, due_date=date(2024, 3, 15), created_minute=2),
            bill("NODUE", 30, created_minute=3),
        ])
        orchestrator = await make_orchestrator(store)

        await orchestrator.run()

        severities = {f.entity_id: f.severity for f in flags_of(store, RiskFlagType.UNRECONCILED)}
        assert severities == {
            "OVERDUE": RiskSeverity.HIGH,
            "CURRENT": RiskSeverity.MEDIUM,
            "NODUE": RiskSeverity.MEDIUM,
        }

    @pytest.mark.asyncio
    async def test_failed_flag_write_is_reported(self):
        store = FailingStore([bill("B1", 10)], fail_on={("create_risk_flag", "B1")})
        orchestrator = await make_orchestrator(store)

        result = await orchestrator.run()

        assert store.risk_flags == {}
        assert result.failures[0].suggestion_type == "risk_flag"
        assert result.failures[0].target_id is None


class TestScanBudget:

    def test_pair_limit(self):
        budget = ScanBudget(max_pairs=2, time_budget_seconds=60)

        assert budget.consume() is True
        assert budget.consume() is True
        assert budget.consume() is False
        assert budget.exhausted is True

    def test_deadline(self):
        now = [100.0]
        budget = ScanBudget(max_pairs=1000, time_budget_seconds=5, clock=lambda: now[0])

        assert budget.consume() is True
        now[0] = 105.0
        assert budget.consume() is False
        assert budget.exhausted is True

    @pytest.mark.asyncio
    async def test_exhausted_run_reports_and_skips_partial_sources(self):
        store = InMemoryRecordStore([
            bill("B1", 10, created_minute=1),
            bill("B2", 20, created_minute=2),
            payment("P1", 999, on=UNRELATED),
        ])
        orchestrator = await make_orchestrator(store, max_pairs=1)

        result = await orchestrator.run(ReconciliationType.PAYABLE)

        assert result.budget_exhausted is True
        assert result.pairs_evaluated == 1
        # B2 was never scanned, so it is not reported as unreconciled
        assert [f.entity_id for f in flags_of(store, RiskFlagType.UNRECONCILED)] == ["B1"]


class TestReview:

    async def pending_suggestion(self):
        store = InMemoryRecordStore(
            [bill("B1", 1000, reference="INV-1"), payment("P1", 990, reference="INV-1", on=TWO_DAYS_LATER)],
            settings={"min_confidence_score": 0.5},
        )
        orchestrator = await make_orchestrator(store)
        result = await orchestrator.run()
        return store, orchestrator, result.suggestions[0]

    @pytest.mark.asyncio
    async def test_confirm_applies_match(self):
        store, orchestrator, suggestion = await self.pending_suggestion()

        confirmed = await orchestrator.confirm_suggestion(suggestion.id, actor="reviewer-1")

        assert confirmed.status == SuggestionStatus.CONFIRMED
        assert store.records[RecordKind.BILL]["B1"].settled is True
        assert store.records[RecordKind.PAYMENT]["P1"].linked_source_id == "B1"

        with pytest.raises(InvalidSuggestionState):
            await orchestrator.confirm_suggestion(suggestion.id)

    @pytest.mark.asyncio
    async def test_confirm_conflict_changes_nothing(self):
        store, orchestrator, suggestion = await self.pending_suggestion()
        store.add_record(payment(
            "P1", 990, reference="INV-1", on=TWO_DAYS_LATER, linked_source_id="B9", settled=True
        ))

        with pytest.raises(ClaimConflict) as exc_info:
            await orchestrator.confirm_suggestion(suggestion.id)

        assert exc_info.value.entity == "target"
        assert store.records[RecordKind.BILL]["B1"].settled is False
        assert store.suggestions[suggestion.id].status == SuggestionStatus.PENDING

    @pytest.mark.asyncio
    async def test_reject(self):
        store, orchestrator, suggestion = await self.pending_suggestion()

        rejected = await orchestrator.reject_suggestion(suggestion.id, "Wrong vendor")

        assert rejected.status == SuggestionStatus.REJECTED
        assert rejected.review_note == "Wrong vendor"
        assert store.records[RecordKind.BILL]["B1"].settled is False

    @pytest.mark.asyncio
    async def test_unknown_suggestion(self):
        _, orchestrator, _ = await self.pending_suggestion()

        with pytest.raises(SuggestionNotFound):
            await orchestrator.reject_suggestion("missing")
