"""
Reconciliation Orchestrator

Batch job that matches open bills/invoices (sources) against unlinked
payments/receipts (targets):

1. Enumerate every open record of the requested ledgers up front. A read
   failure here fails the run before anything is written.
2. For each source, score every unclaimed target with the MatchScorer
   inside a bounded scan budget.
3. Persist a pending suggestion for each pair at or above the minimum
   confidence, best first. Identical pending suggestions from earlier
   runs are reused; pairs a reviewer rejected are skipped.
4. When auto-matching is enabled and confidence >= the auto-approve
   threshold (inclusive), claim the source and the target, then apply
   the link/settle/status group atomically. A claimed source takes no
   further part in the run, so it can never be linked twice.
5. Flag sources that were fully scanned and got no suggestion, then run
   the duplicate pass over all targets.

A failed auto-match rolls back only that pair. It is reported in
`failures` and the run carries on.
"""

import logging
import time
import uuid
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from logging_config import clear_request_context, set_request_context
from reconciliation.models import (
    KindPair, PairFailure, ReconciliationRunResult, ReconciliationSettings,
    ReconciliationType, Suggestion, SuggestionStatus, kind_pairs_for,
)
from reconciliation.risk_flags import RiskFlagger
from reconciliation.store import (
    ClaimConflict, InvalidSuggestionState, PersistenceFailure, RecordStore, SuggestionNotFound,
)
from rules_engine.matching import MatchScorer
from rules_engine.models import FinancialRecord, MatchScore, MatchingRule
from rules_engine.store import RuleStore
from sentry_integration import capture_exception

logger = logging.getLogger(__name__)


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    RUN_STARTED = "reconciliation.run_started"
    RUN_COMPLETED = "reconciliation.run_completed"
    SUGGESTION_CREATED = "reconciliation.suggestion_created"
    AUTO_MATCHED = "reconciliation.auto_matched"
    MATCH_FAILED = "reconciliation.match_failed"
    MATCH_CONFIRMED = "reconciliation.match_confirmed"
    MATCH_REJECTED = "reconciliation.match_rejected"
    RISK_FLAGGED = "reconciliation.risk_flagged"
    BUDGET_EXHAUSTED = "reconciliation.budget_exhausted"


def log_reconciliation_event(
    event_type: str,
    details: Dict[str, Any],
    run_id: Optional[str] = None,
    suggestion_id: Optional[str] = None,
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "run_id": run_id,
        "suggestion_id": suggestion_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


class ScanBudget:
    """Caps the candidate scan by pair count and wall-clock time."""

    def __init__(self, max_pairs: int, time_budget_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.max_pairs = max_pairs
        self.used = 0
        self._clock = clock
        self._deadline = clock() + time_budget_seconds
        self.exhausted = False

    def consume(self) -> bool:
        """Take one pair from the budget; False once it is spent."""
        if self.exhausted:
            return False
        if self.used >= self.max_pairs or self._clock() >= self._deadline:
            self.exhausted = True
            return False
        self.used += 1
        return True


class ReconciliationOrchestrator:
    def __init__(
        self,
        store: RecordStore,
        rule_store: RuleStore,
        defaults: Optional[ReconciliationSettings] = None,
        default_currency: str = "AED",
        auto_approve_threshold: float = 0.95,
        max_pairs: int = 250_000,
        time_budget_seconds: float = 60.0,
        today: Callable[[], date] = date.today,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.rule_store = rule_store
        self.defaults = defaults or ReconciliationSettings()
        self.default_currency = default_currency
        self.auto_approve_threshold = auto_approve_threshold
        self.max_pairs = max_pairs
        self.time_budget_seconds = time_budget_seconds
        self.today = today
        self.clock = clock
        self.flagger = RiskFlagger(store)

    @classmethod
    def from_settings(cls, store: RecordStore, rule_store: RuleStore, settings) -> "ReconciliationOrchestrator":
        """Build an orchestrator from config.Settings."""
        return cls(
            store,
            rule_store,
            defaults=ReconciliationSettings(
                min_confidence_score=settings.MIN_CONFIDENCE_SCORE,
                auto_match_enabled=settings.AUTO_MATCH_ENABLED,
                default_tolerance_percent=settings.DEFAULT_TOLERANCE_PERCENT,
            ),
            default_currency=settings.DEFAULT_CURRENCY,
            auto_approve_threshold=settings.AUTO_APPROVE_THRESHOLD,
            max_pairs=settings.RECONCILIATION_MAX_PAIRS,
            time_budget_seconds=settings.RECONCILIATION_TIME_BUDGET_SECONDS,
        )

    async def run(
        self,
        run_type: ReconciliationType = ReconciliationType.ALL,
        auto_approve_threshold: Optional[float] = None,
    ) -> ReconciliationRunResult:
        """
        Run one reconciliation pass.

        Raises:
            ConfigurationUnavailable: matching rules cannot be loaded
            PersistenceFailure: open records cannot be enumerated
        """
        run_id = str(uuid.uuid4())
        threshold = self.auto_approve_threshold if auto_approve_threshold is None else auto_approve_threshold
        set_request_context(job_id=run_id)

        try:
            rule_set = await self.rule_store.ensure_loaded()
            settings = ReconciliationSettings.from_store(await self.store.get_settings(), self.defaults)
            scorer = MatchScorer(self.default_currency, settings.default_tolerance_percent)

            # All reads before the first write
            batches: List[Tuple[KindPair, List[FinancialRecord], List[FinancialRecord]]] = []
            for pair in kind_pairs_for(run_type):
                sources = await self.store.list_open_sources(pair.source)
                targets = await self.store.list_open_targets(pair.target)
                batches.append((pair, sources, targets))
            all_targets = await self.store.list_targets()

            log_reconciliation_event(
                ReconciliationAuditEvent.RUN_STARTED,
                {
                    "type": run_type.value,
                    "rules_version": rule_set.version,
                    "matching_rules": len(rule_set.matching_rules),
                    "min_confidence_score": settings.min_confidence_score,
                    "auto_match_enabled": settings.auto_match_enabled,
                    "auto_approve_threshold": threshold,
                },
                run_id=run_id
            )

            result = ReconciliationRunResult(run_id=run_id, run_type=run_type)
            budget = ScanBudget(self.max_pairs, self.time_budget_seconds, self.clock)
            today = self.today()

            for pair, sources, targets in batches:
                await self._reconcile(
                    pair, sources, targets, rule_set.matching_rules,
                    scorer, settings, threshold, budget, today, result
                )

            if budget.exhausted:
                result.budget_exhausted = True
                log_reconciliation_event(
                    ReconciliationAuditEvent.BUDGET_EXHAUSTED,
                    {"pairs_evaluated": result.pairs_evaluated, "max_pairs": self.max_pairs},
                    run_id=run_id
                )

            try:
                flags = await self.flagger.flag_duplicates(all_targets)
            except PersistenceFailure as e:
                self._record_failure(result, "duplicate_check", None, "risk_flag", e)
            else:
                for flag in flags:
                    self._log_flag(flag, run_id)
                result.risk_flags.extend(flags)

            log_reconciliation_event(
                ReconciliationAuditEvent.RUN_COMPLETED,
                {
                    "auto_matched": result.auto_matched,
                    "needs_review": result.needs_review,
                    "risk_flags": len(result.risk_flags),
                    "failures": len(result.failures),
                    "pairs_evaluated": result.pairs_evaluated,
                    "budget_exhausted": result.budget_exhausted,
                },
                run_id=run_id
            )
            return result
        finally:
            clear_request_context()

    async def _reconcile(
        self,
        pair: KindPair,
        sources: Sequence[FinancialRecord],
        targets: Sequence[FinancialRecord],
        rules: Sequence[MatchingRule],
        scorer: MatchScorer,
        settings: ReconciliationSettings,
        threshold: float,
        budget: ScanBudget,
        today: date,
        result: ReconciliationRunResult,
    ):
        claimed_sources: Set[str] = set()
        claimed_targets: Set[str] = set()

        for source in sources:
            if budget.exhausted:
                break
            if source.id in claimed_sources:
                continue

            candidates: List[Tuple[FinancialRecord, MatchScore]] = []
            fully_scanned = True
            for target in targets:
                if target.id in claimed_targets:
                    continue
                if not budget.consume():
                    fully_scanned = False
                    break
                result.pairs_evaluated += 1
                score = scorer.score(source, target, rules)
                if score.confidence >= settings.min_confidence_score:
                    candidates.append((target, score))

            # Best first; ties keep target order
            candidates.sort(key=lambda c: c[1].confidence, reverse=True)

            has_suggestion = False
            for target, score in candidates:
                try:
                    suggestion = await self._suggest(source, target, score, pair, result.run_id)
                except PersistenceFailure as e:
                    self._record_failure(result, source.id, target.id, pair.suggestion_type, e)
                    continue
                if suggestion is None:
                    continue
                has_suggestion = True

                auto = settings.auto_match_enabled and score.confidence >= threshold
                if not auto or source.id in claimed_sources or target.id in claimed_targets:
                    result.suggestions.append(suggestion)
                    result.needs_review += 1
                    continue

                # Claim before apply
                claimed_sources.add(source.id)
                claimed_targets.add(target.id)
                try:
                    applied = await self.store.apply_match(suggestion, SuggestionStatus.AUTO_MATCHED)
                except ClaimConflict as e:
                    self._record_failure(result, source.id, target.id, pair.suggestion_type, e)
                    result.suggestions.append(suggestion)
                    result.needs_review += 1
                    if e.entity == "source":
                        # Settled elsewhere; stays claimed
                        break
                    # Target is linked elsewhere; it stays claimed, the source is free again
                    claimed_sources.discard(source.id)
                    continue
                except PersistenceFailure as e:
                    self._record_failure(result, source.id, target.id, pair.suggestion_type, e)
                    result.suggestions.append(suggestion)
                    result.needs_review += 1
                    claimed_sources.discard(source.id)
                    claimed_targets.discard(target.id)
                    continue

                result.suggestions.append(applied)
                result.auto_matched += 1
                log_reconciliation_event(
                    ReconciliationAuditEvent.AUTO_MATCHED,
                    {
                        "source_id": source.id,
                        "target_id": target.id,
                        "confidence_score": score.confidence,
                    },
                    run_id=result.run_id,
                    suggestion_id=applied.id
                )
                break

            if not has_suggestion and fully_scanned:
                try:
                    flag = await self.flagger.flag_unreconciled(source, today)
                except PersistenceFailure as e:
                    self._record_failure(result, source.id, None, "risk_flag", e)
                    continue
                if flag is not None:
                    self._log_flag(flag, result.run_id)
                    result.risk_flags.append(flag)

    async def _suggest(
        self,
        source: FinancialRecord,
        target: FinancialRecord,
        score: MatchScore,
        pair: KindPair,
        run_id: str,
    ) -> Optional[Suggestion]:
        """Pending suggestion for the pair: reused if one exists, None if it was rejected."""
        existing = await self.store.find_suggestion(source.id, target.id)
        if existing is not None:
            if existing.status == SuggestionStatus.PENDING:
                return existing
            if existing.status == SuggestionStatus.REJECTED:
                return None

        suggestion = Suggestion(
            source_id=source.id,
            source_type=pair.source,
            target_id=target.id,
            target_type=pair.target,
            suggestion_type=pair.suggestion_type,
            confidence_score=score.confidence,
            match_reasons=list(score.reasons),
        )
        suggestion = await self.store.create_suggestion(suggestion)

        log_reconciliation_event(
            ReconciliationAuditEvent.SUGGESTION_CREATED,
            {
                "source_id": source.id,
                "target_id": target.id,
                "confidence_score": score.confidence,
            },
            run_id=run_id,
            suggestion_id=suggestion.id
        )
        return suggestion

    def _record_failure(
        self,
        result: ReconciliationRunResult,
        source_id: str,
        target_id: Optional[str],
        kind: str,
        error: Exception,
    ):
        result.failures.append(PairFailure(
            source_id=source_id,
            target_id=target_id,
            suggestion_type=kind,
            error=str(error),
        ))
        log_reconciliation_event(
            ReconciliationAuditEvent.MATCH_FAILED,
            {"source_id": source_id, "target_id": target_id, "error": str(error)},
            run_id=result.run_id
        )
        if not isinstance(error, ClaimConflict):
            capture_exception(error, run_id=result.run_id, source_id=source_id, target_id=target_id)

    def _log_flag(self, flag, run_id: str):
        log_reconciliation_event(
            ReconciliationAuditEvent.RISK_FLAGGED,
            {
                "flag_type": flag.flag_type.value,
                "severity": flag.severity.value,
                "entity_id": flag.entity_id,
                "related_entity_id": flag.related_entity_id,
            },
            run_id=run_id
        )

    # ==================== REVIEW ====================

    async def confirm_suggestion(self, suggestion_id: str, actor: str = "system") -> Suggestion:
        """
        Apply a pending suggestion as a confirmed match.

        Raises:
            SuggestionNotFound, InvalidSuggestionState, ClaimConflict, PersistenceFailure
        """
        suggestion = await self._pending(suggestion_id)
        confirmed = await self.store.apply_match(suggestion, SuggestionStatus.CONFIRMED)

        log_reconciliation_event(
            ReconciliationAuditEvent.MATCH_CONFIRMED,
            {"source_id": confirmed.source_id, "target_id": confirmed.target_id},
            suggestion_id=suggestion_id,
            actor=actor
        )
        return confirmed

    async def reject_suggestion(
        self, suggestion_id: str, reason: Optional[str] = None, actor: str = "system"
    ) -> Suggestion:
        await self._pending(suggestion_id)
        rejected = await self.store.set_suggestion_status(suggestion_id, SuggestionStatus.REJECTED, reason)

        log_reconciliation_event(
            ReconciliationAuditEvent.MATCH_REJECTED,
            {"source_id": rejected.source_id, "target_id": rejected.target_id, "reason": reason},
            suggestion_id=suggestion_id,
            actor=actor
        )
        return rejected

    async def _pending(self, suggestion_id: str) -> Suggestion:
        suggestion = await self.store.get_suggestion(suggestion_id)
        if suggestion is None:
            raise SuggestionNotFound(f"Suggestion {suggestion_id} not found")
        if suggestion.status != SuggestionStatus.PENDING:
            raise InvalidSuggestionState(f"Suggestion {suggestion_id} is {suggestion.status.value}, not pending")
        return suggestion
