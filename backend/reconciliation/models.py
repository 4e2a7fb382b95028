"""
Reconciliation Models

Statuses, suggestions, risk flags and run results for the reconciliation
batch job.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, NamedTuple, Optional

from rules_engine.models import MatchReason, RecordKind


class ReconciliationType(str, Enum):
    """Which ledgers a run covers."""
    ALL = "all"
    PAYABLE = "payable"        # bills -> outgoing payments
    RECEIVABLE = "receivable"  # invoices -> incoming receipts


class ReconciliationDecision(str, Enum):
    AUTO_MATCHED = "auto_matched"
    PENDING_REVIEW = "pending_review"
    NO_MATCH = "no_match"


class SuggestionStatus(str, Enum):
    PENDING = "pending"
    AUTO_MATCHED = "auto_matched"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class RiskFlagType(str, Enum):
    DUPLICATE_PAYMENT = "duplicate_payment"
    UNRECONCILED = "unreconciled"
    OVERDUE = "overdue"


class RiskSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class KindPair(NamedTuple):
    source: RecordKind
    target: RecordKind
    suggestion_type: str


KIND_PAIRS: Dict[ReconciliationType, KindPair] = {
    ReconciliationType.PAYABLE: KindPair(RecordKind.BILL, RecordKind.PAYMENT, "bill_payment"),
    ReconciliationType.RECEIVABLE: KindPair(RecordKind.INVOICE, RecordKind.RECEIPT, "invoice_receipt"),
}


def kind_pairs_for(run_type: ReconciliationType) -> List[KindPair]:
    if run_type == ReconciliationType.ALL:
        return list(KIND_PAIRS.values())
    return [KIND_PAIRS[run_type]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Suggestion:
    """A proposed link between a source record and a target record."""
    source_id: str
    source_type: RecordKind
    target_id: str
    target_type: RecordKind
    suggestion_type: str
    confidence_score: float
    match_reasons: List[MatchReason] = field(default_factory=list)
    status: SuggestionStatus = SuggestionStatus.PENDING
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    review_note: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def decision(self) -> ReconciliationDecision:
        if self.status in (SuggestionStatus.AUTO_MATCHED, SuggestionStatus.CONFIRMED):
            return ReconciliationDecision.AUTO_MATCHED
        if self.status == SuggestionStatus.REJECTED:
            return ReconciliationDecision.NO_MATCH
        return ReconciliationDecision.PENDING_REVIEW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "suggestion_type": self.suggestion_type,
            "source_type": self.source_type.value,
            "source_id": self.source_id,
            "target_type": self.target_type.value,
            "target_id": self.target_id,
            "confidence_score": self.confidence_score,
            "match_reasons": [r.to_dict() for r in self.match_reasons],
            "status": self.status.value,
            "decision": self.decision.value,
            "review_note": self.review_note,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class RiskFlag:
    flag_type: RiskFlagType
    severity: RiskSeverity
    entity_type: RecordKind
    entity_id: str
    description: str = ""
    related_entity_type: Optional[RecordKind] = None
    related_entity_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    is_resolved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.flag_type.value,
            "severity": self.severity.value,
            "entity": self.entity_type.value,
            "entity_id": self.entity_id,
            "related_entity": self.related_entity_type.value if self.related_entity_type else None,
            "related_entity_id": self.related_entity_id,
            "description": self.description,
            "details": self.details,
        }


@dataclass(frozen=True)
class ReconciliationSettings:
    """Run settings; values missing from the settings store fall back to the service defaults."""
    min_confidence_score: float = 0.85
    auto_match_enabled: bool = True
    default_tolerance_percent: float = 2.0

    @classmethod
    def from_store(
        cls, values: Optional[Mapping[str, Any]], defaults: "ReconciliationSettings"
    ) -> "ReconciliationSettings":
        values = values or {}

        def pick(key, cast):
            raw = values.get(key)
            if raw is None:
                return getattr(defaults, key)
            try:
                return cast(raw)
            except (TypeError, ValueError):
                return getattr(defaults, key)

        return cls(
            min_confidence_score=pick("min_confidence_score", float),
            auto_match_enabled=pick("auto_match_enabled", _as_bool),
            default_tolerance_percent=pick("default_tolerance_percent", float),
        )


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


@dataclass
class PairFailure:
    """A write that was rolled back; `suggestion_type` is "risk_flag" for flag writes."""
    source_id: str
    target_id: Optional[str]
    suggestion_type: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "suggestion_type": self.suggestion_type,
            "error": self.error,
        }


@dataclass
class ReconciliationRunResult:
    run_id: str
    run_type: ReconciliationType
    suggestions: List[Suggestion] = field(default_factory=list)
    auto_matched: int = 0
    needs_review: int = 0
    risk_flags: List[RiskFlag] = field(default_factory=list)
    failures: List[PairFailure] = field(default_factory=list)
    pairs_evaluated: int = 0
    budget_exhausted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "type": self.run_type.value,
            "suggestions": [s.to_dict() for s in self.suggestions],
            "autoMatched": self.auto_matched,
            "needsReview": self.needs_review,
            "riskFlags": [f.to_dict() for f in self.risk_flags],
            "failures": [f.to_dict() for f in self.failures],
            "pairsEvaluated": self.pairs_evaluated,
            "budgetExhausted": self.budget_exhausted,
        }
