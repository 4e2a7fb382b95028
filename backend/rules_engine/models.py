"""
Rule Engine Models

Typed rules, conditions, actions, contexts and results shared by the
eligibility engine and the match scorer.

Rules arrive as loosely-typed JSON from the configuration store and are
parsed once, at load time, into the closed set of types below. Anything
the parser does not recognise becomes an explicit "unknown" case that
evaluates to a non-match or a no-op.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)


# ==================== ENUMS ====================

class RuleType(str, Enum):
    """Rule types. Everything except MATCHING is folded by the eligibility engine."""
    ELIGIBILITY = "eligibility"
    PRICING = "pricing"
    DOCUMENT = "document"
    WORKFLOW = "workflow"
    CASCADE = "cascade"
    MATCHING = "matching"


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    IN = "in"
    NOT_IN = "not_in"


class ContextField(str, Enum):
    """Canonical attributes of an evaluation context."""
    NATIONALITY = "nationality"
    EMIRATE = "emirate"
    LOCATION_TYPE = "location_type"
    ACTIVITY_CODE = "activity_code"
    ACTIVITY_RISK_LEVEL = "activity_risk_level"
    PLAN_CODE = "plan_code"
    PROMO_CODE = "promo_code"


# Every spelling found in stored rules and callers' contexts
FIELD_ALIASES: Mapping[str, ContextField] = MappingProxyType({
    "country": ContextField.NATIONALITY,
    "nationality": ContextField.NATIONALITY,
    "emirate": ContextField.EMIRATE,
    "jurisdiction.type": ContextField.LOCATION_TYPE,
    "jurisdiction_type": ContextField.LOCATION_TYPE,
    "jurisdictionType": ContextField.LOCATION_TYPE,
    "location_type": ContextField.LOCATION_TYPE,
    "locationType": ContextField.LOCATION_TYPE,
    "license_type": ContextField.LOCATION_TYPE,
    "activity.code": ContextField.ACTIVITY_CODE,
    "activity_code": ContextField.ACTIVITY_CODE,
    "activityCode": ContextField.ACTIVITY_CODE,
    "activity.risk_level": ContextField.ACTIVITY_RISK_LEVEL,
    "activity_risk_level": ContextField.ACTIVITY_RISK_LEVEL,
    "activityRiskLevel": ContextField.ACTIVITY_RISK_LEVEL,
    "risk_level": ContextField.ACTIVITY_RISK_LEVEL,
    "plan": ContextField.PLAN_CODE,
    "plan_code": ContextField.PLAN_CODE,
    "planCode": ContextField.PLAN_CODE,
    "promo_code": ContextField.PROMO_CODE,
    "promoCode": ContextField.PROMO_CODE,
})


def canonical_field(name: str) -> Optional[ContextField]:
    """Map a field name or alias to its canonical field; None when unrecognised."""
    if not isinstance(name, str):
        return None
    return FIELD_ALIASES.get(name) or FIELD_ALIASES.get(name.strip())


# ==================== CONTEXT ====================

@dataclass(frozen=True)
class EvaluationContext:
    """
    Known attributes of the entity being evaluated.

    Values are strings; an attribute that was not supplied is simply absent.
    """
    values: Mapping[ContextField, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "EvaluationContext":
        """
        Build a context from a free-form key/value map.

        Unrecognised keys and empty values are dropped. When two aliases
        of the same field are both supplied, the first one wins.
        """
        values: Dict[ContextField, str] = {}
        for key, value in (data or {}).items():
            ctx_field = canonical_field(key)
            if ctx_field is None:
                logger.debug(f"Ignoring unrecognised context key: {key}")
                continue
            if value is None or value == "":
                continue
            values.setdefault(ctx_field, str(value))
        return cls(values=values)

    def get(self, ctx_field: ContextField) -> Optional[str]:
        return self.values.get(ctx_field)

    def to_dict(self) -> Dict[str, str]:
        return {f.value: v for f, v in self.values.items()}


# ==================== CONDITIONS ====================

@dataclass(frozen=True)
class Condition:
    """
    One predicate of a rule.

    `operator` is None when the stored operator is not one the engine
    knows; such a condition never matches.
    """
    field: str
    operator: Optional[Operator]
    value: Any = None

    @classmethod
    def from_config(cls, raw: Mapping[str, Any]) -> "Condition":
        value = raw.get("value")
        if isinstance(value, list):
            value = tuple(value)
        try:
            operator = Operator(raw.get("operator"))
        except ValueError:
            logger.warning(f"Unknown condition operator: {raw.get('operator')!r}")
            operator = None
        return cls(field=str(raw.get("field", "")), operator=operator, value=value)


# ==================== ACTIONS ====================

@dataclass(frozen=True)
class MultiplyPrice:
    factor: float

    def __post_init__(self):
        if self.factor < 0:
            raise ValueError(f"multiply_price factor must be >= 0, got {self.factor}")


@dataclass(frozen=True)
class AddFee:
    amount: float


@dataclass(frozen=True)
class SetFlag:
    name: str
    value: bool


@dataclass(frozen=True)
class RequireDocument:
    name: str


@dataclass(frozen=True)
class ShowWarning:
    message: str


@dataclass(frozen=True)
class Block:
    message: str = "Selection not allowed"


@dataclass(frozen=True)
class SetProcessingTime:
    days: int


@dataclass(frozen=True)
class RecommendBank:
    banks: Tuple[str, ...]


@dataclass(frozen=True)
class SkipStep:
    step_key: str


@dataclass(frozen=True)
class ShowStep:
    step_key: str


@dataclass(frozen=True)
class SetNextStep:
    step_key: str


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


@dataclass(frozen=True)
class ApplyDiscount:
    discount_type: DiscountType
    value: float


Action = Union[
    MultiplyPrice, AddFee, SetFlag, RequireDocument, ShowWarning, Block,
    SetProcessingTime, RecommendBank, SkipStep, ShowStep, SetNextStep, ApplyDiscount,
]


def _number(value: Any, default: Optional[float] = None) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def action_from_config(raw: Mapping[str, Any]) -> Optional[Action]:
    """
    Parse one stored action.

    Returns None for unknown action types and for actions whose payload is
    missing, so they drop out of the rule instead of failing it.
    multiply_price treats a factor of 0 like a missing one (factor 1), so
    the price multiplier is the product of the non-zero configured factors.
    """
    action_type = raw.get("type")
    value = raw.get("value")
    message = raw.get("message")

    if action_type == "multiply_price":
        # Missing, unparseable or zero factor: multiply by 1
        return MultiplyPrice(factor=_number(value) or 1.0)

    if action_type in ("add_fee", "set_price"):
        # set_price is stored by older rule editors; it has always added to fees
        return AddFee(amount=_number(value, 0.0))

    if action_type == "set_flag":
        name = raw.get("name") or raw.get("flag") or message
        if not name:
            return None
        return SetFlag(name=str(name), value=bool(value))

    if action_type == "require_document":
        doc = raw.get("target") or (value if isinstance(value, str) else None)
        return RequireDocument(name=doc) if doc else None

    if action_type == "show_warning":
        return ShowWarning(message=str(message)) if message else None

    if action_type == "block":
        return Block(message=str(message)) if message else Block()

    if action_type == "set_processing_time":
        days = raw.get("processingDays")
        if days is None:
            days = value
        days = _number(days)
        return SetProcessingTime(days=int(days)) if days is not None else None

    if action_type == "recommend_bank":
        banks = raw.get("banks") or []
        return RecommendBank(banks=tuple(str(b) for b in banks)) if banks else None

    if action_type in ("skip_step", "show_step", "set_next_step"):
        step_key = raw.get("stepKey")
        if not step_key:
            return None
        return {"skip_step": SkipStep, "show_step": ShowStep, "set_next_step": SetNextStep}[action_type](
            step_key=str(step_key)
        )

    if action_type == "apply_discount":
        discount_value = _number(raw.get("discountValue"))
        try:
            discount_type = DiscountType(raw.get("discountType"))
        except ValueError:
            return None
        if not discount_value:
            return None
        return ApplyDiscount(discount_type=discount_type, value=discount_value)

    logger.warning(f"Ignoring unknown action type: {action_type!r}")
    return None


# ==================== RULES ====================

def _is_active(raw: Mapping[str, Any]) -> bool:
    if raw.get("is_active") is not None:
        return bool(raw["is_active"])
    if raw.get("isActive") is not None:
        return bool(raw["isActive"])
    return True


def _priority(raw: Mapping[str, Any]) -> int:
    try:
        return int(raw.get("priority") or 0)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class Rule:
    """An eligibility/pricing rule: every condition must hold for its actions to apply."""
    id: str
    name: str
    type: RuleType
    conditions: Tuple[Condition, ...] = ()
    actions: Tuple[Action, ...] = ()
    priority: int = 0
    is_active: bool = True

    @classmethod
    def from_config(cls, raw: Mapping[str, Any]) -> "Rule":
        actions = []
        for raw_action in raw.get("actions") or []:
            try:
                action = action_from_config(raw_action)
            except ValueError as e:
                logger.warning(f"Dropping invalid action in rule {raw.get('id')}: {e}")
                continue
            if action is not None:
                actions.append(action)

        return cls(
            id=str(raw.get("id", "")),
            name=str(raw.get("rule_name") or raw.get("name") or raw.get("id", "")),
            type=RuleType(raw.get("rule_type") or raw.get("type") or RuleType.ELIGIBILITY.value),
            conditions=tuple(Condition.from_config(c) for c in raw.get("conditions") or []),
            actions=tuple(actions),
            priority=_priority(raw),
            is_active=_is_active(raw),
        )


# ==================== MATCHING CRITERIA ====================

@dataclass(frozen=True)
class AmountExact:
    pass


@dataclass(frozen=True)
class AmountTolerance:
    tolerance_percent: Optional[float] = None


@dataclass(frozen=True)
class DateRange:
    days_before: int = 7
    days_after: int = 3


@dataclass(frozen=True)
class ReferenceMatch:
    partial_match: bool = False


@dataclass(frozen=True)
class CurrencyMatch:
    pass


@dataclass(frozen=True)
class UnsupportedCriterion:
    """A stored condition type the scorer does not evaluate; always scores 0."""
    condition_type: str


MatchCriterion = Union[
    AmountExact, AmountTolerance, DateRange, ReferenceMatch, CurrencyMatch, UnsupportedCriterion
]


def criterion_from_config(condition_type: str, params: Optional[Mapping[str, Any]]) -> MatchCriterion:
    if not isinstance(params, Mapping):
        params = {}
    if condition_type == "amount_exact":
        return AmountExact()
    if condition_type == "amount_tolerance":
        return AmountTolerance(tolerance_percent=_number(params.get("tolerance_percent")))
    if condition_type == "date_range":
        return DateRange(
            days_before=int(_number(params.get("days_before")) or 7),
            days_after=int(_number(params.get("days_after")) or 3),
        )
    if condition_type == "reference_match":
        return ReferenceMatch(partial_match=bool(params.get("partial_match", False)))
    if condition_type == "currency_match":
        return CurrencyMatch()
    return UnsupportedCriterion(condition_type=str(condition_type))


@dataclass(frozen=True)
class MatchingRule:
    id: str
    name: str
    criterion: MatchCriterion
    priority: int = 50
    is_active: bool = True
    jurisdiction: str = "ALL"

    @property
    def weight(self) -> int:
        """Lower priority number, heavier rule. Priorities outside 0-100 never weigh negative."""
        return max(0, 100 - self.priority)

    def applies_to(self, jurisdiction: Optional[str]) -> bool:
        return jurisdiction is None or self.jurisdiction in ("ALL", jurisdiction)

    @classmethod
    def from_config(cls, raw: Mapping[str, Any]) -> "MatchingRule":
        return cls(
            id=str(raw.get("id", "")),
            name=str(raw.get("rule_name") or raw.get("name") or raw.get("id", "")),
            criterion=criterion_from_config(
                raw.get("condition_type") or raw.get("criterion") or "",
                raw.get("params"),
            ),
            priority=_priority(raw),
            is_active=_is_active(raw),
            jurisdiction=str(raw.get("jurisdiction") or "ALL"),
        )


# ==================== RULE SET SNAPSHOT ====================

def _by_priority(rules):
    # Stable: equal priorities keep their configured order
    return tuple(sorted((r for r in rules if r.is_active), key=lambda r: r.priority))


@dataclass(frozen=True)
class RuleSet:
    """
    Immutable snapshot of the active rules.

    Rules are filtered to active ones and ordered most-important first
    (ascending priority number). A snapshot is replaced as a whole, never
    edited.
    """
    eligibility_rules: Tuple[Rule, ...] = ()
    matching_rules: Tuple[MatchingRule, ...] = ()
    version: Optional[int] = None
    loaded_at: Optional[datetime] = None

    @classmethod
    def build(
        cls,
        eligibility_rules=(),
        matching_rules=(),
        version: Optional[int] = None,
    ) -> "RuleSet":
        return cls(
            eligibility_rules=_by_priority(eligibility_rules),
            matching_rules=_by_priority(matching_rules),
            version=version,
            loaded_at=datetime.now(timezone.utc),
        )

    @classmethod
    def from_config(
        cls,
        config_data: Optional[Mapping[str, Any]],
        version: Optional[int] = None,
        extra_matching_rules: Optional[List[Mapping[str, Any]]] = None,
    ) -> "RuleSet":
        """
        Parse a stored configuration `{"rules": [...], "matching_rules": [...]}`.

        A malformed rule is logged and skipped; it never discards the
        rest of the set.
        """
        config_data = config_data or {}
        eligibility: List[Rule] = []
        matching: List[MatchingRule] = []

        raw_matching = list(config_data.get("matching_rules") or [])
        for raw in config_data.get("rules") or []:
            if not isinstance(raw, Mapping):
                logger.warning(f"Skipping malformed rule entry: {raw!r}")
                continue
            if (raw.get("rule_type") or raw.get("type")) == RuleType.MATCHING.value:
                raw_matching.append(raw)
                continue
            try:
                eligibility.append(Rule.from_config(raw))
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping rule {raw.get('id')}: {e}")

        for raw in raw_matching + list(extra_matching_rules or []):
            if not isinstance(raw, Mapping):
                logger.warning(f"Skipping malformed matching rule entry: {raw!r}")
                continue
            try:
                matching.append(MatchingRule.from_config(raw))
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping matching rule {raw.get('id')}: {e}")

        return cls.build(eligibility, matching, version=version)

    def summary(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "eligibility_rules": len(self.eligibility_rules),
            "matching_rules": len(self.matching_rules),
            "loaded_at": self.loaded_at.isoformat() if self.loaded_at else None,
        }


# ==================== RESULTS ====================

@dataclass
class EligibilityResult:
    price_multiplier: float = 1.0
    additional_fees: float = 0.0
    flags: Dict[str, bool] = field(default_factory=dict)
    required_documents: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    blocked: bool = False
    block_message: Optional[str] = None
    processing_time_days: Optional[int] = None
    applied_rules: List[str] = field(default_factory=list)
    recommended_banks: List[str] = field(default_factory=list)
    skipped_steps: List[str] = field(default_factory=list)
    visible_steps: List[str] = field(default_factory=list)
    next_step: Optional[str] = None
    promo_discount: float = 0.0
    promo_discount_type: Optional[DiscountType] = None
    applied_promo_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "priceMultiplier": self.price_multiplier,
            "additionalFees": self.additional_fees,
            "flags": dict(self.flags),
            "requiredDocuments": list(self.required_documents),
            "warnings": list(self.warnings),
            "blocked": self.blocked,
            "blockMessage": self.block_message,
            "processingTimeDays": self.processing_time_days,
            "appliedRules": list(self.applied_rules),
            "recommendedBanks": list(self.recommended_banks),
            "skippedSteps": list(self.skipped_steps),
            "visibleSteps": list(self.visible_steps),
            "nextStep": self.next_step,
            "promoDiscount": self.promo_discount,
            "promoDiscountType": self.promo_discount_type.value if self.promo_discount_type else None,
            "appliedPromoCode": self.applied_promo_code,
        }


# ==================== FINANCIAL RECORDS ====================

class RecordKind(str, Enum):
    BILL = "bill"
    INVOICE = "invoice"
    PAYMENT = "payment"
    RECEIPT = "receipt"


def to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value)) if value is not None else Decimal("0")
    except InvalidOperation:
        return Decimal("0")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive values are read as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


@dataclass(frozen=True)
class FinancialRecord:
    """
    A bill/invoice (source) or payment/receipt (target).

    `settled` means a bill/invoice is paid, or a payment/receipt is already
    linked to a source.
    """
    id: str
    kind: RecordKind
    amount: Decimal
    date: Optional[date] = None
    currency: Optional[str] = None
    reference: Optional[str] = None
    counterpart: Optional[str] = None
    settled: bool = False
    due_date: Optional[date] = None
    created_at: Optional[datetime] = None
    linked_source_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "amount": str(self.amount),
            "date": self.date.isoformat() if self.date else None,
            "currency": self.currency,
            "reference": self.reference,
            "counterpart": self.counterpart,
            "settled": self.settled,
            "due_date": self.due_date.isoformat() if self.due_date else None,
        }


@dataclass(frozen=True)
class MatchReason:
    rule_name: str
    score: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"rule": self.rule_name, "score": self.score, "reason": self.reason}


@dataclass(frozen=True)
class MatchScore:
    confidence: float
    reasons: Tuple[MatchReason, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confidence": self.confidence,
            "matchReasons": [r.to_dict() for r in self.reasons],
        }
