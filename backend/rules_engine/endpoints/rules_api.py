"""
Rule Engine API Endpoints

- POST /api/rules/evaluate - Evaluate eligibility/pricing rules for a context
- POST /api/rules/price - Price breakdown for a plan price and context
- POST /api/rules/score - Score one source/target record pair
- POST /api/rules/refresh - Configuration change notification (internal)
- POST /api/rules/invalidate - Drop the cached rule set (internal)
- GET /api/rules/status - Loaded rule set summary
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from config import get_settings
from middleware.internal_auth import InternalService, require_internal_service
from rules_engine.eligibility import EligibilityEngine, price_breakdown
from rules_engine.matching import MatchScorer
from rules_engine.models import EvaluationContext, FinancialRecord, RecordKind
from rules_engine.store import ConfigurationUnavailable, RuleStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rules", tags=["Rules"])


# ==================== Request Models ====================

class EvaluateRequest(BaseModel):
    context: Dict[str, Any] = Field(default_factory=dict, description="Free-form attribute map")


class PriceRequest(BaseModel):
    context: Dict[str, Any] = Field(default_factory=dict)
    base_price: float = Field(..., ge=0)
    jurisdiction_fee: float = Field(default=0.0)
    activity_modifier: float = Field(default=0.0)


class RecordPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = "adhoc"
    amount: Decimal
    record_date: Optional[date] = Field(default=None, alias="date")
    currency: Optional[str] = None
    reference: Optional[str] = None
    counterpart: Optional[str] = None

    def to_record(self, kind: RecordKind) -> FinancialRecord:
        return FinancialRecord(
            id=self.id,
            kind=kind,
            amount=self.amount,
            date=self.record_date,
            currency=self.currency,
            reference=self.reference,
            counterpart=self.counterpart,
        )


class ScoreRequest(BaseModel):
    source: RecordPayload
    target: RecordPayload
    jurisdiction: Optional[str] = None


# ==================== Dependencies ====================

def get_rule_store(request: Request) -> RuleStore:
    return request.app.state.rule_store


async def get_eligibility_engine(rule_store: RuleStore = Depends(get_rule_store)) -> EligibilityEngine:
    # Reload lazily after an invalidate; the engine degrades if this fails
    try:
        await rule_store.ensure_loaded()
    except ConfigurationUnavailable as e:
        logger.warning(f"Evaluating without rules: {e}")
    return EligibilityEngine(rule_store)


# ==================== Endpoints ====================

@router.post("/evaluate", summary="Evaluate eligibility rules")
async def evaluate(
    request: EvaluateRequest,
    engine: EligibilityEngine = Depends(get_eligibility_engine)
):
    """
    Fold all matching eligibility/pricing rules into one result.

    Never fails on engine errors: when rules are unavailable the neutral
    result is returned.
    """
    context = EvaluationContext.from_mapping(request.context)
    return engine.evaluate(context).to_dict()


@router.post("/price", summary="Price breakdown")
async def price(
    request: PriceRequest,
    engine: EligibilityEngine = Depends(get_eligibility_engine)
):
    context = EvaluationContext.from_mapping(request.context)
    result = engine.evaluate(context)
    return price_breakdown(
        result,
        request.base_price,
        jurisdiction_fee=request.jurisdiction_fee,
        activity_modifier=request.activity_modifier,
    )


@router.post("/score", summary="Score a record pair")
async def score(
    request: ScoreRequest,
    rule_store: RuleStore = Depends(get_rule_store)
):
    try:
        rule_set = await rule_store.ensure_loaded()
    except ConfigurationUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))

    settings = get_settings()
    scorer = MatchScorer(settings.DEFAULT_CURRENCY, settings.DEFAULT_TOLERANCE_PERCENT)
    match = scorer.score(
        request.source.to_record(RecordKind.BILL),
        request.target.to_record(RecordKind.PAYMENT),
        rule_set.matching_rules,
        jurisdiction=request.jurisdiction,
    )
    return match.to_dict()


@router.post("/refresh", summary="Reload rules")
async def refresh(
    rule_store: RuleStore = Depends(get_rule_store),
    service: InternalService = Depends(require_internal_service)
):
    """
    Configuration change notification.

    Fetches the latest active rule set and swaps it in. On failure the
    previous rule set stays active.
    """
    try:
        rule_set = await rule_store.refresh()
    except ConfigurationUnavailable as e:
        raise HTTPException(status_code=503, detail=f"Rule refresh failed: {e}")

    logger.info(f"Rules refreshed by {service.name}: version {rule_set.version}")
    return {"refreshed": True, **rule_set.summary()}


@router.post("/invalidate", summary="Drop cached rules")
async def invalidate(
    rule_store: RuleStore = Depends(get_rule_store),
    service: InternalService = Depends(require_internal_service)
):
    rule_store.invalidate()
    logger.info(f"Rules invalidated by {service.name}")
    return {"invalidated": True}


@router.get("/status", summary="Rule set status")
async def status(rule_store: RuleStore = Depends(get_rule_store)):
    return rule_store.status()
