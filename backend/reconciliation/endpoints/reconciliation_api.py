"""
Reconciliation API Endpoints

- POST /api/reconciliation/run - Run the matching batch job
- GET /api/reconciliation/suggestions/{suggestion_id} - Get a suggestion
- POST /api/reconciliation/suggestions/{suggestion_id}/confirm - Confirm a pending suggestion
- POST /api/reconciliation/suggestions/{suggestion_id}/reject - Reject a pending suggestion
- GET /api/reconciliation/status - Module status

All endpoints except /status require the internal API key.
"""

import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from config import get_settings
from database.connection import get_session_factory
from middleware.internal_auth import InternalService, require_internal_service
from reconciliation.models import ReconciliationType
from reconciliation.orchestrator import ReconciliationOrchestrator
from reconciliation.sql_store import SqlRecordStore
from reconciliation.store import (
    ClaimConflict, InvalidSuggestionState, PersistenceFailure, RecordStore, SuggestionNotFound,
)
from rules_engine.store import ConfigurationUnavailable, RuleStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


# ==================== Request Models ====================

class RunReconciliationRequest(BaseModel):
    """Request to run reconciliation."""
    model_config = ConfigDict(populate_by_name=True)

    type: ReconciliationType = Field(default=ReconciliationType.ALL, description="all, payable or receivable")
    auto_approve_threshold: Optional[float] = Field(
        default=None,
        ge=0.0,
        le=1.0,
        alias="autoApproveThreshold",
        description="Confidence at or above which matches are applied automatically"
    )


class RejectSuggestionRequest(BaseModel):
    """Request to reject a suggestion."""
    reason: Optional[str] = Field(default=None, description="Rejection reason")


# ==================== Dependencies ====================

async def get_record_store(request: Request) -> AsyncIterator[RecordStore]:
    """The app's in-memory store when configured, else a SQL store on a fresh session."""
    store = getattr(request.app.state, "record_store", None)
    if store is not None:
        yield store
        return

    async with get_session_factory()() as session:
        try:
            yield SqlRecordStore(session)
        finally:
            await session.close()


def get_orchestrator(
    request: Request,
    store: RecordStore = Depends(get_record_store)
) -> ReconciliationOrchestrator:
    rule_store: RuleStore = request.app.state.rule_store
    return ReconciliationOrchestrator.from_settings(store, rule_store, get_settings())


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status(request: Request):
    """Reconciliation module status and effective defaults."""
    settings = get_settings()
    rule_store: RuleStore = request.app.state.rule_store
    return {
        "module": "reconciliation",
        "status": "operational" if rule_store.is_loaded else "degraded",
        "rules_version": rule_store.version,
        "store": "memory" if getattr(request.app.state, "record_store", None) is not None else "sql",
        "defaults": {
            "min_confidence_score": settings.MIN_CONFIDENCE_SCORE,
            "auto_match_enabled": settings.AUTO_MATCH_ENABLED,
            "auto_approve_threshold": settings.AUTO_APPROVE_THRESHOLD,
            "max_pairs": settings.RECONCILIATION_MAX_PAIRS,
            "time_budget_seconds": settings.RECONCILIATION_TIME_BUDGET_SECONDS,
        },
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.post("/run", summary="Run reconciliation")
async def run_reconciliation(
    request: RunReconciliationRequest,
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
    service: InternalService = Depends(require_internal_service)
):
    """
    Run reconciliation.

    This will:
    1. Score every open bill/invoice against every unlinked payment/receipt
    2. Store pending suggestions above the minimum confidence
    3. Auto-match pairs at or above the auto-approve threshold (if enabled)
    4. Flag unreconciled sources and duplicate payments

    Per-pair failures are reported in `failures`; the run still completes.
    """
    logger.info(f"Reconciliation run requested by {service.name}: {request.type.value}")
    try:
        result = await orchestrator.run(request.type, request.auto_approve_threshold)
    except ConfigurationUnavailable as e:
        raise HTTPException(status_code=503, detail=f"Matching rules unavailable: {e}")
    except PersistenceFailure as e:
        logger.error(f"Reconciliation run failed: {e}")
        raise HTTPException(status_code=503, detail="Record store unavailable")

    return {"success": True, "results": result.to_dict()}


@router.get("/suggestions/{suggestion_id}", summary="Get suggestion")
async def get_suggestion(
    suggestion_id: str,
    store: RecordStore = Depends(get_record_store),
    _service: InternalService = Depends(require_internal_service)
):
    suggestion = await store.get_suggestion(suggestion_id)
    if suggestion is None:
        raise HTTPException(status_code=404, detail="Suggestion not found")
    return suggestion.to_dict()


@router.post("/suggestions/{suggestion_id}/confirm", summary="Confirm suggestion")
async def confirm_suggestion(
    suggestion_id: str,
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _service: InternalService = Depends(require_internal_service)
):
    """
    Confirm a pending suggestion.

    Links the target to the source and settles the source, atomically.
    Returns 409 if either record was matched elsewhere in the meantime.
    """
    try:
        suggestion = await orchestrator.confirm_suggestion(suggestion_id, actor=x_user_id)
    except SuggestionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (InvalidSuggestionState, ClaimConflict) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PersistenceFailure as e:
        logger.error(f"Failed to confirm suggestion {suggestion_id}: {e}")
        raise HTTPException(status_code=503, detail="Failed to confirm suggestion")

    return {
        "success": True,
        "message": "Suggestion confirmed",
        "suggestion": suggestion.to_dict()
    }


@router.post("/suggestions/{suggestion_id}/reject", summary="Reject suggestion")
async def reject_suggestion(
    suggestion_id: str,
    request: RejectSuggestionRequest,
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _service: InternalService = Depends(require_internal_service)
):
    """Reject a pending suggestion. Later runs will not suggest the pair again."""
    try:
        suggestion = await orchestrator.reject_suggestion(suggestion_id, request.reason, actor=x_user_id)
    except SuggestionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidSuggestionState as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PersistenceFailure as e:
        logger.error(f"Failed to reject suggestion {suggestion_id}: {e}")
        raise HTTPException(status_code=503, detail="Failed to reject suggestion")

    return {
        "success": True,
        "message": "Suggestion rejected",
        "suggestion": suggestion.to_dict()
    }
