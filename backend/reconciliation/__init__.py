"""
Reconciliation Engine Module

Matches open bills/invoices against payments/receipts:
- Rule-weighted confidence scoring
- Pending suggestions for review
- Claim-guarded auto-matching above a threshold
- Unreconciled and duplicate-payment risk flags
- Audit trail for all operations
"""

from reconciliation.models import (
    ReconciliationType,
    ReconciliationDecision,
    SuggestionStatus,
    RiskFlagType,
    RiskSeverity,
    Suggestion,
    RiskFlag,
    ReconciliationSettings,
    ReconciliationRunResult
)
from reconciliation.store import (
    PersistenceFailure,
    ClaimConflict,
    RecordStore,
    InMemoryRecordStore
)
from reconciliation.sql_store import SqlRecordStore
from reconciliation.risk_flags import RiskFlagger
from reconciliation.orchestrator import ReconciliationOrchestrator

__all__ = [
    # Models
    'ReconciliationType',
    'ReconciliationDecision',
    'SuggestionStatus',
    'RiskFlagType',
    'RiskSeverity',
    'Suggestion',
    'RiskFlag',
    'ReconciliationSettings',
    'ReconciliationRunResult',
    # Stores
    'PersistenceFailure',
    'ClaimConflict',
    'RecordStore',
    'InMemoryRecordStore',
    'SqlRecordStore',
    # Engine
    'RiskFlagger',
    'ReconciliationOrchestrator'
]
