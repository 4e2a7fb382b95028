"""
Record Store

The reconciliation job's view of the bookkeeping ledger: open source and
target records, the settings table, suggestions and risk flags.

`apply_match` is the only multi-record write. It links the target to the
source, settles the source and sets the suggestion status as one unit,
and each record write is conditional on the record still being open. If
any part fails, nothing is applied.
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from reconciliation.models import RiskFlag, RiskFlagType, Suggestion, SuggestionStatus
from rules_engine.models import FinancialRecord, RecordKind, as_utc

logger = logging.getLogger(__name__)

SOURCE_KINDS = (RecordKind.BILL, RecordKind.INVOICE)
TARGET_KINDS = (RecordKind.PAYMENT, RecordKind.RECEIPT)


class PersistenceFailure(Exception):
    """A write to the record store failed and was rolled back."""
    pass


class ClaimConflict(PersistenceFailure):
    """
    A conditional write found the record no longer open.

    `entity` is "source" (already settled) or "target" (already linked).
    """

    def __init__(self, entity: str, record_id: str):
        self.entity = entity
        self.record_id = record_id
        super().__init__(f"{entity} {record_id} is no longer open")


class SuggestionNotFound(LookupError):
    pass


class InvalidSuggestionState(ValueError):
    pass


class RecordStore(ABC):
    """Transactional create/read/update/query facility used by the orchestrator."""

    @abstractmethod
    async def list_open_sources(self, kind: RecordKind) -> List[FinancialRecord]:
        """Unsettled bills or invoices, oldest first."""
        ...

    @abstractmethod
    async def list_open_targets(self, kind: RecordKind) -> List[FinancialRecord]:
        """Payments or receipts not yet linked to a source, oldest first."""
        ...

    @abstractmethod
    async def list_targets(self) -> List[FinancialRecord]:
        """Every payment and receipt, linked or not."""
        ...

    @abstractmethod
    async def get_settings(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def find_suggestion(self, source_id: str, target_id: str) -> Optional[Suggestion]:
        """Most recent suggestion for the pair, whatever its status."""
        ...

    @abstractmethod
    async def create_suggestion(self, suggestion: Suggestion) -> Suggestion:
        ...

    @abstractmethod
    async def get_suggestion(self, suggestion_id: str) -> Optional[Suggestion]:
        ...

    @abstractmethod
    async def apply_match(self, suggestion: Suggestion, status: SuggestionStatus) -> Suggestion:
        """
        Link target to source, settle the source and set the suggestion status.

        Raises:
            ClaimConflict: source already settled or target already linked
            PersistenceFailure: any other write failure
        """
        ...

    @abstractmethod
    async def set_suggestion_status(
        self, suggestion_id: str, status: SuggestionStatus, note: Optional[str] = None
    ) -> Suggestion:
        ...

    @abstractmethod
    async def risk_flag_exists(self, entity_id: str, flag_type: RiskFlagType) -> bool:
        """True if an unresolved flag of this type already exists for the entity."""
        ...

    @abstractmethod
    async def create_risk_flag(self, flag: RiskFlag) -> RiskFlag:
        ...


class InMemoryRecordStore(RecordStore):
    """
    Dict-backed store for tests and database-less deployments.

    Writes to several records are staged on copies and published together,
    so a failure part-way leaves every record untouched.
    """

    def __init__(
        self,
        records: Optional[Iterable[FinancialRecord]] = None,
        settings: Optional[Dict[str, Any]] = None,
    ):
        self.records: Dict[RecordKind, Dict[str, FinancialRecord]] = {kind: {} for kind in RecordKind}
        self.settings: Dict[str, Any] = dict(settings or {})
        self.suggestions: Dict[str, Suggestion] = {}
        self.risk_flags: Dict[str, RiskFlag] = {}
        for record in records or []:
            self.add_record(record)

    def add_record(self, record: FinancialRecord):
        self.records[record.kind][record.id] = record

    def _check_write(self, operation: str, entity_id: str):
        """Called before each staged write; tests override it to inject failures."""
        pass

    # ==================== READS ====================

    def _ordered(self, records: Iterable[FinancialRecord]) -> List[FinancialRecord]:
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(records, key=lambda r: as_utc(r.created_at) or epoch)

    async def list_open_sources(self, kind: RecordKind) -> List[FinancialRecord]:
        return self._ordered(r for r in self.records[kind].values() if not r.settled)

    async def list_open_targets(self, kind: RecordKind) -> List[FinancialRecord]:
        return self._ordered(r for r in self.records[kind].values() if r.linked_source_id is None)

    async def list_targets(self) -> List[FinancialRecord]:
        return self._ordered(r for kind in TARGET_KINDS for r in self.records[kind].values())

    async def get_settings(self) -> Dict[str, Any]:
        return dict(self.settings)

    async def find_suggestion(self, source_id: str, target_id: str) -> Optional[Suggestion]:
        found = [
            s for s in self.suggestions.values()
            if s.source_id == source_id and s.target_id == target_id
        ]
        if not found:
            return None
        return copy.deepcopy(max(found, key=lambda s: s.created_at))

    async def get_suggestion(self, suggestion_id: str) -> Optional[Suggestion]:
        suggestion = self.suggestions.get(suggestion_id)
        return copy.deepcopy(suggestion) if suggestion else None

    async def risk_flag_exists(self, entity_id: str, flag_type: RiskFlagType) -> bool:
        return any(
            f.entity_id == entity_id and f.flag_type == flag_type and not f.is_resolved
            for f in self.risk_flags.values()
        )

    # ==================== WRITES ====================

    async def create_suggestion(self, suggestion: Suggestion) -> Suggestion:
        self._check_write("create_suggestion", suggestion.id)
        self.suggestions[suggestion.id] = copy.deepcopy(suggestion)
        return suggestion

    async def set_suggestion_status(
        self, suggestion_id: str, status: SuggestionStatus, note: Optional[str] = None
    ) -> Suggestion:
        current = self.suggestions.get(suggestion_id)
        if current is None:
            raise SuggestionNotFound(suggestion_id)
        self._check_write("update_suggestion", suggestion_id)
        updated = copy.deepcopy(current)
        updated.status = status
        if note is not None:
            updated.review_note = note
        self.suggestions[suggestion_id] = updated
        return copy.deepcopy(updated)

    async def apply_match(self, suggestion: Suggestion, status: SuggestionStatus) -> Suggestion:
        source = self.records[suggestion.source_type].get(suggestion.source_id)
        target = self.records[suggestion.target_type].get(suggestion.target_id)
        if source is None or source.settled:
            raise ClaimConflict("source", suggestion.source_id)
        if target is None or target.linked_source_id is not None:
            raise ClaimConflict("target", suggestion.target_id)

        # Stage every write, then publish
        self._check_write("link_target", target.id)
        staged_target = replace(target, linked_source_id=source.id, settled=True)

        self._check_write("settle_source", source.id)
        staged_source = replace(source, settled=True)

        self._check_write("update_suggestion", suggestion.id)
        staged_suggestion = copy.deepcopy(self.suggestions.get(suggestion.id, suggestion))
        staged_suggestion.status = status

        self.records[target.kind][target.id] = staged_target
        self.records[source.kind][source.id] = staged_source
        self.suggestions[staged_suggestion.id] = staged_suggestion
        return copy.deepcopy(staged_suggestion)

    async def create_risk_flag(self, flag: RiskFlag) -> RiskFlag:
        self._check_write("create_risk_flag", flag.entity_id)
        self.risk_flags[flag.id] = copy.deepcopy(flag)
        return flag
