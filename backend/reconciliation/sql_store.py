"""
SQL Record Store

RecordStore over the bookkeeping tables using raw SQL on an AsyncSession.

Concurrency: settling a source and linking a target are conditional
updates ("... AND is_paid = false", "... AND bill_id IS NULL"). A zero
rowcount means another run got there first; the transaction is rolled
back and ClaimConflict raised.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reconciliation.models import RiskFlag, RiskFlagType, Suggestion, SuggestionStatus
from reconciliation.store import (
    ClaimConflict, PersistenceFailure, RecordStore, SuggestionNotFound,
)
from rules_engine.models import FinancialRecord, MatchReason, RecordKind, as_utc, to_date, to_decimal

logger = logging.getLogger(__name__)

# kind -> (table, counterpart column, date column)
SOURCE_TABLES = {
    RecordKind.BILL: ("bookkeeper_bills", "vendor_name", "bill_date"),
    RecordKind.INVOICE: ("bookkeeper_invoices", "customer_name", "invoice_date"),
}

# kind -> (payment_type, link column)
TARGET_TYPES = {
    RecordKind.PAYMENT: ("outgoing", "bill_id"),
    RecordKind.RECEIPT: ("incoming", "invoice_id"),
}

SUGGESTION_COLUMNS = """
    id, suggestion_type, source_type, source_id, target_type, target_id,
    confidence_score, match_reasons, status, review_note, created_at
"""


def _json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class SqlRecordStore(RecordStore):
    """RecordStore bound to one database session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== READS ====================

    async def _fetchall(self, query, params: Optional[Dict[str, Any]] = None):
        try:
            result = await self.db.execute(query, params or {})
            return result.fetchall()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Read failed: {e}") from e

    async def _fetchone(self, query, params: Optional[Dict[str, Any]] = None):
        try:
            result = await self.db.execute(query, params or {})
            return result.fetchone()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Read failed: {e}") from e

    def _source_query(self, kind: RecordKind, where: str):
        table, counterpart_col, date_col = SOURCE_TABLES[kind]
        return text(f"""
            SELECT
                id, {counterpart_col} AS counterpart, total_amount, {date_col} AS record_date,
                due_date, currency, reference_number, is_paid, created_at
            FROM {table}
            WHERE {where}
            ORDER BY created_at ASC
        """)

    def _target_query(self, where: str):
        return text(f"""
            SELECT
                id, payment_type, counterparty_name, amount, payment_date,
                currency, reference_number, bill_id, invoice_id, created_at
            FROM bookkeeper_payments
            WHERE {where}
            ORDER BY created_at ASC
        """)

    def _row_to_source(self, kind: RecordKind, row) -> FinancialRecord:
        return FinancialRecord(
            id=str(row.id),
            kind=kind,
            amount=to_decimal(row.total_amount),
            date=to_date(row.record_date),
            currency=row.currency,
            reference=row.reference_number,
            counterpart=row.counterpart,
            settled=bool(row.is_paid),
            due_date=to_date(row.due_date),
            created_at=as_utc(row.created_at),
        )

    def _row_to_target(self, row) -> FinancialRecord:
        kind = RecordKind.RECEIPT if row.payment_type == "incoming" else RecordKind.PAYMENT
        linked = row.invoice_id if kind == RecordKind.RECEIPT else row.bill_id
        return FinancialRecord(
            id=str(row.id),
            kind=kind,
            amount=to_decimal(row.amount),
            date=to_date(row.payment_date),
            currency=row.currency,
            reference=row.reference_number,
            counterpart=row.counterparty_name,
            settled=linked is not None,
            created_at=as_utc(row.created_at),
            linked_source_id=str(linked) if linked is not None else None,
        )

    def _row_to_suggestion(self, row) -> Suggestion:
        reasons = _json(row.match_reasons) or []
        return Suggestion(
            id=str(row.id),
            suggestion_type=row.suggestion_type,
            source_type=RecordKind(row.source_type),
            source_id=str(row.source_id),
            target_type=RecordKind(row.target_type),
            target_id=str(row.target_id),
            confidence_score=float(row.confidence_score),
            match_reasons=[
                MatchReason(rule_name=r.get("rule", ""), score=r.get("score", 0.0), reason=r.get("reason", ""))
                for r in reasons
            ],
            status=SuggestionStatus(row.status),
            review_note=row.review_note,
            created_at=row.created_at,
        )

    async def list_open_sources(self, kind: RecordKind) -> List[FinancialRecord]:
        rows = await self._fetchall(self._source_query(kind, "is_paid = false"))
        return [self._row_to_source(kind, row) for row in rows]

    async def list_open_targets(self, kind: RecordKind) -> List[FinancialRecord]:
        payment_type, link_col = TARGET_TYPES[kind]
        rows = await self._fetchall(
            self._target_query(f"payment_type = :payment_type AND {link_col} IS NULL"),
            {"payment_type": payment_type},
        )
        return [self._row_to_target(row) for row in rows]

    async def list_targets(self) -> List[FinancialRecord]:
        rows = await self._fetchall(self._target_query("true"))
        return [self._row_to_target(row) for row in rows]

    async def get_settings(self) -> Dict[str, Any]:
        rows = await self._fetchall(text("SELECT setting_key, setting_value FROM bookkeeper_settings"))
        settings = {}
        for row in rows:
            value = _json(row.setting_value)
            settings[row.setting_key] = value.get("value") if isinstance(value, dict) else value
        return settings

    async def find_suggestion(self, source_id: str, target_id: str) -> Optional[Suggestion]:
        row = await self._fetchone(
            text(f"""
                SELECT {SUGGESTION_COLUMNS}
                FROM bookkeeper_ai_suggestions
                WHERE source_id = :source_id AND target_id = :target_id
                ORDER BY created_at DESC
                LIMIT 1
            """),
            {"source_id": source_id, "target_id": target_id},
        )
        return self._row_to_suggestion(row) if row else None

    async def get_suggestion(self, suggestion_id: str) -> Optional[Suggestion]:
        row = await self._fetchone(
            text(f"SELECT {SUGGESTION_COLUMNS} FROM bookkeeper_ai_suggestions WHERE id = :id"),
            {"id": suggestion_id},
        )
        return self._row_to_suggestion(row) if row else None

    async def risk_flag_exists(self, entity_id: str, flag_type: RiskFlagType) -> bool:
        row = await self._fetchone(
            text("""
                SELECT id FROM bookkeeper_risk_flags
                WHERE entity_id = :entity_id AND flag_type = :flag_type AND is_resolved = false
                LIMIT 1
            """),
            {"entity_id": entity_id, "flag_type": flag_type.value},
        )
        return row is not None

    # ==================== WRITES ====================

    async def create_suggestion(self, suggestion: Suggestion) -> Suggestion:
        query = text("""
            INSERT INTO bookkeeper_ai_suggestions (
                id, suggestion_type, source_type, source_id, target_type, target_id,
                confidence_score, match_reasons, status, created_at, updated_at
            ) VALUES (
                :id, :suggestion_type, :source_type, :source_id, :target_type, :target_id,
                :confidence_score, :match_reasons, :status, :created_at, :created_at
            )
        """)

        try:
            await self.db.execute(query, {
                "id": suggestion.id,
                "suggestion_type": suggestion.suggestion_type,
                "source_type": suggestion.source_type.value,
                "source_id": suggestion.source_id,
                "target_type": suggestion.target_type.value,
                "target_id": suggestion.target_id,
                "confidence_score": suggestion.confidence_score,
                "match_reasons": json.dumps([r.to_dict() for r in suggestion.match_reasons]),
                "status": suggestion.status.value,
                "created_at": suggestion.created_at,
            })
            await self.db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to store suggestion {suggestion.source_id}->{suggestion.target_id}: {e}")
            await self.db.rollback()
            raise PersistenceFailure(str(e)) from e

        return suggestion

    async def set_suggestion_status(
        self, suggestion_id: str, status: SuggestionStatus, note: Optional[str] = None
    ) -> Suggestion:
        query = text("""
            UPDATE bookkeeper_ai_suggestions
            SET status = :status,
                review_note = COALESCE(:note, review_note),
                updated_at = :now
            WHERE id = :id
        """)

        try:
            result = await self.db.execute(query, {
                "id": suggestion_id,
                "status": status.value,
                "note": note,
                "now": datetime.now(timezone.utc),
            })
            if result.rowcount == 0:
                await self.db.rollback()
                raise SuggestionNotFound(suggestion_id)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceFailure(str(e)) from e

        return await self.get_suggestion(suggestion_id)

    async def apply_match(self, suggestion: Suggestion, status: SuggestionStatus) -> Suggestion:
        table, _, _ = SOURCE_TABLES[suggestion.source_type]
        payment_type, link_col = TARGET_TYPES[suggestion.target_type]
        now = datetime.now(timezone.utc)

        try:
            settled = await self.db.execute(
                text(f"""
                    UPDATE {table}
                    SET is_paid = true, paid_at = :now
                    WHERE id = :source_id AND is_paid = false
                """),
                {"source_id": suggestion.source_id, "now": now},
            )
            if settled.rowcount == 0:
                raise ClaimConflict("source", suggestion.source_id)

            linked = await self.db.execute(
                text(f"""
                    UPDATE bookkeeper_payments
                    SET {link_col} = :source_id
                    WHERE id = :target_id AND payment_type = :payment_type AND {link_col} IS NULL
                """),
                {"source_id": suggestion.source_id, "target_id": suggestion.target_id, "payment_type": payment_type},
            )
            if linked.rowcount == 0:
                raise ClaimConflict("target", suggestion.target_id)

            await self.db.execute(
                text("""
                    UPDATE bookkeeper_ai_suggestions
                    SET status = :status, updated_at = :now
                    WHERE id = :id
                """),
                {"id": suggestion.id, "status": status.value, "now": now},
            )
            await self.db.commit()
        except ClaimConflict:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            logger.error(f"Match {suggestion.source_id}->{suggestion.target_id} rolled back: {e}")
            await self.db.rollback()
            raise PersistenceFailure(str(e)) from e

        suggestion.status = status
        return suggestion

    async def create_risk_flag(self, flag: RiskFlag) -> RiskFlag:
        query = text("""
            INSERT INTO bookkeeper_risk_flags (
                id, flag_type, severity, entity_type, entity_id,
                related_entity_type, related_entity_id, description, details,
                is_resolved, created_at
            ) VALUES (
                :id, :flag_type, :severity, :entity_type, :entity_id,
                :related_entity_type, :related_entity_id, :description, :details,
                false, :created_at
            )
        """)

        try:
            await self.db.execute(query, {
                "id": flag.id,
                "flag_type": flag.flag_type.value,
                "severity": flag.severity.value,
                "entity_type": flag.entity_type.value,
                "entity_id": flag.entity_id,
                "related_entity_type": flag.related_entity_type.value if flag.related_entity_type else None,
                "related_entity_id": flag.related_entity_id,
                "description": flag.description,
                "details": json.dumps(flag.details, default=str),
                "created_at": datetime.now(timezone.utc),
            })
            await self.db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to store risk flag for {flag.entity_id}: {e}")
            await self.db.rollback()
            raise PersistenceFailure(str(e)) from e

        return flag
