"""
Risk Flagger

Derives persisted warnings from the state of a reconciliation run:

- unreconciled: an open source record for which the run found no
  suggestion (severity high when past due, otherwise medium)
- duplicate_payment: target records sharing amount, date and reference

Every flag is guarded by an existence check, so re-running never raises
the same flag twice.
"""

import logging
from collections import OrderedDict
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from reconciliation.models import RiskFlag, RiskFlagType, RiskSeverity
from reconciliation.store import RecordStore
from rules_engine.models import FinancialRecord, as_utc

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

DuplicateKey = Tuple[Decimal, Optional[date], Optional[str]]


def duplicate_key(record: FinancialRecord) -> DuplicateKey:
    return (record.amount.quantize(CENT), record.date, record.reference)


def find_duplicates(targets: Iterable[FinancialRecord]) -> List[Tuple[FinancialRecord, FinancialRecord]]:
    """
    Group records by (amount, date, reference).

    Returns (duplicate, canonical) pairs; the canonical record of a group
    is the earliest created one (input order breaks ties), so the result
    does not depend on the order records are listed in.
    """
    groups: Dict[DuplicateKey, List[FinancialRecord]] = OrderedDict()
    for record in targets:
        groups.setdefault(duplicate_key(record), []).append(record)

    pairs = []
    for records in groups.values():
        if len(records) < 2:
            continue
        ordered = sorted(
            enumerate(records),
            key=lambda item: (item[1].created_at is None, as_utc(item[1].created_at) or 0, item[0])
        )
        canonical = ordered[0][1]
        pairs.extend((record, canonical) for _, record in ordered[1:])
    return pairs


class RiskFlagger:
    def __init__(self, store: RecordStore):
        self.store = store

    async def flag_unreconciled(self, source: FinancialRecord, today: date) -> Optional[RiskFlag]:
        """Flag an open source the run could not match; None if it is already flagged."""
        if await self.store.risk_flag_exists(source.id, RiskFlagType.UNRECONCILED):
            return None

        overdue = source.due_date is not None and source.due_date < today
        flag = RiskFlag(
            flag_type=RiskFlagType.UNRECONCILED,
            severity=RiskSeverity.HIGH if overdue else RiskSeverity.MEDIUM,
            entity_type=source.kind,
            entity_id=source.id,
            description=(
                f"Overdue {source.kind.value} with no matching payment found"
                if overdue else
                f"{source.kind.value.capitalize()} pending with no matching payment found"
            ),
            details={
                "counterpart": source.counterpart,
                "amount": str(source.amount),
                "due_date": source.due_date.isoformat() if source.due_date else None,
            },
        )
        return await self.store.create_risk_flag(flag)

    async def flag_duplicates(self, targets: Iterable[FinancialRecord]) -> List[RiskFlag]:
        """One flag per duplicate record, pointing at its group's canonical record."""
        created = []
        for duplicate, canonical in find_duplicates(targets):
            if await self.store.risk_flag_exists(duplicate.id, RiskFlagType.DUPLICATE_PAYMENT):
                continue

            flag = RiskFlag(
                flag_type=RiskFlagType.DUPLICATE_PAYMENT,
                severity=RiskSeverity.HIGH,
                entity_type=duplicate.kind,
                entity_id=duplicate.id,
                related_entity_type=canonical.kind,
                related_entity_id=canonical.id,
                description="Potential duplicate payment detected",
                details={
                    "amount": str(duplicate.amount),
                    "date": duplicate.date.isoformat() if duplicate.date else None,
                    "reference": duplicate.reference,
                },
            )
            created.append(await self.store.create_risk_flag(flag))
            logger.info(f"Duplicate payment {duplicate.id} of {canonical.id}")
        return created
