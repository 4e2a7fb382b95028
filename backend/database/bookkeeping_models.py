"""
Rule Engine - Database Models

Tables the engine reads and writes. Everything else about the bookkeeping
schema belongs to the owning application; only the columns consumed here
are declared.

Tables:
- rule_configurations: versioned eligibility/pricing rule sets (latest active wins)
- bookkeeper_reconciliation_rules: matching rules (condition_type + params)
- bookkeeper_settings: key/value reconciliation settings
- bookkeeper_bills / bookkeeper_invoices: source records
- bookkeeper_payments: target records (outgoing payments, incoming receipts)
- bookkeeper_ai_suggestions: proposed and auto-applied matches
- bookkeeper_risk_flags: persisted warnings
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Boolean, Date, DateTime, Integer, Float,
    Index, JSON, Numeric
)

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== RULE CONFIGURATION ====================

class RuleConfigurationDB(Base):
    """Versioned rule configuration; `config_data` holds {"rules": [...]}."""
    __tablename__ = "rule_configurations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    version_number = Column(Integer, nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=False)
    config_data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class ReconciliationRuleDB(Base):
    __tablename__ = "bookkeeper_reconciliation_rules"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    rule_name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    jurisdiction = Column(String(50), nullable=False, default="ALL")
    condition_type = Column(String(50), nullable=False)
    params = Column(JSON, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=50)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


class BookkeeperSettingDB(Base):
    """setting_value is stored as {"value": <any>}."""
    __tablename__ = "bookkeeper_settings"

    setting_key = Column(String(100), primary_key=True)
    setting_value = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


# ==================== SOURCE RECORDS ====================

class BillDB(Base):
    __tablename__ = "bookkeeper_bills"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    vendor_name = Column(Text, nullable=True)
    total_amount = Column(Numeric(14, 2), nullable=False)
    bill_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    currency = Column(String(3), nullable=True)
    reference_number = Column(String(100), nullable=True)
    is_paid = Column(Boolean, nullable=False, default=False, index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class InvoiceDB(Base):
    __tablename__ = "bookkeeper_invoices"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    customer_name = Column(Text, nullable=True)
    total_amount = Column(Numeric(14, 2), nullable=False)
    invoice_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    currency = Column(String(3), nullable=True)
    reference_number = Column(String(100), nullable=True)
    is_paid = Column(Boolean, nullable=False, default=False, index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


# ==================== TARGET RECORDS ====================

class PaymentDB(Base):
    """payment_type is 'outgoing' (pays a bill) or 'incoming' (receipt for an invoice)."""
    __tablename__ = "bookkeeper_payments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    payment_type = Column(String(20), nullable=False, index=True)
    counterparty_name = Column(Text, nullable=True)
    amount = Column(Numeric(14, 2), nullable=False)
    payment_date = Column(Date, nullable=True)
    currency = Column(String(3), nullable=True)
    reference_number = Column(String(100), nullable=True)
    bill_id = Column(String(36), nullable=True, index=True)
    invoice_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


# ==================== ENGINE OUTPUT ====================

class AISuggestionDB(Base):
    __tablename__ = "bookkeeper_ai_suggestions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    suggestion_type = Column(String(50), nullable=False)
    source_type = Column(String(20), nullable=False)
    source_id = Column(String(36), nullable=False, index=True)
    target_type = Column(String(20), nullable=False)
    target_id = Column(String(36), nullable=False, index=True)
    confidence_score = Column(Float, nullable=False)
    match_reasons = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    review_note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_ai_suggestions_pair", "source_id", "target_id", "status"),
    )


class RiskFlagDB(Base):
    __tablename__ = "bookkeeper_risk_flags"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    flag_type = Column(String(30), nullable=False)
    severity = Column(String(10), nullable=False)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(String(36), nullable=False)
    related_entity_type = Column(String(20), nullable=True)
    related_entity_id = Column(String(36), nullable=True)
    description = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    is_resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_risk_flags_entity", "entity_id", "flag_type"),
    )
