from .connection import get_db, get_engine, get_session_factory, init_db, Base

# Import models to ensure they are registered with Base
from .bookkeeping_models import (
    RuleConfigurationDB, ReconciliationRuleDB, BookkeeperSettingDB,
    BillDB, InvoiceDB, PaymentDB, AISuggestionDB, RiskFlagDB
)

__all__ = [
    'get_db', 'get_engine', 'get_session_factory', 'init_db', 'Base',
    'RuleConfigurationDB', 'ReconciliationRuleDB', 'BookkeeperSettingDB',
    'BillDB', 'InvoiceDB', 'PaymentDB', 'AISuggestionDB', 'RiskFlagDB',
]
