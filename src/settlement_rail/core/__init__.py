"""
SETTLEMENT RAIL - Core Module
Usage ledger and lockup-bounded settlement

Reporter -> EpochValidator -> UsageLedger (accumulate)
Anyone   -> SettlementEngine -> UsageLedger (decrement) -> PaymentRailCollaborator
"""

from .rates import BillingCategory, RateTable, RateChange, MAX_AMOUNT
from .epoch import EpochValidator
from .ledger import UsageRecord, UsageLedger, RecordStore, InMemoryRecordStore
from .settlement import SettlementEngine, SettlementPolicy, SettlementResult, SkipReason
from .collaborator import PaymentRailCollaborator, RailRegistration, RailError
from .access import AccessControl, Role
from .facts import FactJournal, FactType, LedgerFact

__all__ = [
    "BillingCategory",
    "RateTable",
    "RateChange",
    "MAX_AMOUNT",
    "EpochValidator",
    "UsageRecord",
    "UsageLedger",
    "RecordStore",
    "InMemoryRecordStore",
    "SettlementEngine",
    "SettlementPolicy",
    "SettlementResult",
    "SkipReason",
    "PaymentRailCollaborator",
    "RailRegistration",
    "RailError",
    "AccessControl",
    "Role",
    "FactJournal",
    "FactType",
    "LedgerFact",
]
