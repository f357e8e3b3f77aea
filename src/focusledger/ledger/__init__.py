"""
Ledger Layer

Ledger data model, the balance manager and the settlement trigger.
"""

from .models import (
    Balance,
    BalanceDelta,
    LedgerEntry,
    LedgerEntryType,
    LedgerFilter,
    LedgerPage,
    ReconciliationReport,
    RevocationPolicy,
    Stake,
    StakeStatus,
    StakeWrite,
)
from .balance import BalanceManager, parse_amount
from .settlement import SettlementTrigger

__all__ = [
    "Balance",
    "BalanceDelta",
    "LedgerEntry",
    "LedgerEntryType",
    "LedgerFilter",
    "LedgerPage",
    "ReconciliationReport",
    "RevocationPolicy",
    "Stake",
    "StakeStatus",
    "StakeWrite",
    "BalanceManager",
    "parse_amount",
    "SettlementTrigger",
]
