"""
Ledger storage backends for FocusLedger.

Provides the abstract store contract plus in-memory and SQL implementations.
"""

from typing import Optional

from focusledger.config import StoreConfig

from .provider import AbstractLedgerStore
from .memory_store import MemoryLedgerStore
from .sql_store import SQLLedgerStore


def create_store(config: Optional[StoreConfig] = None) -> AbstractLedgerStore:
    """Build the backend named by ``config.backend``."""
    config = config or StoreConfig()
    if config.backend == "sql":
        return SQLLedgerStore(config)
    return MemoryLedgerStore(config)


__all__ = [
    "AbstractLedgerStore",
    "MemoryLedgerStore",
    "SQLLedgerStore",
    "create_store",
]
