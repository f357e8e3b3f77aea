"""
Abstract Ledger Store Interface.

Defines the contract that all ledger storage backends must implement.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import AsyncIterator, Optional, Sequence

from focusledger.config import StoreConfig
from focusledger.ledger.models import (
    Balance,
    BalanceDelta,
    LedgerEntry,
    LedgerFilter,
    LedgerPage,
    Stake,
    StakeStatus,
    StakeWrite,
)


class AbstractLedgerStore(ABC):
    """
    Abstract ledger store.

    All backends (in-memory, SQL) must implement this interface.
    Holds three logical tables:
    - ledger_entries (append-only, unique per user + idempotency key)
    - balances (one row per user, versioned)
    - stakes (one row per stake, status machine)

    ``apply`` is the only mutating operation and is atomic: either every
    balance change, entry and stake write in the call lands, or none does.
    """

    def __init__(self, config: Optional[StoreConfig] = None):
        """Initialize the store with configuration."""
        self.config = config or StoreConfig()

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to storage backend."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to storage backend."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if storage backend is healthy."""

    # Balances

    @abstractmethod
    async def get_balance(self, user_id: str) -> Balance:
        """Current balance row; a zero row at version 0 for unknown users."""

    @abstractmethod
    async def apply(
        self,
        user_id: str,
        delta: BalanceDelta,
        expected_version: int,
        entries: Sequence[LedgerEntry] = (),
        stake_writes: Sequence[StakeWrite] = (),
    ) -> Optional[Balance]:
        """Atomically apply a balance delta with its entries and stake writes.

        Returns:
            The post-commit balance, or ``None`` if the row's version is no
            longer ``expected_version`` or a guarded stake transition no
            longer matches (the caller should re-read and retry).

        Raises:
            DuplicateIdempotencyKeyError: An entry's key is already recorded.
            TierAlreadyActiveError: An inserted active stake collides with
                an existing active stake of the same tier.
        """

    @abstractmethod
    async def known_users(self) -> list[str]:
        """Ids of users that have a balance row."""

    # Ledger

    @abstractmethod
    async def get_entry(self, user_id: str, idempotency_key: str) -> Optional[LedgerEntry]:
        """Entry recorded under an idempotency key, if any."""

    @abstractmethod
    async def list_entries(
        self,
        user_id: str,
        filters: Optional[LedgerFilter] = None,
        limit: int = 100,
        after_sequence: Optional[int] = None,
    ) -> LedgerPage:
        """One page of a user's entries in insertion order."""

    @abstractmethod
    async def ledger_total(self, user_id: str) -> tuple[Decimal, int]:
        """Sum of ``signed_amount`` and entry count for a user."""

    async def iter_entries(
        self,
        user_id: str,
        filters: Optional[LedgerFilter] = None,
        page_size: int = 100,
    ) -> AsyncIterator[LedgerEntry]:
        """Lazily iterate a user's entries, one page at a time."""
        cursor: Optional[int] = None
        while True:
            page = await self.list_entries(
                user_id, filters, limit=page_size, after_sequence=cursor
            )
            for entry in page.entries:
                yield entry
            if page.next_cursor is None:
                return
            cursor = page.next_cursor

    # Stakes

    @abstractmethod
    async def get_stake(self, stake_id: str) -> Optional[Stake]:
        """Stake by id."""

    @abstractmethod
    async def list_stakes(
        self,
        user_id: str,
        statuses: Optional[Sequence[StakeStatus]] = None,
    ) -> list[Stake]:
        """A user's stakes, newest first."""
