"""
In-Memory Ledger Store.

Simple in-memory implementation for development and testing.
"""

import threading
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Sequence

from focusledger.config import StoreConfig
from focusledger.exceptions import DuplicateIdempotencyKeyError, StorageError, TierAlreadyActiveError
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
from focusledger.money import ZERO

from .provider import AbstractLedgerStore


class MemoryLedgerStore(AbstractLedgerStore):
    """
    In-memory ledger store.

    Uses Python dictionaries for storage. Data is lost on restart.
    Each ``apply`` runs entirely under one lock with no awaits inside, so it
    is atomic with respect to both threads and coroutines.
    """

    def __init__(self, config: Optional[StoreConfig] = None):
        """Initialize in-memory storage."""
        super().__init__(config)
        self._balances: dict[str, Balance] = {}
        self._entries: dict[str, list[LedgerEntry]] = defaultdict(list)
        self._keys: dict[str, dict[str, LedgerEntry]] = defaultdict(dict)
        self._stakes: dict[str, Stake] = {}
        self._sequence = 0
        self._lock = threading.Lock()
        self._connected = False

    async def connect(self) -> None:
        """Establish connection (no-op for memory)."""
        self._connected = True

    async def disconnect(self) -> None:
        """Close connection (no-op for memory)."""
        self._connected = False

    async def health_check(self) -> bool:
        """Check if storage is healthy."""
        return self._connected

    # Balances

    async def get_balance(self, user_id: str) -> Balance:
        with self._lock:
            balance = self._balances.get(user_id)
            return balance.model_copy() if balance else Balance(user_id=user_id)

    async def apply(
        self,
        user_id: str,
        delta: BalanceDelta,
        expected_version: int,
        entries: Sequence[LedgerEntry] = (),
        stake_writes: Sequence[StakeWrite] = (),
    ) -> Optional[Balance]:
        with self._lock:
            current = self._balances.get(user_id) or Balance(user_id=user_id)
            if current.version != expected_version:
                return None
            updated = current.with_delta(delta, datetime.now(timezone.utc))
            if updated.violations():
                return None

            keys = self._keys[user_id]
            batch: set[str] = set()
            for entry in entries:
                if entry.user_id != user_id:
                    raise StorageError(f"Entry {entry.id} belongs to {entry.user_id}, not {user_id}")
                if entry.idempotency_key in keys or entry.idempotency_key in batch:
                    raise DuplicateIdempotencyKeyError(user_id, entry.idempotency_key)
                batch.add(entry.idempotency_key)

            for write in stake_writes:
                stake = write.stake
                if write.is_insert:
                    if stake.id in self._stakes:
                        raise StorageError(f"Stake {stake.id} already exists")
                    if stake.status == StakeStatus.active and self._has_active_tier(
                        stake.user_id, stake.tier
                    ):
                        raise TierAlreadyActiveError(stake.user_id, stake.tier)
                else:
                    existing = self._stakes.get(stake.id)
                    if existing is None or existing.status not in write.expected_statuses:
                        return None

            # Everything validated; commit.
            for entry in entries:
                self._sequence += 1
                stored = entry.model_copy(update={"sequence": self._sequence})
                self._entries[user_id].append(stored)
                keys[entry.idempotency_key] = stored
            for write in stake_writes:
                self._stakes[write.stake.id] = write.stake.model_copy()
            self._balances[user_id] = updated
            return updated.model_copy()

    def _has_active_tier(self, user_id: str, tier: str) -> bool:
        return any(
            s.user_id == user_id and s.tier == tier and s.status == StakeStatus.active
            for s in self._stakes.values()
        )

    async def known_users(self) -> list[str]:
        with self._lock:
            return list(self._balances.keys())

    # Ledger

    async def get_entry(self, user_id: str, idempotency_key: str) -> Optional[LedgerEntry]:
        with self._lock:
            entry = self._keys.get(user_id, {}).get(idempotency_key)
            return entry.model_copy() if entry else None

    async def list_entries(
        self,
        user_id: str,
        filters: Optional[LedgerFilter] = None,
        limit: int = 100,
        after_sequence: Optional[int] = None,
    ) -> LedgerPage:
        with self._lock:
            entries = list(self._entries.get(user_id, []))
        selected = [
            e for e in entries
            if (after_sequence is None or e.sequence > after_sequence)
            and (filters is None or filters.matches(e))
        ]
        page = selected[:limit]
        next_cursor = page[-1].sequence if len(selected) > limit and page else None
        return LedgerPage(entries=[e.model_copy() for e in page], next_cursor=next_cursor)

    async def ledger_total(self, user_id: str) -> tuple[Decimal, int]:
        with self._lock:
            entries = self._entries.get(user_id, [])
            return sum((e.signed_amount for e in entries), ZERO), len(entries)

    # Stakes

    async def get_stake(self, stake_id: str) -> Optional[Stake]:
        with self._lock:
            stake = self._stakes.get(stake_id)
            return stake.model_copy() if stake else None

    async def list_stakes(
        self,
        user_id: str,
        statuses: Optional[Sequence[StakeStatus]] = None,
    ) -> list[Stake]:
        with self._lock:
            stakes = [
                s.model_copy()
                for s in self._stakes.values()
                if s.user_id == user_id and (not statuses or s.status in statuses)
            ]
        return sorted(stakes, key=lambda s: s.created_at, reverse=True)
