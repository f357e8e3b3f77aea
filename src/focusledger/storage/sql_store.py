"""
SQL Ledger Store.

Async SQLAlchemy Core backend. Runs on PostgreSQL (``postgresql+asyncpg``)
in production and on SQLite (``sqlite+aiosqlite``) for local development.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    TypeDecorator,
    UniqueConstraint,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

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

logger = logging.getLogger(__name__)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetimes stored as UTC on every dialect."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _money() -> Numeric:
    return Numeric(20, 4, asdecimal=True)


metadata = MetaData()

balances = Table(
    "balances",
    metadata,
    Column("user_id", String(255), primary_key=True),
    Column("available", _money(), nullable=False, default=0),
    Column("pending", _money(), nullable=False, default=0),
    Column("settled_external", _money(), nullable=False, default=0),
    Column("staked", _money(), nullable=False, default=0),
    Column("lifetime_earned", _money(), nullable=False, default=0),
    Column("total_spent", _money(), nullable=False, default=0),
    Column("version", Integer, nullable=False, default=0),
    Column("updated_at", UTCDateTime()),
)

ledger_entries = Table(
    "ledger_entries",
    metadata,
    Column("sequence", Integer, primary_key=True, autoincrement=True),
    Column("id", String(64), nullable=False, unique=True),
    Column("user_id", String(255), nullable=False, index=True),
    Column("event_type", String(32), nullable=False),
    Column("source_event_type", String(64)),
    Column("reward_breakdown_snapshot", JSON),
    Column("signed_amount", _money(), nullable=False),
    Column("idempotency_key", String(512), nullable=False),
    Column("reason", Text),
    Column("details", JSON, nullable=False),
    Column("created_at", UTCDateTime(), nullable=False),
    UniqueConstraint("user_id", "idempotency_key", name="uq_ledger_user_key"),
)

stakes = Table(
    "stakes",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(255), nullable=False, index=True),
    Column("tier", String(64), nullable=False),
    Column("amount", _money(), nullable=False),
    Column("capability", String(128), nullable=False),
    Column("status", String(16), nullable=False),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("unlocks_at", UTCDateTime()),
    Column("revoked_at", UTCDateTime()),
    Column("revoked_reason", Text),
    Column("refunded", Boolean),
)

# At most one active stake per (user, tier).
Index(
    "uq_stakes_active_tier",
    stakes.c.user_id,
    stakes.c.tier,
    unique=True,
    postgresql_where=stakes.c.status == StakeStatus.active.value,
    sqlite_where=stakes.c.status == StakeStatus.active.value,
)


class _Conflict(Exception):
    """Raised inside a transaction to roll it back as a version conflict."""


class SQLLedgerStore(AbstractLedgerStore):
    """
    SQL ledger store.

    Features:
    - Async SQLAlchemy Core
    - One transaction per ``apply``
    - Optimistic concurrency on ``balances.version``
    - Database-enforced idempotency and single-active-tier constraints

    Requires: sqlalchemy[asyncio] plus asyncpg or aiosqlite
    """

    def __init__(self, config: Optional[StoreConfig] = None):
        """Initialize SQL storage."""
        super().__init__(config)
        if not self.config.connection_string:
            raise StorageError("SQLLedgerStore requires store.connection_string")
        self._engine: Optional[AsyncEngine] = None

    async def connect(self) -> None:
        """Create the engine and, if configured, the schema."""
        url = make_url(self.config.connection_string)
        options: dict[str, Any] = {"echo": self.config.echo, "pool_pre_ping": True}
        if url.get_backend_name() != "sqlite":
            options.update(pool_size=self.config.pool_size, max_overflow=20)
        self._engine = create_async_engine(url, **options)

        if self.config.create_schema:
            async with self._engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
        logger.info("Connected ledger store to %s", url.render_as_string(hide_password=True))

    async def disconnect(self) -> None:
        """Dispose of the engine."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None

    async def health_check(self) -> bool:
        """Check if the database answers."""
        if self._engine is None:
            return False
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.warning("Ledger store health check failed", exc_info=True)
            return False

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise StorageError("SQLLedgerStore is not connected; call connect() first")
        return self._engine

    # Balances

    async def get_balance(self, user_id: str) -> Balance:
        async with self.engine.connect() as conn:
            return await self._read_balance(conn, user_id) or Balance(user_id=user_id)

    async def _read_balance(self, conn: AsyncConnection, user_id: str) -> Optional[Balance]:
        result = await conn.execute(select(balances).where(balances.c.user_id == user_id))
        row = result.mappings().first()
        return Balance(**row) if row else None

    async def apply(
        self,
        user_id: str,
        delta: BalanceDelta,
        expected_version: int,
        entries: Sequence[LedgerEntry] = (),
        stake_writes: Sequence[StakeWrite] = (),
    ) -> Optional[Balance]:
        try:
            async with self.engine.begin() as conn:
                updated = await self._apply_balance(conn, user_id, delta, expected_version)
                for write in stake_writes:
                    await self._apply_stake(conn, write)
                for entry in entries:
                    await self._insert_entry(conn, user_id, entry)
                return updated
        except _Conflict:
            logger.debug("Version conflict applying delta for %s at v%d", user_id, expected_version)
            return None
        except SQLAlchemyError as e:
            raise StorageError(f"Ledger write for {user_id} failed: {e}") from e

    async def _apply_balance(
        self,
        conn: AsyncConnection,
        user_id: str,
        delta: BalanceDelta,
        expected_version: int,
    ) -> Balance:
        current = await self._read_balance(conn, user_id)
        if current is None:
            if expected_version != 0:
                raise _Conflict()
            current = Balance(user_id=user_id)
        elif current.version != expected_version:
            raise _Conflict()

        now = datetime.now(timezone.utc)
        updated = current.with_delta(delta, now)
        if updated.violations():
            raise _Conflict()

        if expected_version == 0:
            # A concurrent first write for the same user hits the primary key.
            try:
                await conn.execute(
                    insert(balances).values(
                        user_id=user_id,
                        available=updated.available,
                        pending=updated.pending,
                        settled_external=updated.settled_external,
                        staked=updated.staked,
                        lifetime_earned=updated.lifetime_earned,
                        total_spent=updated.total_spent,
                        version=updated.version,
                        updated_at=now,
                    )
                )
            except IntegrityError:
                raise _Conflict()
            return updated

        # Absolute Decimal values; the version predicate pins the row read above.
        result = await conn.execute(
            update(balances)
            .where(
                balances.c.user_id == user_id,
                balances.c.version == expected_version,
            )
            .values(
                available=updated.available,
                pending=updated.pending,
                settled_external=updated.settled_external,
                staked=updated.staked,
                lifetime_earned=updated.lifetime_earned,
                total_spent=updated.total_spent,
                version=updated.version,
                updated_at=now,
            )
        )
        if result.rowcount != 1:
            raise _Conflict()
        return updated

    async def _apply_stake(self, conn: AsyncConnection, write: StakeWrite) -> None:
        stake = write.stake
        values = {
            "status": stake.status.value,
            "unlocks_at": stake.unlocks_at,
            "revoked_at": stake.revoked_at,
            "revoked_reason": stake.revoked_reason,
            "refunded": stake.refunded,
        }
        if write.is_insert:
            try:
                await conn.execute(
                    insert(stakes).values(
                        id=stake.id,
                        user_id=stake.user_id,
                        tier=stake.tier,
                        amount=stake.amount,
                        capability=stake.capability,
                        created_at=stake.created_at,
                        **values,
                    )
                )
            except IntegrityError as e:
                if stake.status == StakeStatus.active:
                    raise TierAlreadyActiveError(stake.user_id, stake.tier) from e
                raise
            return

        result = await conn.execute(
            update(stakes)
            .where(
                stakes.c.id == stake.id,
                stakes.c.status.in_([s.value for s in write.expected_statuses]),
            )
            .values(**values)
        )
        if result.rowcount != 1:
            raise _Conflict()

    async def _insert_entry(self, conn: AsyncConnection, user_id: str, entry: LedgerEntry) -> None:
        if entry.user_id != user_id:
            raise StorageError(f"Entry {entry.id} belongs to {entry.user_id}, not {user_id}")
        try:
            await conn.execute(
                insert(ledger_entries).values(
                    id=entry.id,
                    user_id=entry.user_id,
                    event_type=entry.event_type.value,
                    source_event_type=entry.source_event_type,
                    reward_breakdown_snapshot=entry.reward_breakdown_snapshot,
                    signed_amount=entry.signed_amount,
                    idempotency_key=entry.idempotency_key,
                    reason=entry.reason,
                    details=entry.metadata,
                    created_at=entry.created_at,
                )
            )
        except IntegrityError as e:
            raise DuplicateIdempotencyKeyError(user_id, entry.idempotency_key) from e

    async def known_users(self) -> list[str]:
        async with self.engine.connect() as conn:
            result = await conn.execute(select(balances.c.user_id).order_by(balances.c.user_id))
            return list(result.scalars())

    # Ledger

    @staticmethod
    def _entry_from_row(row: Any) -> LedgerEntry:
        data = dict(row)
        data["metadata"] = data.pop("details") or {}
        return LedgerEntry(**data)

    async def get_entry(self, user_id: str, idempotency_key: str) -> Optional[LedgerEntry]:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                select(ledger_entries).where(
                    ledger_entries.c.user_id == user_id,
                    ledger_entries.c.idempotency_key == idempotency_key,
                )
            )
            row = result.mappings().first()
            return self._entry_from_row(row) if row else None

    async def list_entries(
        self,
        user_id: str,
        filters: Optional[LedgerFilter] = None,
        limit: int = 100,
        after_sequence: Optional[int] = None,
    ) -> LedgerPage:
        query = select(ledger_entries).where(ledger_entries.c.user_id == user_id)
        if after_sequence is not None:
            query = query.where(ledger_entries.c.sequence > after_sequence)
        if filters is not None:
            if filters.entry_types:
                query = query.where(
                    ledger_entries.c.event_type.in_([t.value for t in filters.entry_types])
                )
            if filters.since is not None:
                query = query.where(ledger_entries.c.created_at >= filters.since)
            if filters.until is not None:
                query = query.where(ledger_entries.c.created_at < filters.until)
        # One extra row tells us whether another page exists.
        query = query.order_by(ledger_entries.c.sequence).limit(limit + 1)

        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            rows = result.mappings().all()

        entries = [self._entry_from_row(row) for row in rows[:limit]]
        next_cursor = entries[-1].sequence if len(rows) > limit and entries else None
        return LedgerPage(entries=entries, next_cursor=next_cursor)

    async def ledger_total(self, user_id: str) -> tuple[Decimal, int]:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                select(ledger_entries.c.signed_amount).where(ledger_entries.c.user_id == user_id)
            )
            amounts = list(result.scalars())
        return sum(amounts, ZERO), len(amounts)

    # Stakes

    async def get_stake(self, stake_id: str) -> Optional[Stake]:
        async with self.engine.connect() as conn:
            result = await conn.execute(select(stakes).where(stakes.c.id == stake_id))
            row = result.mappings().first()
            return Stake(**row) if row else None

    async def list_stakes(
        self,
        user_id: str,
        statuses: Optional[Sequence[StakeStatus]] = None,
    ) -> list[Stake]:
        query = select(stakes).where(stakes.c.user_id == user_id)
        if statuses:
            query = query.where(stakes.c.status.in_([s.value for s in statuses]))
        query = query.order_by(stakes.c.created_at.desc())
        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            return [Stake(**row) for row in result.mappings()]
