"""
FocusLedger - Reward Ledger & Capability Staking Engine

Rewards · Balances · Stakes · Governance

Turns tracked focus behavior into credit units, keeps a three-tier balance
per user with exactly-once crediting, lets users stake credit to unlock
autonomous capabilities, and gates autonomous actions by role and stake.

Version: 0.1.0
"""

__version__ = "0.1.0"

# Configuration
from .config import (
    LedgerSettings,
    RewardRules,
    SettlementRules,
    SpendRates,
    StakeTier,
    StakingRules,
    StoreConfig,
)

# Rewards
from .rewards import (
    EventNormalizer,
    RewardableEvent,
    RewardBreakdown,
    RewardCalculator,
    RewardEventType,
    SpendKind,
    SpendPricer,
    SpendQuote,
    StreakMilestone,
)

# Ledger
from .ledger import (
    Balance,
    BalanceManager,
    LedgerEntry,
    LedgerEntryType,
    LedgerPage,
    ReconciliationReport,
    RevocationPolicy,
    SettlementTrigger,
    Stake,
    StakeStatus,
)

# Storage
from .storage import AbstractLedgerStore, MemoryLedgerStore, SQLLedgerStore, create_store

# Staking
from .staking import StakeTierCatalog, StakeTierId, StakingManager

# Governance
from .governance import (
    ActionAuthorizationResult,
    ActionCategory,
    ActionRegistry,
    ActionSpec,
    InMemoryRoleProvider,
    Role,
    RoleAuthority,
)

# Events
from .events import Event, EventBus, InMemoryEventBus

# Activity
from .activity import ActivityProvider, InMemoryActivityProvider

# Service
from .service import LedgerService

# Exceptions
from .exceptions import (
    FocusLedgerError,
    ValidationError,
    StorageError,
    InsufficientFundsError,
    InsufficientAvailableError,
    InsufficientPendingError,
    ConflictError,
    DuplicateIdempotencyKeyError,
    ConcurrencyConflictError,
    StakeError,
    UnknownTierError,
    StakeNotFoundError,
    StakeStateError,
    NotActiveError,
    NotUnstakingError,
    CooldownNotElapsedError,
    TierAlreadyActiveError,
    AuthorizationError,
    ActionDeniedError,
    ConfirmationRequiredError,
    SettlementError,
)

__all__ = [
    "__version__",
    # Configuration
    "LedgerSettings",
    "RewardRules",
    "SettlementRules",
    "SpendRates",
    "StakeTier",
    "StakingRules",
    "StoreConfig",
    # Rewards
    "EventNormalizer",
    "RewardableEvent",
    "RewardBreakdown",
    "RewardCalculator",
    "RewardEventType",
    "SpendKind",
    "SpendPricer",
    "SpendQuote",
    "StreakMilestone",
    # Ledger
    "Balance",
    "BalanceManager",
    "LedgerEntry",
    "LedgerEntryType",
    "LedgerPage",
    "ReconciliationReport",
    "RevocationPolicy",
    "SettlementTrigger",
    "Stake",
    "StakeStatus",
    # Storage
    "AbstractLedgerStore",
    "MemoryLedgerStore",
    "SQLLedgerStore",
    "create_store",
    # Staking
    "StakeTierCatalog",
    "StakeTierId",
    "StakingManager",
    # Governance
    "ActionAuthorizationResult",
    "ActionCategory",
    "ActionRegistry",
    "ActionSpec",
    "InMemoryRoleProvider",
    "Role",
    "RoleAuthority",
    # Events
    "Event",
    "EventBus",
    "InMemoryEventBus",
    # Activity
    "ActivityProvider",
    "InMemoryActivityProvider",
    # Service
    "LedgerService",
    # Exceptions
    "FocusLedgerError",
    "ValidationError",
    "StorageError",
    "InsufficientFundsError",
    "InsufficientAvailableError",
    "InsufficientPendingError",
    "ConflictError",
    "DuplicateIdempotencyKeyError",
    "ConcurrencyConflictError",
    "StakeError",
    "UnknownTierError",
    "StakeNotFoundError",
    "StakeStateError",
    "NotActiveError",
    "NotUnstakingError",
    "CooldownNotElapsedError",
    "TierAlreadyActiveError",
    "AuthorizationError",
    "ActionDeniedError",
    "ConfirmationRequiredError",
    "SettlementError",
]
