"""
Settlement Trigger

Watches the pending tier and signals when a user has accumulated enough
to be worth settling externally.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, Optional

from focusledger.config import SettlementRules
from focusledger.events.bus import EVENT_SETTLEMENT_ELIGIBLE, Event, EventBus
from focusledger.ledger.models import Balance

if TYPE_CHECKING:
    from focusledger.ledger.balance import BalanceManager

logger = logging.getLogger(__name__)


class SettlementTrigger:
    """Emits ``settlement.eligible`` when pending crosses the threshold.

    ``observe`` is called synchronously after a commit that raised pending.
    It fires only on the commit that crosses the threshold, so a user who
    stays above it is not signalled again until pending drops below and
    climbs back.
    """

    def __init__(
        self,
        rules: Optional[SettlementRules] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.rules = rules or SettlementRules()
        self.bus = bus

    @property
    def threshold(self) -> Decimal:
        return self.rules.threshold

    def is_eligible(self, balance: Balance) -> bool:
        return balance.pending >= self.threshold

    def observe(self, previous_pending: Decimal, balance: Balance) -> bool:
        """Check a post-commit balance; returns True if the signal fired."""
        if previous_pending >= self.threshold or not self.is_eligible(balance):
            return False
        logger.info(
            "User %s is settlement-eligible (pending=%s, threshold=%s)",
            balance.user_id, balance.pending, self.threshold,
        )
        if self.bus is not None:
            self.bus.emit(
                Event(
                    event_type=EVENT_SETTLEMENT_ELIGIBLE,
                    source="settlement",
                    payload={
                        "user_id": balance.user_id,
                        "pending": str(balance.pending),
                        "threshold": str(self.threshold),
                    },
                )
            )
        return True

    async def sweep(
        self,
        balances: "BalanceManager",
        user_ids: Optional[Iterable[str]] = None,
    ) -> list[str]:
        """Return the users currently eligible. Read-only; emits nothing.

        Defaults to every user the store knows about.
        """
        if user_ids is None:
            user_ids = await balances.store.known_users()
        eligible = []
        for user_id in user_ids:
            balance = await balances.get_balance(user_id)
            if self.is_eligible(balance):
                eligible.append(user_id)
        logger.debug("Settlement sweep found %d eligible users", len(eligible))
        return eligible
