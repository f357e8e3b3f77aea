"""
Spend Pricing

Prices for actions a user pays for out of the available balance to make
the assistant go faster (batch processing, queue skipping, longer focus
protection, high-volume automation).
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from focusledger.config import SpendRates
from focusledger.exceptions import ValidationError
from focusledger.money import quantize_amount


class SpendKind(str, Enum):
    """Acceleration actions that cost credit."""

    batch_process = "batch_process"
    priority_override = "priority_override"
    extended_focus = "extended_focus"
    high_volume = "high_volume"


class SpendQuote(BaseModel):
    """Price for a spend, with affordability when a balance is known."""

    kind: SpendKind
    cost: Decimal
    available: Optional[Decimal] = None

    @property
    def affordable(self) -> Optional[bool]:
        if self.available is None:
            return None
        return self.available >= self.cost


class SpendPricer:
    """Computes spend costs from ``SpendRates``."""

    def __init__(self, rates: Optional[SpendRates] = None) -> None:
        self.rates = rates or SpendRates()

    def cost(
        self,
        kind: SpendKind | str,
        *,
        items: int = 0,
        hours: int = 1,
        base_cost: Decimal = Decimal("1"),
    ) -> Decimal:
        """Cost of a spend, rounded to balance precision.

        Raises:
            ValidationError: For unknown kinds or negative quantities.
        """
        try:
            kind = SpendKind(kind)
        except ValueError as exc:
            raise ValidationError(f"Unknown spend kind '{kind}'") from exc
        if items < 0 or hours < 0 or base_cost < 0:
            raise ValidationError("Spend quantities must not be negative")

        rates = self.rates
        if kind == SpendKind.batch_process:
            cost = rates.batch_process_base + Decimal(items) * rates.batch_process_per_item
        elif kind == SpendKind.priority_override:
            cost = rates.priority_override
        elif kind == SpendKind.extended_focus:
            cost = Decimal(hours or 1) * rates.extended_focus_per_hour
        else:
            cost = Decimal(base_cost) * rates.high_volume_multiplier
        return quantize_amount(cost)

    def quote(
        self,
        kind: SpendKind | str,
        *,
        available: Optional[Decimal] = None,
        **kwargs,
    ) -> SpendQuote:
        cost = self.cost(kind, **kwargs)
        return SpendQuote(kind=SpendKind(kind), cost=cost, available=available)
