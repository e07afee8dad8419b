"""
vmdash/models/plan.py

Plan model: a rentable VM tier and its volume price curve.

A plan carries an ordered set of breakpoints. Each breakpoint fixes the
per-VM monthly price at one quantity; the pricing engine interpolates
between them.
"""

from decimal import Decimal
from typing import Tuple
from pydantic import BaseModel, ConfigDict, Field, model_validator


class PriceBreakpoint(BaseModel):
    """A defined (quantity, per-unit price) point on a plan's curve."""
    model_config = ConfigDict(frozen=True)

    quantity: int = Field(gt=0)
    per_unit_price: Decimal = Field(gt=0)


class Plan(BaseModel):
    """
    Plan represents a rentable VM tier.

    Examples:
    - hour_booster (2vCPU / 4GB)
    - kd_drop (4vCPU / 4GB)
    - dual_mode (4vCPU / 4GB)

    Breakpoints must be strictly increasing in quantity and
    non-increasing in per-unit price.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    specs: str
    description: str = ""
    features: Tuple[str, ...] = ()
    breakpoints: Tuple[PriceBreakpoint, ...]

    @model_validator(mode="after")
    def _check_curve(self) -> "Plan":
        if not self.breakpoints:
            raise ValueError(f"plan {self.plan_id} has no price breakpoints")
        for prev, cur in zip(self.breakpoints, self.breakpoints[1:]):
            if cur.quantity <= prev.quantity:
                raise ValueError(
                    f"plan {self.plan_id}: breakpoint quantities must be strictly increasing "
                    f"({prev.quantity} then {cur.quantity})"
                )
            if cur.per_unit_price > prev.per_unit_price:
                raise ValueError(
                    f"plan {self.plan_id}: per-unit price rises from {prev.per_unit_price} "
                    f"at {prev.quantity} to {cur.per_unit_price} at {cur.quantity}"
                )
        return self

    @property
    def max_quantity(self) -> int:
        """Highest quantity with a defined price. Anything above is contact-sales."""
        return self.breakpoints[-1].quantity
