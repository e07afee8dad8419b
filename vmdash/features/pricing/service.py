"""
vmdash/features/pricing/service.py

Volume pricing engine.

Handles:
- Exact breakpoint prices straight from the catalog
- Linear interpolation of the per-VM price between surrounding breakpoints
- Routing of quantities beyond the curve to contact-sales (NotQuotable)

All intermediate math is exact (Fraction). Rounding happens once, at output,
with half-up rounding: the total to whole currency units, the displayed
per-VM price to cents. The same inputs always yield the same Quote.
"""

from dataclasses import dataclass
from decimal import Decimal
from fractions import Fraction
from typing import Dict, Optional
import logging
import math

from vmdash.core.errors import InvalidQuantityError, NotQuotableError, ValidationError
from vmdash.features.plans.catalog import PlanCatalog, get_catalog
from vmdash.models.plan import Plan


logger = logging.getLogger(__name__)

MINOR_UNITS_PER_MAJOR = 100


@dataclass(frozen=True)
class Quote:
    plan_id: str
    quantity: int
    per_unit_price: Decimal
    total_price: Decimal

    @property
    def total_minor_units(self) -> int:
        """Total in minor units (cents), as billing providers expect."""
        return int(self.total_price * MINOR_UNITS_PER_MAJOR)

    def to_dict(self) -> Dict[str, object]:
        return {
            "planId": self.plan_id,
            "quantity": self.quantity,
            "perUnitPrice": str(self.per_unit_price),
            "totalPrice": str(self.total_price),
        }


def _round_minor(value: Fraction) -> Decimal:
    """Round a non-negative exact amount half-up to minor units."""
    minor = math.floor(value * MINOR_UNITS_PER_MAJOR + Fraction(1, 2))
    return Decimal(minor).scaleb(-2)


def _round_whole(value: Fraction) -> Decimal:
    return Decimal(math.floor(value + Fraction(1, 2)))


def _validate_quantity(quantity: object) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidQuantityError(
            f"Quantity must be a whole number of VMs, got {quantity!r}",
        )
    if quantity < 1:
        raise InvalidQuantityError(f"Quantity must be at least 1, got {quantity}")
    return quantity


def per_unit_price_exact(plan: Plan, quantity: int) -> Fraction:
    """
    Exact per-VM price for a quantity on a plan's curve.

    Breakpoint quantities return the catalog price. Quantities strictly
    between two breakpoints are interpolated linearly. Quantities below the
    first breakpoint take the first breakpoint's price.

    Raises:
        NotQuotableError: quantity is above the highest breakpoint
    """
    points = plan.breakpoints
    if quantity > plan.max_quantity:
        raise NotQuotableError(
            f"{plan.name} pricing is defined up to {plan.max_quantity} VMs; "
            f"{quantity} VMs requires a custom quote",
            details={"plan_id": plan.plan_id, "max_quantity": plan.max_quantity, "route": "contact_sales"},
        )

    if quantity <= points[0].quantity:
        return Fraction(points[0].per_unit_price)

    for lower, upper in zip(points, points[1:]):
        if quantity == upper.quantity:
            return Fraction(upper.per_unit_price)
        if lower.quantity < quantity < upper.quantity:
            lo_price = Fraction(lower.per_unit_price)
            hi_price = Fraction(upper.per_unit_price)
            position = Fraction(quantity - lower.quantity, upper.quantity - lower.quantity)
            return lo_price - (lo_price - hi_price) * position

    # Unreachable with a validated curve: quantity is within [first, last]
    raise NotQuotableError(f"No price defined for {quantity} VMs on {plan.plan_id}")


def quote(plan_id: str, quantity: object, catalog: Optional[PlanCatalog] = None) -> Quote:
    """
    Price a plan + VM count.

    Args:
        plan_id: Catalog plan id
        quantity: Number of VMs (positive integer)
        catalog: Catalog to price against (defaults to the service catalog)

    Returns:
        Quote with the per-unit price in cents and the total in whole units

    Raises:
        InvalidQuantityError: quantity < 1 or not an integer
        NotQuotableError: quantity beyond the plan's curve (contact sales)
        ValidationError: unknown plan id
    """
    cat = catalog or get_catalog()
    plan = cat.get_plan(plan_id)
    if plan is None:
        raise ValidationError(f"Unknown plan: {plan_id}", details={"plan_id": plan_id})

    qty = _validate_quantity(quantity)
    unit = per_unit_price_exact(plan, qty)

    result = Quote(
        plan_id=plan.plan_id,
        quantity=qty,
        per_unit_price=_round_minor(unit),
        total_price=_round_whole(unit * qty),
    )
    logger.debug(
        "[pricing] quote",
        extra={"plan_id": plan_id, "quantity": qty, "total_price": str(result.total_price)},
    )
    return result
