"""
vmdash/features/plans/catalog.py

Static plan catalog.

Holds:
- The rentable plans (hour_booster, kd_drop, dual_mode)
- Each plan's volume price curve as (quantity, per-VM monthly price) breakpoints

Pure data. No I/O, no side effects.
"""

from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from vmdash.models.plan import Plan, PriceBreakpoint


# Default plan configurations (per-VM monthly prices, whole currency units)
DEFAULT_PLANS = {
    "hour_booster": {
        "name": "Hour Booster",
        "specs": "2vCPU / 4GB",
        "description": "Idle hours only",
        "features": [
            "Optimized for idle hour farming",
            "Energy efficient processing",
            "Basic resource allocation",
            "24/7 uptime guarantee",
        ],
        "breakpoints": {1: 12, 2: 10, 5: 9, 10: 8, 20: 7},
    },
    "kd_drop": {
        "name": "KD Drop",
        "specs": "4vCPU / 4GB",
        "description": "High-resource use",
        "features": [
            "High-performance computing",
            "Advanced processing power",
            "Enhanced resource allocation",
            "Priority queue processing",
        ],
        "breakpoints": {1: 16, 2: 14, 5: 13, 10: 12, 20: 11},
    },
    "dual_mode": {
        "name": "Dual Mode",
        "specs": "4vCPU / 4GB",
        "description": "Switchable mode, only one active",
        "features": [
            "Flexible switching between modes",
            "One active instance at a time",
            "Best of both worlds",
            "Mode switching on demand",
        ],
        "breakpoints": {1: 18, 2: 16, 5: 14, 10: 13, 20: 12},
    },
}


def _build_plan(plan_id: str, config: Mapping) -> Plan:
    breakpoints = tuple(
        PriceBreakpoint(quantity=int(qty), per_unit_price=Decimal(str(price)))
        for qty, price in sorted(config["breakpoints"].items())
    )
    return Plan(
        plan_id=plan_id,
        name=config["name"],
        specs=config["specs"],
        description=config.get("description", ""),
        features=tuple(config.get("features", ())),
        breakpoints=breakpoints,
    )


class PlanCatalog:
    """Immutable lookup of plans by id, in declaration order."""

    def __init__(self, plans: Iterable[Plan]):
        self._plans: Dict[str, Plan] = {}
        for plan in plans:
            if plan.plan_id in self._plans:
                raise ValueError(f"Duplicate plan id: {plan.plan_id}")
            self._plans[plan.plan_id] = plan

    @classmethod
    def from_config(cls, config: Mapping[str, Mapping]) -> "PlanCatalog":
        return cls(_build_plan(plan_id, cfg) for plan_id, cfg in config.items())

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        """Get plan by ID, or None if the catalog has no such plan."""
        return self._plans.get(plan_id)

    def list_plans(self) -> List[Plan]:
        return list(self._plans.values())

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._plans


_default_catalog = PlanCatalog.from_config(DEFAULT_PLANS)


def get_catalog() -> PlanCatalog:
    """The catalog used by the service unless a caller supplies its own."""
    return _default_catalog


def get_plan(plan_id: str) -> Optional[Plan]:
    """Get plan by ID from the default catalog."""
    return _default_catalog.get_plan(plan_id)
