"""
Test volume pricing engine.

Breakpoint prices, interpolation, rounding, and out-of-range routing.
"""
import pytest
from decimal import Decimal
from fractions import Fraction

from vmdash.core.errors import InvalidQuantityError, NotQuotableError, ValidationError
from vmdash.features.plans.catalog import DEFAULT_PLANS, PlanCatalog, get_catalog
from vmdash.features.pricing.service import per_unit_price_exact, quote


@pytest.mark.parametrize("plan_id", list(DEFAULT_PLANS))
def test_breakpoint_quantities_return_catalog_price(plan_id):
    """At every breakpoint the per-unit price is the catalog value exactly."""
    for qty, price in DEFAULT_PLANS[plan_id]["breakpoints"].items():
        q = quote(plan_id, qty)
        assert q.per_unit_price == Decimal(price)
        assert q.total_price == Decimal(price) * qty


@pytest.mark.parametrize("plan_id", list(DEFAULT_PLANS))
def test_per_unit_price_non_increasing_over_quotable_range(plan_id):
    plan = get_catalog().get_plan(plan_id)
    exact = [per_unit_price_exact(plan, qty) for qty in range(1, 21)]
    rounded = [quote(plan_id, qty).per_unit_price for qty in range(1, 21)]

    assert all(a >= b for a, b in zip(exact, exact[1:]))
    assert all(a >= b for a, b in zip(rounded, rounded[1:]))


def test_scenario_single_vm():
    q = quote("hour_booster", 1)
    assert q.per_unit_price == Decimal("12")
    assert q.total_price == Decimal("12")


def test_scenario_two_vms():
    q = quote("hour_booster", 2)
    assert q.per_unit_price == Decimal("10")
    assert q.total_price == Decimal("20")


def test_scenario_three_vms_interpolated():
    """3 VMs sits between the 2 (10) and 5 (9) breakpoints."""
    q = quote("hour_booster", 3)

    assert Decimal("9") < q.per_unit_price < Decimal("10")
    assert q.per_unit_price == Decimal("9.67")
    # total is rounded once from the exact 29/3 * 3
    assert q.total_price == Decimal("29")


def test_total_rounded_to_whole_units_from_exact_price():
    q = quote("hour_booster", 4)  # exact unit 28/3, exact total 112/3

    assert q.per_unit_price == Decimal("9.33")
    assert q.total_price == Decimal("37")
    assert str(q.total_price) == "37"


def test_interpolation_between_upper_breakpoints():
    assert per_unit_price_exact(get_catalog().get_plan("kd_drop"), 7) == Fraction(63, 5)
    assert quote("kd_drop", 7).total_price == Decimal("88")
    assert quote("dual_mode", 15).per_unit_price == Decimal("12.50")
    # 187.50 exactly, rounded half-up
    assert quote("dual_mode", 15).total_price == Decimal("188")


def test_unit_price_rounding_is_half_up_to_cents():
    catalog = PlanCatalog.from_config({
        "tiny": {
            "name": "Tiny",
            "specs": "1vCPU / 1GB",
            "breakpoints": {1: "10.01", 3: "10.00"},
        }
    })
    q = quote("tiny", 2, catalog=catalog)  # exact unit 10.005
    assert q.per_unit_price == Decimal("10.01")
    assert q.total_price == Decimal("20")  # exact 20.01


def test_quote_is_idempotent():
    first = quote("kd_drop", 13)
    second = quote("kd_drop", 13)
    assert first == second
    assert first.to_dict() == second.to_dict()


def test_quote_to_dict_serializes_prices_as_strings():
    assert quote("hour_booster", 3).to_dict() == {
        "planId": "hour_booster",
        "quantity": 3,
        "perUnitPrice": "9.67",
        "totalPrice": "29",
    }


def test_total_minor_units():
    assert quote("hour_booster", 3).total_minor_units == 2900
    assert quote("hour_booster", 4).total_minor_units == 3700


def test_highest_breakpoint_is_quotable():
    assert quote("hour_booster", 20).total_price == Decimal("140")


@pytest.mark.parametrize("qty", [21, 50, 1000])
def test_beyond_curve_is_not_quotable(qty):
    with pytest.raises(NotQuotableError) as exc:
        quote("hour_booster", qty)
    assert exc.value.code == "not_quotable"
    assert exc.value.details["route"] == "contact_sales"
    assert exc.value.details["max_quantity"] == 20


@pytest.mark.parametrize("qty", [0, -1, 2.5, 3.0, "3", None, True])
def test_invalid_quantities(qty):
    with pytest.raises(InvalidQuantityError) as exc:
        quote("hour_booster", qty)
    assert exc.value.code == "invalid_quantity"
    assert exc.value.status_code == 400


def test_unknown_plan_is_validation_error():
    with pytest.raises(ValidationError) as exc:
        quote("no_such_plan", 1)
    assert exc.value.code == "validation_error"
    assert not isinstance(exc.value, InvalidQuantityError)
