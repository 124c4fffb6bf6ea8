"""Overage and tax calculation.

Everything here is pure and deterministic: the same inputs always give the
same charges. Overage charges round up to a whole minor unit so fractional
cents are never lost in the customer's favour; tax rounds half-up.
"""

from collections.abc import Mapping
from datetime import datetime, timedelta
from decimal import ROUND_CEILING, Decimal

from botflow_billing.models.billing import OverageResult, UsageType
from botflow_billing.periods import BillingPeriod
from botflow_billing.pricing import UNLIMITED, PricingTable, round_minor_units


def overage_quantity(quantity: int, included: int) -> int:
    """Units used beyond the allowance; always 0 for unlimited allowances."""
    if included == UNLIMITED:
        return 0
    return max(0, quantity - included)


def overage_charge(overage_qty: int, overage_price: Decimal) -> int:
    """Charge for overage units, rounded up to a whole minor unit."""
    if overage_qty <= 0:
        return 0
    amount = Decimal(overage_qty) * Decimal(overage_price)
    return int(amount.to_integral_value(rounding=ROUND_CEILING))


def compute_overage(
    usage_by_kind: Mapping[UsageType, int],
    pricing: PricingTable,
) -> OverageResult:
    """Compute overage charges for a period's aggregated usage.

    Args:
        usage_by_kind: Total quantity per usage type
        pricing: Pricing table supplying allowances and overage prices

    Returns:
        Per-type charges and overage quantities (types without a charge
        are omitted) and the total

    Raises:
        MissingPricingError: If a usage type has no pricing entry
    """
    result = OverageResult()
    for usage_type in sorted(usage_by_kind, key=lambda t: t.value):
        entry = pricing.entry(usage_type)
        over = overage_quantity(usage_by_kind[usage_type], entry.included_in_plan)
        charge = overage_charge(over, entry.overage_price)
        if charge > 0:
            result.charges[usage_type] = charge
            result.quantities[usage_type] = over
            result.total += charge
    return result


def compute_tax(subtotal: int, rate: Decimal) -> int:
    """Tax on a subtotal, rounded to the nearest minor unit."""
    return round_minor_units(Decimal(subtotal) * rate)


def due_date_for(period: BillingPeriod, grace_days: int) -> datetime:
    """Payment due date: end of the billing period plus the grace period."""
    return period.end + timedelta(days=grace_days)
