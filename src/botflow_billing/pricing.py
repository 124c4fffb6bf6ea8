"""Pricing configuration for usage types and subscription plans.

Amounts are in minor currency units (ZAR cents). Usage unit prices may be
fractional (e.g. 0.1 cents per AI token) and are kept as Decimal; anything
that ends up on an invoice is rounded to a whole minor unit.
"""

from collections.abc import Mapping
from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel, ConfigDict, Field

from botflow_billing.exceptions import MissingPricingError, UnknownPlanError
from botflow_billing.models.billing import UsageType

# Sentinel allowance meaning "no limit, never charge overage"
UNLIMITED = -1


class PricingEntry(BaseModel):
    """Pricing for one usage type."""

    model_config = ConfigDict(frozen=True)

    description: str
    unit_price: Decimal = Decimal("0")
    included_in_plan: int = Field(default=UNLIMITED, ge=UNLIMITED)
    overage_price: Decimal = Decimal("0")

    @property
    def is_unlimited(self) -> bool:
        return self.included_in_plan == UNLIMITED


class PlanPricing(BaseModel):
    """Base monthly price for a subscription plan."""

    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    base_price: int = Field(ge=0)
    per_seat: bool = False


USAGE_PRICING: dict[UsageType, PricingEntry] = {
    UsageType.AI_CONVERSATION: PricingEntry(description="AI Conversation"),
    UsageType.AI_MESSAGE: PricingEntry(description="AI Message"),
    UsageType.AI_TOKEN: PricingEntry(
        description="AI Token",
        unit_price=Decimal("0.1"),
        included_in_plan=500_000,
        overage_price=Decimal("0.1"),
    ),
    UsageType.WHATSAPP_MESSAGE_SENT: PricingEntry(
        description="WhatsApp Message Sent",
        unit_price=Decimal("10"),
        included_in_plan=5_000,
        overage_price=Decimal("10"),
    ),
    UsageType.WHATSAPP_MESSAGE_RECEIVED: PricingEntry(description="WhatsApp Message Received"),
    UsageType.RECEIPT_PROCESSED: PricingEntry(description="Receipt Processed"),
    UsageType.RECEIPT_EXPORT: PricingEntry(description="Receipt Export"),
}

PLAN_PRICING: dict[str, PlanPricing] = {
    "ai-assistant": PlanPricing(plan_id="ai-assistant", name="AI Assistant", base_price=49_900),
    "whatsapp-assistant": PlanPricing(
        plan_id="whatsapp-assistant", name="WhatsApp Assistant", base_price=49_900
    ),
    "receipt-assistant": PlanPricing(
        plan_id="receipt-assistant", name="Receipt Assistant", base_price=9_900, per_seat=True
    ),
    "bundle": PlanPricing(plan_id="bundle", name="Complete Bundle", base_price=89_900),
    "free": PlanPricing(plan_id="free", name="Free", base_price=0),
}


def round_minor_units(amount: Decimal) -> int:
    """Round to the nearest whole minor unit, halves away from zero."""
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PricingTable:
    """Lookup for usage and plan pricing."""

    def __init__(
        self,
        usage: Mapping[UsageType, PricingEntry] | None = None,
        plans: Mapping[str, PlanPricing] | None = None,
    ) -> None:
        self._usage = dict(USAGE_PRICING if usage is None else usage)
        self._plans = dict(PLAN_PRICING if plans is None else plans)

    def entry(self, usage_type: UsageType) -> PricingEntry:
        """Get pricing for a usage type.

        Raises:
            MissingPricingError: If the usage type has no entry
        """
        try:
            return self._usage[usage_type]
        except KeyError:
            raise MissingPricingError(str(usage_type.value)) from None

    def plan(self, plan_id: str) -> PlanPricing:
        """Get pricing for a plan.

        Raises:
            UnknownPlanError: If the plan has no entry
        """
        try:
            return self._plans[plan_id]
        except KeyError:
            raise UnknownPlanError(plan_id) from None

    def price_record(self, usage_type: UsageType, quantity: int) -> tuple[Decimal, int]:
        """Price a usage record at its unit price.

        Returns:
            (unit_price, total_amount) in minor units
        """
        entry = self.entry(usage_type)
        return entry.unit_price, round_minor_units(entry.unit_price * quantity)

    def with_overrides(
        self,
        usage: Mapping[UsageType, PricingEntry] | None = None,
        plans: Mapping[str, PlanPricing] | None = None,
    ) -> "PricingTable":
        """Copy of this table with some entries replaced."""
        return PricingTable(
            usage={**self._usage, **(usage or {})},
            plans={**self._plans, **(plans or {})},
        )

    @property
    def usage_entries(self) -> dict[UsageType, PricingEntry]:
        return dict(self._usage)

    @property
    def plans(self) -> dict[str, PlanPricing]:
        return dict(self._plans)


DEFAULT_PRICING = PricingTable()
