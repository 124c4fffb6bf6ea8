"""Monthly charge calculation and invoice persistence."""

from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import structlog

from botflow_billing.calculator import compute_overage, compute_tax, due_date_for
from botflow_billing.config import BillingSettings
from botflow_billing.exceptions import (
    DuplicateInvoiceError,
    DuplicateRecordError,
    InvoiceNotFoundError,
)
from botflow_billing.models.billing import (
    ChargeBreakdown,
    Invoice,
    InvoiceLineItem,
    InvoiceStats,
    InvoiceStatus,
    ServiceType,
    service_for,
)
from botflow_billing.periods import parse_period_key
from botflow_billing.pricing import PricingTable
from botflow_billing.store.base import RecordStore, Tables
from botflow_billing.subscriptions import SubscriptionProvider
from botflow_billing.usage import UsageStore

logger = structlog.get_logger()


def _plan_service(plan_id: str) -> ServiceType | None:
    try:
        return ServiceType(plan_id)
    except ValueError:
        return None


class InvoiceService:
    """Builds invoices from subscriptions and usage, and stores them."""

    def __init__(
        self,
        store: RecordStore,
        usage_store: UsageStore,
        subscriptions: SubscriptionProvider,
        pricing: PricingTable,
        settings: BillingSettings,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._usage = usage_store
        self._subscriptions = subscriptions
        self._pricing = pricing
        self._settings = settings
        self._clock = clock or (lambda: datetime.now(UTC))

    async def calculate_monthly_charges(
        self, organization_id: str, period_key: str
    ) -> ChargeBreakdown:
        """Base plan plus overage for one organization and period.

        An organization without an active subscription has no base line but
        is still charged for overage.

        Raises:
            UnknownPlanError: If the subscription's plan has no pricing
            MissingPricingError: If recorded usage has no pricing entry
        """
        period = parse_period_key(period_key)
        breakdown = ChargeBreakdown(organization_id=organization_id, billing_period=period.key)

        subscription = await self._subscriptions.get_active_subscription(organization_id)
        if subscription:
            plan = self._pricing.plan(subscription.plan_id)
            if plan.per_seat:
                seats = subscription.seat_count
                breakdown.base_plan = plan.base_price * seats
                breakdown.line_items.append(
                    InvoiceLineItem(
                        description=f"{plan.name} ({seats} users)",
                        quantity=seats,
                        unit_price=Decimal(plan.base_price),
                        total=breakdown.base_plan,
                        service=_plan_service(plan.plan_id),
                    )
                )
            else:
                breakdown.base_plan = plan.base_price
                breakdown.line_items.append(
                    InvoiceLineItem(
                        description=plan.name,
                        quantity=1,
                        unit_price=Decimal(plan.base_price),
                        total=plan.base_price,
                        service=_plan_service(plan.plan_id),
                    )
                )

        usage = await self._usage.aggregate_by_kind(organization_id, period.key)
        overage = compute_overage(usage, self._pricing)
        breakdown.overage_charges = overage.total

        for usage_type, charge in overage.charges.items():
            entry = self._pricing.entry(usage_type)
            over = overage.quantities[usage_type]
            breakdown.line_items.append(
                InvoiceLineItem(
                    description=(
                        f"{entry.description} Overage "
                        f"({over:,} over {entry.included_in_plan:,} included)"
                    ),
                    quantity=over,
                    unit_price=entry.overage_price,
                    total=charge,
                    service=service_for(usage_type),
                    usage_type=usage_type,
                )
            )

        return breakdown

    async def generate_invoice(self, organization_id: str, period_key: str) -> Invoice:
        """Calculate charges and persist a draft invoice.

        Raises:
            DuplicateInvoiceError: If a non-void invoice already exists for
                the organization and period (enforced by the store)
        """
        period = parse_period_key(period_key)
        charges = await self.calculate_monthly_charges(organization_id, period.key)

        subtotal = charges.subtotal
        tax = compute_tax(subtotal, self._settings.tax_rate)
        now = self._clock()
        invoice = Invoice(
            organization_id=organization_id,
            billing_period=period.key,
            subtotal=subtotal,
            tax=tax,
            total=subtotal + tax,
            currency=self._settings.currency,
            status=InvoiceStatus.DRAFT,
            due_date=due_date_for(period, self._settings.grace_period_days),
            line_items=charges.line_items,
            created_at=now,
            updated_at=now,
        )

        try:
            await self._store.insert(Tables.INVOICES, invoice.to_record())
        except DuplicateRecordError as e:
            raise DuplicateInvoiceError(organization_id, period.key) from e

        logger.info(
            "Generated invoice",
            invoice_id=invoice.id,
            organization_id=organization_id,
            billing_period=period.key,
            subtotal=subtotal,
            tax=tax,
            total=invoice.total,
        )
        return invoice

    async def get_invoice(self, invoice_id: str) -> Invoice:
        """Get an invoice by id.

        Raises:
            InvoiceNotFoundError: If it does not exist
        """
        rows = await self._store.query(Tables.INVOICES, filters={"id": invoice_id}, limit=1)
        if not rows:
            raise InvoiceNotFoundError(invoice_id)
        return Invoice.model_validate(rows[0])

    async def find_by_external_id(self, external_id: str) -> Invoice | None:
        rows = await self._store.query(
            Tables.INVOICES, filters={"external_id": external_id}, limit=1
        )
        return Invoice.model_validate(rows[0]) if rows else None

    async def find_active_invoice(self, organization_id: str, period_key: str) -> Invoice | None:
        """The non-void invoice for an organization and period, if any."""
        rows = await self._store.query(
            Tables.INVOICES,
            filters={"organization_id": organization_id, "billing_period": period_key},
        )
        for row in rows:
            invoice = Invoice.model_validate(row)
            if invoice.status != InvoiceStatus.CANCELLED:
                return invoice
        return None

    async def list_organization_invoices(
        self, organization_id: str, limit: int | None = None
    ) -> list[Invoice]:
        """Invoices for an organization, newest first."""
        rows = await self._store.query(
            Tables.INVOICES,
            filters={"organization_id": organization_id},
            order_by="created_at",
            descending=True,
            limit=limit,
        )
        return [Invoice.model_validate(row) for row in rows]

    async def update_invoice(self, invoice_id: str, **patch: Any) -> Invoice:
        """Apply a patch and return the updated invoice.

        Raises:
            InvoiceNotFoundError: If it does not exist
        """
        patch["updated_at"] = self._clock()
        updated = await self._store.update(Tables.INVOICES, {"id": invoice_id}, patch)
        if not updated:
            raise InvoiceNotFoundError(invoice_id)
        return await self.get_invoice(invoice_id)

    async def invoices_with_status(self, status: InvoiceStatus) -> list[Invoice]:
        """Invoices in a status, earliest due first."""
        rows = await self._store.query(
            Tables.INVOICES, filters={"status": status}, order_by="due_date"
        )
        return [Invoice.model_validate(row) for row in rows]

    async def pending_invoices(self) -> list[Invoice]:
        return await self.invoices_with_status(InvoiceStatus.PENDING)

    async def overdue_candidates(self, now: datetime | None = None) -> list[Invoice]:
        """Pending invoices whose due date has passed."""
        now = now or self._clock()
        return [invoice for invoice in await self.pending_invoices() if invoice.is_past_due(now)]

    async def invoice_stats(self, organization_id: str, now: datetime | None = None) -> InvoiceStats:
        """Paid, pending and overdue totals for an organization."""
        now = now or self._clock()
        stats = InvoiceStats()
        for invoice in await self.list_organization_invoices(organization_id):
            stats.invoice_count += 1
            if invoice.status == InvoiceStatus.PAID:
                stats.total_paid += invoice.total
            elif invoice.status == InvoiceStatus.PENDING:
                stats.total_pending += invoice.total
                if invoice.is_past_due(now):
                    stats.total_overdue += invoice.total
            elif invoice.status == InvoiceStatus.OVERDUE:
                stats.total_overdue += invoice.total
        return stats

