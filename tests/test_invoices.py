"""Tests for monthly charge calculation and invoice storage."""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest

from botflow_billing.exceptions import (
    DuplicateInvoiceError,
    InvalidBillingPeriodError,
    InvoiceNotFoundError,
    UnknownPlanError,
)
from botflow_billing.invoices import InvoiceService
from botflow_billing.models.billing import (
    Invoice,
    InvoiceStatus,
    ServiceType,
    UsageRecordCreate,
    UsageType,
)
from botflow_billing.usage import UsageStore

from .conftest import FakeClock

FEBRUARY = datetime(2025, 2, 14, 10, 0, tzinfo=UTC)


async def record_usage(
    usage_store: UsageStore,
    organization_id: str,
    usage_type: UsageType,
    quantity: int,
    occurred_at: datetime = FEBRUARY,
) -> None:
    await usage_store.insert(
        UsageRecordCreate(
            organization_id=organization_id,
            usage_type=usage_type,
            quantity=quantity,
            occurred_at=occurred_at,
        )
    )


class TestCalculateMonthlyCharges:
    """Tests for the monthly charge breakdown."""

    @pytest.mark.asyncio
    async def test_flat_plan_with_overage(
        self,
        invoice_service: InvoiceService,
        usage_store: UsageStore,
        add_subscription: Callable[..., Awaitable[Any]],
    ) -> None:
        await add_subscription("org-1", "whatsapp-assistant")
        await record_usage(usage_store, "org-1", UsageType.WHATSAPP_MESSAGE_SENT, 5_080)

        charges = await invoice_service.calculate_monthly_charges("org-1", "2025-02")

        assert charges.base_plan == 49_900
        assert charges.overage_charges == 800
        assert charges.subtotal == 50_700
        base, overage = charges.line_items
        assert base.description == "WhatsApp Assistant"
        assert base.usage_type is None
        assert base.service == ServiceType.WHATSAPP_ASSISTANT
        assert overage.description == "WhatsApp Message Sent Overage (80 over 5,000 included)"
        assert overage.quantity == 80
        assert overage.unit_price == Decimal("10")
        assert overage.total == 800
        assert overage.usage_type == UsageType.WHATSAPP_MESSAGE_SENT

    @pytest.mark.asyncio
    async def test_per_seat_plan(
        self,
        invoice_service: InvoiceService,
        add_subscription: Callable[..., Awaitable[Any]],
    ) -> None:
        await add_subscription("org-1", "receipt-assistant", seat_count=4)

        charges = await invoice_service.calculate_monthly_charges("org-1", "2025-02")

        assert charges.base_plan == 39_600
        assert charges.line_items[0].description == "Receipt Assistant (4 users)"
        assert charges.line_items[0].quantity == 4

    @pytest.mark.asyncio
    async def test_no_subscription_no_base_line(
        self, invoice_service: InvoiceService, usage_store: UsageStore
    ) -> None:
        await record_usage(usage_store, "org-1", UsageType.AI_TOKEN, 500_010)

        charges = await invoice_service.calculate_monthly_charges("org-1", "2025-02")

        assert charges.base_plan == 0
        assert charges.overage_charges == 1
        assert len(charges.line_items) == 1

    @pytest.mark.asyncio
    async def test_usage_outside_period_ignored(
        self,
        invoice_service: InvoiceService,
        usage_store: UsageStore,
        add_subscription: Callable[..., Awaitable[Any]],
    ) -> None:
        await add_subscription("org-1", "whatsapp-assistant")
        await record_usage(
            usage_store,
            "org-1",
            UsageType.WHATSAPP_MESSAGE_SENT,
            9_000,
            occurred_at=datetime(2025, 3, 1, tzinfo=UTC),
        )

        charges = await invoice_service.calculate_monthly_charges("org-1", "2025-02")
        assert charges.overage_charges == 0

    @pytest.mark.asyncio
    async def test_unknown_plan(
        self,
        invoice_service: InvoiceService,
        add_subscription: Callable[..., Awaitable[Any]],
    ) -> None:
        await add_subscription("org-1", "enterprise")
        with pytest.raises(UnknownPlanError):
            await invoice_service.calculate_monthly_charges("org-1", "2025-02")

    @pytest.mark.asyncio
    async def test_invalid_period(self, invoice_service: InvoiceService) -> None:
        with pytest.raises(InvalidBillingPeriodError):
            await invoice_service.calculate_monthly_charges("org-1", "Feb 2025")


class TestGenerateInvoice:
    """Tests for invoice generation."""

    @pytest.mark.asyncio
    async def test_generates_draft(
        self,
        invoice_service: InvoiceService,
        usage_store: UsageStore,
        add_subscription: Callable[..., Awaitable[Any]],
    ) -> None:
        await add_subscription("org-1", "whatsapp-assistant")
        await record_usage(usage_store, "org-1", UsageType.WHATSAPP_MESSAGE_SENT, 5_080)

        invoice = await invoice_service.generate_invoice("org-1", "2025-02")

        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.subtotal == 50_700
        assert invoice.tax == 7_605
        assert invoice.total == 58_305
        assert invoice.currency == "ZAR"
        assert invoice.due_date == datetime(2025, 3, 7, 23, 59, 59, 999999, tzinfo=UTC)

        stored = await invoice_service.get_invoice(invoice.id)
        assert stored == invoice

    @pytest.mark.asyncio
    async def test_second_generation_rejected(
        self,
        invoice_service: InvoiceService,
        add_subscription: Callable[..., Awaitable[Any]],
    ) -> None:
        await add_subscription("org-1", "ai-assistant")
        await invoice_service.generate_invoice("org-1", "2025-02")

        with pytest.raises(DuplicateInvoiceError) as exc_info:
            await invoice_service.generate_invoice("org-1", "2025-02")
        assert exc_info.value.billing_period == "2025-02"

    @pytest.mark.asyncio
    async def test_regenerate_after_cancel(
        self,
        invoice_service: InvoiceService,
        add_subscription: Callable[..., Awaitable[Any]],
    ) -> None:
        await add_subscription("org-1", "ai-assistant")
        first = await invoice_service.generate_invoice("org-1", "2025-02")
        await invoice_service.update_invoice(first.id, status=InvoiceStatus.CANCELLED)

        second = await invoice_service.generate_invoice("org-1", "2025-02")
        assert second.id != first.id
        active = await invoice_service.find_active_invoice("org-1", "2025-02")
        assert active is not None
        assert active.id == second.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seats", [1, 2, 3, 7, 13])
    async def test_total_is_subtotal_plus_tax(
        self,
        invoice_service: InvoiceService,
        usage_store: UsageStore,
        add_subscription: Callable[..., Awaitable[Any]],
        seats: int,
    ) -> None:
        await add_subscription("org-1", "receipt-assistant", seat_count=seats)
        await record_usage(usage_store, "org-1", UsageType.AI_TOKEN, 500_000 + seats * 37)

        invoice = await invoice_service.generate_invoice("org-1", "2025-02")

        assert invoice.total == invoice.subtotal + invoice.tax
        assert invoice.subtotal == sum(item.total for item in invoice.line_items)

    def test_invoice_model_rejects_wrong_total(self) -> None:
        with pytest.raises(ValueError, match="subtotal \\+ tax"):
            Invoice(
                organization_id="org-1",
                billing_period="2025-02",
                subtotal=100,
                tax=15,
                total=100,
                due_date=datetime(2025, 3, 7, tzinfo=UTC),
            )


class TestInvoiceQueries:
    """Tests for invoice lookups and statistics."""

    @pytest.mark.asyncio
    async def test_get_missing_invoice(self, invoice_service: InvoiceService) -> None:
        with pytest.raises(InvoiceNotFoundError):
            await invoice_service.get_invoice("missing")

    @pytest.mark.asyncio
    async def test_update_missing_invoice(self, invoice_service: InvoiceService) -> None:
        with pytest.raises(InvoiceNotFoundError):
            await invoice_service.update_invoice("missing", status=InvoiceStatus.PAID)

    @pytest.mark.asyncio
    async def test_update_sets_updated_at(
        self,
        invoice_service: InvoiceService,
        add_subscription: Callable[..., Awaitable[Any]],
        clock: FakeClock,
    ) -> None:
        await add_subscription("org-1", "ai-assistant")
        invoice = await invoice_service.generate_invoice("org-1", "2025-02")

        clock.advance(hours=1)
        updated = await invoice_service.update_invoice(invoice.id, pdf_url="https://x/1.pdf")
        assert updated.pdf_url == "https://x/1.pdf"
        assert updated.updated_at == invoice.created_at + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_list_newest_first(
        self,
        invoice_service: InvoiceService,
        add_subscription: Callable[..., Awaitable[Any]],
        clock: FakeClock,
    ) -> None:
        await add_subscription("org-1", "ai-assistant")
        january = await invoice_service.generate_invoice("org-1", "2025-01")
        clock.advance(days=1)
        february = await invoice_service.generate_invoice("org-1", "2025-02")

        invoices = await invoice_service.list_organization_invoices("org-1")
        assert [i.id for i in invoices] == [february.id, january.id]
        assert len(await invoice_service.list_organization_invoices("org-1", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_pending_and_overdue_candidates(
        self,
        invoice_service: InvoiceService,
        add_subscription: Callable[..., Awaitable[Any]],
    ) -> None:
        await add_subscription("org-1", "ai-assistant")
        january = await invoice_service.generate_invoice("org-1", "2025-01")
        february = await invoice_service.generate_invoice("org-1", "2025-02")
        for invoice in (january, february):
            await invoice_service.update_invoice(invoice.id, status=InvoiceStatus.PENDING)

        pending = await invoice_service.pending_invoices()
        assert [i.id for i in pending] == [january.id, february.id]

        # January is due 7 Feb, February on 7 Mar
        candidates = await invoice_service.overdue_candidates(datetime(2025, 3, 1, tzinfo=UTC))
        assert [i.id for i in candidates] == [january.id]

    @pytest.mark.asyncio
    async def test_invoice_stats(
        self,
        invoice_service: InvoiceService,
        add_subscription: Callable[..., Awaitable[Any]],
    ) -> None:
        await add_subscription("org-1", "ai-assistant")
        paid = await invoice_service.generate_invoice("org-1", "2024-12")
        late = await invoice_service.generate_invoice("org-1", "2025-01")
        current = await invoice_service.generate_invoice("org-1", "2025-02")
        await invoice_service.update_invoice(paid.id, status=InvoiceStatus.PAID)
        await invoice_service.update_invoice(late.id, status=InvoiceStatus.OVERDUE)
        await invoice_service.update_invoice(current.id, status=InvoiceStatus.PENDING)

        stats = await invoice_service.invoice_stats("org-1", datetime(2025, 3, 1, tzinfo=UTC))

        assert stats.invoice_count == 3
        assert stats.total_paid == 57_385
        assert stats.total_pending == 57_385
        assert stats.total_overdue == 57_385
