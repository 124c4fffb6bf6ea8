"""Invoice lifecycle: status transitions and payment processor reconciliation.

    draft ──> pending ──> paid
      │          │    └─> overdue ──> paid
      │          └──────────┴──────> cancelled
      ├─> paid (zero total)
      └─> cancelled

``paid`` and ``cancelled`` are terminal.
"""

from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from botflow_billing.config import BillingSettings
from botflow_billing.exceptions import (
    CustomerNotFoundError,
    InvalidStatusTransitionError,
    InvoiceNotFoundError,
    PaymentProcessorError,
)
from botflow_billing.invoices import InvoiceService
from botflow_billing.models.billing import Invoice, InvoiceStatus
from botflow_billing.models.jobs import WebhookEvent
from botflow_billing.processor.base import PaymentProcessor, ProcessorLineItem
from botflow_billing.subscriptions import OrganizationDirectory

logger = structlog.get_logger()

ALLOWED_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset(
        {InvoiceStatus.PENDING, InvoiceStatus.PAID, InvoiceStatus.CANCELLED}
    ),
    InvoiceStatus.PENDING: frozenset(
        {InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED}
    ),
    InvoiceStatus.OVERDUE: frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.CANCELLED: frozenset(),
}

PAID_EVENTS = frozenset({"invoice.paid", "paymentrequest.success"})
PENDING_EVENTS = frozenset({"invoice.pending", "paymentrequest.pending"})


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class InvoiceLifecycleManager:
    """Moves invoices through their statuses and keeps the processor in step."""

    def __init__(
        self,
        invoices: InvoiceService,
        processor: PaymentProcessor,
        organizations: OrganizationDirectory,
        settings: BillingSettings,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._invoices = invoices
        self._processor = processor
        self._organizations = organizations
        self._settings = settings
        self._clock = clock or (lambda: datetime.now(UTC))

    async def transition(self, invoice: Invoice, target: InvoiceStatus, **patch: object) -> Invoice:
        """Move an invoice to ``target``, applying any extra fields.

        Moving to the current status is a no-op.

        Raises:
            InvalidStatusTransitionError: If the move is not allowed
        """
        if invoice.status == target:
            return invoice
        if not can_transition(invoice.status, target):
            raise InvalidStatusTransitionError(invoice.id, invoice.status.value, target.value)

        if target == InvoiceStatus.PAID:
            patch.setdefault("paid_at", self._clock())

        updated = await self._invoices.update_invoice(invoice.id, status=target, **patch)
        logger.info(
            "Invoice status changed",
            invoice_id=invoice.id,
            organization_id=invoice.organization_id,
            from_status=invoice.status.value,
            to_status=target.value,
        )
        return updated

    def _line_items(self, invoice: Invoice) -> list[ProcessorLineItem]:
        items = [
            ProcessorLineItem(name=item.description, amount=item.total)
            for item in invoice.line_items
            if item.total > 0
        ]
        if invoice.tax > 0:
            items.append(
                ProcessorLineItem(name=self._settings.tax_percent_label, amount=invoice.tax)
            )
        return items

    async def submit(self, invoice: Invoice) -> Invoice:
        """Hand a draft invoice to the payment processor.

        Zero-total invoices are settled immediately without a processor call.

        Raises:
            CustomerNotFoundError: If the organization has no billing contact
            PaymentProcessorError: If creating the processor invoice fails
        """
        if invoice.total == 0:
            logger.info("Zero-total invoice marked paid", invoice_id=invoice.id)
            return await self.transition(invoice, InvoiceStatus.PAID)

        organization = await self._organizations.get(invoice.organization_id)
        if organization is None:
            raise CustomerNotFoundError(invoice.organization_id)

        customer = await self._processor.get_or_create_customer(organization)
        if customer.customer_code != organization.processor_customer_code:
            await self._organizations.set_customer_code(organization.id, customer.customer_code)

        created = await self._processor.create_invoice(
            customer=customer,
            amount=invoice.total,
            due_date=invoice.due_date,
            line_items=self._line_items(invoice),
            metadata={
                "invoice_id": invoice.id,
                "organization_id": invoice.organization_id,
                "billing_period": invoice.billing_period,
            },
            description=f"{self._settings.invoice_description} for {invoice.billing_period}",
            currency=invoice.currency,
        )

        invoice = await self.transition(
            invoice,
            InvoiceStatus.PENDING,
            external_id=created.external_id,
            pdf_url=created.pdf_url,
        )

        try:
            await self._processor.send_invoice_notification(created.external_id)
        except PaymentProcessorError as e:
            logger.warning(
                "Failed to send invoice notification",
                invoice_id=invoice.id,
                external_id=created.external_id,
                error=str(e),
            )

        return invoice

    async def sync(self, invoice: Invoice) -> bool:
        """Poll the processor and mark the invoice paid once settled.

        Returns:
            True if the invoice moved to paid
        """
        if invoice.external_id is None or invoice.status not in (
            InvoiceStatus.PENDING,
            InvoiceStatus.OVERDUE,
        ):
            return False

        status = await self._processor.get_invoice_status(invoice.external_id)
        if not status.paid:
            return False

        patch = {"pdf_url": status.pdf_url} if status.pdf_url else {}
        await self.transition(invoice, InvoiceStatus.PAID, **patch)
        return True

    async def mark_overdue(self, invoice: Invoice) -> Invoice:
        """Move a past-due invoice to overdue and remind the customer.

        A failed reminder is logged; the status change stands.
        """
        invoice = await self.transition(invoice, InvoiceStatus.OVERDUE)
        if invoice.external_id:
            try:
                await self._processor.send_invoice_notification(invoice.external_id)
            except PaymentProcessorError as e:
                logger.warning(
                    "Failed to send overdue reminder", invoice_id=invoice.id, error=str(e)
                )
        return invoice

    async def _locate(self, event: WebhookEvent) -> Invoice | None:
        invoice_id = event.metadata.get("invoice_id")
        if invoice_id:
            try:
                return await self._invoices.get_invoice(str(invoice_id))
            except InvoiceNotFoundError:
                logger.warning("Webhook references unknown invoice id", invoice_id=invoice_id)
        if event.external_invoice_id:
            return await self._invoices.find_by_external_id(event.external_invoice_id)
        return None

    async def handle_webhook(self, event: WebhookEvent) -> bool:
        """Apply a processor notification.

        Returns:
            True if an invoice changed status
        """
        if event.event not in PAID_EVENTS and event.event not in PENDING_EVENTS:
            logger.debug("Ignoring webhook event", webhook_event=event.event)
            return False

        invoice = await self._locate(event)
        if invoice is None:
            logger.warning(
                "Webhook for unknown invoice",
                webhook_event=event.event,
                external_id=event.external_invoice_id,
            )
            return False

        if event.event in PAID_EVENTS:
            if not can_transition(invoice.status, InvoiceStatus.PAID):
                return False
            await self.transition(invoice, InvoiceStatus.PAID)
            return True

        if invoice.status != InvoiceStatus.DRAFT:
            return False
        patch = {"external_id": event.external_invoice_id} if event.external_invoice_id else {}
        await self.transition(invoice, InvoiceStatus.PENDING, **patch)
        return True

    async def cancel(self, invoice: Invoice, reason: str | None = None) -> Invoice:
        """Void an invoice and archive it at the processor.

        Raises:
            InvalidStatusTransitionError: If the invoice is paid
        """
        if invoice.status == InvoiceStatus.CANCELLED:
            return invoice
        if not can_transition(invoice.status, InvoiceStatus.CANCELLED):
            raise InvalidStatusTransitionError(
                invoice.id, invoice.status.value, InvoiceStatus.CANCELLED.value
            )

        if invoice.external_id:
            await self._processor.void_invoice(invoice.external_id)

        metadata = {**invoice.metadata, "cancel_reason": reason} if reason else invoice.metadata
        return await self.transition(invoice, InvoiceStatus.CANCELLED, metadata=metadata)

    async def pdf_url(self, invoice: Invoice) -> str | None:
        """The invoice PDF url, fetched from the processor when not cached."""
        if invoice.pdf_url or not invoice.external_id:
            return invoice.pdf_url
        status = await self._processor.get_invoice_status(invoice.external_id)
        if status.pdf_url:
            await self._invoices.update_invoice(invoice.id, pdf_url=status.pdf_url)
        return status.pdf_url
