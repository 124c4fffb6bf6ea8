"""Payment processor interface."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from botflow_billing.models.billing import Organization


@dataclass
class ProcessorCustomer:
    """A customer record at the payment processor."""

    customer_code: str
    email: str
    id: str | None = None


@dataclass
class ProcessorLineItem:
    """Line item as sent to the processor."""

    name: str
    amount: int  # Minor units
    quantity: int = 1


@dataclass
class ProcessorInvoice:
    """Result of creating an invoice at the processor."""

    external_id: str
    pdf_url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProcessorInvoiceStatus:
    """Settlement state of a processor invoice."""

    paid: bool
    status: str | None = None
    pdf_url: str | None = None


class PaymentProcessor(Protocol):
    """External system of record for collecting payment."""

    async def get_or_create_customer(self, organization: Organization) -> ProcessorCustomer: ...

    async def create_invoice(
        self,
        customer: ProcessorCustomer,
        amount: int,
        due_date: datetime,
        line_items: list[ProcessorLineItem],
        metadata: dict[str, Any],
        description: str,
        currency: str,
    ) -> ProcessorInvoice: ...

    async def get_invoice_status(self, external_id: str) -> ProcessorInvoiceStatus: ...

    async def send_invoice_notification(self, external_id: str) -> None: ...

    async def void_invoice(self, external_id: str) -> None: ...
