"""Payment processor integration."""

from botflow_billing.processor.base import (
    PaymentProcessor,
    ProcessorCustomer,
    ProcessorInvoice,
    ProcessorInvoiceStatus,
    ProcessorLineItem,
)
from botflow_billing.processor.paystack import PaystackClient, parse_webhook

__all__ = [
    "PaymentProcessor",
    "PaystackClient",
    "ProcessorCustomer",
    "ProcessorInvoice",
    "ProcessorInvoiceStatus",
    "ProcessorLineItem",
    "parse_webhook",
]
