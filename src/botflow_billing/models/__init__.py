"""Pydantic models for usage, invoices and jobs."""

from botflow_billing.models.billing import (
    ChargeBreakdown,
    DailyUsage,
    Invoice,
    InvoiceLineItem,
    InvoiceStats,
    InvoiceStatus,
    Organization,
    OverageResult,
    ServiceType,
    ServiceUsage,
    Subscription,
    SubscriptionStatus,
    UsageBreakdown,
    UsageLimitStatus,
    UsageRecord,
    UsageRecordCreate,
    UsageSummary,
    UsageType,
    service_for,
)
from botflow_billing.models.jobs import JobResult, TrialExpiryNotice, UsageAggregate, WebhookEvent

__all__ = [
    "ChargeBreakdown",
    "DailyUsage",
    "Invoice",
    "InvoiceLineItem",
    "InvoiceStats",
    "InvoiceStatus",
    "JobResult",
    "Organization",
    "OverageResult",
    "ServiceType",
    "ServiceUsage",
    "Subscription",
    "SubscriptionStatus",
    "TrialExpiryNotice",
    "UsageAggregate",
    "UsageBreakdown",
    "UsageLimitStatus",
    "UsageRecord",
    "UsageRecordCreate",
    "UsageSummary",
    "UsageType",
    "WebhookEvent",
    "service_for",
]
