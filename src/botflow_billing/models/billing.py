"""Billing models shared across the billing engine."""

from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_core import to_jsonable_python


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def new_id() -> str:
    """Generate a new record identifier."""
    return uuid4().hex


UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]


class UsageType(str, Enum):
    """Types of billable usage."""

    AI_CONVERSATION = "ai_conversation"
    AI_MESSAGE = "ai_message"
    AI_TOKEN = "ai_token"
    WHATSAPP_MESSAGE_SENT = "whatsapp_message_sent"
    WHATSAPP_MESSAGE_RECEIVED = "whatsapp_message_received"
    RECEIPT_PROCESSED = "receipt_processed"
    RECEIPT_EXPORT = "receipt_export"


class ServiceType(str, Enum):
    """Independently metered services."""

    AI_ASSISTANT = "ai-assistant"
    WHATSAPP_ASSISTANT = "whatsapp-assistant"
    RECEIPT_ASSISTANT = "receipt-assistant"


def service_for(usage_type: UsageType) -> ServiceType:
    """Get the service a usage type is billed under."""
    if usage_type.value.startswith("whatsapp_"):
        return ServiceType.WHATSAPP_ASSISTANT
    if usage_type.value.startswith("receipt_"):
        return ServiceType.RECEIPT_ASSISTANT
    return ServiceType.AI_ASSISTANT


class SubscriptionStatus(str, Enum):
    """Subscription status."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    PAUSED = "paused"
    INCOMPLETE = "incomplete"


class InvoiceStatus(str, Enum):
    """Invoice status.

    ``cancelled`` is the void state: a cancelled invoice does not count
    towards the one-invoice-per-period rule.
    """

    DRAFT = "draft"
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


# Usage


class UsageRecordCreate(BaseModel):
    """A usage event as tracked by a metered feature."""

    id: str = Field(default_factory=new_id)
    organization_id: str
    user_id: str | None = None
    usage_type: UsageType
    quantity: int = Field(ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    occurred_at: UTCDateTime = Field(default_factory=utcnow)

    @field_validator("metadata")
    @classmethod
    def json_safe_metadata(cls, v: dict[str, Any]) -> dict[str, Any]:
        """Store metadata as JSON values; unserializable values are rejected here."""
        return to_jsonable_python(v)


class UsageRecord(BaseModel):
    """A persisted, priced usage fact. Never mutated once written."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    organization_id: str
    user_id: str | None = None
    usage_type: UsageType
    quantity: int = Field(ge=0)
    unit_price: Decimal  # Minor currency units per unit
    total_amount: int  # Minor currency units
    metadata: dict[str, Any] = Field(default_factory=dict)
    billing_period: str
    created_at: UTCDateTime

    def to_record(self) -> dict[str, Any]:
        """Serialize for the record store."""
        data = self.model_dump(exclude={"metadata"})
        data["metadata"] = to_jsonable_python(self.metadata)
        return data


class UsageBreakdown(BaseModel):
    """Usage of one type within a period."""

    usage_type: UsageType
    quantity: int
    unit_price: Decimal
    total: int
    description: str


class ServiceUsage(BaseModel):
    """Usage grouped under one service."""

    service: ServiceType
    usage: list[UsageBreakdown] = Field(default_factory=list)
    subtotal: int = 0


class UsageSummary(BaseModel):
    """Usage summary for an organization and period."""

    organization_id: str
    billing_period: str
    services: list[ServiceUsage] = Field(default_factory=list)
    total_amount: int = 0
    currency: str = "ZAR"


class UsageLimitStatus(BaseModel):
    """Allowance check for one usage type."""

    exceeded: bool
    used: int
    limit: int  # -1 means unlimited
    overage: int


class DailyUsage(BaseModel):
    """Per-type totals for a single day."""

    organization_id: str
    day: date
    usage: dict[UsageType, int] = Field(default_factory=dict)


# Subscriptions


class Subscription(BaseModel):
    """An organization's subscription, as supplied by the subscription provider."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    plan_id: str
    status: SubscriptionStatus
    seat_count: int = Field(default=1, ge=1)
    current_period_start: UTCDateTime | None = None
    current_period_end: UTCDateTime | None = None
    trial_end: UTCDateTime | None = None


class Organization(BaseModel):
    """Billing contact details for an organization."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    owner_email: str
    processor_customer_code: str | None = None


# Invoices


class InvoiceLineItem(BaseModel):
    """One priced entry on an invoice."""

    description: str
    quantity: int
    unit_price: Decimal
    total: int
    service: ServiceType | None = None
    usage_type: UsageType | None = None  # None for the base plan line


class Invoice(BaseModel):
    """Invoice for one organization and billing period."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    organization_id: str
    billing_period: str
    subtotal: int
    tax: int
    total: int
    currency: str = "ZAR"
    status: InvoiceStatus = InvoiceStatus.DRAFT
    due_date: UTCDateTime
    paid_at: UTCDateTime | None = None
    external_id: str | None = None
    pdf_url: str | None = None
    line_items: list[InvoiceLineItem] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_total(self) -> "Invoice":
        if self.total != self.subtotal + self.tax:
            raise ValueError("total must equal subtotal + tax")
        return self

    def is_past_due(self, now: datetime) -> bool:
        return self.due_date < now

    def to_record(self) -> dict[str, Any]:
        """Serialize for the record store (line items as JSON-safe dicts)."""
        data = self.model_dump(exclude={"line_items"})
        data["line_items"] = [item.model_dump(mode="json") for item in self.line_items]
        return data


class ChargeBreakdown(BaseModel):
    """Monthly charges before tax."""

    organization_id: str
    billing_period: str
    base_plan: int = 0
    overage_charges: int = 0
    line_items: list[InvoiceLineItem] = Field(default_factory=list)

    @property
    def subtotal(self) -> int:
        return self.base_plan + self.overage_charges


class OverageResult(BaseModel):
    """Output of the overage calculator."""

    charges: dict[UsageType, int] = Field(default_factory=dict)
    quantities: dict[UsageType, int] = Field(default_factory=dict)
    total: int = 0


class InvoiceStats(BaseModel):
    """Invoice totals for an organization."""

    total_paid: int = 0
    total_pending: int = 0
    total_overdue: int = 0
    invoice_count: int = 0
