"""Models for billing job results and processor events."""

from datetime import date
from typing import Any

from pydantic import BaseModel, Field, computed_field

from botflow_billing.models.billing import UTCDateTime


class JobResult(BaseModel):
    """Outcome of a billing job run.

    Jobs never raise for per-organization failures; they collect them here
    so an operator can see exactly which organizations need attention.
    """

    processed_count: int = 0
    skipped_count: int = 0
    errors: list[str] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success(self) -> bool:
        return not self.errors

    def add_error(self, message: str) -> None:
        self.errors.append(message)


class WebhookEvent(BaseModel):
    """Inbound payment processor notification."""

    event: str
    external_invoice_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    data: dict[str, Any] = Field(default_factory=dict)


class TrialExpiryNotice(BaseModel):
    """A trialing subscription crossing a reminder threshold."""

    organization_id: str
    subscription_id: str
    trial_end: UTCDateTime
    days_remaining: int


class UsageAggregate(BaseModel):
    """Stored daily usage totals for reporting."""

    organization_id: str
    day: date
    usage: dict[str, int] = Field(default_factory=dict)
    created_at: UTCDateTime
