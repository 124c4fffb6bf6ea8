"""Custom exception classes for the billing engine."""


class BillingError(Exception):
    """Base class for all billing errors."""


# Configuration errors


class ConfigurationError(BillingError, ValueError):
    """Raised when pricing, plan or settings configuration is invalid."""


class UnknownPlanError(ConfigurationError):
    """Raised when a subscription references a plan with no pricing."""

    def __init__(self, plan_id: str) -> None:
        self.plan_id = plan_id
        super().__init__(f"Unknown plan '{plan_id}': no pricing configured")


class MissingPricingError(ConfigurationError):
    """Raised when a usage type has no pricing entry."""

    def __init__(self, usage_type: str) -> None:
        self.usage_type = usage_type
        super().__init__(f"No pricing entry for usage type '{usage_type}'")


class MissingSecretKeyError(ConfigurationError):
    """Raised when the payment processor secret is missing in production."""

    def __init__(self) -> None:
        super().__init__(
            "BILLING_PAYSTACK_SECRET_KEY must be set in production. "
            "Set the environment variable to the Paystack secret key.",
        )


class InvalidBillingPeriodError(BillingError, ValueError):
    """Raised when a billing period key is not a valid YYYY-MM string."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Invalid billing period '{key}'. Expected format YYYY-MM")


class UnknownJobError(BillingError, ValueError):
    """Raised when a job name is not registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown billing job '{name}'")


# Store errors


class StoreError(BillingError):
    """Base class for persistent store failures."""


class DuplicateRecordError(StoreError):
    """Raised when an insert violates a uniqueness constraint."""

    def __init__(self, table: str, key: dict[str, object]) -> None:
        self.table = table
        self.key = key
        super().__init__(f"Duplicate record in '{table}' for {key}")


# Invoice errors


class InvoiceError(BillingError):
    """Base class for invoice errors."""


class InvoiceNotFoundError(InvoiceError):
    """Raised when an invoice does not exist."""

    def __init__(self, invoice_id: str) -> None:
        self.invoice_id = invoice_id
        super().__init__(f"Invoice '{invoice_id}' not found")


class DuplicateInvoiceError(InvoiceError):
    """Raised when a non-void invoice already exists for an organization and period."""

    def __init__(self, organization_id: str, billing_period: str) -> None:
        self.organization_id = organization_id
        self.billing_period = billing_period
        super().__init__(
            f"Invoice already exists for organization {organization_id} "
            f"in period {billing_period}"
        )


class InvalidStatusTransitionError(InvoiceError):
    """Raised when an invoice status change is not allowed."""

    def __init__(self, invoice_id: str, current: str, target: str) -> None:
        self.invoice_id = invoice_id
        self.current = current
        self.target = target
        super().__init__(f"Invoice {invoice_id} cannot move from '{current}' to '{target}'")


# Payment processor errors


class PaymentProcessorError(BillingError):
    """Base exception for payment processor call failures."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ProcessorConnectionError(PaymentProcessorError):
    """Raised when the payment processor cannot be reached."""

    def __init__(self, original_error: str) -> None:
        self.original_error = original_error
        super().__init__(f"Failed to connect to payment processor: {original_error}")


class ProcessorHTTPError(PaymentProcessorError):
    """Raised when the payment processor returns an error response."""

    def __init__(self, status_code: int, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Payment processor error: {detail}", status_code=status_code)


class CustomerNotFoundError(PaymentProcessorError):
    """Raised when no processor customer can be resolved for an organization."""

    def __init__(self, organization_id: str) -> None:
        self.organization_id = organization_id
        super().__init__(f"No billing customer for organization {organization_id}")


class WebhookSignatureError(PaymentProcessorError):
    """Raised when a webhook payload signature does not verify."""

    def __init__(self) -> None:
        super().__init__("Invalid webhook signature", status_code=401)
