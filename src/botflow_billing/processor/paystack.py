"""Paystack payment request client."""

import hashlib
import hmac
import json
from datetime import datetime
from http import HTTPStatus
from typing import Any

import httpx
import structlog

from botflow_billing.config import BillingSettings
from botflow_billing.exceptions import (
    PaymentProcessorError,
    ProcessorConnectionError,
    ProcessorHTTPError,
    WebhookSignatureError,
)
from botflow_billing.models.billing import Organization
from botflow_billing.models.jobs import WebhookEvent
from botflow_billing.processor.base import (
    ProcessorCustomer,
    ProcessorInvoice,
    ProcessorInvoiceStatus,
    ProcessorLineItem,
)

logger = structlog.get_logger()

# Paystack event names mapped onto the engine's processor-neutral names
WEBHOOK_EVENT_NAMES = {
    "paymentrequest.success": "invoice.paid",
    "paymentrequest.pending": "invoice.pending",
}


def parse_webhook(payload: dict[str, Any]) -> WebhookEvent:
    """Normalize a Paystack webhook payload into a WebhookEvent."""
    event = str(payload.get("event", ""))
    data = payload.get("data")
    if not isinstance(data, dict):
        data = {}
    metadata = data.get("metadata") or {}
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except json.JSONDecodeError:
            metadata = {}
    if not isinstance(metadata, dict):
        metadata = {}

    return WebhookEvent(
        event=WEBHOOK_EVENT_NAMES.get(event, event),
        external_invoice_id=data.get("request_code") or data.get("external_invoice_id"),
        metadata=metadata,
        data=data,
    )


class PaystackClient:
    """Async client for the Paystack customer and payment request APIs."""

    def __init__(
        self,
        secret_key: str,
        api_url: str = "https://api.paystack.co",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.secret_key = secret_key
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls, settings: BillingSettings) -> "PaystackClient":
        return cls(
            secret_key=settings.paystack_secret_key,
            api_url=settings.paystack_api_url,
            timeout=settings.paystack_timeout,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Content-Type": "application/json",
                },
                timeout=httpx.Timeout(self.timeout, connect=10.0),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Call Paystack and return the ``data`` payload.

        Raises:
            ProcessorConnectionError: If Paystack cannot be reached
            ProcessorHTTPError: If Paystack returns an error or status=false
        """
        client = self._get_client()
        try:
            response = await client.request(method, endpoint, json=body)
        except httpx.RequestError as e:
            logger.warning("Paystack request failed", endpoint=endpoint, error=str(e))
            raise ProcessorConnectionError(str(e)) from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.status_code >= HTTPStatus.BAD_REQUEST:
            detail = payload.get("message") or f"Paystack API error: {response.status_code}"
            logger.warning(
                "Paystack returned an error",
                endpoint=endpoint,
                status_code=response.status_code,
                detail=detail,
            )
            raise ProcessorHTTPError(response.status_code, detail)

        if not payload.get("status"):
            raise ProcessorHTTPError(
                response.status_code, payload.get("message") or "Paystack request unsuccessful"
            )
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    async def get_or_create_customer(self, organization: Organization) -> ProcessorCustomer:
        """Fetch the organization's Paystack customer, creating it if needed."""
        if organization.processor_customer_code:
            try:
                data = await self._request(
                    "GET", f"/customer/{organization.processor_customer_code}"
                )
                return ProcessorCustomer(
                    customer_code=data["customer_code"],
                    email=data.get("email", organization.owner_email),
                    id=str(data["id"]) if data.get("id") is not None else None,
                )
            except ProcessorHTTPError as e:
                if e.status_code != HTTPStatus.NOT_FOUND:
                    raise
                logger.warning(
                    "Stored Paystack customer not found, creating a new one",
                    organization_id=organization.id,
                    customer_code=organization.processor_customer_code,
                )

        data = await self._request(
            "POST",
            "/customer",
            {
                "email": organization.owner_email,
                "first_name": organization.name,
                "metadata": {"organization_id": organization.id},
            },
        )
        logger.info(
            "Created Paystack customer",
            organization_id=organization.id,
            customer_code=data.get("customer_code"),
        )
        return ProcessorCustomer(
            customer_code=data["customer_code"],
            email=data.get("email", organization.owner_email),
            id=str(data["id"]) if data.get("id") is not None else None,
        )

    async def create_invoice(
        self,
        customer: ProcessorCustomer,
        amount: int,
        due_date: datetime,
        line_items: list[ProcessorLineItem],
        metadata: dict[str, Any],
        description: str,
        currency: str,
    ) -> ProcessorInvoice:
        """Create a payment request for an invoice."""
        data = await self._request(
            "POST",
            "/paymentrequest",
            {
                "customer": customer.customer_code,
                "amount": amount,
                "due_date": due_date.date().isoformat(),
                "description": description,
                "line_items": [
                    {"name": item.name, "amount": item.amount, "quantity": item.quantity}
                    for item in line_items
                ],
                "currency": currency,
                "metadata": metadata,
            },
        )
        request_code = data.get("request_code")
        if not request_code:
            raise PaymentProcessorError("Paystack response is missing request_code")
        return ProcessorInvoice(external_id=request_code, pdf_url=data.get("pdf_url"), raw=data)

    async def get_invoice_status(self, external_id: str) -> ProcessorInvoiceStatus:
        data = await self._request("GET", f"/paymentrequest/{external_id}")
        return ProcessorInvoiceStatus(
            paid=bool(data.get("paid")),
            status=data.get("status"),
            pdf_url=data.get("pdf_url"),
        )

    async def send_invoice_notification(self, external_id: str) -> None:
        await self._request("POST", f"/paymentrequest/notify/{external_id}")

    async def void_invoice(self, external_id: str) -> None:
        await self._request("POST", f"/paymentrequest/archive/{external_id}")

    def verify_webhook_signature(self, body: bytes, signature: str | None) -> None:
        """Check the x-paystack-signature header (HMAC-SHA512 of the raw body).

        Raises:
            WebhookSignatureError: If the signature is missing or wrong
        """
        if not signature:
            raise WebhookSignatureError
        expected = hmac.new(self.secret_key.encode(), body, hashlib.sha512).hexdigest()
        if not hmac.compare_digest(expected, signature):
            raise WebhookSignatureError

    def parse_webhook(self, body: bytes, signature: str | None) -> WebhookEvent:
        """Verify and parse a raw webhook request body.

        Raises:
            WebhookSignatureError: If the signature is missing or wrong
            PaymentProcessorError: If the body is not a JSON object
        """
        self.verify_webhook_signature(body, signature)
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise PaymentProcessorError("Invalid webhook payload", status_code=400) from e
        if not isinstance(payload, dict):
            raise PaymentProcessorError("Invalid webhook payload", status_code=400)
        return parse_webhook(payload)
