"""Pytest configuration for billing engine tests."""

import itertools
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from botflow_billing.config import BillingSettings
from botflow_billing.exceptions import StoreError
from botflow_billing.invoices import InvoiceService
from botflow_billing.jobs import BillingJobs
from botflow_billing.lifecycle import InvoiceLifecycleManager
from botflow_billing.metering import FlushPolicy, UsageBuffer
from botflow_billing.models.billing import Organization, Subscription, SubscriptionStatus
from botflow_billing.pricing import PricingTable
from botflow_billing.processor.base import (
    ProcessorCustomer,
    ProcessorInvoice,
    ProcessorInvoiceStatus,
)
from botflow_billing.store.base import Filters, Record, Tables
from botflow_billing.store.memory import InMemoryRecordStore
from botflow_billing.subscriptions import OrganizationDirectory, StoreSubscriptionProvider
from botflow_billing.usage import UsageStore

# Mid-March 2025; the most recently closed period is 2025-02
NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)


class FakeClock:
    """Settable wall clock."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Settable monotonic clock for flush timing."""

    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class FlakyRecordStore:
    """Wraps a record store and fails selected writes.

    ``fail_next(n)`` makes the next ``n`` batch inserts raise. With
    ``after_write=True`` the rows are written before the error, like a
    store that committed but lost the acknowledgement.
    """

    def __init__(self, inner: InMemoryRecordStore) -> None:
        self.inner = inner
        self.failures_left = 0
        self.after_write = False
        self.batch_calls = 0

    def fail_next(self, count: int = 1, after_write: bool = False) -> None:
        self.failures_left = count
        self.after_write = after_write

    async def insert(self, table: str, record: Record) -> Record:
        return (await self.insert_batch(table, [record]))[0]

    async def insert_batch(self, table: str, records: Sequence[Record]) -> list[Record]:
        self.batch_calls += 1
        if self.failures_left > 0:
            self.failures_left -= 1
            if self.after_write:
                await self.inner.insert_batch(table, records)
            raise StoreError("store unavailable")
        return await self.inner.insert_batch(table, records)

    async def query(
        self,
        table: str,
        filters: Filters | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Record]:
        return await self.inner.query(table, filters, order_by, descending, limit)

    async def update(self, table: str, filters: Filters, patch: Mapping[str, Any]) -> int:
        return await self.inner.update(table, filters, patch)

    async def delete(self, table: str, filters: Filters) -> int:
        return await self.inner.delete(table, filters)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def settings() -> BillingSettings:
    """Test settings, isolated from any .env file."""
    return BillingSettings(
        _env_file=None,
        environment="test",
        paystack_secret_key="sk_test_secret",
    )


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def pricing() -> PricingTable:
    return PricingTable()


@pytest.fixture
def usage_store(store: InMemoryRecordStore, pricing: PricingTable, clock: FakeClock) -> UsageStore:
    return UsageStore(store, pricing, clock=clock)


@pytest.fixture
def buffer(usage_store: UsageStore, clock: FakeClock, monotonic: FakeMonotonic) -> UsageBuffer:
    return UsageBuffer(
        usage_store,
        FlushPolicy(max_size=100, flush_interval=5.0),
        clock=clock,
        monotonic=monotonic,
    )


@pytest.fixture
def subscriptions(store: InMemoryRecordStore) -> StoreSubscriptionProvider:
    return StoreSubscriptionProvider(store)


@pytest.fixture
def organizations(store: InMemoryRecordStore) -> OrganizationDirectory:
    return OrganizationDirectory(store)


@pytest.fixture
def invoice_service(
    store: InMemoryRecordStore,
    usage_store: UsageStore,
    subscriptions: StoreSubscriptionProvider,
    pricing: PricingTable,
    settings: BillingSettings,
    clock: FakeClock,
) -> InvoiceService:
    return InvoiceService(store, usage_store, subscriptions, pricing, settings, clock=clock)


@pytest.fixture
def processor() -> MagicMock:
    """Payment processor double issuing PRQ_1, PRQ_2, ... request codes."""
    counter = itertools.count(1)

    async def create_invoice(**kwargs: Any) -> ProcessorInvoice:
        code = f"PRQ_{next(counter)}"
        return ProcessorInvoice(external_id=code, pdf_url=f"https://paystack.com/pay/{code}")

    async def get_or_create_customer(organization: Organization) -> ProcessorCustomer:
        return ProcessorCustomer(
            customer_code=f"CUS_{organization.id}", email=organization.owner_email
        )

    mock = MagicMock()
    mock.get_or_create_customer = AsyncMock(side_effect=get_or_create_customer)
    mock.create_invoice = AsyncMock(side_effect=create_invoice)
    mock.get_invoice_status = AsyncMock(return_value=ProcessorInvoiceStatus(paid=False))
    mock.send_invoice_notification = AsyncMock(return_value=None)
    mock.void_invoice = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def lifecycle(
    invoice_service: InvoiceService,
    processor: MagicMock,
    organizations: OrganizationDirectory,
    settings: BillingSettings,
    clock: FakeClock,
) -> InvoiceLifecycleManager:
    return InvoiceLifecycleManager(
        invoice_service, processor, organizations, settings, clock=clock
    )


@pytest.fixture
def jobs(
    buffer: UsageBuffer,
    usage_store: UsageStore,
    invoice_service: InvoiceService,
    lifecycle: InvoiceLifecycleManager,
    subscriptions: StoreSubscriptionProvider,
    store: InMemoryRecordStore,
    settings: BillingSettings,
    clock: FakeClock,
) -> BillingJobs:
    return BillingJobs(
        buffer,
        usage_store,
        invoice_service,
        lifecycle,
        subscriptions,
        store,
        settings,
        clock=clock,
    )


@pytest.fixture
def add_organization(store: InMemoryRecordStore) -> Callable[..., Awaitable[Organization]]:
    """Insert an organization billing contact."""

    async def _add(organization_id: str, **overrides: Any) -> Organization:
        organization = Organization(
            id=organization_id,
            name=overrides.pop("name", f"Org {organization_id}"),
            owner_email=overrides.pop("owner_email", f"billing@{organization_id}.example"),
            **overrides,
        )
        await store.insert(Tables.ORGANIZATIONS, organization.model_dump())
        return organization

    return _add


@pytest.fixture
def add_subscription(
    store: InMemoryRecordStore,
    add_organization: Callable[..., Awaitable[Organization]],
) -> Callable[..., Awaitable[Subscription]]:
    """Insert an organization and a subscription for it."""

    async def _add(
        organization_id: str,
        plan_id: str = "whatsapp-assistant",
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        **overrides: Any,
    ) -> Subscription:
        existing = await store.query(Tables.ORGANIZATIONS, filters={"id": organization_id})
        if not existing:
            await add_organization(organization_id)
        subscription = Subscription(
            id=overrides.pop("id", f"sub-{organization_id}-{plan_id}"),
            organization_id=organization_id,
            plan_id=plan_id,
            status=status,
            **overrides,
        )
        await store.insert(Tables.SUBSCRIPTIONS, subscription.model_dump())
        return subscription

    return _add
