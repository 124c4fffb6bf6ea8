"""Assembles the billing engine from settings."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from types import TracebackType

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from botflow_billing.config import BillingSettings, get_settings
from botflow_billing.invoices import InvoiceService
from botflow_billing.jobs import BillingJobs, TrialNotifier
from botflow_billing.lifecycle import InvoiceLifecycleManager
from botflow_billing.metering import FlushPolicy, UsageBuffer
from botflow_billing.pricing import DEFAULT_PRICING, PricingTable
from botflow_billing.processor.paystack import PaystackClient
from botflow_billing.store.base import RecordStore
from botflow_billing.store.sql import SQLRecordStore, create_engine_from_settings, init_models
from botflow_billing.subscriptions import OrganizationDirectory, StoreSubscriptionProvider
from botflow_billing.usage import UsageStore

logger = structlog.get_logger()


@dataclass
class BillingApp:
    """All billing services for one process, sharing one store and buffer."""

    settings: BillingSettings
    engine: AsyncEngine
    store: RecordStore
    pricing: PricingTable
    usage: UsageStore
    buffer: UsageBuffer
    invoices: InvoiceService
    lifecycle: InvoiceLifecycleManager
    jobs: BillingJobs
    processor: PaystackClient

    @classmethod
    def create(
        cls,
        settings: BillingSettings | None = None,
        pricing: PricingTable | None = None,
        clock: Callable[[], datetime] | None = None,
        trial_notifier: TrialNotifier | None = None,
    ) -> "BillingApp":
        """Build the engine, store and services from settings."""
        settings = settings or get_settings()
        pricing = pricing or DEFAULT_PRICING
        clock = clock or (lambda: datetime.now(UTC))

        engine = create_engine_from_settings(settings)
        store = SQLRecordStore(engine)
        subscriptions = StoreSubscriptionProvider(store)
        organizations = OrganizationDirectory(store)
        processor = PaystackClient.from_settings(settings)

        usage = UsageStore(store, pricing, clock=clock, currency=settings.currency)
        buffer = UsageBuffer(
            usage,
            FlushPolicy(
                max_size=settings.buffer_max_size,
                flush_interval=settings.buffer_flush_interval,
            ),
            clock=clock,
        )
        invoices = InvoiceService(store, usage, subscriptions, pricing, settings, clock=clock)
        lifecycle = InvoiceLifecycleManager(
            invoices, processor, organizations, settings, clock=clock
        )
        jobs = BillingJobs(
            buffer,
            usage,
            invoices,
            lifecycle,
            subscriptions,
            store,
            settings,
            clock=clock,
            trial_notifier=trial_notifier,
        )

        return cls(
            settings=settings,
            engine=engine,
            store=store,
            pricing=pricing,
            usage=usage,
            buffer=buffer,
            invoices=invoices,
            lifecycle=lifecycle,
            jobs=jobs,
            processor=processor,
        )

    async def init_db(self) -> None:
        await init_models(self.engine)

    async def close(self) -> None:
        """Flush pending usage and release the HTTP client and engine."""
        await self.buffer.stop()
        await self.processor.close()
        await self.engine.dispose()
        logger.info("Billing app closed")

    async def __aenter__(self) -> "BillingApp":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
