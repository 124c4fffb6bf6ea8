"""Recurring billing jobs.

Each job is a "run now" operation that is safe to invoke repeatedly; the
core never decides whether it is the right time to run. An external
scheduler owns timing, with the cadences listed in ``JOB_SCHEDULE``.
Per-organization and per-invoice failures are collected into the
``JobResult`` and never stop the rest of the run.
"""

from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any

import structlog

from botflow_billing.config import BillingSettings
from botflow_billing.exceptions import DuplicateInvoiceError, UnknownJobError
from botflow_billing.invoices import InvoiceService
from botflow_billing.lifecycle import InvoiceLifecycleManager
from botflow_billing.metering import UsageBuffer
from botflow_billing.models.billing import InvoiceStatus
from botflow_billing.models.jobs import JobResult, TrialExpiryNotice, UsageAggregate
from botflow_billing.periods import parse_period_key, period_for, previous_period
from botflow_billing.store.base import RecordStore, Tables
from botflow_billing.subscriptions import SubscriptionProvider
from botflow_billing.usage import UsageStore

logger = structlog.get_logger()

TrialNotifier = Callable[[TrialExpiryNotice], Awaitable[None]]

# Cron expressions (UTC) for the external trigger
JOB_SCHEDULE: dict[str, str] = {
    "monthly_billing": "0 0 1 * *",
    "sync_invoices": "0 * * * *",
    "overdue_reminders": "0 9 * * *",
    "check_trials": "0 10 * * *",
    "aggregate_usage": "30 0 * * *",
}


class BillingJobs:
    """Monthly billing, invoice reconciliation and daily maintenance passes."""

    def __init__(
        self,
        buffer: UsageBuffer,
        usage: UsageStore,
        invoices: InvoiceService,
        lifecycle: InvoiceLifecycleManager,
        subscriptions: SubscriptionProvider,
        record_store: RecordStore,
        settings: BillingSettings,
        clock: Callable[[], datetime] | None = None,
        trial_notifier: TrialNotifier | None = None,
    ) -> None:
        self._buffer = buffer
        self._usage = usage
        self._invoices = invoices
        self._lifecycle = lifecycle
        self._subscriptions = subscriptions
        self._store = record_store
        self._settings = settings
        self._clock = clock or (lambda: datetime.now(UTC))
        self._trial_notifier = trial_notifier

    async def run_monthly_billing(self, period_key: str | None = None) -> JobResult:
        """Generate and submit invoices for every active organization.

        Args:
            period_key: Period to bill; defaults to the period before now

        Organizations that already have a non-void invoice for the period
        are skipped, so re-running the job never bills anyone twice. A draft
        that never reached the processor is submitted again instead.
        """
        period = parse_period_key(period_key) if period_key else previous_period(self._clock())
        result = JobResult()
        logger.info("Starting monthly billing", billing_period=period.key)

        await self._buffer.flush()

        for organization_id in await self._subscriptions.active_organization_ids():
            try:
                existing = await self._invoices.find_active_invoice(organization_id, period.key)
                if existing is None:
                    invoice = await self._invoices.generate_invoice(organization_id, period.key)
                elif existing.status == InvoiceStatus.DRAFT and not existing.external_id:
                    # Submission failed on an earlier run
                    logger.info(
                        "Resubmitting draft invoice",
                        organization_id=organization_id,
                        invoice_id=existing.id,
                        billing_period=period.key,
                    )
                    invoice = existing
                else:
                    logger.info(
                        "Invoice already exists, skipping",
                        organization_id=organization_id,
                        invoice_id=existing.id,
                        billing_period=period.key,
                    )
                    result.skipped_count += 1
                    continue
            except DuplicateInvoiceError:
                logger.info(
                    "Invoice created concurrently, skipping",
                    organization_id=organization_id,
                    billing_period=period.key,
                )
                result.skipped_count += 1
                continue
            except Exception as e:
                logger.exception(
                    "Failed to generate invoice",
                    organization_id=organization_id,
                    billing_period=period.key,
                )
                result.add_error(f"Failed to process organization {organization_id}: {e}")
                continue

            try:
                await self._lifecycle.submit(invoice)
            except Exception as e:
                logger.exception(
                    "Failed to submit invoice",
                    organization_id=organization_id,
                    invoice_id=invoice.id,
                )
                result.add_error(
                    f"Failed to submit invoice {invoice.id} for organization "
                    f"{organization_id}: {e}"
                )
            result.processed_count += 1

        logger.info(
            "Monthly billing complete",
            billing_period=period.key,
            processed=result.processed_count,
            skipped=result.skipped_count,
            errors=len(result.errors),
        )
        return result

    async def sync_invoice_statuses(self) -> JobResult:
        """Poll the processor for every open invoice and record payments."""
        result = JobResult()
        open_invoices = [
            *await self._invoices.invoices_with_status(InvoiceStatus.PENDING),
            *await self._invoices.invoices_with_status(InvoiceStatus.OVERDUE),
        ]
        for invoice in open_invoices:
            if not invoice.external_id:
                continue
            try:
                if await self._lifecycle.sync(invoice):
                    result.processed_count += 1
            except Exception as e:
                logger.exception("Failed to sync invoice", invoice_id=invoice.id)
                result.add_error(f"Failed to sync invoice {invoice.id}: {e}")

        logger.info("Invoice sync complete", paid=result.processed_count, errors=len(result.errors))
        return result

    async def send_overdue_reminders(self, now: datetime | None = None) -> JobResult:
        """Mark past-due pending invoices overdue and remind the customer."""
        now = now or self._clock()
        result = JobResult()
        for invoice in await self._invoices.overdue_candidates(now):
            try:
                await self._lifecycle.mark_overdue(invoice)
                result.processed_count += 1
            except Exception as e:
                logger.exception("Failed to send overdue reminder", invoice_id=invoice.id)
                result.add_error(f"Failed to send reminder for invoice {invoice.id}: {e}")

        logger.info("Overdue reminders complete", processed=result.processed_count)
        return result

    async def check_trial_expirations(self, now: datetime | None = None) -> JobResult:
        """Flag trials ending exactly N days from today for each reminder threshold."""
        today = (now or self._clock()).astimezone(UTC).date()
        thresholds = set(self._settings.trial_reminder_days)
        result = JobResult()

        for subscription in await self._subscriptions.trialing_subscriptions():
            if subscription.trial_end is None:
                continue
            days_remaining = (subscription.trial_end.date() - today).days
            if days_remaining not in thresholds:
                continue

            notice = TrialExpiryNotice(
                organization_id=subscription.organization_id,
                subscription_id=subscription.id,
                trial_end=subscription.trial_end,
                days_remaining=days_remaining,
            )
            try:
                if self._trial_notifier is not None:
                    await self._trial_notifier(notice)
                logger.info(
                    "Trial expiring",
                    organization_id=subscription.organization_id,
                    days_remaining=days_remaining,
                )
                result.processed_count += 1
            except Exception as e:
                logger.exception(
                    "Failed to send trial notice", organization_id=subscription.organization_id
                )
                result.add_error(
                    f"Failed to notify organization {subscription.organization_id}: {e}"
                )

        return result

    async def aggregate_daily_usage(self, day: date | None = None) -> JobResult:
        """Store per-organization usage totals for one day (default yesterday).

        Re-running for the same day replaces the earlier aggregate.
        """
        day = day or (self._clock() - timedelta(days=1)).date()
        period = period_for(datetime(day.year, day.month, day.day, tzinfo=UTC))
        result = JobResult()

        await self._buffer.flush()

        for organization_id in await self._usage.organization_ids(period.key):
            try:
                daily = await self._usage.usage_on(organization_id, day)
                if not daily.usage:
                    continue
                aggregate = UsageAggregate(
                    organization_id=organization_id,
                    day=day,
                    usage={usage_type.value: qty for usage_type, qty in daily.usage.items()},
                    created_at=self._clock(),
                )
                await self._store.delete(
                    Tables.USAGE_AGGREGATES, {"organization_id": organization_id, "day": day}
                )
                await self._store.insert(Tables.USAGE_AGGREGATES, aggregate.model_dump())
                result.processed_count += 1
            except Exception as e:
                logger.exception("Failed to aggregate usage", organization_id=organization_id)
                result.add_error(
                    f"Failed to aggregate usage for organization {organization_id}: {e}"
                )

        logger.info("Daily usage aggregated", day=day.isoformat(), count=result.processed_count)
        return result

    async def run_job(self, name: str, **kwargs: Any) -> JobResult:
        """Run a job by its ``JOB_SCHEDULE`` name.

        Raises:
            UnknownJobError: If no job has that name
        """
        jobs: dict[str, Callable[..., Awaitable[JobResult]]] = {
            "monthly_billing": self.run_monthly_billing,
            "sync_invoices": self.sync_invoice_statuses,
            "overdue_reminders": self.send_overdue_reminders,
            "check_trials": self.check_trial_expirations,
            "aggregate_usage": self.aggregate_daily_usage,
        }
        job = jobs.get(name)
        if job is None:
            raise UnknownJobError(name)
        logger.info("Running billing job", job=name)
        return await job(**kwargs)
