"""Usage record storage and aggregation.

Usage is an append-only ledger partitioned by billing period. Prices are
frozen into each record at insert time so later pricing changes never
rewrite history. Aggregation is always scoped to a single period.
"""

from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, date, datetime

import structlog

from botflow_billing.models.billing import (
    DailyUsage,
    ServiceType,
    ServiceUsage,
    UsageBreakdown,
    UsageLimitStatus,
    UsageRecord,
    UsageRecordCreate,
    UsageSummary,
    UsageType,
    service_for,
)
from botflow_billing.periods import current_period, parse_period_key, period_for
from botflow_billing.pricing import UNLIMITED, PricingTable, round_minor_units
from botflow_billing.store.base import RecordStore, Tables

logger = structlog.get_logger()

Clock = Callable[[], datetime]


def _unique_events(records: Iterable[UsageRecord]) -> list[UsageRecord]:
    """Drop repeated event ids left behind by retried flushes."""
    seen: set[str] = set()
    unique: list[UsageRecord] = []
    for record in records:
        if record.id in seen:
            continue
        seen.add(record.id)
        unique.append(record)
    return unique


def sum_by_kind(records: Iterable[UsageRecord]) -> dict[UsageType, int]:
    """Total quantity per usage type, counting each event once."""
    totals: dict[UsageType, int] = defaultdict(int)
    for record in _unique_events(records):
        totals[record.usage_type] += record.quantity
    return dict(totals)


class UsageStore:
    """Persists usage facts and answers period-scoped aggregation queries."""

    def __init__(
        self,
        store: RecordStore,
        pricing: PricingTable,
        clock: Clock | None = None,
        currency: str = "ZAR",
    ) -> None:
        self._store = store
        self._pricing = pricing
        self._clock = clock or (lambda: datetime.now(UTC))
        self._currency = currency

    def price(self, data: UsageRecordCreate) -> UsageRecord:
        """Build the immutable record for a tracked event."""
        unit_price, total_amount = self._pricing.price_record(data.usage_type, data.quantity)
        return UsageRecord(
            id=data.id,
            organization_id=data.organization_id,
            user_id=data.user_id,
            usage_type=data.usage_type,
            quantity=data.quantity,
            unit_price=unit_price,
            total_amount=total_amount,
            metadata=data.metadata,
            billing_period=period_for(data.occurred_at).key,
            created_at=data.occurred_at,
        )

    async def insert(self, data: UsageRecordCreate) -> UsageRecord:
        """Record a single usage event."""
        record = self.price(data)
        await self._store.insert(Tables.USAGE_RECORDS, record.to_record())
        return record

    async def insert_batch(self, batch: Sequence[UsageRecordCreate]) -> list[UsageRecord]:
        """Record usage events in one store operation."""
        if not batch:
            return []
        records = [self.price(data) for data in batch]
        await self._store.insert_batch(
            Tables.USAGE_RECORDS, [record.to_record() for record in records]
        )
        logger.debug("Recorded usage batch", count=len(records))
        return records

    def _period_key(self, period_key: str | None) -> str:
        if period_key is None:
            return current_period(self._clock()).key
        return parse_period_key(period_key).key

    async def records(
        self, organization_id: str, period_key: str | None = None
    ) -> list[UsageRecord]:
        """Usage records for an organization in a period, newest first."""
        rows = await self._store.query(
            Tables.USAGE_RECORDS,
            filters={
                "organization_id": organization_id,
                "billing_period": self._period_key(period_key),
            },
            order_by="created_at",
            descending=True,
        )
        return [UsageRecord.model_validate(row) for row in rows]

    async def aggregate_by_kind(
        self, organization_id: str, period_key: str | None = None
    ) -> dict[UsageType, int]:
        """Sum of quantity per usage type for one organization and period."""
        return sum_by_kind(await self.records(organization_id, period_key))

    async def daily_breakdown(
        self, organization_id: str, period_key: str | None = None
    ) -> dict[date, dict[UsageType, int]]:
        """Usage per calendar day (UTC) within a period."""
        days: dict[date, dict[UsageType, int]] = defaultdict(lambda: defaultdict(int))
        for record in _unique_events(await self.records(organization_id, period_key)):
            days[record.created_at.date()][record.usage_type] += record.quantity
        return {day: dict(days[day]) for day in sorted(days)}

    async def usage_on(self, organization_id: str, day: date) -> DailyUsage:
        """Per-type totals for a single day."""
        period_key = period_for(datetime(day.year, day.month, day.day, tzinfo=UTC)).key
        breakdown = await self.daily_breakdown(organization_id, period_key)
        return DailyUsage(organization_id=organization_id, day=day, usage=breakdown.get(day, {}))

    async def usage_count(
        self, organization_id: str, usage_type: UsageType, period_key: str | None = None
    ) -> int:
        usage = await self.aggregate_by_kind(organization_id, period_key)
        return usage.get(usage_type, 0)

    async def check_usage_limit(
        self, organization_id: str, usage_type: UsageType, period_key: str | None = None
    ) -> UsageLimitStatus:
        """Compare usage of one type against its plan allowance."""
        entry = self._pricing.entry(usage_type)
        used = await self.usage_count(organization_id, usage_type, period_key)
        if entry.included_in_plan == UNLIMITED:
            return UsageLimitStatus(exceeded=False, used=used, limit=UNLIMITED, overage=0)

        overage = max(0, used - entry.included_in_plan)
        return UsageLimitStatus(
            exceeded=overage > 0,
            used=used,
            limit=entry.included_in_plan,
            overage=overage,
        )

    async def usage_summary(
        self, organization_id: str, period_key: str | None = None
    ) -> UsageSummary:
        """Usage for a period grouped by service, priced at unit price."""
        key = self._period_key(period_key)
        usage = await self.aggregate_by_kind(organization_id, key)

        services: dict[ServiceType, ServiceUsage] = {}
        for usage_type in sorted(usage, key=lambda t: t.value):
            entry = self._pricing.entry(usage_type)
            quantity = usage[usage_type]
            breakdown = UsageBreakdown(
                usage_type=usage_type,
                quantity=quantity,
                unit_price=entry.unit_price,
                total=round_minor_units(entry.unit_price * quantity),
                description=entry.description,
            )
            service = service_for(usage_type)
            group = services.setdefault(service, ServiceUsage(service=service))
            group.usage.append(breakdown)
            group.subtotal += breakdown.total

        ordered = [services[s] for s in ServiceType if s in services]
        return UsageSummary(
            organization_id=organization_id,
            billing_period=key,
            services=ordered,
            total_amount=sum(group.subtotal for group in ordered),
            currency=self._currency,
        )

    async def organization_ids(self, period_key: str) -> list[str]:
        """Organizations with any usage recorded in a period."""
        rows = await self._store.query(
            Tables.USAGE_RECORDS, filters={"billing_period": parse_period_key(period_key).key}
        )
        return sorted({row["organization_id"] for row in rows})
