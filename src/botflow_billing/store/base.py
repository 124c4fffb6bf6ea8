"""Generic record store interface.

The billing engine talks to persistence only through this narrow surface:
equality filters, single-column ordering, no joins and no transactions.
Uniqueness is the store's job, so idempotency does not rest on a read
performed before a write.
"""

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

Record = dict[str, Any]
Filters = Mapping[str, Any]


class Tables:
    """Table names used by the billing engine."""

    USAGE_RECORDS = "usage_records"
    INVOICES = "invoices"
    SUBSCRIPTIONS = "subscriptions"
    ORGANIZATIONS = "organizations"
    USAGE_AGGREGATES = "usage_aggregates"


def _always(_record: Record) -> bool:
    return True


@dataclass(frozen=True)
class UniqueRule:
    """A uniqueness constraint over columns, optionally partial."""

    name: str
    columns: tuple[str, ...]
    applies: Callable[[Record], bool] = field(default=_always, compare=False)

    def key(self, record: Record) -> tuple[Any, ...]:
        return tuple(record.get(column) for column in self.columns)


def _is_active_invoice(record: Record) -> bool:
    return record.get("status") != "cancelled"


# One non-void invoice per organization and billing period.
DEFAULT_UNIQUE_RULES: dict[str, list[UniqueRule]] = {
    Tables.INVOICES: [
        UniqueRule(name="invoices_pkey", columns=("id",)),
        UniqueRule(
            name="uq_invoices_org_period_active",
            columns=("organization_id", "billing_period"),
            applies=_is_active_invoice,
        ),
    ],
    Tables.SUBSCRIPTIONS: [UniqueRule(name="subscriptions_pkey", columns=("id",))],
    Tables.ORGANIZATIONS: [UniqueRule(name="organizations_pkey", columns=("id",))],
    Tables.USAGE_AGGREGATES: [
        UniqueRule(name="uq_usage_aggregates_org_day", columns=("organization_id", "day")),
    ],
}


@runtime_checkable
class RecordStore(Protocol):
    """Persistent store consumed by the billing engine."""

    async def insert(self, table: str, record: Record) -> Record:
        """Insert one record.

        Raises:
            DuplicateRecordError: If a uniqueness constraint is violated
            StoreError: On any other store failure
        """
        ...

    async def insert_batch(self, table: str, records: Sequence[Record]) -> list[Record]:
        """Insert records in one operation; all or nothing."""
        ...

    async def query(
        self,
        table: str,
        filters: Filters | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Record]:
        """Select records matching all equality filters."""
        ...

    async def update(self, table: str, filters: Filters, patch: Mapping[str, Any]) -> int:
        """Apply a patch to matching records; returns the number updated."""
        ...

    async def delete(self, table: str, filters: Filters) -> int:
        """Delete matching records; returns the number deleted."""
        ...
