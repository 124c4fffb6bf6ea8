"""Read-only access to subscriptions and organization billing contacts."""

from typing import Protocol

import structlog

from botflow_billing.models.billing import Organization, Subscription, SubscriptionStatus
from botflow_billing.store.base import RecordStore, Tables

logger = structlog.get_logger()


class SubscriptionProvider(Protocol):
    """Source of subscription state owned by another subsystem."""

    async def get_active_subscription(self, organization_id: str) -> Subscription | None: ...

    async def active_organization_ids(self) -> list[str]: ...

    async def trialing_subscriptions(self) -> list[Subscription]: ...


class StoreSubscriptionProvider:
    """Subscription provider reading the ``subscriptions`` table."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def get_active_subscription(self, organization_id: str) -> Subscription | None:
        rows = await self._store.query(
            Tables.SUBSCRIPTIONS,
            filters={"organization_id": organization_id, "status": SubscriptionStatus.ACTIVE},
            limit=1,
        )
        return Subscription.model_validate(rows[0]) if rows else None

    async def active_organization_ids(self) -> list[str]:
        """Distinct organizations with an active subscription, in stable order."""
        rows = await self._store.query(
            Tables.SUBSCRIPTIONS,
            filters={"status": SubscriptionStatus.ACTIVE},
            order_by="organization_id",
        )
        return list(dict.fromkeys(row["organization_id"] for row in rows))

    async def trialing_subscriptions(self) -> list[Subscription]:
        rows = await self._store.query(
            Tables.SUBSCRIPTIONS, filters={"status": SubscriptionStatus.TRIALING}
        )
        return [Subscription.model_validate(row) for row in rows]


class OrganizationDirectory:
    """Organization billing contacts and their processor customer codes."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def get(self, organization_id: str) -> Organization | None:
        rows = await self._store.query(
            Tables.ORGANIZATIONS, filters={"id": organization_id}, limit=1
        )
        return Organization.model_validate(rows[0]) if rows else None

    async def set_customer_code(self, organization_id: str, customer_code: str) -> None:
        await self._store.update(
            Tables.ORGANIZATIONS,
            filters={"id": organization_id},
            patch={"processor_customer_code": customer_code},
        )
        logger.info(
            "Saved billing customer code",
            organization_id=organization_id,
            customer_code=customer_code,
        )
