"""SQLAlchemy table definitions for the billing store."""

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    text,
)

from botflow_billing.store.base import Tables

metadata = MetaData()

# Append-only usage ledger. The event id is deliberately not unique: a
# retried buffer flush may write the same event twice and aggregation
# counts each event id once.
usage_records = Table(
    Tables.USAGE_RECORDS,
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", String(64), nullable=False, index=True),
    Column("organization_id", String(64), nullable=False),
    Column("user_id", String(64)),
    Column("usage_type", String(50), nullable=False),
    Column("quantity", BigInteger, nullable=False),
    Column("unit_price", Numeric(14, 4), nullable=False),
    Column("total_amount", BigInteger, nullable=False),
    Column("metadata", JSON, nullable=False, default=dict),
    Column("billing_period", String(7), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_usage_records_org_period", "organization_id", "billing_period"),
)

invoices = Table(
    Tables.INVOICES,
    metadata,
    Column("id", String(64), primary_key=True),
    Column("organization_id", String(64), nullable=False, index=True),
    Column("billing_period", String(7), nullable=False),
    Column("subtotal", BigInteger, nullable=False),
    Column("tax", BigInteger, nullable=False),
    Column("total", BigInteger, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("status", String(20), nullable=False, index=True),
    Column("due_date", DateTime(timezone=True), nullable=False),
    Column("paid_at", DateTime(timezone=True)),
    Column("external_id", String(255), index=True),
    Column("pdf_url", String(1024)),
    Column("line_items", JSON, nullable=False, default=list),
    Column("metadata", JSON, nullable=False, default=dict),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    # At most one non-void invoice per organization and period
    Index(
        "uq_invoices_org_period_active",
        "organization_id",
        "billing_period",
        unique=True,
        sqlite_where=text("status != 'cancelled'"),
        postgresql_where=text("status != 'cancelled'"),
    ),
)

subscriptions = Table(
    Tables.SUBSCRIPTIONS,
    metadata,
    Column("id", String(64), primary_key=True),
    Column("organization_id", String(64), nullable=False, index=True),
    Column("plan_id", String(50), nullable=False),
    Column("status", String(20), nullable=False, index=True),
    Column("seat_count", Integer, nullable=False, default=1),
    Column("current_period_start", DateTime(timezone=True)),
    Column("current_period_end", DateTime(timezone=True)),
    Column("trial_end", DateTime(timezone=True)),
)

organizations = Table(
    Tables.ORGANIZATIONS,
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("owner_email", String(255), nullable=False),
    Column("processor_customer_code", String(255)),
)

usage_aggregates = Table(
    Tables.USAGE_AGGREGATES,
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", String(64), nullable=False),
    Column("day", Date, nullable=False),
    Column("usage", JSON, nullable=False, default=dict),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("uq_usage_aggregates_org_day", "organization_id", "day", unique=True),
)
