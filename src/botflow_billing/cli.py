"""BotFlow Billing - CLI entry point for the external scheduler."""

import asyncio
import json
import sys
from datetime import UTC, datetime
from typing import Any

import click
import sentry_sdk

from botflow_billing import __version__
from botflow_billing.app import BillingApp
from botflow_billing.config import BillingSettings
from botflow_billing.exceptions import BillingError
from botflow_billing.jobs import JOB_SCHEDULE
from botflow_billing.logging_config import configure_logging, init_sentry
from botflow_billing.models.jobs import JobResult
from botflow_billing.periods import current_period, parse_period_key

# Options each job accepts, by CLI option name
_JOB_OPTIONS = {
    "monthly_billing": {"period"},
    "aggregate_usage": {"date"},
    "overdue_reminders": {"date"},
    "check_trials": {"date"},
    "sync_invoices": set(),
}


def _job_kwargs(job: str, period: str | None, day: datetime | None) -> dict[str, Any]:
    allowed = _JOB_OPTIONS[job]
    if period and "period" not in allowed:
        raise click.UsageError(f"--period does not apply to '{job}'")
    if day and "date" not in allowed:
        raise click.UsageError(f"--date does not apply to '{job}'")

    kwargs: dict[str, Any] = {}
    if period:
        kwargs["period_key"] = parse_period_key(period).key
    if day:
        if job == "aggregate_usage":
            kwargs["day"] = day.date()
        else:
            kwargs["now"] = day.replace(tzinfo=UTC)
    return kwargs


async def _run_job(settings: BillingSettings, job: str, kwargs: dict[str, Any]) -> JobResult:
    async with BillingApp.create(settings) as app:
        return await app.jobs.run_job(job, **kwargs)


@click.group()
@click.version_option(version=__version__, prog_name="botflow-billing")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """BotFlow Billing - usage metering and monthly invoicing.

    Jobs are run on demand; schedule them with cron using the cadences
    printed by 'botflow-billing schedule'.
    """
    settings = BillingSettings()
    configure_logging(settings.log_level, settings.log_json)
    if init_sentry(settings.sentry_dsn, settings.environment):
        # Flush Sentry events before the process exits
        ctx.call_on_close(lambda: sentry_sdk.flush(timeout=2.0))
    ctx.obj = settings


@cli.command("init-db")
@click.pass_obj
def init_db(settings: BillingSettings) -> None:
    """Create the billing tables."""

    async def _init() -> None:
        async with BillingApp.create(settings) as app:
            await app.init_db()

    asyncio.run(_init())
    click.echo(click.style("Billing tables ready.", fg="green"))


@cli.command()
def schedule() -> None:
    """Show the recommended cron schedule for each job."""
    for name, cron in JOB_SCHEDULE.items():
        click.echo(f"{cron:<12} {name}")


@cli.command()
@click.argument("job", type=click.Choice(sorted(JOB_SCHEDULE)))
@click.option("--period", help="Billing period (YYYY-MM) for monthly_billing")
@click.option(
    "--date",
    "day",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="Day (YYYY-MM-DD) to aggregate, or to treat as today for reminders and trials",
)
@click.pass_obj
def run(settings: BillingSettings, job: str, period: str | None, day: datetime | None) -> None:
    """Run a billing job now and print its result as JSON.

    Exits with status 1 when the job reports errors.
    """
    try:
        kwargs = _job_kwargs(job, period, day)
    except BillingError as e:
        raise click.BadParameter(str(e), param_hint="--period") from e

    result = asyncio.run(_run_job(settings, job, kwargs))
    click.echo(result.model_dump_json(indent=2))
    if not result.success:
        sys.exit(1)


@cli.command()
@click.option("--org", "organization_id", required=True, help="Organization id")
@click.option("--period", help="Billing period (YYYY-MM), defaults to the current period")
@click.pass_obj
def usage(settings: BillingSettings, organization_id: str, period: str | None) -> None:
    """Print an organization's usage summary for a period."""
    key = _period_option(period)

    async def _summary() -> str:
        async with BillingApp.create(settings) as app:
            summary = await app.usage.usage_summary(organization_id, key)
            return summary.model_dump_json(indent=2)

    click.echo(asyncio.run(_summary()))


@cli.command()
@click.option("--org", "organization_id", required=True, help="Organization id")
@click.option("--period", help="Billing period (YYYY-MM), defaults to the current period")
@click.pass_obj
def charges(settings: BillingSettings, organization_id: str, period: str | None) -> None:
    """Preview the monthly charges an invoice would carry."""
    key = _period_option(period)

    async def _charges() -> str:
        async with BillingApp.create(settings) as app:
            breakdown = await app.invoices.calculate_monthly_charges(organization_id, key)
            payload = breakdown.model_dump(mode="json")
            payload["subtotal"] = breakdown.subtotal
            return json.dumps(payload, indent=2)

    try:
        click.echo(asyncio.run(_charges()))
    except BillingError as e:
        click.echo(click.style("Error: ", fg="red", bold=True) + str(e), err=True)
        sys.exit(1)


def _period_option(period: str | None) -> str:
    if not period:
        return current_period().key
    try:
        return parse_period_key(period).key
    except BillingError as e:
        raise click.BadParameter(str(e), param_hint="--period") from e


if __name__ == "__main__":
    cli()
