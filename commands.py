"""Flask CLI commands for billing operations.

Usage:
    flask billing list-jobs
    flask billing run-job reconcile-paid-invoices
    flask billing run-job apply-scheduled-changes --now 2026-01-31T00:00:00Z
    flask billing seed-plans
"""

from __future__ import annotations

import sys
from dataclasses import asdict

import click
from flask import current_app
from flask.cli import AppGroup

from services.billing import get_billing
from utils import parse_iso_datetime

billing_cli = AppGroup("billing", help="Billing reconciliation and maintenance.")


@billing_cli.command("list-jobs")
def list_jobs():
    """List the scheduled billing jobs and their crontab."""
    scheduler = get_billing().scheduler
    for name, job in scheduler.jobs.items():
        schedule = " ".join(f"{key}={value}" for key, value in job.schedule.items())
        click.echo(f"{name:<30} {schedule:<20} {job.description}")


@billing_cli.command("run-job")
@click.argument("name")
@click.option("--now", "now_raw", default=None, help="ISO timestamp to run the job as of")
def run_job(name: str, now_raw):
    """Run one billing job immediately."""
    scheduler = get_billing().scheduler
    if name not in scheduler.jobs:
        raise click.BadParameter(
            f"unknown job; choose from: {', '.join(scheduler.job_names())}", param_hint="NAME"
        )
    now = parse_iso_datetime(now_raw) if now_raw else None
    if now_raw and now is None:
        raise click.BadParameter("not an ISO timestamp", param_hint="--now")
    result = scheduler.run_job(name, now)
    if result is None:
        click.echo(f"{name}: skipped, previous run still busy", err=True)
        sys.exit(1)
    for key, value in asdict(result).items():
        click.echo(f"{key}: {value}")


@billing_cli.command("seed-plans")
def seed_plans_command():
    """Create or update the default plan catalog."""
    from seed_data import seed_plans

    created, updated = seed_plans(current_app.config["SETTINGS"].app.base_currency)
    click.echo(f"Plans: {created} created, {updated} updated")


def register_commands(app):
    app.cli.add_command(billing_cli)
