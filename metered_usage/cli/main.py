"""
CLI interface for metered usage.

Provides command-line access to usage snapshots, currency conversion and
the usage-based spending limit.
"""

import asyncio
import sys
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Tuple

import typer
from rich.console import Console
from rich.table import Table

from metered_usage.config.loader import UsageSettings, load_settings
from metered_usage.config.logger import setup_logging
from metered_usage.core.aggregator import UsageAggregator, UsageSnapshot
from metered_usage.core.classifier import UNKNOWN_MODEL
from metered_usage.core.credentials import Credential
from metered_usage.core.currency import CurrencyConverter
from metered_usage.core.resolver import UsageResolver
from metered_usage.core.unknown_models import UnknownModelTracker
from metered_usage.sdk.dashboard_client import DashboardClient, UsageBasedStatus
from metered_usage.sdk.exchange_rates import ExchangeRateClient
from metered_usage.storage.repository import ExchangeRateCache, MembershipCache, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

TOKEN_ENVVAR = "METERED_USAGE_TOKEN"


def _settings(config: Optional[str]) -> UsageSettings:
    settings = load_settings(config)
    setup_logging(settings.log_level)
    return settings


@dataclass
class CliState:
    """Process-lifetime state handed to every command through the context."""
    tracker: Optional[UnknownModelTracker] = None

    def tracker_for(self, settings: UsageSettings) -> UnknownModelTracker:
        if self.tracker is None:
            self.tracker = UnknownModelTracker(settings.generic_keywords)
        return self.tracker


def _converter(settings: UsageSettings) -> CurrencyConverter:
    return CurrencyConverter(
        ExchangeRateClient(settings.api.rates_url, settings.api.timeout_seconds),
        ExchangeRateCache(settings.db_path),
        ttl_hours=settings.currency.cache_ttl_hours,
    )


def _dashboard(settings: UsageSettings) -> DashboardClient:
    return DashboardClient(settings.api.base_url, settings.api.timeout_seconds)


async def _fetch_stats(
    settings: UsageSettings,
    token: str,
    currency: str,
    tracker: UnknownModelTracker,
) -> Tuple[UsageSnapshot, List[str], Optional[List[str]]]:
    """Refresh once; return the snapshot, converted item totals and new unknown models."""
    client = _dashboard(settings)
    aggregator = UsageAggregator(
        client,
        UsageResolver(client, MembershipCache(settings.db_path), settings.billing.tracked_model),
        tracker=tracker,
        cutoff_day=settings.billing.cutoff_day,
    )

    async def provide_token() -> Optional[str]:
        return token

    snapshot = await aggregator.refresh(provide_token)
    amounts = [Decimal(item.total_dollars.replace("$", "")) for item in snapshot.active_month.items]
    totals = await _converter(settings).format_all(amounts, currency)
    unknown = tracker.terms if tracker.should_notify() else None
    return snapshot, totals, unknown


def _require_token(token: Optional[str]) -> str:
    if not token:
        console.print(f"[red]Error:[/] no session token; pass --token or set {TOKEN_ENVVAR}")
        sys.exit(EXIT_CODE_FAIL)
    return token


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Metered usage CLI."""
    if ctx.obj is None:
        ctx.obj = CliState()
    if ctx.invoked_subcommand is None:
        console.print("Metered usage - Use --help to see available commands")


@app.command()
def init(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML settings file"),
):
    """Initialize the local cache database."""
    try:
        settings = _settings(config)
        initialize_schema(settings.db_path)
        console.print("[green]✓[/] Cache database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def stats(
    ctx: typer.Context,
    token: Optional[str] = typer.Option(
        None, "--token", "-t", envvar=TOKEN_ENVVAR, help="Session token"
    ),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML settings file"),
    currency: Optional[str] = typer.Option(
        None, "--currency", help="Display currency (defaults to the configured one)"
    ),
):
    """Show premium quota and usage-based charges for the active month."""
    token = _require_token(token)
    try:
        settings = _settings(config)
        display = (currency or settings.currency.display).upper()
        tracker = ctx.obj.tracker_for(settings)
        snapshot, totals, unknown = asyncio.run(_fetch_stats(settings, token, display, tracker))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_snapshot(snapshot, totals)
    if unknown:
        console.print(f"\n[yellow]New models detected:[/] {', '.join(unknown)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def convert(
    amount: float = typer.Argument(..., help="Amount in USD"),
    currency: str = typer.Option(..., "--currency", help="Target currency code"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML settings file"),
):
    """Convert a USD amount into another currency."""
    try:
        settings = _settings(config)
        formatted = asyncio.run(
            _converter(settings).convert_and_format(Decimal(str(amount)), currency.upper())
        )
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(formatted)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def limit(
    token: Optional[str] = typer.Option(
        None, "--token", "-t", envvar=TOKEN_ENVVAR, help="Session token"
    ),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML settings file"),
):
    """Show whether usage-based billing is enabled and its limit."""
    token = _require_token(token)
    try:
        settings = _settings(config)
        status: UsageBasedStatus = asyncio.run(
            _dashboard(settings).check_usage_based_status(Credential.from_session_token(token))
        )
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if status.is_enabled:
        limit_text = _format_currency(status.limit) if status.limit is not None else "no limit"
        console.print(f"Usage-based pricing: [green]enabled[/] ({limit_text})")
    else:
        console.print("Usage-based pricing: [yellow]disabled[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command("set-limit")
def set_limit(
    value: float = typer.Argument(..., help="Hard limit in USD"),
    disable: bool = typer.Option(False, "--disable", help="Disable usage-based pricing"),
    token: Optional[str] = typer.Option(
        None, "--token", "-t", envvar=TOKEN_ENVVAR, help="Session token"
    ),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML settings file"),
):
    """Set the usage-based spending limit."""
    token = _require_token(token)
    if value < 0:
        console.print("[red]Error:[/] limit must be >= 0")
        sys.exit(EXIT_CODE_FAIL)
    try:
        settings = _settings(config)
        asyncio.run(
            _dashboard(settings).set_usage_limit(Credential.from_session_token(token), value, disable)
        )
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    state = "disabled" if disable else f"enabled with limit {_format_currency(value)}"
    console.print(f"[green]✓[/] Usage-based pricing {state}")
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _display_snapshot(snapshot: UsageSnapshot, totals: List[str]):
    """Display a usage snapshot as a quota line and an item table."""
    quota = snapshot.premium_quota
    console.print("\n[bold]Premium Requests[/bold]")
    console.print(f"{quota.current_count}/{quota.limit} ({quota.percent_used}%)")
    if quota.period_start:
        console.print(f"[dim]Period start: {quota.period_start}[/]")

    month = snapshot.active_month
    label = f"{month.month:02d}/{month.year}"
    if snapshot.uses_fallback:
        label += " (previous month, current month has no invoice items yet)"
    console.print(f"\n[bold]Usage-Based Charges[/bold] {label}")

    if not month.items:
        console.print("[dim]No usage-based charges.[/]")
        return

    table = Table()
    table.add_column("Model")
    table.add_column("Requests")
    table.add_column("Total", justify="right")
    for item, total in zip(month.items, totals):
        model = item.model_name
        if model == UNKNOWN_MODEL:
            model = "unknown model"
        if item.is_discounted:
            model = f"{model} (discounted)"
        table.add_row(model, item.display_calculation, total)
    console.print(table)

    if month.has_unpaid_mid_month_invoice:
        console.print("[yellow]Unpaid mid-month invoice[/]")


if __name__ == "__main__":
    app()
