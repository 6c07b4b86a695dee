"""
CLI interface for Redeem Guard.

Operator access to redemption, key lookup and ledger maintenance.
"""

import sys
from typing import Optional

import typer
import yaml
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from redeem_guard.bootstrap import build_storefront, open_services
from redeem_guard.config.loader import RedeemGuardConfig, load_config
from redeem_guard.core.errors import StorageError
from redeem_guard.core.keys import list_keys
from redeem_guard.core.orchestrator import OutcomeKind, RedemptionOutcome
from redeem_guard.storage.ledger import Ledger
from redeem_guard.utils.logging import configure_logging

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_OUTCOME_STYLES = {
    OutcomeKind.SUCCESS: "green",
    OutcomeKind.RATE_LIMITED: "yellow",
    OutcomeKind.ALREADY_REDEEMED: "red",
}


def _load(ctx: typer.Context) -> RedeemGuardConfig:
    try:
        config = load_config(ctx.obj["config_path"])
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    configure_logging(config.logging.level, config.logging.json, config.logging.file)
    return config


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: str = typer.Option(
        "redeem_guard.yaml",
        "--config",
        "-c",
        help="Path to the YAML configuration file"
    )
):
    """Redeem Guard CLI."""
    load_dotenv()
    ctx.obj = {"config_path": config}
    if ctx.invoked_subcommand is None:
        console.print("Redeem Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the redemption ledger."""
    config = _load(ctx)
    try:
        with Ledger(config.database.path, timeout=config.database.timeout_seconds):
            pass
        console.print("[green]✓[/] Ledger initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except StorageError as e:
        console.print(f"[red]Error initializing ledger:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def redeem(
    ctx: typer.Context,
    requester_id: str = typer.Argument(..., help="Identity of the user redeeming"),
    invoice_id: str = typer.Argument(..., help="Storefront invoice ID"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Display name recorded with the redemption"),
    channel: str = typer.Option("cli", "--channel", help="Redemption channel recorded with the redemption")
):
    """Exchange an invoice for a license key."""
    config = _load(ctx)
    try:
        with open_services(config) as services:
            outcome = services.orchestrator.redeem(requester_id, invoice_id, display_name=name, channel=channel)
    except (ValueError, StorageError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    _display_outcome(outcome)
    sys.exit(EXIT_CODE_PASS if outcome.succeeded else EXIT_CODE_FAIL)


@app.command()
def keys(
    ctx: typer.Context,
    requester_id: str = typer.Argument(..., help="Identity of the user")
):
    """List license keys redeemed by a user, newest first."""
    config = _load(ctx)
    try:
        with Ledger(config.database.path, timeout=config.database.timeout_seconds) as ledger:
            summaries = list_keys(ledger, requester_id)
    except StorageError as e:
        console.print(f"[red]Error retrieving keys:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not summaries:
        console.print("\n[bold yellow]No license keys found[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"License keys for {requester_id}")
    table.add_column("Product")
    table.add_column("Invoice")
    table.add_column("License key")
    table.add_column("Redeemed")
    for summary in summaries:
        table.add_row(
            summary.product_name or "Unknown Product",
            summary.invoice_id,
            summary.license_key,
            summary.redeemed_at.strftime("%Y-%m-%d %H:%M")
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def stats(ctx: typer.Context):
    """Show redemption totals."""
    config = _load(ctx)
    try:
        with Ledger(config.database.path, timeout=config.database.timeout_seconds) as ledger:
            counts = ledger.redemption_stats()
    except StorageError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"Total redemptions: {counts['total']:,}")
    console.print(f"Redemptions today: {counts['today']:,}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(ctx: typer.Context):
    """Check connectivity of the ledger and the storefront."""
    config = _load(ctx)
    healthy = True

    try:
        with Ledger(config.database.path, timeout=config.database.timeout_seconds) as ledger:
            ledger_ok = ledger.ping()
    except StorageError:
        ledger_ok = False
    healthy &= ledger_ok
    console.print(f"{'[green]✓[/]' if ledger_ok else '[red]✗[/]'} Ledger")

    try:
        with build_storefront(config) as storefront:
            storefront_ok = storefront.ping()
    except ValueError as e:
        console.print(f"[red]✗[/] Storefront: {e}")
        storefront_ok = False
    else:
        console.print(f"{'[green]✓[/]' if storefront_ok else '[red]✗[/]'} Storefront")
    healthy &= storefront_ok

    sys.exit(EXIT_CODE_PASS if healthy else EXIT_CODE_FAIL)


def _display_outcome(outcome: RedemptionOutcome) -> None:
    """Render an outcome for the terminal."""
    style = _OUTCOME_STYLES.get(outcome.kind, "red")
    console.print(f"\n[bold {style}]{outcome.kind.value}[/]")
    console.print(outcome.reason)

    if outcome.invoice_id:
        console.print(f"Invoice: {outcome.invoice_id}")
    if outcome.kind == OutcomeKind.SUCCESS:
        console.print(f"License key: [bold]{outcome.license_key}[/]")
        if outcome.product and outcome.product.product_name:
            console.print(f"Product: {outcome.product.product_name}")
    elif outcome.kind == OutcomeKind.RATE_LIMITED:
        console.print(f"Attempts used: {outcome.attempts_used}/{outcome.max_attempts}")
    elif outcome.error_kind:
        console.print(f"Error: {outcome.error_kind}")


if __name__ == "__main__":
    app()
