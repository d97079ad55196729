"""evoledger CLI — reward quotes, scripted simulations, settings."""

from __future__ import annotations

import asyncio
import logging

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from evoledger.config import settings
from evoledger.staking.rewards import MAX_UTILITY_MULTIPLIER, compute_rewards
from evoledger.types import DAY_SECONDS

console = Console()

_app = typer.Typer(
    name="evoledger",
    help="evoledger -- evolving assets, learned personalities, utility-linked staking.",
    no_args_is_help=True,
)


@_app.callback()
def _configure(
    log_level: str = typer.Option(settings.log_level, "--log-level", help="Root log level"),
):
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@_app.command("quote")
def quote(
    base_apy: int = typer.Option(1000, "--base-apy", help="Pool base APY in basis points"),
    multiplier: int = typer.Option(50, "--multiplier", help="Pool utility multiplier"),
    utility: int = typer.Option(0, "--utility", "-u", help="Asset utility score"),
    days: int = typer.Option(365, "--days", "-d", help="Days since last claim"),
    accumulated: int = typer.Option(0, "--accumulated", help="Rewards already accumulated"),
):
    """Show how rewards accrue for one position."""
    breakdown = compute_rewards(
        elapsed=days * DAY_SECONDS,
        base_apy=base_apy,
        pool_multiplier=multiplier,
        utility_score=utility,
        accumulated=accumulated,
        reward_unit=settings.reward_unit,
    )

    table = Table(title=f"Reward quote: {days} days")
    table.add_column("Component", style="cyan")
    table.add_column("Value", style="white", justify="right")
    table.add_row("Elapsed (s)", str(breakdown.elapsed))
    table.add_row("Base rewards", str(breakdown.base_rewards))
    capped = " (capped)" if breakdown.utility_multiplier == MAX_UTILITY_MULTIPLIER else ""
    table.add_row("Utility boost %", f"{breakdown.utility_multiplier}{capped}")
    table.add_row("Accumulated", str(breakdown.accumulated))
    table.add_row("Total", f"[bold]{breakdown.total}[/bold]")
    console.print(table)


@_app.command("simulate")
def simulate(
    assets: int = typer.Option(3, "--assets", "-n", help="Number of assets to mint"),
    days: int = typer.Option(30, "--days", "-d", help="Days to evolve, then days to stake"),
    seed: int = typer.Option(7, "--seed", help="Random seed"),
    weather: int = typer.Option(72, "--weather", help="Oracle weather reading"),
):
    """Run an in-memory mint → evolve → stake → unstake scenario."""
    from evoledger.cli.simulate import run_simulation

    report = asyncio.run(run_simulation(asset_count=assets, days=days, seed=seed, weather=weather))

    table = Table(title=f"Assets after {report.days} days")
    table.add_column("ID", style="dim", justify="right")
    table.add_column("Owner", style="cyan")
    table.add_column("Stage", justify="right")
    table.add_column("XP", justify="right")
    table.add_column("Utility", justify="right")
    table.add_column("Traits", style="blue")
    table.add_column("Learn", justify="right")
    table.add_column("Rewards", style="green", justify="right")
    for a in report.assets:
        table.add_row(
            str(a.asset_id),
            a.owner,
            str(a.stage),
            str(a.experience_points),
            str(a.utility_score),
            ", ".join(map(str, a.traits)),
            str(a.learning_rate),
            str(a.rewards),
        )
    console.print(table)

    events = "\n".join(f"{topic:<36} {count}" for topic, count in sorted(report.events.items()))
    console.print(Panel(events or "[dim]no events[/dim]", title="Events", border_style="cyan"))
    console.print(f"Treasury paid: [bold]{report.treasury_paid}[/bold]")


@_app.command("config")
def config_cmd():
    """Show the effective settings."""
    table = Table(title="Settings (EVOLEDGER_*)")
    table.add_column("Name", style="cyan")
    table.add_column("Value", style="white")
    for name, value in settings.model_dump().items():
        table.add_row(name, str(value))
    console.print(table)


@_app.command("version")
def version_cmd():
    """Show evoledger version."""
    from evoledger import __version__
    console.print(f"evoledger v{__version__}")


def main() -> None:
    _app()


if __name__ == "__main__":
    main()
