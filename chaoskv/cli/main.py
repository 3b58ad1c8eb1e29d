#!/usr/bin/env python3
"""
Command line entry point for the chaoskv fuzz harness.

- ``chaoskv run``: run fuzz iterations against the local service backend
- ``chaoskv config``: print the effective settings
"""

import asyncio
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from chaoskv.core.config import FuzzSettings
from chaoskv.core.logging import configure_logging
from chaoskv.harness.driver import ExperimentDriver, ExperimentReport

console = Console()


def _settings_overrides(**options: object) -> dict[str, object]:
    return {name: value for name, value in options.items() if value is not None}


def _show_report(report: ExperimentReport) -> None:
    table = Table(title="Fuzz Iterations")
    table.add_column("Iteration", justify="right")
    table.add_column("Replicas", justify="right")
    table.add_column("Clients", justify="right")
    table.add_column("Rounds", justify="right")
    table.add_column("Restarts", justify="right")
    table.add_column("Submitted", justify="right")
    table.add_column("Succeeded", justify="right")
    table.add_column("Elapsed", justify="right")
    for summary in report.summaries:
        table.add_row(
            str(summary.number),
            str(summary.replica_count),
            str(summary.client_count),
            str(summary.fault_rounds),
            str(summary.restarts),
            str(summary.submitted),
            str(summary.outcomes.get("success", 0)),
            f"{summary.elapsed:.1f}s",
        )
    console.print(table)

    if report.failure is None:
        console.print(
            f"[green]✅ Completed {report.iterations_completed} "
            f"of {report.iterations_requested} iterations[/green]"
        )
    else:
        console.print(
            f"[red]❌ Iteration {report.failure.iteration} failed: "
            f"{report.failure.cause!r}[/red]"
        )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """
    chaoskv fuzz harness.

    Repeatedly builds a replicated key/value cluster, drives random client
    workload against it, and gracefully shuts down and restarts replicas at
    random until an iteration hits an uncaught error.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@cli.command()
@click.option("--iterations", "-n", type=int, help="Number of fuzz iterations")
@click.option("--window", "-w", type=float, help="Observation window in seconds")
@click.option("--seed", type=int, help="Seed for reproducible runs")
@click.option("--replicas-min", type=int, help="Smallest cluster size")
@click.option("--replicas-max", type=int, help="Largest cluster size")
@click.option("--clients-min", type=int, help="Fewest workload clients")
@click.option("--clients-max", type=int, help="Most workload clients")
@click.option(
    "--storage-root", type=click.Path(path_type=Path), help="Replica storage tree"
)
@click.option(
    "--log-file", type=click.Path(path_type=Path), help="Rotating log file path"
)
@click.option(
    "--debug-scope",
    "debug_scopes",
    multiple=True,
    help="Module prefix to log at DEBUG (repeatable)",
)
@click.pass_context
def run(
    ctx: click.Context,
    iterations: int | None,
    window: float | None,
    seed: int | None,
    replicas_min: int | None,
    replicas_max: int | None,
    clients_min: int | None,
    clients_max: int | None,
    storage_root: Path | None,
    log_file: Path | None,
    debug_scopes: tuple[str, ...],
) -> None:
    """Run fuzz iterations until one fails or all complete."""
    overrides = _settings_overrides(
        iterations=iterations,
        observation_window=window,
        seed=seed,
        replica_count_min=replicas_min,
        replica_count_max=replicas_max,
        client_count_min=clients_min,
        client_count_max=clients_max,
        storage_root=storage_root,
        log_file=log_file,
        log_debug_scopes=debug_scopes or None,
    )
    if ctx.obj.get("verbose"):
        overrides["log_level"] = "DEBUG"
    settings = FuzzSettings(**overrides)

    configure_logging(
        settings.log_level,
        debug_scopes=settings.log_debug_scopes,
        colorize=sys.stderr.isatty(),
        log_file=settings.log_file,
    )

    report = asyncio.run(ExperimentDriver(settings).run())
    _show_report(report)
    if not report.succeeded:
        sys.exit(1)


@cli.command()
def config() -> None:
    """Show the effective settings (defaults, environment and .env)."""
    settings = FuzzSettings()
    console.print_json(settings.model_dump_json())


def main() -> None:
    """Main CLI entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️ Fuzzing interrupted by user[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    main()
