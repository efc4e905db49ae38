"""
CLI interface for Kube Cost Guard.

Provides command-line access to cost collection, one-shot calculation and
ledger reporting.
"""

import logging
import signal
import sys
from datetime import timedelta
from typing import List, Optional
import sqlite3

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from kube_cost_guard.config.loader import CostConfig, load_config
from kube_cost_guard.core.coster import Coster, CostService
from kube_cost_guard.core.exporter import (
    BufferingCostExporter,
    JsonLinesCostExporter,
    PrometheusCostExporter,
    SqliteCostExporter,
)
from kube_cost_guard.core.filters import WorkloadFilters
from kube_cost_guard.core.inventory import FileInventory, InventoryError
from kube_cost_guard.core.metrics import CostMetrics
from kube_cost_guard.core.strategy import get_strategy
from kube_cost_guard.storage.db import DEFAULT_DB_PATH
from kube_cost_guard.storage.repository import CostRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

MICRO_CENTS_PER_DOLLAR = 100_000_000


def _configure_logging(verbosity: int) -> None:
    level = logging.DEBUG if verbosity > 0 else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    if verbosity > 0:
        logging.getLogger(__name__).debug("using increased logging verbosity")


def _load_config_or_exit(path: str) -> CostConfig:
    """Load configuration, exiting with a failure code when it is invalid."""
    try:
        return load_config(path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _format_micro_cents(value: int) -> str:
    """Format micro-cents as dollars."""
    return f"${value / MICRO_CENTS_PER_DOLLAR:,.6f}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Kube Cost Guard CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Kube Cost Guard - Use --help to see available commands")


@app.command()
def init(
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Configuration file providing dimension columns"
    ),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the cost ledger database"),
):
    """Initialize the cost ledger database."""
    dimension_names: List[str] = []
    if config:
        dimension_names = _load_config_or_exit(config).mapper.dimension_names()
    try:
        initialize_schema(dimension_names, db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def calculate(
    config: str = typer.Option(..., "--config", "-c", help="Path to configuration file"),
    pods: str = typer.Option(..., "--pods", help="Output of 'kubectl get pods -o json'"),
    nodes: str = typer.Option(..., "--nodes", help="Output of 'kubectl get nodes -o json'"),
    duration: float = typer.Option(3600.0, "--duration", "-d", help="Seconds of usage to price"),
    strategy: Optional[List[str]] = typer.Option(
        None, "--strategy", "-s", help="Pricing strategy to run (repeatable, default all)"
    ),
    all_phases: bool = typer.Option(
        False, "--all-phases", help="Include workloads that are not Running"
    ),
    db: Optional[str] = typer.Option(None, "--db", help="Also record results in this ledger"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase logging verbosity"),
):
    """
    Price a single inventory snapshot and print the cost records.

    This is a one-shot run of the calculation loop: the snapshot is priced
    over --duration seconds and every strategy's records are displayed.
    """
    _configure_logging(verbose)
    cfg = _load_config_or_exit(config)

    if duration <= 0:
        console.print("[red]Error:[/] duration must be > 0")
        sys.exit(EXIT_CODE_FAIL)

    try:
        strategies = [get_strategy(name) for name in strategy] if strategy else None
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    exporters = []
    if db:
        initialize_schema(cfg.mapper.dimension_names(), db)
        exporters.append(SqliteCostExporter(db))

    coster = Coster(
        interval=timedelta(seconds=duration),
        config=cfg,
        inventory=FileInventory(pods, nodes),
        exporters=exporters,
        strategies=strategies,
        workload_filters=WorkloadFilters() if all_phases else None,
    )

    try:
        records = coster.calculate_and_emit()
    except InventoryError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not records:
        console.print("\n[bold yellow]No cost records produced[/]")
        console.print("Check that workloads are scheduled on nodes matched by the pricing table.\n")
        sys.exit(EXIT_CODE_PASS)

    dimension_names = cfg.mapper.dimension_names()
    table = Table(title="Cost Records")
    table.add_column("Kind")
    table.add_column("Strategy")
    for name in dimension_names:
        table.add_column(name)
    table.add_column("Micro-cents", justify="right")
    table.add_column("Cost", justify="right")

    for record in records:
        table.add_row(
            record.kind,
            record.strategy,
            *[record.dimensions.get(name, "") for name in dimension_names],
            f"{record.value:,}",
            _format_micro_cents(record.value),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def collect(
    config: str = typer.Option(..., "--config", "-c", help="Path to configuration file"),
    pods: str = typer.Option(..., "--pods", help="Pods snapshot file, re-read every cycle"),
    nodes: str = typer.Option(..., "--nodes", help="Nodes snapshot file, re-read every cycle"),
    interval: float = typer.Option(10.0, "--interval", help="Cost calculation interval in seconds"),
    flush_interval: float = typer.Option(
        300.0, "--flush-interval", help="Buffer flush interval in seconds for durable sinks"
    ),
    listen_addr: str = typer.Option(
        ":5000", "--listen-addr", help="Listen address for the Prometheus metrics endpoint"
    ),
    db: Optional[str] = typer.Option(None, "--db", help="Record aggregated costs in this ledger"),
    jsonl: Optional[str] = typer.Option(None, "--jsonl", help="Append aggregated costs as JSON lines"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase logging verbosity"),
):
    """Run the cost collection loop until interrupted."""
    _configure_logging(verbose)
    logger = logging.getLogger(__name__)
    cfg = _load_config_or_exit(config)

    if interval <= 0 or flush_interval <= 0:
        console.print("[red]Error:[/] intervals must be > 0")
        sys.exit(EXIT_CODE_FAIL)

    metrics = CostMetrics(cfg.mapper.dimension_names())
    exporters = [PrometheusCostExporter(metrics)]
    buffering = []

    if db:
        initialize_schema(cfg.mapper.dimension_names(), db)
        logger.info("sqlite exporter enabled: %s", db)
        buffering.append(BufferingCostExporter(
            timedelta(seconds=flush_interval), SqliteCostExporter(db), metrics
        ))

    jsonl_stream = None
    if jsonl:
        jsonl_stream = open(jsonl, "a", encoding="utf-8")
        logger.info("json lines exporter enabled: %s", jsonl)
        buffering.append(BufferingCostExporter(
            timedelta(seconds=flush_interval), JsonLinesCostExporter(jsonl_stream), metrics
        ))

    coster = Coster(
        interval=timedelta(seconds=interval),
        config=cfg,
        inventory=FileInventory(pods, nodes),
        exporters=exporters + buffering,
        metrics=metrics,
    )
    service = CostService(coster, listen_addr=listen_addr, buffering_exporters=buffering)

    def _handle_signal(signum, frame):
        logger.info("received signal %d, shutting down", signum)
        service.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        service.run()
    except Exception as e:
        console.print(f"[red]Exited with error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        if jsonl_stream is not None:
            jsonl_stream.close()
    sys.exit(EXIT_CODE_PASS)


@app.command()
def report(
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the cost ledger database"),
    dimension: Optional[str] = typer.Option(
        None, "--dimension", "-g", help="Break totals down by this dimension"
    ),
    strategy: Optional[str] = typer.Option(None, "--strategy", "-s", help="Only this strategy"),
):
    """Show cost totals recorded in the ledger."""
    try:
        totals = CostRepository(db).get_cost_totals(dimension=dimension, strategy=strategy)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No cost records found[/]")
            console.print("\nRun `kube-cost-guard init` and `kube-cost-guard collect --db` first.\n")
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not totals:
        console.print("\n[dim]No cost records found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Cost Totals")
    table.add_column("Kind")
    table.add_column("Strategy")
    if dimension:
        table.add_column(dimension)
    table.add_column("Micro-cents", justify="right")
    table.add_column("Cost", justify="right")

    for total in totals:
        row = [total["kind"], total["strategy"]]
        if dimension:
            row.append(str(total[dimension] or ""))
        row += [f"{total['total']:,}", _format_micro_cents(total["total"])]
        table.add_row(*row)
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
