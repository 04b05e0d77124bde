"""Typer-based CLI for asset deployment with Pydantic v2 configuration."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from AssetLedger.Deploy.bootstrap import collect_status, run_deploy, run_verify
from AssetLedger.Deploy.cancellation import CancellationToken, install_signal_handlers
from AssetLedger.Deploy.config import (
    DeployConfig,
    export_config_schema,
    load_config,
    validate_config_file,
)
from AssetLedger.Deploy.errors import DeployError
from AssetLedger.Deploy.logging_config import generate_run_id, setup_logging
from AssetLedger.Deploy.pipeline import EXIT_FAILURE, RunReport
from AssetLedger.Deploy.summary import build_summary_record, emit_console_summary, write_report

console = Console()
app = typer.Typer(help="Upload an asset collection and register it on a ledger")

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to config file (YAML or JSON)",
    envvar="ASSET_DEPLOY_CONFIG",
)

# ============================================================================
# Setup
# ============================================================================


def _load(
    config: Optional[str],
    overrides: Dict[str, Any],
    *,
    verbose: bool,
    log_level: Optional[str],
    run_id: Optional[str] = None,
) -> DeployConfig:
    """Load config with CLI overrides and install logging."""
    logging_overrides: Dict[str, Any] = {}
    if log_level:
        logging_overrides["level"] = log_level.upper()
    if verbose:
        logging_overrides["level"] = "DEBUG"
    if logging_overrides:
        overrides = {**overrides, "logging": logging_overrides}

    cfg = load_config(path=config, cli_overrides=overrides)
    setup_logging(cfg.logging, run_id=run_id)
    return cfg


def _fail(exc: Exception, verbose: bool) -> None:
    console.print(f"[red]✗ Error: {exc}[/red]")
    if verbose:
        raise exc
    raise typer.Exit(code=EXIT_FAILURE)


def _finish(report: RunReport, *, report_path: Optional[Path], run_id: str, config_hash: str) -> None:
    emit_console_summary(report, console)
    if report_path is not None:
        record = build_summary_record(report, run_id=run_id, config_hash=config_hash)
        target = write_report(report_path, record)
        console.print(f"[cyan]Report written to {target}[/cyan]")
    if report.exit_code:
        raise typer.Exit(code=report.exit_code)


# ============================================================================
# Commands
# ============================================================================


@app.command()
def deploy(
    config: Optional[str] = CONFIG_OPTION,
    assets_dir: Optional[Path] = typer.Option(None, "--assets", help="Asset collection directory"),
    cache_path: Optional[Path] = typer.Option(None, "--cache", help="Deployment cache file"),
    workers: Optional[int] = typer.Option(None, "--workers", help="Number of parallel upload workers"),
    batch_capacity: Optional[int] = typer.Option(
        None, "--batch-capacity", help="Maximum registrations per ledger transaction"
    ),
    report: Optional[Path] = typer.Option(None, "--report", help="Write the run summary as JSON"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose"),
) -> None:
    """Upload pending assets and register them on the ledger."""
    run_id = generate_run_id()
    overrides: Dict[str, Any] = {}
    if assets_dir is not None:
        overrides["assets_dir"] = str(assets_dir)
    if cache_path is not None:
        overrides["cache_path"] = str(cache_path)
    if workers is not None:
        overrides["upload"] = {"workers": workers}
    if batch_capacity is not None:
        overrides["ledger"] = {"batch_capacity": batch_capacity}

    try:
        cfg = _load(config, overrides, verbose=verbose, log_level=log_level, run_id=run_id)
        console.print(
            Panel(
                f"[bold green]✓ Config loaded[/bold green]\n"
                f"Hash: {cfg.config_hash()[:8]}...\n"
                f"Assets: {cfg.assets_dir}\n"
                f"Cache: {cfg.cache_path}\n"
                f"Workers: {cfg.upload.workers}  Batch capacity: {cfg.ledger.batch_capacity}",
                title="Asset deploy",
            )
        )
        token = CancellationToken()
        with install_signal_handlers(token):
            result = run_deploy(cfg, cancel=token)
    except (DeployError, ValueError) as exc:
        _fail(exc, verbose)
        return

    _finish(result, report_path=report, run_id=run_id, config_hash=cfg.config_hash())


@app.command()
def verify(
    config: Optional[str] = CONFIG_OPTION,
    assets_dir: Optional[Path] = typer.Option(None, "--assets", help="Asset collection directory"),
    cache_path: Optional[Path] = typer.Option(None, "--cache", help="Deployment cache file"),
    repair: bool = typer.Option(False, "--repair", help="Update the cache to match the ledger"),
    deep: bool = typer.Option(True, "--deep/--quick", help="Check every index, not only unregistered ones"),
    report: Optional[Path] = typer.Option(None, "--report", help="Write the verify summary as JSON"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose"),
) -> None:
    """Compare the cache with the ledger. Never writes to the ledger."""
    run_id = generate_run_id()
    overrides: Dict[str, Any] = {}
    if assets_dir is not None:
        overrides["assets_dir"] = str(assets_dir)
    if cache_path is not None:
        overrides["cache_path"] = str(cache_path)

    try:
        cfg = _load(config, overrides, verbose=verbose, log_level=log_level, run_id=run_id)
        token = CancellationToken()
        with install_signal_handlers(token):
            result = run_verify(cfg, repair=repair, deep=deep, cancel=token)
    except (DeployError, ValueError) as exc:
        _fail(exc, verbose)
        return

    _finish(result, report_path=report, run_id=run_id, config_hash=cfg.config_hash())


@app.command()
def status(
    config: Optional[str] = CONFIG_OPTION,
    assets_dir: Optional[Path] = typer.Option(None, "--assets", help="Asset collection directory"),
    cache_path: Optional[Path] = typer.Option(None, "--cache", help="Deployment cache file"),
    offline: bool = typer.Option(False, "--offline", help="Do not query the ledger"),
    raw: bool = typer.Option(False, "--raw", help="Raw JSON"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose"),
) -> None:
    """Show deployment progress recorded in the cache."""
    overrides: Dict[str, Any] = {}
    if assets_dir is not None:
        overrides["assets_dir"] = str(assets_dir)
    if cache_path is not None:
        overrides["cache_path"] = str(cache_path)

    try:
        cfg = _load(config, overrides, verbose=verbose, log_level=None)
        snapshot = collect_status(cfg, query_remote=not offline)
    except (DeployError, ValueError) as exc:
        _fail(exc, verbose)
        return

    if raw:
        typer.echo(json.dumps(snapshot.to_dict(), indent=2))
        return

    table = Table(title="Deployment status")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key, value in snapshot.to_dict().items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


@app.command()
def print_config(
    config: Optional[str] = CONFIG_OPTION,
    raw: bool = typer.Option(False, "--raw", help="Raw JSON"),
) -> None:
    """Print merged effective config (secrets hidden)."""
    try:
        cfg = load_config(path=config)
    except ValueError as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(code=1)

    data = cfg.model_dump(mode="json")
    for section in ("storage", "ledger"):
        if data[section].get("api_key"):
            data[section]["api_key"] = "***masked***"

    if raw:
        typer.echo(json.dumps(data, indent=2))
    else:
        console.print(Panel(json.dumps(data, indent=2), title="Deploy Config", expand=False))


@app.command()
def validate_config(
    config: str = typer.Argument(..., help="Path to config file"),
) -> None:
    """Validate a config file."""
    try:
        validate_config_file(config)
        console.print("[green]✓ Config valid[/green]")
    except (ValueError, ValidationError) as e:
        console.print(f"[red]✗ Invalid: {e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def schema(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Save schema to file"),
) -> None:
    """Export JSON Schema for DeployConfig."""
    schema_data = export_config_schema()
    if output:
        output.write_text(json.dumps(schema_data, indent=2))
        console.print(f"[green]✓ Schema written to {output}[/green]")
    else:
        typer.echo(json.dumps(schema_data, indent=2))


def main() -> None:  # pragma: no cover - console script shim
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
