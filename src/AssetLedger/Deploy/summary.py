"""Run summary builders and console reporting helpers.

Responsibilities
----------------
- Assemble the structured summary record of a deploy or verify run via
  :func:`build_summary_record`, ready to be written with ``--report``.
- Expose :func:`emit_console_summary` to render the same information for the
  operator: per-stage counts, reconciliation drift and the failed indices with
  their causes, so a fix-and-rerun loop is easy to follow.
- Write report files atomically via :func:`write_report`.

Design Notes
------------
- The console renderer mirrors the JSON payload layout so that reading the
  report file or the terminal yields the same information.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from AssetLedger.Deploy.io_utils import atomic_write_json
from AssetLedger.Deploy.pipeline import EXIT_INTERRUPTED, RunReport

__all__ = [
    "build_summary_record",
    "emit_console_summary",
    "write_report",
]

_MAX_FAILURE_ROWS = 50


def build_summary_record(
    report: RunReport,
    *,
    run_id: Optional[str] = None,
    config_hash: Optional[str] = None,
) -> Dict[str, Any]:
    """Assemble the structured run summary record."""

    record = report.to_dict()
    record["run_id"] = run_id
    record["config_hash"] = config_hash
    record["finished_at"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return record


def write_report(path: Path, record: Dict[str, Any]) -> Path:
    """Write ``record`` as JSON to ``path`` atomically."""

    target = Path(path).expanduser()
    atomic_write_json(target, record)
    return target


def _status_markup(status: str) -> str:
    colours = {
        "completed": "green",
        "incomplete": "yellow",
        "interrupted": "yellow",
        "not-run": "dim",
    }
    colour = colours.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def emit_console_summary(report: RunReport, console: Optional[Console] = None) -> None:
    """Pretty-print the run summary."""

    console = console or Console()

    table = Table(title=f"{report.mode.capitalize()} summary")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Succeeded", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Skipped", justify="right")
    for outcome in report.stages:
        table.add_row(
            outcome.name,
            _status_markup(outcome.status),
            str(outcome.succeeded),
            str(outcome.failed),
            str(outcome.skipped),
        )
    console.print(table)

    lines = [
        f"Ledger: {report.ledger_id or '-'}",
        f"Catalog size: {report.catalog_size}",
        f"Remote registered: {report.remote_count if report.remote_count is not None else '-'}",
    ]
    reconcile = report.reconcile
    if reconcile is not None and reconcile.drift:
        lines.append(
            f"Drift: repaired={len(reconcile.repaired)} adopted={len(reconcile.adopted)} "
            f"diverged={len(reconcile.diverged)} missing={len(reconcile.missing)}"
            + ("" if reconcile.applied else " (not applied)")
        )
    if report.count_mismatch:
        lines.append("[yellow]Remote registered count does not match the catalog size[/yellow]")

    if report.aborted:
        lines.append(f"[red]Aborted ({report.abort_kind}): {report.aborted}[/red]")
        title, style = "Run aborted", "red"
    elif report.exit_code == EXIT_INTERRUPTED:
        lines.append("[yellow]Interrupted; progress saved. Re-run to resume.[/yellow]")
        title, style = "Run interrupted", "yellow"
    elif report.ok:
        title, style = "Run succeeded", "green"
    else:
        title, style = "Run finished with failures", "yellow"
    console.print(Panel("\n".join(lines), title=title, border_style=style, expand=False))

    failures = report.failures
    if failures:
        failure_table = Table(title="Failed assets")
        failure_table.add_column("Index", justify="right", style="cyan")
        failure_table.add_column("Stage")
        failure_table.add_column("Kind", style="magenta")
        failure_table.add_column("Cause")
        for failure in failures[:_MAX_FAILURE_ROWS]:
            failure_table.add_row(str(failure.index), failure.stage, failure.kind, failure.cause)
        console.print(failure_table)
        if len(failures) > _MAX_FAILURE_ROWS:
            console.print(
                f"[dim]... {len(failures) - _MAX_FAILURE_ROWS} more failures in the report file[/dim]"
            )
