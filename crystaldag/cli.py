"""
crystaldag CLI: run and inspect workflow files.

This module provides a Typer-based command-line front end around
load_workflow() and the Orchestrator.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, Optional, Tuple

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from crystaldag import __version__
from crystaldag.config import EngineSettings, load_settings
from crystaldag.exceptions import CrystalDagError
from crystaldag.logging_setup import configure_logging
from crystaldag.models import JobStatus, RunReport
from crystaldag.orchestrator import Orchestrator
from crystaldag.runners import Backend, create_backend
from crystaldag.workflow_file import Workflow, load_workflow

app = typer.Typer(
    name="crystaldag",
    help="crystaldag - dependency-aware execution of simulation job chains",
    no_args_is_help=True,
)
console = Console()

STATUS_COLORS = {
    JobStatus.SUCCEEDED: "green",
    JobStatus.RUNNING: "blue",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLED: "yellow",
    JobStatus.SKIPPED: "dim",
}


def _load(workflow_file: Path, config: Optional[Path]) -> Tuple[Workflow, EngineSettings]:
    """Load the workflow and layer its engine section over the settings file."""
    try:
        workflow = load_workflow(workflow_file)
        settings = load_settings(config, overrides=workflow.engine)
    except CrystalDagError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    return workflow, settings


def _render_report(workflow: Workflow, report: RunReport) -> None:
    table = Table(title=f"Run report ({len(report.outcomes)} jobs)")
    table.add_column("Job", style="cyan", no_wrap=True)
    table.add_column("Seed", style="white")
    table.add_column("Status", style="magenta")
    table.add_column("Handle", style="blue")
    table.add_column("Detail", style="dim")

    names = {job_id: name for name, job_id in workflow.job_ids.items()}
    for job_id, outcome in report.outcomes.items():
        color = STATUS_COLORS.get(outcome.status, "white")
        detail = outcome.error or ""
        if outcome.post_hook_errors:
            detail = "; ".join(filter(None, [detail, *outcome.post_hook_errors]))
        if not outcome.cancel_confirmed:
            detail = f"{detail} (unconfirmed)".strip()
        table.add_row(
            names.get(job_id, str(job_id)[:8]),
            outcome.seed_name,
            f"[{color}]{outcome.status.value}[/{color}]",
            outcome.handle or "-",
            escape(detail),
        )
    console.print(table)


@app.command()
def run(
    workflow_file: Path = typer.Argument(..., help="YAML workflow file"),
    backend: str = typer.Option("local", help="Default execution backend (local, slurm, pbs)"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Engine settings YAML"),
    keywords: bool = typer.Option(
        False, "--keywords", help="Check output listings for termination keywords"
    ),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """
    Execute a workflow until every job has finished.

    Examples:
        crystaldag run mgo.yaml                  # Run locally
        crystaldag run mgo.yaml --backend slurm  # Submit through SLURM
    """
    configure_logging(logging.DEBUG if verbose else logging.INFO, console=Console(stderr=True))
    workflow, settings = _load(workflow_file, config)

    names = {backend} | {job.backend for job in workflow.graph if job.backend}
    backends: Dict[str, Backend] = {}
    try:
        for name in sorted(names):
            backends[name] = create_backend(name, settings, keywords=keywords)
        orchestrator = Orchestrator(
            workflow.graph,
            backends,
            settings=settings,
            default_backend=backend,
            handle_signals=True,
        )
    except CrystalDagError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)

    report = asyncio.run(orchestrator.execute())

    if json_output:
        console.print_json(json.dumps(report.to_dict()))
    else:
        _render_report(workflow, report)

    if report.interrupted:
        console.print("[yellow]Run interrupted[/yellow]")
        raise typer.Exit(130)
    if report.failed:
        raise typer.Exit(1)


@app.command()
def plan(
    workflow_file: Path = typer.Argument(..., help="YAML workflow file"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Engine settings YAML"),
) -> None:
    """
    Show the execution order of a workflow without running anything.

    Examples:
        crystaldag plan mgo.yaml
    """
    workflow, settings = _load(workflow_file, config)
    graph = workflow.graph
    names = {job_id: name for name, job_id in workflow.job_ids.items()}

    table = Table(title=f"Execution plan ({len(graph)} jobs)")
    table.add_column("#", style="dim", no_wrap=True)
    table.add_column("Job", style="cyan", no_wrap=True)
    table.add_column("Seed", style="white")
    table.add_column("Working dir", style="green")
    table.add_column("Depends on", style="magenta")
    table.add_column("Backend", style="blue")

    for i, job_id in enumerate(graph.topological_order(), start=1):
        job = graph.job(job_id)
        # Continuation parents are marked with the artifact they hand over
        deps = [
            f"{names[d]} ({settings.continuation_extension})"
            if d == job.continuation_from else names[d]
            for d in graph.dependencies(job_id)
        ]
        table.add_row(
            str(i),
            names[job_id],
            job.seed_name,
            str(job.working_dir),
            ", ".join(deps) or "-",
            job.backend or "default",
        )

    console.print(table)


@app.command()
def version() -> None:
    """Print the crystaldag version."""
    console.print(__version__)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
