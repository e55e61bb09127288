"""CLI entry point for the guidance decisioning engine."""

from __future__ import annotations

import json
import logging
from collections import Counter
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from config.settings import get_settings
from decision_engine import (
    DecisioningEngines,
    DefinitionError,
    build_engines,
    load_definitions,
    validate_definitions,
)
from decision_engine.statistics import two_proportion_z_test


console = Console()


def _definitions_path(path: str | None) -> Path:
    path = path or get_settings().definitions_path
    if not path:
        raise click.UsageError("Pass --definitions or set DEFINITIONS_PATH.")
    return Path(path)


def _load_engines(path: str | None) -> DecisioningEngines:
    try:
        document = load_definitions(_definitions_path(path))
    except (DefinitionError, OSError) as e:
        raise click.ClickException(str(e)) from e
    return build_engines(document)


definitions_option = click.option(
    "--definitions",
    "-d",
    "definitions",
    type=click.Path(dir_okay=False),
    default=None,
    help="Definitions document (defaults to DEFINITIONS_PATH)",
)


@click.group()
@click.version_option(version="1.0.0")
def cli() -> None:
    """Guidance Decisioning Engine - targeting, experiments and flows."""
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


@cli.command()
@definitions_option
def validate(definitions: str | None) -> None:
    """Validate a definitions document."""
    path = _definitions_path(definitions)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise click.ClickException(f"Cannot read {path}: {e}") from e

    report = validate_definitions(data)
    status = "[green]valid[/green]" if report.valid else "[red]invalid[/red]"
    console.print(Panel(f"[bold]{path}[/bold] is {status}", title="Validation"))

    if report.errors or report.warnings:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Level", style="dim")
        table.add_column("Message")
        for error in report.errors:
            table.add_row("[red]error[/red]", error)
        for warning in report.warnings:
            table.add_row("[yellow]warning[/yellow]", warning)
        console.print(table)

    if not report.valid:
        raise SystemExit(1)


@cli.command()
@definitions_option
@click.option("--error-id", default=None, help="Telemetry error id")
@click.option("--path", "route_path", default="/", help="Route path")
@click.option("--context", "custom", default=None, help="Extra context as a JSON object")
def resolve(
    definitions: str | None, error_id: str | None, route_path: str, custom: str | None
) -> None:
    """Show which guide steps activate for a context."""
    engines = _load_engines(definitions)
    try:
        custom_context: dict[str, Any] = json.loads(custom) if custom else {}
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint="--context") from e

    telemetry = {"error_id": error_id} if error_id else {}
    steps = engines.guides.resolve_active_steps(telemetry, {"path": route_path}, custom_context)

    if not steps:
        console.print("[yellow]No steps active for this context.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold cyan", title="Active Steps")
    table.add_column("Step", style="dim")
    table.add_column("Type")
    table.add_column("Title")
    for step in steps:
        table.add_row(step.id, step.type, step.content.title or "")
    console.print(table)


@cli.command()
@definitions_option
@click.argument("experiment_id")
@click.argument("user_ids", nargs=-1, required=True)
def assign(definitions: str | None, experiment_id: str, user_ids: tuple[str, ...]) -> None:
    """Assign users to an experiment's variants."""
    engines = _load_engines(definitions)
    experiment = engines.experiments.get_experiment(experiment_id)
    if experiment is None:
        raise click.ClickException(f"Experiment {experiment_id!r} not found")
    if experiment.status != "running":
        console.print(f"[yellow]Experiment is {experiment.status}; no assignments made.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold", title=experiment.name or experiment.id)
    table.add_column("User", style="dim")
    table.add_column("Variant")
    table.add_column("Config")
    for user_id in user_ids:
        assignment = engines.experiments.assign_variant(experiment_id, user_id=user_id)
        if assignment is None:
            table.add_row(user_id, "[dim]not eligible[/dim]", "")
            continue
        config = engines.experiments.get_variant_config(experiment_id, user_id=user_id)
        table.add_row(user_id, assignment.variant_id, json.dumps(config or {}))
    console.print(table)


@cli.command()
@definitions_option
@click.argument("experiment_id")
@click.option("--users", "user_count", default=10000, show_default=True, help="Synthetic users")
def split(definitions: str | None, experiment_id: str, user_count: int) -> None:
    """Show how synthetic user ids spread across variants."""
    engines = _load_engines(definitions)
    experiment = engines.experiments.get_experiment(experiment_id)
    if experiment is None:
        raise click.ClickException(f"Experiment {experiment_id!r} not found")
    if experiment.status != "running":
        engines.experiments.start_experiment(experiment_id)

    counts: Counter[str] = Counter()
    for i in range(user_count):
        assignment = engines.experiments.assign_variant(experiment_id, user_id=f"user-{i}")
        if assignment is not None:
            counts[assignment.variant_id] += 1

    table = Table(show_header=True, header_style="bold", title=f"Split over {user_count} users")
    table.add_column("Variant", style="dim")
    table.add_column("Weight", justify="right")
    table.add_column("Users", justify="right")
    table.add_column("Share", justify="right")
    for variant in experiment.variants:
        share = counts[variant.id] / user_count if user_count else 0
        table.add_row(variant.id, f"{variant.weight:g}%", str(counts[variant.id]), f"{share:.1%}")
    console.print(table)


@cli.command()
@click.option("--control", nargs=2, type=int, required=True, help="PARTICIPANTS CONVERSIONS")
@click.option("--variant", nargs=2, type=int, required=True, help="PARTICIPANTS CONVERSIONS")
@click.option("--confidence", default=None, type=float, help="Required confidence percent")
def significance(
    control: tuple[int, int], variant: tuple[int, int], confidence: float | None
) -> None:
    """Run a two-proportion z-test on raw counts."""
    if confidence is None:
        confidence = get_settings().default_required_confidence
    (n1, x1), (n2, x2) = control, variant
    result = two_proportion_z_test(x1, n1, x2, n2)

    rate1 = x1 / n1 * 100 if n1 else 0.0
    rate2 = x2 / n2 * 100 if n2 else 0.0
    lift = (rate2 - rate1) / rate1 * 100 if rate1 > 0 else 0.0
    significant = result.p_value < 1 - confidence / 100

    table = Table(show_header=True, header_style="bold")
    table.add_column("Metric", style="dim")
    table.add_column("Value", justify="right")
    table.add_row("Control rate", f"{rate1:.2f}%")
    table.add_row("Variant rate", f"{rate2:.2f}%")
    table.add_row("Lift", f"{lift:+.1f}%")
    table.add_row("z-score", f"{result.z_score:.4f}")
    table.add_row("p-value", f"{result.p_value:.4f}")
    table.add_row(
        f"Significant at {confidence:g}%",
        "[green]yes[/green]" if significant else "[red]no[/red]",
    )
    console.print(table)


@cli.command()
@definitions_option
@click.argument("flow_id")
@click.option(
    "--action",
    "actions",
    multiple=True,
    type=click.Choice(["completed", "skipped", "clicked", "dismissed"]),
    help="Action for each advance (repeatable)",
)
def walk(definitions: str | None, flow_id: str, actions: tuple[str, ...]) -> None:
    """Walk a flow, advancing once per --action (default: complete every step)."""
    engines = _load_engines(definitions)
    flow = engines.flows.get_flow(flow_id)
    if flow is None:
        raise click.ClickException(f"Flow {flow_id!r} not found")

    execution_id = engines.flows.start_flow(flow_id)
    console.print(Panel(f"Started [bold]{execution_id}[/bold]", title=flow.name or flow.id))

    table = Table(show_header=True, header_style="bold")
    table.add_column("From", style="dim")
    table.add_column("Action")
    table.add_column("To")
    table.add_column("Progress", justify="right")

    pending = list(actions) or ["completed"] * len(flow.steps)
    for action in pending:
        current = engines.flows.get_current_step(execution_id)
        next_step = engines.flows.advance_flow(execution_id, action)
        progress = engines.flows.get_flow_progress(execution_id)
        table.add_row(
            current.step_id if current else "-",
            action,
            next_step.step_id if next_step else "[green]done[/green]",
            f"{progress.percent_complete}%",
        )
        if next_step is None:
            break

    console.print(table)
    execution = engines.flows.get_flow_execution(execution_id)
    console.print(f"\n[dim]Status: {execution.status}[/dim]")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
