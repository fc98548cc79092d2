"""Guidance CLI entry point."""

import json
import logging
from pathlib import Path

import typer

from guidance_engine.catalog import CatalogError
from guidance_engine.config import ConfigurationError, load_config
from guidance_engine.formatter import format_markdown
from guidance_engine.models import ChangeKind, ExecutionContext, FileRef, Request, WorkItemRef
from guidance_engine.pipeline import GuidancePipeline, build_pipeline

from . import __version__
from .console import (
    console,
    create_table,
    print_error,
    print_panel,
    print_success,
    print_table,
    print_warning,
)

# Exit code for a Stop decision (distinct from errors)
EXIT_STOP = 2

OUTPUT_FORMATS = ("table", "json", "markdown")

app = typer.Typer(
    name="guidance",
    help="Guidance - context-aware instruction selection and risk gating",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"guidance version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to guidance-config.yaml (default: GUIDANCE_CONFIG_PATH or ./guidance-config.yaml)",
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Show engine log output"),
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """Guidance - context-aware instruction selection and risk gating."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    ctx.obj = {"config_path": str(config) if config else None}


def _load_pipeline(ctx: typer.Context) -> GuidancePipeline:
    config_path = (ctx.obj or {}).get("config_path")
    try:
        return build_pipeline(load_config(config_path))
    except (ConfigurationError, CatalogError) as e:
        print_error(str(e))
        raise typer.Exit(1)


def parse_file_spec(spec: str) -> FileRef:
    """Parse PATH[:KIND[:LINES]] into a FileRef.

    Fields are split off from the right, and a segment containing a path
    separator always belongs to PATH, so C:\\repo\\app.py:modified works.
    """
    path = spec
    fields: list[str] = []
    while len(fields) < 2 and ":" in path:
        head, tail = path.rsplit(":", 1)
        if "/" in tail or "\\" in tail:
            break
        path = head
        fields.insert(0, tail)
    if not path:
        raise typer.BadParameter(f"Expected PATH[:KIND[:LINES]], got: {spec}")

    kind = fields[0] if fields else ""
    try:
        change_kind = ChangeKind(kind.lower()) if kind else ChangeKind.MODIFIED
    except ValueError:
        kinds = ", ".join(k.value for k in ChangeKind)
        raise typer.BadParameter(f"Unknown change kind '{kind}' (expected {kinds})")
    lines_changed = None
    if len(fields) == 2 and fields[1]:
        if not fields[1].isdigit():
            raise typer.BadParameter(f"Lines changed must be a number, got: {fields[1]}")
        lines_changed = int(fields[1])
    return FileRef(path=path, change_kind=change_kind, lines_changed=lines_changed)


def parse_work_item_spec(spec: str) -> WorkItemRef:
    """Parse ID[:KIND] into a WorkItemRef."""
    item_id, _, kind = spec.partition(":")
    if not item_id:
        raise typer.BadParameter(f"Expected ID[:KIND], got: {spec}")
    return WorkItemRef(id=item_id, kind=(kind or "task").lower())


def _print_result_table(result: ExecutionContext) -> None:
    context = result.context.effective_context

    if not result.proceed:
        print_panel("STOP", result.reason, style="red")
    elif result.mitigation:
        print_panel("PROCEED WITH MITIGATION", result.reason, style="yellow")
    else:
        print_panel("PROCEED", result.reason, style="green")

    table = create_table("Context")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Domain", context.primary_domain)
    table.add_row("Persona", context.persona)
    table.add_row("Complexity", context.complexity.value)
    table.add_row("Risk", f"{result.risk_level.value} ({result.risk_score})")
    table.add_row("Confidence", f"{context.confidence}")
    if result.risk_factors:
        table.add_row("Risk factors", ", ".join(result.risk_factors))
    if result.context.suggested_persona:
        table.add_row(
            "Learning",
            f"suggested {result.context.suggested_persona} "
            f"({result.context.persona_confidence})",
        )
    print_table(table)

    if result.mitigation:
        console.print("\n[bold]Mitigation[/bold]")
        for step in result.mitigation:
            console.print(f"  • {step}")

    console.print(f"\n[bold]Instructions[/bold] ({len(result.instructions)})")
    for instruction_id in result.instructions:
        console.print(f"  • {instruction_id}")
    if result.truncated:
        print_warning("Some relevant instructions did not fit the size budget")
    if result.degraded:
        print_warning("Core instructions alone exceed the size budget")
    if result.fallback:
        print_warning("Fallback result: an internal fault occurred")


@app.command(name="evaluate")
def evaluate(
    ctx: typer.Context,
    text: str = typer.Argument("", help="Request description"),
    file: list[str] | None = typer.Option(
        None,
        "--file",
        "-f",
        help="Touched file as PATH[:KIND[:LINES]] (repeatable)",
    ),
    work_item: str | None = typer.Option(
        None, "--work-item", "-w", help="Linked work item as ID[:KIND]"
    ),
    stdin: bool = typer.Option(
        False, "--stdin", help="Read the request as JSON from stdin"
    ),
    output_format: str = typer.Option(
        "table", "--format", help="Output format: table, json or markdown"
    ),
) -> None:
    """Evaluate a request: select instructions and decide whether it may proceed.

    Exits with code 2 when the decision is Stop.
    """
    if output_format not in OUTPUT_FORMATS:
        raise typer.BadParameter(
            f"Unknown format '{output_format}' (expected {', '.join(OUTPUT_FORMATS)})"
        )

    if stdin:
        raw = typer.get_text_stream("stdin").read().strip()
        try:
            payload = json.loads(raw) if raw else {}
        except json.JSONDecodeError as e:
            print_error(f"Invalid JSON on stdin: {e}")
            raise typer.Exit(1)
        request: Request | dict = payload
    else:
        request = Request(
            text=text,
            files=tuple(parse_file_spec(spec) for spec in file or []),
            work_item=parse_work_item_spec(work_item) if work_item else None,
        )

    pipeline = _load_pipeline(ctx)
    result = pipeline.process(request)

    if output_format == "json":
        typer.echo(json.dumps(result.to_dict(), indent=2))
    elif output_format == "markdown":
        typer.echo(format_markdown(result))
    else:
        _print_result_table(result)

    if not result.proceed:
        raise typer.Exit(EXIT_STOP)


@app.command(name="feedback")
def feedback(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Primary domain of the request"),
    persona: str = typer.Argument(..., help="Persona that handled the request"),
    success: bool = typer.Option(
        ..., "--success/--failure", help="Whether the outcome was successful"
    ),
) -> None:
    """Record the outcome of a completed request for learning."""
    pipeline = _load_pipeline(ctx)
    if not pipeline.record_outcome(domain, persona, success):
        print_error("No learning engine configured")
        raise typer.Exit(1)

    record = pipeline.learning.store.get(domain, persona) if pipeline.learning else None
    outcome = "success" if success else "failure"
    if record is None:
        print_warning(f"Outcome for {domain}/{persona} could not be stored")
        raise typer.Exit(1)
    print_success(
        f"Recorded {outcome} for {domain}/{persona} "
        f"({record.success_count}/{record.total_count})"
    )


@app.command(name="stats")
def stats(ctx: typer.Context) -> None:
    """Show learning history per domain and persona."""
    pipeline = _load_pipeline(ctx)
    if pipeline.learning is None:
        print_error("No learning engine configured")
        raise typer.Exit(1)

    learning_stats = pipeline.learning.stats()
    records = learning_stats["records"]
    if not records:
        console.print("[dim]No outcomes recorded yet.[/dim]")
        return

    min_samples = pipeline.settings.learning.min_samples
    table = create_table("Learning History")
    table.add_column("Domain", style="cyan")
    table.add_column("Persona", style="green")
    table.add_column("Success", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Ratio", justify="right")
    table.add_column("Trusted")
    for record in records:
        table.add_row(
            record["domain"],
            record["persona"],
            str(record["success_count"]),
            str(record["total_count"]),
            f"{record['success_ratio']:.0%}",
            "yes" if record["total_count"] >= min_samples else "[dim]no[/dim]",
        )
    print_table(table)
    console.print(
        f"\n[dim]Records: {learning_stats['record_count']} | "
        f"Outcomes: {learning_stats['outcome_count']}[/dim]"
    )


@app.command(name="catalog")
def catalog(ctx: typer.Context) -> None:
    """Show the configured instruction catalog."""
    pipeline = _load_pipeline(ctx)
    active = pipeline.catalog
    catalog_stats = active.stats()

    if len(active) == 0:
        console.print("[dim]Catalog is empty.[/dim]")
    else:
        table = create_table("Instruction Catalog")
        table.add_column("ID", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Tags", style="blue")
        table.add_column("Cost", justify="right")
        for entry in active:
            table.add_row(
                entry.id, entry.type.value, ", ".join(sorted(entry.tags)), str(entry.size_cost)
            )
        print_table(table)

    console.print(
        f"\n[dim]Entries: {catalog_stats['total_count']} | "
        f"Total cost: {catalog_stats['total_size_cost']} | "
        f"Budget: {pipeline.budget}[/dim]"
    )
    for excluded in catalog_stats["excluded"]:
        print_warning(f"Excluded {excluded['id']}: {excluded['reason']}")


if __name__ == "__main__":
    app()
