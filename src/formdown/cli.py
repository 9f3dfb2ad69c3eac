"""formdown CLI: inspect, patch, reformat and fill markdown forms."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import click
import yaml
from rich.console import Console
from rich.table import Table as RichTable
from rich.tree import Tree

from .core.exports import export_values, field_summary, render_report
from .core.inspector import InspectResult, inspect_form
from .core.models import FormDocument, IssueCategory, IssueSeverity, SyntaxStyle
from .core.parser import parse_form
from .core.patches import apply_patches
from .core.serializer import serialize_form
from .errors import FormdownError, ParseError
from .harness.agents import MockAgent, RejectionMockAgent
from .harness.config import load_harness_config
from .harness.harness import FillHarness
from .harness.record import sidecar_path

console = Console()
err_console = Console(stderr=True)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load(path: str) -> FormDocument:
    text = Path(path).read_text(encoding="utf-8")
    try:
        return parse_form(text)
    except ParseError as exc:
        err_console.print(f"[red]✗ {path}: {exc}[/red]")
        raise SystemExit(2)


def _write(doc: FormDocument, output: Optional[str], **kwargs: Any) -> None:
    text = serialize_form(doc, **kwargs)
    if output:
        Path(output).write_text(text, encoding="utf-8")
        err_console.print(f"[green]✓ Wrote {output}[/green]")
    else:
        sys.stdout.write(text)


def _issue_table(result: InspectResult) -> RichTable:
    table = RichTable(title="Issues", show_lines=False)
    table.add_column("Ref", style="bold cyan")
    table.add_column("Severity")
    table.add_column("P", justify="right")
    table.add_column("Category", style="dim")
    table.add_column("Message")
    for issue in result.issues:
        style = "red" if issue.severity == IssueSeverity.REQUIRED else "yellow"
        table.add_row(
            issue.ref,
            f"[{style}]{issue.severity.value}[/{style}]",
            str(issue.priority),
            issue.category.value,
            issue.message,
        )
    return table


@click.group()
@click.version_option(version="0.1.0", prog_name="formdown")
def main():
    """formdown: typed, fillable forms written in markdown."""
    pass


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--role", "roles", multiple=True, help="Only fields for this role (repeatable; '*' for all).")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the inspection as JSON.")
@click.option("-v", "--verbose", is_flag=True, default=False)
def inspect(path: str, roles: tuple[str, ...], as_json: bool, verbose: bool):
    """Show the structure, fill state and outstanding issues of a form."""
    _setup_logging(verbose)
    doc = _load(path)
    result = inspect_form(doc, roles=list(roles) or None)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    tree = Tree(f"[bold]{doc.form.title or doc.form.id}[/bold] [dim]({doc.syntax.value})[/dim]")
    for group in doc.form.groups:
        label = group.title or group.id
        if group.implicit:
            label = "[dim](ungrouped)[/dim]"
        node = tree.add(f"[blue]{label}[/blue]")
        for fld in group.fields:
            response = doc.response_for(fld.id)
            mark = "*" if fld.required else " "
            node.add(
                f"{mark} [bold]{fld.id}[/bold] [dim]{fld.kind}[/dim]  "
                f"{response.state.value}: {field_summary(fld, response)}"
            )
    console.print(tree)

    progress = result.progress
    console.print(
        f"\n[bold]State:[/bold] {result.form_state.value}   "
        f"answered {progress.answered_fields}/{progress.total_fields}, "
        f"skipped {progress.skipped_fields}, aborted {progress.aborted_fields}"
    )
    if result.issues:
        console.print(_issue_table(result))
    else:
        console.print("[green]✓ No issues[/green]")


@main.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
def validate(paths: tuple[str, ...]):
    """Check that forms parse and hold no malformed values.

    Exit status is 1 when any form is invalid.
    """
    failed = False
    for path in paths:
        try:
            doc = parse_form(Path(path).read_text(encoding="utf-8"))
        except ParseError as exc:
            console.print(f"[red]✗ {path}: {exc}[/red]")
            failed = True
            continue
        result = inspect_form(doc)
        malformed = [i for i in result.issues if i.category == IssueCategory.MALFORMED]
        if malformed:
            failed = True
            console.print(f"[red]✗ {path}: {len(malformed)} malformed value(s)[/red]")
            for issue in malformed:
                console.print(f"    {issue.ref}: {issue.message}")
        else:
            state = "complete" if result.is_complete else result.form_state.value
            console.print(f"[green]✓ {path}[/green] [dim]({state})[/dim]")
    if failed:
        raise SystemExit(1)


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.argument("patches", type=click.File("r"))
@click.option("-o", "--output", type=click.Path(), default=None, help="Write the patched form here.")
@click.option("--in-place", is_flag=True, default=False, help="Overwrite PATH with the patched form.")
@click.option("-v", "--verbose", is_flag=True, default=False)
def apply(path: str, patches, output: Optional[str], in_place: bool, verbose: bool):
    """Apply a JSON or YAML list of patches to a form as one transaction.

    PATCHES is a file path, or '-' for stdin.
    """
    _setup_logging(verbose)
    doc = _load(path)
    data = yaml.safe_load(patches.read()) or []
    if isinstance(data, dict):
        data = data.get("patches", [data])

    result = apply_patches(doc, data)
    for warning in result.warnings:
        err_console.print(f"[yellow]! patch {warning.patch_index}: {warning.message}[/yellow]")
    if not result.applied:
        table = RichTable(title="Rejected patches")
        table.add_column("#", justify="right")
        table.add_column("Op", style="bold")
        table.add_column("Field", style="cyan")
        table.add_column("Reason", style="red")
        table.add_column("Message")
        for rejection in result.rejections:
            table.add_row(
                str(rejection.patch_index),
                rejection.op,
                rejection.field_id,
                rejection.reason.value,
                rejection.message,
            )
        err_console.print(table)
        raise SystemExit(1)

    _write(doc, path if in_place else output)


@main.command(name="format")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--canonical", is_flag=True, default=False, help="Regenerate the whole document.")
@click.option(
    "--syntax",
    type=click.Choice([s.value for s in SyntaxStyle], case_sensitive=False),
    default=None,
    help="Convert markers to this syntax (implies --canonical).",
)
@click.option("-o", "--output", type=click.Path(), default=None)
def format_cmd(path: str, canonical: bool, syntax: Optional[str], output: Optional[str]):
    """Write a form back out, optionally canonicalised or converted."""
    doc = _load(path)
    style = SyntaxStyle(syntax) if syntax else None
    _write(doc, output, canonical=canonical or style is not None, syntax=style)


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "-f", "--format",
    "fmt",
    type=click.Choice(["json", "yaml", "markdown"], case_sensitive=False),
    default="json",
    help="Output format (default: json).",
)
@click.option("--states", is_flag=True, default=False, help="Include every field with its answer state.")
def export(path: str, fmt: str, states: bool):
    """Export the values of a form."""
    doc = _load(path)
    fmt = fmt.lower()
    if fmt == "markdown":
        sys.stdout.write(render_report(doc))
        return
    values = export_values(doc, include_states=states)
    if fmt == "yaml":
        sys.stdout.write(yaml.safe_dump(values, sort_keys=False, allow_unicode=True))
    else:
        click.echo(json.dumps(values, indent=2, ensure_ascii=False))


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--mock", "completed",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Completed form the mock agent copies values from.",
)
@click.option("--rejection-test", is_flag=True, default=False, help="Use the mock that sends wrong-kind patches first.")
@click.option("-c", "--config", "config_path", type=click.Path(), default=None, help="Harness config file (YAML/JSON).")
@click.option("--max-turns", type=int, default=None)
@click.option("--max-patches", type=int, default=None, help="Max patches per turn.")
@click.option("--max-issues", type=int, default=None, help="Max issues per turn.")
@click.option("--role", "roles", multiple=True, help="Target role (repeatable).")
@click.option("--sequential", is_flag=True, default=False, help="Run parallel batches one at a time.")
@click.option("-o", "--output", type=click.Path(), default=None, help="Write the filled form here.")
@click.option("--record", "record_path", type=click.Path(), default=None, help="Fill record path (.json/.yaml).")
@click.option("-v", "--verbose", is_flag=True, default=False)
def fill(
    path: str,
    completed: str,
    rejection_test: bool,
    config_path: Optional[str],
    max_turns: Optional[int],
    max_patches: Optional[int],
    max_issues: Optional[int],
    roles: tuple[str, ...],
    sequential: bool,
    output: Optional[str],
    record_path: Optional[str],
    verbose: bool,
):
    """Fill a form with a mock agent through the harness."""
    _setup_logging(verbose)
    doc = _load(path)
    source = _load(completed)
    try:
        config = load_harness_config(
            config_path,
            doc=doc,
            max_turns=max_turns,
            max_patches_per_turn=max_patches,
            max_issues_per_turn=max_issues,
            target_roles=list(roles) or None,
            concurrent=False if sequential else None,
        )
    except FormdownError as exc:
        err_console.print(f"[red]✗ {exc}[/red]")
        raise SystemExit(2)

    agent = RejectionMockAgent(source) if rejection_test else MockAgent(source)
    result = asyncio.run(FillHarness(doc, config).run(agent))

    table = RichTable(title="Fill timeline", show_lines=False)
    table.add_column("Turn", justify="right")
    table.add_column("Execution", style="cyan")
    table.add_column("Issues", justify="right")
    table.add_column("Patches", justify="right")
    table.add_column("Result")
    table.add_column("Required left", justify="right")
    for turn in result.record.turns:
        outcome = "[green]applied[/green]" if turn.applied else f"[red]{len(turn.rejections)} rejected[/red]"
        if not turn.patches:
            outcome = "[yellow]no patches[/yellow]"
        table.add_row(
            str(turn.turn),
            turn.execution_id,
            str(len(turn.issues)),
            str(len(turn.patches)),
            outcome,
            str(turn.required_issues_after),
        )
    err_console.print(table)

    colour = "green" if result.is_complete else "yellow"
    err_console.print(f"[{colour}]{result.status.value}[/{colour}]")

    if record_path:
        result.record.save(record_path)
    elif output:
        result.record.save(sidecar_path(output))
    _write(result.document, output)
    if not result.is_complete:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
