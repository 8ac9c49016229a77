"""Command-line interface for structuresheets."""

from __future__ import annotations

import json
from pathlib import Path

import click
import yaml
from pydantic import ValidationError

from structuresheets import __version__


@click.group()
@click.version_option(version=__version__, prog_name="structuresheets")
def main() -> None:
    """structuresheets -- spreadsheet grids built from cells, arrays and tables."""


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _open_document(path: str):
    """Load a document, attaching the event log of the project it lives in."""
    from structuresheets.logging.events import set_project_dir
    from structuresheets.project import load_document

    doc_path = Path(path)
    set_project_dir(doc_path.parent)
    try:
        return load_document(doc_path)
    except (ValueError, ValidationError, yaml.YAMLError) as e:
        raise click.ClickException(f"Invalid document {doc_path.name}: {e}")


# ---------------------------------------------------------------------------
# New
# ---------------------------------------------------------------------------


@main.command()
@click.argument("directory", type=click.Path())
def new(directory: str) -> None:
    """Scaffold a new project at DIRECTORY."""
    from structuresheets.project import scaffold_project

    try:
        result = scaffold_project(Path(directory))
        click.echo(f"Created project at {result}")
    except FileExistsError as e:
        raise click.ClickException(str(e))


# ---------------------------------------------------------------------------
# Show / Eval
# ---------------------------------------------------------------------------


@main.command()
@click.argument("document", type=click.Path(exists=True, dir_okay=False))
@click.option("--rows", default=10, type=click.IntRange(min=1), help="Rows to print.")
@click.option("--cols", default=6, type=click.IntRange(min=1), help="Columns to print.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def show(document: str, rows: int, cols: int, as_json: bool) -> None:
    """Recalculate DOCUMENT and print the top-left block of the grid."""
    from structuresheets.formulas.refs import index_to_col_letter

    doc = _open_document(document)
    rows = min(rows, doc.max_rows)
    cols = min(cols, doc.max_cols)
    grid = doc.grid_values(rows, cols)

    if as_json:
        click.echo(json.dumps(grid, indent=2))
        return

    widths = [
        max([len(index_to_col_letter(c))] + [len(grid[r][c]) for r in range(rows)])
        for c in range(cols)
    ]
    label_width = len(str(rows))
    header = " " * label_width + " | " + " | ".join(
        index_to_col_letter(c).ljust(widths[c]) for c in range(cols)
    )
    click.echo(header)
    click.echo("-" * len(header))
    for r in range(rows):
        cells = " | ".join(grid[r][c].ljust(widths[c]) for c in range(cols))
        click.echo(f"{str(r + 1).rjust(label_width)} | {cells}")

    errors = [s for s in doc.store.values() if s.formula_error]
    for s in errors:
        click.echo(f"  ! {s.name or s.id}: {s.formula_error}", err=True)


@main.command("eval")
@click.argument("document", type=click.Path(exists=True, dir_okay=False))
@click.argument("formula")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def eval_cmd(document: str, formula: str, as_json: bool) -> None:
    """Evaluate FORMULA against DOCUMENT without storing it."""
    from structuresheets.formulas.values import format_value

    doc = _open_document(document)
    value, dependencies = doc.evaluate(formula)

    if as_json:
        out = {
            "kind": value.kind.value,
            "value": value.value,
            "display": format_value(value),
            "dependencies": [d.model_dump() for d in dependencies],
        }
        click.echo(json.dumps(out, indent=2, default=str))
        return

    click.echo(f"{value.kind.value}: {format_value(value)}")
    for d in dependencies:
        fields = ", ".join(f"{k}={v}" for k, v in d.model_dump().items() if k != "type")
        click.echo(f"  depends on {d.type}({fields})")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@main.command("events")
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
@click.option("--level", default=None, type=click.Choice(["info", "warning", "error"]), help="Filter by level.")
@click.option("--type", "event_type", default=None, help="Filter by event type.")
@click.option("--structure", "structure_id", default=None, help="Filter by structure id.")
@click.option("--limit", default=100, type=int, help="Maximum events to show.")
def events_cmd(
    directory: str,
    level: str | None,
    event_type: str | None,
    structure_id: str | None,
    limit: int,
) -> None:
    """Show structured event log for DIRECTORY."""
    from structuresheets.logging.sink import EventSink

    sink = EventSink(Path(directory))
    events = sink.read_global(
        level=level,
        event_type=event_type,
        structure_id=structure_id,
        limit=limit,
    )

    if not events:
        click.echo("No events found.")
        return

    for evt in events:
        ts = evt.get("ts", "")
        lvl = evt.get("level", "").upper()
        etype = evt.get("event_type", "")
        msg = evt.get("message", "")
        err = evt.get("error_code")
        line = f"[{ts}] {lvl:7s} {etype}: {msg}"
        if err:
            line += f"  ({err})"
        click.echo(line)
