"""
storyvault CLI - Main Entry Point.

Provides the `storyvault` command for inspecting and maintaining save slots.
"""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from storyvault.context import StoryContext, create_context
from storyvault.core.config import get_settings
from storyvault.persistence.listing import default_list_length, default_page, page_slots

# Initialize CLI app
app = typer.Typer(
    name="storyvault",
    help="storyvault - save slots and undo history for interactive stories",
    no_args_is_help=True,
)

console = Console()

saves_app = typer.Typer(help="Save slot operations", no_args_is_help=True)
app.add_typer(saves_app, name="saves")


def _report(description: str, data: Any) -> None:
    console.print(f"[red]{description}[/red] {data}")


def get_context() -> StoryContext:
    """Build a story context from the current configuration."""
    return create_context(get_settings(), error_sink=_report)


def run_async(coro):
    """Run async function from sync context."""
    return asyncio.run(coro)


def _format_date(value: Any) -> str:
    if not value:
        return ""
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M")


def _details_row(slot: int, data: dict[str, Any] | None, latest: bool = False) -> list[str]:
    if data is None:
        return [str(slot), "", "[dim]empty[/dim]", "", ""]
    metadata = data.get("metadata") or {}
    title = data.get("title") or ""
    if latest:
        title = f"[bold]{title}[/bold] *"
    return [
        "auto" if slot == 0 else str(slot),
        _format_date(data.get("date")),
        title,
        str(metadata.get("saveId") or ""),
        str(metadata.get("saveName") or ""),
    ]


# =============================================================================
# Save Sub-commands
# =============================================================================


@saves_app.command("list")
def saves_list(
    page: int | None = typer.Option(None, "--page", "-p", min=1, help="Page to show (1-based)"),
    length: int | None = typer.Option(None, "--length", "-l", min=1, max=20, help="Slots per page"),
):
    """List save slots, one page at a time."""
    context = get_context()

    async def _list():
        try:
            return await context.saves.get_details()
        finally:
            context.close()

    details = run_async(_list())
    if details is None:
        console.print("[red]Couldn't read the save list[/red]")
        raise typer.Exit(1)

    length = length or default_list_length(details)
    page_index = page - 1 if page is not None else default_page(details, length)
    by_slot = {row["slot"]: row["data"] for row in details}

    latest_date = max((row["data"].get("date") or 0 for row in details if row["slot"] != 0), default=0)

    table = Table(title=f"Saves - page {page_index + 1}")
    table.add_column("Slot", style="cyan", justify="right")
    table.add_column("Date")
    table.add_column("Title")
    table.add_column("Save ID", style="dim")
    table.add_column("Name")

    table.add_row(*_details_row(0, by_slot.get(0)))
    for slot in page_slots(page_index, length):
        data = by_slot.get(slot)
        latest = data is not None and bool(latest_date) and data.get("date") == latest_date
        table.add_row(*_details_row(slot, data, latest))

    console.print(table)


@saves_app.command("show")
def saves_show(
    slot: int = typer.Argument(..., help="Slot to show (0 is the autosave)"),
    raw: bool = typer.Option(False, "--raw", "-r", help="Print the stored record as JSON"),
):
    """Show the contents of one save slot."""
    context = get_context()

    async def _show():
        try:
            return await context.saves.get(slot)
        finally:
            context.close()

    record = run_async(_show())
    if record is None:
        console.print(f"[yellow]Slot {slot} is empty[/yellow]")
        raise typer.Exit(1)

    if raw:
        console.print_json(json.dumps(record, default=str))
        return

    data = record["data"]
    compressed = "delta" in data
    moments = data["delta"] if compressed else data["history"]
    console.print(f"[bold]Slot {slot}[/bold]")
    console.print(f"  Index:      {data.get('index')}")
    console.print(f"  Moments:    {len(moments)}" + (" (delta-encoded)" if compressed else ""))
    console.print(f"  First:      {moments[0].get('title') if moments else ''}")
    if data.get("expired"):
        console.print(f"  Expired:    {len(data['expired'])}")
    if "seed" in data:
        console.print(f"  PRNG seed:  {data['seed']}")


@saves_app.command("delete")
def saves_delete(
    slot: int = typer.Argument(..., help="Slot to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete one save slot."""
    if not yes:
        typer.confirm(f"Delete save slot {slot}?", abort=True)

    context = get_context()

    async def _delete():
        try:
            return await context.saves.delete(slot)
        finally:
            context.close()

    if run_async(_delete()):
        console.print(f"[green]Deleted slot {slot}[/green]")
    else:
        console.print(f"[red]Couldn't delete slot {slot}[/red]")
        raise typer.Exit(1)


@saves_app.command("clear")
def saves_clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm wiping every slot"),
):
    """Delete every save slot."""
    if not yes:
        console.print("[yellow]Refusing to clear saves without --yes[/yellow]")
        raise typer.Exit(1)

    context = get_context()

    async def _clear():
        try:
            return await context.saves.clear()
        finally:
            context.close()

    if run_async(_clear()):
        console.print("[green]Cleared every save slot[/green]")
    else:
        console.print("[red]Couldn't clear saves[/red]")
        raise typer.Exit(1)


@saves_app.command("migrate")
def saves_migrate():
    """Copy saves from the legacy key-value store into the save database."""
    context = get_context()

    async def _migrate():
        try:
            await context.saves.open()
            await context.saves.migrate_legacy()
            return context.saves.details
        finally:
            context.close()

    details = run_async(_migrate())
    console.print(f"[green]Migration finished:[/green] {len(details)} slots in the save database")


# =============================================================================
# Core Commands
# =============================================================================


@app.command()
def config(
    show: bool = typer.Option(False, "--show", "-s", help="Show current configuration"),
    init: bool = typer.Option(False, "--init", "-i", help="Initialize config file"),
    path: Path | None = typer.Option(None, "--path", "-p", help="Config file path"),
):
    """Manage configuration."""
    if init:
        config_path = path or Path.home() / ".storyvault" / "config.yaml"
        config_path.parent.mkdir(parents=True, exist_ok=True)

        default_config = """# storyvault configuration

# History
max_states: 100
max_expired: 100
max_session_states: 20
save_depth: 100

# Storage
db_name: idb
data_directory: ~/.storyvault
backend: sqlite

# Save policy
compress_autosave: false
reject_opaque_values: false
"""
        config_path.write_text(default_config)
        console.print(f"[green]Created config file:[/green] {config_path}")
        return

    if show:
        settings = get_settings()
        table = Table(title="Current Configuration")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")

        for field in type(settings).model_fields:
            table.add_row(field, str(getattr(settings, field)))

        console.print(table)
        return

    console.print("Use --show to print the configuration or --init to create a config file")


@app.command()
def version():
    """Show version information."""
    from storyvault import __version__

    console.print(f"storyvault v{__version__}")


# =============================================================================
# Entry Point
# =============================================================================


def main():
    """Main entry point for the CLI."""
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(levelname)s: %(message)s",
    )
    app()


if __name__ == "__main__":
    main()
