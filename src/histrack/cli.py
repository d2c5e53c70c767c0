"""
CLI entry point for histrack.

This module provides the Typer-based command-line interface for histrack.

Commands:
    record      Record one command (called by shell hooks)
    history     Show the command history of a directory
    search      Search commands in one directory or all of them
    dirs        List directories that have history
    cleanup     Delete old records and trim directories to a cap
    optimize    Compact the store and refresh query statistics
    stats       Show store totals and size
    config      Show or create the configuration file

Architecture Note:
    The CLI is thin: it loads configuration, opens the store and renders
    what the store returns. Store and capture logic live in histrack.store
    and histrack.capture so they can be used without the CLI.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Annotated, Any, NoReturn, Optional

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from histrack import __version__
from histrack.capture import CommandRecorder
from histrack.config import (
    HistrackConfig,
    config_to_dict,
    default_config_path,
    load_config,
    open_store_from_config,
    save_config,
)
from histrack.errors import HistrackError, StorageError
from histrack.logging_config import LOGGER_NAME, configure_capture_log, configure_logging
from histrack.paths import normalize_directory, shorten_home
from histrack.schema import CommandFilter, CommandRecord, ShellType
from histrack.store.base import StorageEngine

app = typer.Typer(
    name="histrack",
    help="Record and browse shell command history per directory.",
    add_completion=False,
    no_args_is_help=True,
)

config_app = typer.Typer(
    name="config",
    help="Show or create the histrack configuration.",
    no_args_is_help=True,
)
app.add_typer(config_app, name="config")

console = Console()
err_console = Console(stderr=True)

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([mhdw])\s*$", re.IGNORECASE)
_DURATION_UNITS = {"m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


@dataclass
class CliState:
    """Options shared by every command."""

    config: HistrackConfig
    config_path: Path
    verbose: bool = False
    config_error: HistrackError | None = None


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]histrack[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            help="Path to the config file. Defaults to $HISTRACK_CONFIG or ~/.histrack/config.yaml.",
        ),
    ] = None,
    db: Annotated[
        Optional[Path],
        typer.Option(
            "--db",
            help="Path to the history database (overrides storage_path).",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            help="Enable verbose logging to stderr.",
        ),
    ] = False,
) -> None:
    """
    histrack - Per-directory shell command history.

    Commands are captured by shell hooks and stored in a local SQLite
    database, keyed by the directory they ran in.
    """
    path = config_path.expanduser() if config_path else default_config_path()
    config_error: HistrackError | None = None
    try:
        config = load_config(path)
    except HistrackError as e:
        config = HistrackConfig()
        config_error = e

    if db is not None:
        config = config.model_copy(update={"storage_path": str(db.expanduser())})

    ctx.obj = CliState(config=config, config_path=path, verbose=verbose, config_error=config_error)


def _state(ctx: typer.Context) -> CliState:
    state: CliState = ctx.obj
    if state.config_error is not None:
        err_console.print(f"[red]Configuration error: {escape(str(state.config_error))}[/red]")
        raise typer.Exit(code=1)
    configure_logging(level="DEBUG" if state.verbose else "WARNING", verbose=state.verbose)
    return state


def _open_store(state: CliState) -> StorageEngine:
    """Open and initialize the configured store, or exit with an error."""
    try:
        store = open_store_from_config(state.config)
        store.initialize()
    except (HistrackError, OSError) as e:
        err_console.print(f"[red]Cannot open history store: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)
    return store


def _fail(e: Exception, json_output: bool = False) -> NoReturn:
    """Report a store error and exit 1."""
    if json_output and isinstance(e, HistrackError):
        _output_json_error(e)
    else:
        err_console.print(f"[red]Error: {escape(str(e))}[/red]")
    raise typer.Exit(code=1)


def parse_since(value: str) -> timedelta:
    """
    Parse a relative duration such as "30m", "24h", "7d" or "2w".

    Raises:
        typer.BadParameter: If the value is not a count followed by m/h/d/w
    """
    match = _DURATION_RE.match(value)
    if not match:
        msg = f"Invalid duration {value!r}: use a number followed by m, h, d or w (e.g. 24h)"
        raise typer.BadParameter(msg)
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit.lower()]: int(amount)})


def parse_shell(value: str) -> ShellType:
    """
    Parse a shell name given on the command line.

    Raises:
        typer.BadParameter: If the name is not a known shell
    """
    shell = ShellType.parse(value)
    if shell == ShellType.UNKNOWN and value.strip().lower() != "unknown":
        names = ", ".join(s.value for s in ShellType)
        raise typer.BadParameter(f"Unknown shell {value!r}: use one of {names}")
    return shell


def _format_time(value: datetime) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _format_duration(value: timedelta) -> str:
    seconds = value.total_seconds()
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, seconds = divmod(int(seconds), 60)
    return f"{minutes}m{seconds:02d}s"


def _record_to_dict(record: CommandRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "command": record.command,
        "directory": record.directory,
        "timestamp": record.timestamp.isoformat(),
        "shell": record.shell.value,
        "exit_code": record.exit_code,
        "duration_ms": record.duration.total_seconds() * 1000,
        "tags": list(record.tags),
    }


def _output_json_error(error: HistrackError) -> None:
    """Output an error in JSON format."""
    output = {"error": True, **error.to_dict()}
    print(json.dumps(output, indent=2, default=str))


def _display_records(records: list[CommandRecord], show_directory: bool = False) -> None:
    """Render records as a table, most recent first."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("Time", style="dim")
    if show_directory:
        table.add_column("Directory", style="blue")
    table.add_column("Exit", justify="right", width=4)
    table.add_column("Duration", justify="right")
    table.add_column("Command", style="cyan")
    table.add_column("Tags", style="dim")

    for record in records:
        exit_display = (
            f"[green]{record.exit_code}[/green]"
            if record.exit_code == 0
            else f"[red]{record.exit_code}[/red]"
        )
        tags = ", ".join(t for t in record.tags if not t.startswith(("cmd-", "shell-")))
        row = [_format_time(record.timestamp)]
        if show_directory:
            row.append(escape(shorten_home(record.directory)))
        row.extend([exit_display, _format_duration(record.duration), escape(record.command), tags])
        table.add_row(*row)

    console.print(table)


# =============================================================================
# Commands
# =============================================================================


@app.command(context_settings={"ignore_unknown_options": True})
def record(
    ctx: typer.Context,
    command: Annotated[
        list[str],
        typer.Argument(help="The command line that was executed."),
    ],
    directory: Annotated[
        Optional[str],
        typer.Option("--dir", "-d", help="Directory the command ran in. Defaults to the current directory."),
    ] = None,
    exit_code: Annotated[
        int,
        typer.Option("--exit-code", "-e", help="Exit status of the command."),
    ] = 0,
    duration_ms: Annotated[
        int,
        typer.Option("--duration-ms", help="Execution time in milliseconds."),
    ] = 0,
    shell: Annotated[
        Optional[str],
        typer.Option("--shell", "-s", help="Shell name (bash, zsh, powershell, cmd)."),
    ] = None,
) -> None:
    """
    Record one executed command.

    Intended for shell hooks. Never prints and always exits 0, so a broken
    store cannot disturb the prompt. Problems go to the capture log.

    Example:
        $ histrack record --dir "$PWD" --exit-code $? -- git status
    """
    state: CliState = ctx.obj
    if state.config_error is not None:
        raise typer.Exit(code=0)

    handler = configure_capture_log(state.config.resolved_log_file(), state.config.log_level)
    try:
        CommandRecorder(state.config).record(
            " ".join(command),
            directory,
            exit_code=exit_code,
            duration=timedelta(milliseconds=max(duration_ms, 0)),
            shell=shell,
        )
    finally:
        if handler is not None:
            logging.getLogger(LOGGER_NAME).removeHandler(handler)
            handler.close()
    raise typer.Exit(code=0)


@app.command()
def history(
    ctx: typer.Context,
    directory: Annotated[
        Optional[str],
        typer.Option("--dir", "-d", help="Directory to show. Defaults to the current directory."),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum number of commands to show.", min=1),
    ] = 20,
    shell: Annotated[
        Optional[str],
        typer.Option("--shell", "-s", help="Only show commands from this shell."),
    ] = None,
    since: Annotated[
        Optional[str],
        typer.Option("--since", help="Only show commands newer than this (e.g. 30m, 24h, 7d, 2w)."),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
) -> None:
    """
    Show the command history of a directory, most recent first.

    Example:
        $ histrack history --since 24h --limit 50
    """
    state = _state(ctx)
    target = normalize_directory(directory or os.getcwd())
    criteria = CommandFilter(
        directory=target,
        shell=parse_shell(shell) if shell else None,
        since=datetime.now(UTC) - parse_since(since) if since else None,
        limit=limit,
    )

    store = _open_store(state)
    try:
        records = store.filter_commands(criteria)
    except StorageError as e:
        _fail(e, json_output)
    finally:
        store.close()

    if json_output:
        print(json.dumps([_record_to_dict(r) for r in records], indent=2))
        return

    if not records:
        console.print(f"[dim]No history for {escape(shorten_home(target))}.[/dim]")
        return

    console.print(f"[bold]{escape(shorten_home(target))}[/bold]")
    _display_records(records)


@app.command()
def search(
    ctx: typer.Context,
    pattern: Annotated[
        str,
        typer.Argument(help="Substring to search for."),
    ],
    directory: Annotated[
        Optional[str],
        typer.Option("--dir", "-d", help="Directory to search. Defaults to the current directory."),
    ] = None,
    all_dirs: Annotated[
        bool,
        typer.Option("--all", "-a", help="Search every directory with history."),
    ] = False,
    ignore_case: Annotated[
        bool,
        typer.Option("--ignore-case", "-i", help="Match regardless of case."),
    ] = False,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum number of results.", min=1),
    ] = 50,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
) -> None:
    """
    Search commands containing PATTERN.

    Searches the current directory by default; --all searches every
    directory that has history.

    Example:
        $ histrack search docker --all
    """
    state = _state(ctx)
    if all_dirs and directory:
        err_console.print("[red]Use either --dir or --all, not both.[/red]")
        raise typer.Exit(code=2)

    store = _open_store(state)
    try:
        if all_dirs:
            directories = store.get_directories_with_history()
        else:
            directories = [normalize_directory(directory or os.getcwd())]
        records = []
        for target in directories:
            records.extend(_search_directory(store, pattern, target, ignore_case))
    except StorageError as e:
        _fail(e, json_output)
    finally:
        store.close()

    records.sort(key=lambda r: r.timestamp, reverse=True)
    records = records[:limit]

    if json_output:
        print(json.dumps([_record_to_dict(r) for r in records], indent=2))
        return

    if not records:
        console.print(f"[dim]No commands matching {escape(pattern)!r}.[/dim]")
        return

    _display_records(records, show_directory=all_dirs)


def _search_directory(
    store: StorageEngine,
    pattern: str,
    directory: str,
    ignore_case: bool,
) -> list[CommandRecord]:
    if not ignore_case:
        return store.search_commands(pattern, directory)
    needle = pattern.casefold()
    return [r for r in store.get_commands_by_directory(directory) if needle in r.command.casefold()]


@app.command()
def dirs(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
) -> None:
    """
    List directories that have history, most recently used first.

    Example:
        $ histrack dirs
    """
    state = _state(ctx)
    store = _open_store(state)
    try:
        stats = store.get_directory_stats()
    except StorageError as e:
        _fail(e, json_output)
    finally:
        store.close()

    if json_output:
        print(json.dumps([s.model_dump(mode="json") for s in stats], indent=2))
        return

    if not stats:
        console.print("[dim]No history recorded yet.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Directory", style="cyan")
    table.add_column("Commands", justify="right")
    table.add_column("First used", style="dim")
    table.add_column("Last used")

    for s in stats:
        table.add_row(
            escape(shorten_home(s.path)),
            str(s.command_count),
            _format_time(s.first_used),
            _format_time(s.last_used),
        )

    console.print(table)


@app.command()
def cleanup(
    ctx: typer.Context,
    days: Annotated[
        Optional[int],
        typer.Option("--days", help="Retention period in days. Defaults to retention_days from the config."),
    ] = None,
    keep: Annotated[
        Optional[int],
        typer.Option(
            "--keep",
            help="Keep at most this many commands per directory. Defaults to max_commands_per_directory.",
            min=1,
        ),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Do not ask for confirmation."),
    ] = False,
) -> None:
    """
    Delete records older than the retention period.

    With --keep (or max_commands_per_directory in the config), also trims
    every directory to its newest commands.

    Example:
        $ histrack cleanup --days 30 --keep 500 --yes
    """
    state = _state(ctx)
    retention_days = state.config.retention_days if days is None else days
    max_commands = state.config.max_commands_per_directory if keep is None else keep

    if not yes:
        what = "ALL records" if retention_days == 0 else f"records older than {retention_days} day(s)"
        if max_commands is not None:
            what += f" and all but the newest {max_commands} per directory"
        if not typer.confirm(f"Delete {what}?"):
            console.print("[dim]Aborted.[/dim]")
            raise typer.Exit(code=0)

    store = _open_store(state)
    try:
        deleted = store.cleanup_old_commands(retention_days)
        if max_commands is not None:
            for directory in store.get_directories_with_history():
                deleted += store.trim_directory(directory, max_commands)
    except HistrackError as e:
        _fail(e)
    finally:
        store.close()

    console.print(f"[green]✓[/green] Deleted {deleted} record(s).")


@app.command()
def optimize(ctx: typer.Context) -> None:
    """
    Compact the history store and refresh its query statistics.

    Example:
        $ histrack optimize
    """
    state = _state(ctx)
    store = _open_store(state)
    try:
        before = store.database_size()
        store.optimize()
        after = store.database_size()
    except HistrackError as e:
        _fail(e)
    finally:
        store.close()

    console.print(
        f"[green]✓[/green] Optimized store: {before / 1024:.1f} KiB -> {after / 1024:.1f} KiB"
    )


@app.command()
def stats(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
) -> None:
    """
    Show store totals and size.

    Example:
        $ histrack stats
    """
    state = _state(ctx)
    store = _open_store(state)
    try:
        total = store.count_commands()
        directory_count = len(store.get_directories_with_history())
        size = store.database_size()
    except StorageError as e:
        _fail(e, json_output)
    finally:
        store.close()

    output = {
        "storage_path": str(state.config.resolved_storage_path()),
        "storage_kind": state.config.storage_kind,
        "commands": total,
        "directories": directory_count,
        "size_bytes": size,
        "retention_days": state.config.retention_days,
    }

    if json_output:
        print(json.dumps(output, indent=2))
        return

    console.print(f"[bold]histrack[/bold] v{__version__}")
    console.print()
    console.print(f"Store:       [cyan]{escape(output['storage_path'])}[/cyan] ({output['storage_kind']})")
    console.print(f"Commands:    {total}")
    console.print(f"Directories: {directory_count}")
    console.print(f"Size:        {size / 1024:.1f} KiB")
    console.print(f"Retention:   {state.config.retention_days} day(s)")


# =============================================================================
# Config Subcommand Group
# =============================================================================


@config_app.command("show")
def config_show(ctx: typer.Context) -> None:
    """
    Print the effective configuration as YAML.

    Example:
        $ histrack config show
    """
    state = _state(ctx)
    console.print(f"[dim]# {escape(str(state.config_path))}[/dim]")
    print(yaml.safe_dump(config_to_dict(state.config), sort_keys=False, default_flow_style=False), end="")


@config_app.command("init")
def config_init(
    ctx: typer.Context,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Overwrite an existing config file."),
    ] = False,
) -> None:
    """
    Write a config file with default values.

    Example:
        $ histrack config init
    """
    state: CliState = ctx.obj
    if state.config_path.exists() and not force:
        err_console.print(
            f"[yellow]Config already exists at {escape(str(state.config_path))}. Use --force to overwrite.[/yellow]"
        )
        raise typer.Exit(code=1)

    try:
        written = save_config(HistrackConfig(), state.config_path)
    except OSError as e:
        err_console.print(f"[red]Cannot write config: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]✓[/green] Wrote {escape(str(written))}")


if __name__ == "__main__":
    app()
