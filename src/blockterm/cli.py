"""CLI entry point using typer."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from blockterm import __version__
from blockterm.config import CONFIG_FILE, AppConfig, load_config, save_config
from blockterm.core.block import BlockState
from blockterm.core.export import ExportedSession
from blockterm.core.session import Session
from blockterm.services.terminal import TerminalController
from blockterm.storage.database import Database
from blockterm.storage.session_manager import SessionManager
from blockterm.utils.formatting import format_exit_status, short_id, truncate_command
from blockterm.utils.system import check_shell, check_working_dir

app = typer.Typer(
    name="blockterm",
    help="Run shell commands as persistent, stateful blocks.",
    add_completion=False,
)
console = Console()

T = TypeVar("T")

STATE_STYLES = {
    BlockState.COMPLETED: "green",
    BlockState.FAILED: "red",
    BlockState.CANCELLED: "yellow",
    BlockState.RUNNING: "cyan",
    BlockState.PENDING_APPROVAL: "magenta",
    BlockState.EDITING: "dim",
}


def setup_logging(config: AppConfig) -> None:
    log_path = Path(config.logging.file).expanduser().resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.FileHandler(str(log_path))],
    )


def _with_sessions(config: AppConfig, fn: Callable[[SessionManager], Awaitable[T]]) -> T:
    async def _main() -> T:
        async with Database(config.storage.db_path) as db:
            return await fn(SessionManager(db))

    return asyncio.run(_main())


async def _resolve_session(manager: SessionManager, ref: str | None) -> uuid.UUID:
    """Session ID from a full ID or unique prefix; the active session if ``ref`` is None."""
    if ref is None:
        active = await manager.get_active_session()
        if active is None:
            console.print("[yellow]No active session.[/yellow]")
            raise typer.Exit(1)
        return active.id

    matches = [info.id for info in await manager.list_sessions() if str(info.id).startswith(ref)]
    if len(matches) != 1:
        reason = "No session matches" if not matches else "Ambiguous session ID"
        console.print(f"[red]{reason}: {ref}[/red]")
        raise typer.Exit(1)
    return matches[0]


async def _run_command(config: AppConfig, command: str, cwd: Path | None) -> int:
    async with Database(config.storage.db_path) as db:
        controller = await TerminalController.start(config, SessionManager(db), working_directory=cwd)
        block_id = controller.submit(command, working_directory=cwd)
        if block_id is None:
            console.print("[red]Another command is still running.[/red]")
            return 1

        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, controller.cancel_current)
        printed = 0
        try:
            while True:
                controller.poll()
                controller.auto_save()
                block = controller.block_manager.get_block(block_id)
                if block is not None and len(block.output) > printed:
                    console.out(block.output[printed:], end="", highlight=False)
                    printed = len(block.output)
                if not controller.is_busy:
                    break
                await asyncio.sleep(config.shell.poll_interval)
        finally:
            loop.remove_signal_handler(signal.SIGINT)

        await controller.save_now()

    if block is None:
        return 1
    style = STATE_STYLES.get(block.state, "")
    duration = block.format_duration()
    status = escape(f"[{block.state.value}]")
    console.print(f"[{style}]{status}[/{style}] {format_exit_status(block.exit_code)} {duration}".rstrip())
    if block.exit_code is None:
        return 1
    return block.exit_code if 0 <= block.exit_code <= 255 else 1


@app.command(context_settings={"ignore_unknown_options": True})
def run(
    command: list[str] = typer.Argument(..., help="Command to run"),
    cwd: Path = typer.Option(None, "--cwd", "-C", help="Working directory"),
) -> None:
    """Run a command as a new block in the active session."""
    config = load_config()
    setup_logging(config)

    ok, message = check_shell(config.shell.default_shell)
    if not ok:
        console.print(f"[red]{message}[/red]")
        raise typer.Exit(1)
    if cwd is not None:
        ok, message = check_working_dir(cwd)
        if not ok:
            console.print(f"[red]{message}[/red]")
            raise typer.Exit(1)
        cwd = Path(message)

    exit_code = asyncio.run(_run_command(config, " ".join(command), cwd))
    raise typer.Exit(exit_code)


@app.command()
def history(
    session: str = typer.Option(None, "--session", "-s", help="Session ID or prefix"),
    limit: int = typer.Option(20, "--lines", "-n", help="Number of blocks"),
    output: bool = typer.Option(False, "--output", "-o", help="Show block output"),
) -> None:
    """Show the blocks of a session."""
    config = load_config()

    async def _load(manager: SessionManager):
        return await manager.load_session(await _resolve_session(manager, session))

    loaded = _with_sessions(config, _load)
    blocks = loaded.blocks[-limit:] if limit > 0 else loaded.blocks
    if not blocks:
        console.print(f"[dim]Session {escape(loaded.name)!r} has no blocks.[/dim]")
        return

    if output:
        for block in blocks:
            console.print(f"[bold]$ {escape(block.command)}[/bold]")
            if block.output:
                console.out(block.output.rstrip("\n"), highlight=False)
            console.print(f"[dim]{block.state.value} {format_exit_status(block.exit_code)} {block.format_duration()}[/dim]\n")
        return

    table = Table(title=f"Session: {loaded.name}")
    table.add_column("#", justify="right")
    table.add_column("ID", style="cyan")
    table.add_column("Command")
    table.add_column("State")
    table.add_column("Exit", justify="right")
    table.add_column("Duration", justify="right")
    offset = len(loaded.blocks) - len(blocks)
    for index, block in enumerate(blocks, start=offset + 1):
        style = STATE_STYLES.get(block.state, "")
        table.add_row(
            str(index),
            short_id(block.id),
            escape(truncate_command(block.command, 60)),
            f"[{style}]{block.state.value}[/{style}]",
            "" if block.exit_code is None else str(block.exit_code),
            block.format_duration(),
        )
    console.print(table)


@app.command()
def sessions() -> None:
    """List saved sessions."""
    config = load_config()
    infos = _with_sessions(config, lambda manager: manager.list_sessions())
    if not infos:
        console.print("[dim]No sessions yet.[/dim]")
        return

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Updated")
    table.add_column("Directory")
    table.add_column("Active", justify="center")
    for info in infos:
        table.add_row(
            short_id(info.id),
            escape(info.name),
            f"{info.updated_at:%Y-%m-%d %H:%M:%S}",
            info.working_directory,
            "[green]*[/green]" if info.is_active else "",
        )
    console.print(table)


@app.command()
def new(
    name: str = typer.Argument(..., help="Session name"),
    cwd: Path = typer.Option(None, "--cwd", "-C", help="Working directory"),
    activate: bool = typer.Option(True, "--activate/--no-activate", help="Make it the active session"),
) -> None:
    """Create a new session."""
    config = load_config()
    directory = cwd or Path.cwd()
    ok, message = check_working_dir(directory)
    if not ok:
        console.print(f"[red]{message}[/red]")
        raise typer.Exit(1)

    session = Session.new(name, Path(message))

    async def _create(manager: SessionManager) -> None:
        await manager.create_session(session)
        if activate:
            await manager.set_active_session(session.id)

    _with_sessions(config, _create)
    console.print(f"[green]Created session {escape(name)}[/green] ({session.id})")


@app.command()
def switch(session: str = typer.Argument(..., help="Session ID or prefix")) -> None:
    """Make a session the active one."""
    config = load_config()

    async def _switch(manager: SessionManager) -> uuid.UUID:
        session_id = await _resolve_session(manager, session)
        await manager.set_active_session(session_id)
        return session_id

    session_id = _with_sessions(config, _switch)
    console.print(f"[green]Active session:[/green] {session_id}")


@app.command()
def delete(
    session: str = typer.Argument(..., help="Session ID or prefix"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a session and all of its blocks."""
    config = load_config()
    session_id = _with_sessions(config, lambda manager: _resolve_session(manager, session))
    if not yes and not typer.confirm(f"Delete session {session_id}?", default=False):
        raise typer.Exit(1)
    _with_sessions(config, lambda manager: manager.delete_session(session_id))
    console.print(f"[green]Deleted session {session_id}[/green]")


@app.command()
def export(
    session: str = typer.Argument(None, help="Session ID or prefix (default: active)"),
    fmt: str = typer.Option("markdown", "--format", "-f", help="json, markdown or text"),
    output: Path = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
) -> None:
    """Export a session."""
    if fmt not in ("json", "markdown", "text"):
        console.print(f"[red]Unknown format: {fmt}[/red]")
        raise typer.Exit(1)
    config = load_config()

    async def _load(manager: SessionManager):
        return await manager.load_session(await _resolve_session(manager, session))

    exported = ExportedSession(_with_sessions(config, _load))
    render = {"json": exported.to_json, "markdown": exported.to_markdown, "text": exported.to_text}[fmt]
    content = render()
    if output is None:
        console.out(content, highlight=False)
        return
    output.write_text(content, encoding="utf-8")
    console.print(f"[green]Exported to {output}[/green]")


@app.command()
def config(
    key: str = typer.Argument(None, help="Config key (e.g., shell.default_shell)"),
    value: str = typer.Argument(None, help="New value"),
) -> None:
    """View or modify configuration."""
    cfg = load_config()

    if key is None:
        table = Table(title="Configuration")
        table.add_column("Key", style="cyan")
        table.add_column("Value", style="green")
        for section, obj in cfg.sections().items():
            for attr, current in vars(obj).items():
                table.add_row(f"{section}.{attr}", str(current) if current != "" else "(auto)")
        console.print(table)
        return

    if value is None:
        console.print("[red]Usage: blockterm config <key> <value>[/red]")
        raise typer.Exit(1)

    parts = key.split(".")
    if len(parts) != 2:
        console.print("[red]Key format: section.key (e.g., session.auto_save_interval)[/red]")
        raise typer.Exit(1)

    section, attr = parts
    section_map = cfg.sections()
    if section not in section_map:
        console.print(f"[red]Unknown section: {section}[/red]")
        raise typer.Exit(1)

    obj = section_map[section]
    if not hasattr(obj, attr):
        console.print(f"[red]Unknown key: {key}[/red]")
        raise typer.Exit(1)

    # Type coercion
    current = getattr(obj, attr)
    try:
        if isinstance(current, bool):
            typed_value: object = value.lower() in ("true", "1", "yes")
        elif isinstance(current, int):
            typed_value = int(value)
        elif isinstance(current, float):
            typed_value = float(value)
        else:
            typed_value = value
    except ValueError:
        console.print(f"[red]Invalid value type for {key}[/red]")
        raise typer.Exit(1)

    setattr(obj, attr, typed_value)
    save_config(cfg)
    console.print(f"[green]{key} = {typed_value}[/green]")


@app.command()
def logs(
    lines: int = typer.Option(50, "--lines", "-n", help="Number of lines"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output"),
) -> None:
    """View the log file."""
    cfg = load_config()
    log_path = Path(cfg.logging.file).expanduser().resolve()
    if not log_path.exists():
        console.print("[dim]No log file found.[/dim]")
        return

    if follow:
        import subprocess

        try:
            subprocess.run(["tail", "-f", "-n", str(lines), str(log_path)])
        except KeyboardInterrupt:
            pass
    else:
        content = log_path.read_text()
        log_lines = content.strip().split("\n")
        for line in log_lines[-lines:]:
            console.print(line, markup=False, highlight=False)


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"blockterm v{__version__}")

    cfg = load_config()
    ok, shell_info = check_shell(cfg.shell.default_shell)
    if ok:
        console.print(f"Shell: {shell_info}")
    else:
        console.print(f"Shell: [yellow]{shell_info}[/yellow]")

    console.print(f"Python: {sys.version.split()[0]}")
    console.print(f"Config: {CONFIG_FILE}")


if __name__ == "__main__":
    app()
