"""Text formatting helpers for blocks and sessions."""

from __future__ import annotations

MAX_COMMAND_DISPLAY = 100


def format_duration(ms: int) -> str:
    """Format milliseconds to human-readable duration."""
    if ms < 1000:
        return f"{ms}ms"
    elif ms < 60000:
        return f"{ms / 1000:.1f}s"
    else:
        minutes = ms // 60000
        seconds = (ms % 60000) // 1000
        return f"{minutes}m {seconds}s"


def truncate_command(command: str, max_len: int = MAX_COMMAND_DISPLAY) -> str:
    """Shorten a command for single-line display."""
    if len(command) <= max_len:
        return command
    return command[: max_len - 3] + "..."


def format_exit_status(exit_code: int | None) -> str:
    """Short status tag for a finished command."""
    if exit_code is None:
        return "--"
    return "OK" if exit_code == 0 else f"ERR({exit_code})"


def format_block_full(command: str, output: str, exit_code: int | None) -> str:
    """Command, output and exit code as a single copyable string."""
    code = exit_code if exit_code is not None else -1
    return f"$ {command}\n{output}\n[Exit code: {code}]"


def short_id(value: object, length: int = 8) -> str:
    return str(value)[:length]
