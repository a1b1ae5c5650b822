"""System utility checks."""

from __future__ import annotations

import os
import shutil
from pathlib import Path


def check_shell(shell_path: str) -> tuple[bool, str]:
    """Check that a shell exists and is executable; return its resolved path."""
    resolved = shutil.which(shell_path)
    if not resolved:
        return False, f"Shell not found: {shell_path}"
    if not os.access(resolved, os.X_OK):
        return False, f"Shell is not executable: {resolved}"
    return True, resolved


def check_working_dir(path: str | Path) -> tuple[bool, str]:
    """Validate a working directory path."""
    resolved = Path(path).expanduser().resolve()
    if not resolved.exists():
        return False, f"Directory not found: {resolved}"
    if not resolved.is_dir():
        return False, f"Not a directory: {resolved}"
    return True, str(resolved)
