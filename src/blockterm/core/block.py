"""Block entity and its execution state machine."""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path

from blockterm.utils.formatting import format_duration, truncate_command


class BlockState(str, Enum):
    """Lifecycle state of a block. Values are the persisted state strings."""

    EDITING = "Editing"
    PENDING_APPROVAL = "PendingApproval"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


STARTABLE_STATES = frozenset({BlockState.EDITING, BlockState.PENDING_APPROVAL})
TERMINAL_STATES = frozenset({BlockState.COMPLETED, BlockState.FAILED, BlockState.CANCELLED})


class BlockStateError(RuntimeError):
    """Raised when a block operation is invalid for its current state."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BlockMetadata:
    working_directory: Path
    environment: dict[str, str] = field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration: timedelta | None = None


@dataclass
class Block:
    """One command execution: command text, output buffer and lifecycle state."""

    command: str
    metadata: BlockMetadata
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    timestamp: datetime = field(default_factory=utc_now)
    output: str = ""
    exit_code: int | None = None
    state: BlockState = BlockState.EDITING
    is_collapsed: bool = False
    is_selected: bool = False
    original_input: str | None = None

    @classmethod
    def create(
        cls,
        command: str,
        working_directory: Path | str,
        environment: dict[str, str] | None = None,
    ) -> Block:
        """Create a new block in the Editing state."""
        return cls(
            command=command,
            metadata=BlockMetadata(
                working_directory=Path(working_directory),
                environment=dict(environment or {}),
            ),
        )

    @classmethod
    def pending_approval(
        cls,
        original_input: str,
        command: str,
        working_directory: Path | str,
        environment: dict[str, str] | None = None,
    ) -> Block:
        """Create a block for a suggested command awaiting confirmation."""
        block = cls.create(command, working_directory, environment)
        block.state = BlockState.PENDING_APPROVAL
        block.original_input = original_input
        return block

    # State transitions

    def start_execution(self) -> None:
        if self.state not in STARTABLE_STATES:
            raise BlockStateError(f"Cannot start block in state {self.state.value}")
        self.state = BlockState.RUNNING
        self.metadata.started_at = utc_now()

    def append_output(self, text: str) -> None:
        if self.state is not BlockState.RUNNING:
            raise BlockStateError(f"Cannot append output to block in state {self.state.value}")
        self.output += text

    def complete_execution(self, exit_code: int) -> None:
        """Finish a running block. Exit code 0 is success, anything else failure."""
        if self.state is not BlockState.RUNNING:
            raise BlockStateError(f"Cannot complete block in state {self.state.value}")
        self.exit_code = exit_code
        self._stamp_completion()
        self.state = BlockState.COMPLETED if exit_code == 0 else BlockState.FAILED

    def cancel(self) -> None:
        if self.state is not BlockState.RUNNING:
            raise BlockStateError(f"Cannot cancel block in state {self.state.value}")
        self._stamp_completion()
        self.state = BlockState.CANCELLED

    def _stamp_completion(self) -> None:
        started = self.metadata.started_at
        completed = utc_now()
        if started is not None:
            # Wall clock may step backwards between start and finish.
            completed = max(completed, started)
            self.metadata.duration = completed - started
        self.metadata.completed_at = completed

    # Presentation flags

    def toggle_collapsed(self) -> None:
        self.is_collapsed = not self.is_collapsed

    def set_selected(self, selected: bool) -> None:
        self.is_selected = selected

    # Queries

    @property
    def is_running(self) -> bool:
        return self.state is BlockState.RUNNING

    @property
    def is_pending(self) -> bool:
        return self.state is BlockState.PENDING_APPROVAL

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def display_command(self) -> str:
        return truncate_command(self.command)

    @property
    def display_output(self) -> str:
        return "" if self.is_collapsed else self.output

    def format_duration(self) -> str:
        duration = self.metadata.duration
        if duration is None:
            return ""
        return format_duration(int(duration.total_seconds() * 1000))

    def snapshot(self) -> Block:
        """Return an independent copy safe to hand to another task."""
        return copy.deepcopy(self)
