"""Storage records and conversion between rows and domain objects."""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from blockterm.core.block import Block, BlockMetadata, BlockState, utc_now

logger = logging.getLogger(__name__)


@dataclass
class SessionInfo:
    """A session row without its blocks."""

    id: uuid.UUID
    name: str
    created_at: datetime
    updated_at: datetime
    is_active: bool = False
    working_directory: str = ""


def format_timestamp(value: datetime | None) -> str | None:
    """Fixed-width ISO-8601 in UTC, so text order matches time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(raw: str | None) -> datetime | None:
    """Parse a stored timestamp; malformed or missing values become ``None``."""
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        logger.debug("Unparseable timestamp %r", raw)
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_state(raw: str | None, exit_code: int | None) -> BlockState:
    """Map a stored state string to a state consistent with the exit code.

    A block stored while running has no process after a restart, so it comes
    back cancelled. Unknown strings fall back to what the exit code implies.
    """
    try:
        state = BlockState(raw)
    except ValueError:
        logger.warning("Unknown block state %r, deriving from exit code", raw)
        if exit_code is None:
            return BlockState.CANCELLED
        return BlockState.COMPLETED if exit_code == 0 else BlockState.FAILED
    if state is BlockState.RUNNING:
        return BlockState.CANCELLED
    if state in (BlockState.COMPLETED, BlockState.FAILED) and exit_code is None:
        return BlockState.CANCELLED
    return state


def dump_environment(environment: Mapping[str, str]) -> str:
    return json.dumps(dict(environment), sort_keys=True)


def load_environment(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        logger.debug("Unparseable environment blob, using empty map")
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k): str(v) for k, v in data.items()}


def duration_to_ms(duration: timedelta | None) -> int | None:
    if duration is None:
        return None
    return int(duration.total_seconds() * 1000)


def block_to_row(session_id: uuid.UUID, block: Block, order: int) -> tuple[Any, ...]:
    """Column values for an upsert into ``blocks``."""
    meta = block.metadata
    return (
        str(block.id),
        str(session_id),
        format_timestamp(block.timestamp),
        block.command,
        block.output,
        block.exit_code,
        block.state.value,
        str(meta.working_directory),
        dump_environment(meta.environment),
        format_timestamp(meta.started_at),
        format_timestamp(meta.completed_at),
        duration_to_ms(meta.duration),
        int(block.is_collapsed),
        order,
    )


def block_from_row(row: Mapping[str, Any]) -> Block:
    """Rebuild a block from a ``blocks`` row, degrading malformed fields."""
    exit_code = row["exit_code"]
    state = parse_state(row["state"], exit_code)
    if state not in (BlockState.COMPLETED, BlockState.FAILED):
        exit_code = None

    started_at = parse_timestamp(row["started_at"])
    completed_at = parse_timestamp(row["completed_at"])
    if started_at is not None and completed_at is not None and completed_at >= started_at:
        duration: timedelta | None = completed_at - started_at
    elif row["duration_ms"] is not None:
        duration = timedelta(milliseconds=max(int(row["duration_ms"]), 0))
    else:
        duration = None

    return Block(
        id=uuid.UUID(row["id"]),
        timestamp=parse_timestamp(row["timestamp"]) or utc_now(),
        command=row["command"],
        output=row["output"] or "",
        exit_code=exit_code,
        state=state,
        metadata=BlockMetadata(
            working_directory=Path(row["working_directory"]),
            environment=load_environment(row["environment"]),
            started_at=started_at,
            completed_at=completed_at,
            duration=duration,
        ),
        is_collapsed=bool(row["is_collapsed"]),
        is_selected=False,
    )
