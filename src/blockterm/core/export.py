"""Session export to JSON, Markdown and plain text."""

from __future__ import annotations

import json
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any

from blockterm.core.block import Block, BlockMetadata, BlockState, utc_now
from blockterm.core.session import Session
from blockterm.storage.models import format_timestamp, parse_timestamp, parse_state


def _block_to_dict(block: Block) -> dict[str, Any]:
    meta = block.metadata
    return {
        "id": str(block.id),
        "timestamp": format_timestamp(block.timestamp),
        "command": block.command,
        "output": block.output,
        "exit_code": block.exit_code,
        "state": block.state.value,
        "original_input": block.original_input,
        "is_collapsed": block.is_collapsed,
        "metadata": {
            "working_directory": str(meta.working_directory),
            "environment": dict(meta.environment),
            "started_at": format_timestamp(meta.started_at),
            "completed_at": format_timestamp(meta.completed_at),
            "duration_ms": int(meta.duration.total_seconds() * 1000) if meta.duration is not None else None,
        },
    }


def _block_from_dict(data: dict[str, Any]) -> Block:
    meta = data.get("metadata", {})
    exit_code = data.get("exit_code")
    duration_ms = meta.get("duration_ms")
    state = parse_state(data.get("state"), exit_code)
    return Block(
        id=uuid.UUID(data["id"]),
        timestamp=parse_timestamp(data.get("timestamp")) or utc_now(),
        command=data["command"],
        output=data.get("output", ""),
        exit_code=exit_code if state in (BlockState.COMPLETED, BlockState.FAILED) else None,
        state=state,
        original_input=data.get("original_input"),
        is_collapsed=bool(data.get("is_collapsed", False)),
        metadata=BlockMetadata(
            working_directory=Path(meta.get("working_directory", ".")),
            environment=dict(meta.get("environment") or {}),
            started_at=parse_timestamp(meta.get("started_at")),
            completed_at=parse_timestamp(meta.get("completed_at")),
            duration=timedelta(milliseconds=duration_ms) if duration_ms is not None else None,
        ),
    )


class ExportedSession:
    """Wraps a session for export and re-import."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def to_dict(self) -> dict[str, Any]:
        s = self.session
        return {
            "session": {
                "id": str(s.id),
                "name": s.name,
                "created_at": format_timestamp(s.created_at),
                "updated_at": format_timestamp(s.updated_at),
                "working_directory": str(s.working_directory),
                "environment": dict(s.environment),
                "blocks": [_block_to_dict(b) for b in s.blocks],
            }
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def to_json_file(self, path: str | Path) -> None:
        Path(path).write_text(self.to_json(), encoding="utf-8")

    @classmethod
    def from_json(cls, text: str) -> ExportedSession:
        data = json.loads(text)["session"]
        created_at = parse_timestamp(data.get("created_at"))
        session = Session.new(data["name"], data.get("working_directory", "."))
        session.id = uuid.UUID(data["id"])
        if created_at is not None:
            session.created_at = created_at
        session.updated_at = parse_timestamp(data.get("updated_at")) or session.created_at
        session.environment = dict(data.get("environment") or {})
        session.blocks = [_block_from_dict(b) for b in data.get("blocks", [])]
        return cls(session)

    @classmethod
    def from_json_file(cls, path: str | Path) -> ExportedSession:
        return cls.from_json(Path(path).read_text(encoding="utf-8"))

    def to_markdown(self) -> str:
        s = self.session
        parts = [
            f"# Session: {s.name}\n\n",
            f"**Created:** {s.created_at:%Y-%m-%d %H:%M:%S}\n\n",
            f"**Working Directory:** `{s.working_directory}`\n\n",
        ]
        if s.blocks:
            parts.append("## Commands\n\n")
        for i, block in enumerate(s.blocks, start=1):
            parts.append(f"### Block {i} - {block.timestamp:%H:%M:%S}\n\n")
            parts.append(f"**Command:**\n```bash\n{block.command}\n```\n\n")
            if block.output:
                parts.append(f"**Output:**\n```\n{block.output}\n```\n\n")
            status = f"**Status:** {block.state.value}"
            if block.exit_code is not None:
                status += f" (exit code: {block.exit_code})"
            parts.append(status + "\n\n")
            if block.metadata.duration is not None:
                parts.append(f"**Duration:** {block.metadata.duration.total_seconds():.2f}s\n\n")
            parts.append("---\n\n")
        return "".join(parts)

    def to_markdown_file(self, path: str | Path) -> None:
        Path(path).write_text(self.to_markdown(), encoding="utf-8")

    def to_text(self) -> str:
        s = self.session
        lines = [
            f"Session: {s.name}\n",
            f"Created: {s.created_at:%Y-%m-%d %H:%M:%S}\n",
            f"Working Directory: {s.working_directory}\n\n",
        ]
        for i, block in enumerate(s.blocks, start=1):
            lines.append(f"[Block {i}] {block.timestamp:%H:%M:%S}\n")
            lines.append(f"$ {block.command}\n")
            if block.output:
                lines.append(block.output if block.output.endswith("\n") else block.output + "\n")
            status = f"Status: {block.state.value}"
            if block.exit_code is not None:
                status += f" (exit code: {block.exit_code})"
            lines.append(status + "\n\n")
        return "".join(lines)

    def to_text_file(self, path: str | Path) -> None:
        Path(path).write_text(self.to_text(), encoding="utf-8")
