"""Session aggregate: a named, ordered list of blocks tied to a directory."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from blockterm.core.block import Block, utc_now


@dataclass
class Session:
    name: str
    working_directory: Path
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    environment: dict[str, str] = field(default_factory=dict)
    blocks: list[Block] = field(default_factory=list)

    @classmethod
    def new(cls, name: str, working_directory: Path | str) -> Session:
        now = utc_now()
        return cls(name=name, working_directory=Path(working_directory), created_at=now, updated_at=now)

    def add_block(self, block: Block) -> None:
        self.blocks.append(block)
        self.touch()

    def touch(self) -> None:
        """Bump ``updated_at``; never moves it backwards."""
        self.updated_at = max(self.updated_at, utc_now())
