"""In-memory ordered collection of blocks for the active session."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable

from blockterm.core.block import Block
from blockterm.utils.formatting import format_block_full

logger = logging.getLogger(__name__)


class BlockManager:
    """Owns the block sequence and the single selected-block reference.

    Every by-ID operation tolerates unknown IDs: lookups return ``None`` and
    mutators do nothing. Output and exit events from a finished process can
    arrive after the user removed its block, so a stale ID is not an error.
    """

    def __init__(self) -> None:
        self._blocks: list[Block] = []
        self._selected: uuid.UUID | None = None

    @classmethod
    def from_blocks(cls, blocks: Iterable[Block]) -> BlockManager:
        manager = cls()
        for block in blocks:
            manager.add_block(block)
        return manager

    def __len__(self) -> int:
        return len(self._blocks)

    def __iter__(self):
        return iter(self._blocks)

    def count(self) -> int:
        return len(self._blocks)

    @property
    def blocks(self) -> tuple[Block, ...]:
        """Read-only view in execution order."""
        return tuple(self._blocks)

    def get_blocks(self) -> tuple[Block, ...]:
        return self.blocks

    def add_block(self, block: Block) -> uuid.UUID:
        if block.is_selected:
            # Selection is owned here; an incoming flag would break exclusivity.
            block.set_selected(False)
        self._blocks.append(block)
        return block.id

    def get_block(self, block_id: uuid.UUID) -> Block | None:
        for block in self._blocks:
            if block.id == block_id:
                return block
        return None

    # Blocks are plain mutable objects, so the mutable lookup is the same lookup.
    get_block_mut = get_block

    def index_of(self, block_id: uuid.UUID) -> int | None:
        for index, block in enumerate(self._blocks):
            if block.id == block_id:
                return index
        return None

    def remove_block(self, block_id: uuid.UUID) -> Block | None:
        index = self.index_of(block_id)
        if index is None:
            return None
        block = self._blocks.pop(index)
        if self._selected == block_id:
            self._selected = None
        return block

    def clear_all(self) -> None:
        self._blocks = []
        self._selected = None

    def select_block(self, block_id: uuid.UUID) -> None:
        for block in self._blocks:
            block.set_selected(False)
        self._selected = None

        block = self.get_block(block_id)
        if block is not None:
            block.set_selected(True)
            self._selected = block_id

    def deselect_all(self) -> None:
        for block in self._blocks:
            block.set_selected(False)
        self._selected = None

    @property
    def selected_id(self) -> uuid.UUID | None:
        return self._selected

    def get_selected_block(self) -> Block | None:
        if self._selected is None:
            return None
        return self.get_block(self._selected)

    def toggle_block_collapsed(self, block_id: uuid.UUID) -> None:
        block = self.get_block(block_id)
        if block is not None:
            block.toggle_collapsed()

    def get_running_blocks(self) -> list[Block]:
        return [b for b in self._blocks if b.is_running]

    def get_pending_blocks(self) -> list[Block]:
        return [b for b in self._blocks if b.is_pending]

    def get_last_block(self) -> Block | None:
        return self._blocks[-1] if self._blocks else None

    def copy_block_command(self, block_id: uuid.UUID) -> str | None:
        block = self.get_block(block_id)
        return block.command if block is not None else None

    def copy_block_output(self, block_id: uuid.UUID) -> str | None:
        block = self.get_block(block_id)
        return block.output if block is not None else None

    def copy_block_full(self, block_id: uuid.UUID) -> str | None:
        block = self.get_block(block_id)
        if block is None:
            return None
        return format_block_full(block.command, block.output, block.exit_code)

    def duplicate_block_for_edit(self, block_id: uuid.UUID) -> uuid.UUID | None:
        """Append a fresh Editing block with the same command and directory."""
        original = self.get_block(block_id)
        if original is None:
            return None
        new_block = Block.create(
            original.command,
            original.metadata.working_directory,
            original.metadata.environment,
        )
        logger.debug("Duplicated block %s as %s for editing", block_id, new_block.id)
        return self.add_block(new_block)

    def snapshot(self) -> list[Block]:
        """Deep copies of all blocks, detached from the live sequence."""
        return [block.snapshot() for block in self._blocks]
