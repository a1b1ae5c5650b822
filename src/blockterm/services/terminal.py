"""Terminal controller: ties blocks, the shell executor and persistence together."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import uuid
from collections.abc import Callable
from pathlib import Path

from blockterm.config import AppConfig
from blockterm.core.block import Block
from blockterm.core.manager import BlockManager
from blockterm.core.session import Session
from blockterm.services.shell import Exit, OutputStream, ShellExecutor, Stderr, Stdout
from blockterm.storage.session_manager import SessionManager, SessionNotFoundError

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[Path], ShellExecutor]


class TerminalController:
    """Runs at most one command at a time and keeps the session's blocks current.

    The caller drives it from its own loop: ``poll()`` on every tick to move
    process output into the running block, and ``auto_save()`` to persist a
    snapshot in the background once the save interval has passed and
    something changed.
    """

    def __init__(
        self,
        config: AppConfig,
        session: Session | None = None,
        session_manager: SessionManager | None = None,
        executor_factory: ExecutorFactory | None = None,
    ) -> None:
        self.config = config
        self.session_manager = session_manager
        self._executor_factory = executor_factory or (lambda wd: ShellExecutor.from_config(config, wd))

        self.session = session or Session.new(config.session.default_name, Path.cwd())
        self.block_manager = BlockManager.from_blocks(self.session.blocks)
        self.current_block_id: uuid.UUID | None = None
        self._stream: OutputStream | None = None

        self.last_save = time.monotonic()
        self._generation = 0
        self._saved_generation = 0
        self._save_task: asyncio.Task[bool] | None = None

    @classmethod
    async def start(
        cls,
        config: AppConfig,
        session_manager: SessionManager | None = None,
        working_directory: Path | None = None,
        executor_factory: ExecutorFactory | None = None,
    ) -> TerminalController:
        """Restore the active session, or create and activate a fresh one."""
        session: Session | None = None
        if session_manager is not None:
            try:
                session = await session_manager.get_active_session()
            except Exception:
                logger.exception("Failed to load active session")
            if session is not None:
                logger.info("Loaded active session: %s", session.name)
            else:
                session = Session.new(config.session.default_name, working_directory or Path.cwd())
                try:
                    await session_manager.create_session(session)
                    await session_manager.set_active_session(session.id)
                except Exception:
                    logger.exception("Failed to create session")

        return cls(config, session=session, session_manager=session_manager, executor_factory=executor_factory)

    # State

    @property
    def is_busy(self) -> bool:
        return self._stream is not None

    @property
    def save_needed(self) -> bool:
        return self._generation != self._saved_generation

    def mark_dirty(self) -> None:
        self._generation += 1
        self.session.touch()

    def current_block(self) -> Block | None:
        if self.current_block_id is None:
            return None
        return self.block_manager.get_block(self.current_block_id)

    def current_session(self) -> Session:
        """A detached copy of the session with the live block sequence."""
        return dataclasses.replace(
            self.session,
            environment=dict(self.session.environment),
            blocks=self.block_manager.snapshot(),
        )

    # Commands

    def submit(self, command: str, working_directory: Path | None = None) -> uuid.UUID | None:
        """Run ``command`` in a new block. Ignored while another command runs."""
        if self.is_busy:
            logger.info("Ignoring command while another is running: %s", command)
            return None
        block = Block.create(
            command,
            working_directory or self.session.working_directory,
            self.session.environment,
        )
        self.block_manager.add_block(block)
        self._run(block)
        return block.id

    def add_suggestion(self, original_input: str, command: str) -> uuid.UUID:
        """Queue a generated command for approval instead of running it."""
        block = Block.pending_approval(
            original_input,
            command,
            self.session.working_directory,
            self.session.environment,
        )
        self.mark_dirty()
        return self.block_manager.add_block(block)

    def pending_suggestions(self) -> list[Block]:
        """Suggested commands still waiting for approval, oldest first."""
        return self.block_manager.get_pending_blocks()

    def approve(self, block_id: uuid.UUID) -> bool:
        block = self.block_manager.get_block(block_id)
        if block is None or not block.is_pending or self.is_busy:
            return False
        self._run(block)
        return True

    def reject(self, block_id: uuid.UUID) -> bool:
        block = self.block_manager.get_block(block_id)
        if block is None or not block.is_pending:
            return False
        self.block_manager.remove_block(block_id)
        self.mark_dirty()
        return True

    def _run(self, block: Block) -> None:
        logger.info("Executing command: %s", block.command)
        block.start_execution()
        executor = self._executor_factory(block.metadata.working_directory)
        self._stream = executor.execute(block.command)
        self.current_block_id = block.id
        self.mark_dirty()

    def poll(self) -> int:
        """Move queued output into the running block. Never blocks.

        Returns the number of events handled.
        """
        stream = self._stream
        if stream is None:
            return 0

        events = stream.drain()
        for event in events:
            block = self.current_block()
            if isinstance(event, (Stdout, Stderr)):
                if block is not None and block.is_running:
                    block.append_output(event.text)
                    self.mark_dirty()
            elif isinstance(event, Exit):
                logger.info("Command exited with code: %s", event.code)
                # A cancelled or removed block keeps its state.
                if block is not None and block.is_running:
                    block.complete_execution(event.code)
                    self.mark_dirty()
                self.current_block_id = None
                self._stream = None
        return len(events)

    def cancel_current(self) -> bool:
        """Cancel the running command. Its stream is drained until ``Exit``."""
        if self._stream is None:
            return False
        self._stream.cancel()
        block = self.current_block()
        if block is not None and block.is_running:
            block.cancel()
            self.mark_dirty()
        return True

    async def wait(self, timeout: float | None = None) -> bool:
        """Poll until the running command finishes. False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.is_busy:
            self.poll()
            self.auto_save()
            if not self.is_busy:
                break
            if deadline is not None and time.monotonic() >= deadline:
                return False
            await asyncio.sleep(self.config.shell.poll_interval)
        return True

    # Block editing

    def rerun_for_edit(self, block_id: uuid.UUID) -> uuid.UUID | None:
        new_id = self.block_manager.duplicate_block_for_edit(block_id)
        if new_id is not None:
            self.mark_dirty()
        return new_id

    def remove_block(self, block_id: uuid.UUID) -> Block | None:
        block = self.block_manager.remove_block(block_id)
        if block is not None:
            self.mark_dirty()
        return block

    def toggle_collapsed(self, block_id: uuid.UUID) -> None:
        if self.block_manager.get_block(block_id) is not None:
            self.block_manager.toggle_block_collapsed(block_id)
            self.mark_dirty()

    def clear_blocks(self) -> None:
        self.block_manager.clear_all()
        self.mark_dirty()

    # Persistence

    def auto_save(self) -> asyncio.Task[bool] | None:
        """Schedule a background save if due. Must be called inside the event loop."""
        if self.session_manager is None or not self.save_needed:
            return None
        if time.monotonic() - self.last_save < self.config.session.auto_save_interval:
            return None
        if self._save_task is not None and not self._save_task.done():
            return None

        self._save_task = asyncio.get_running_loop().create_task(
            self._persist(self.session.id, self.block_manager.snapshot(), self._generation)
        )
        return self._save_task

    async def save_now(self) -> bool:
        """Persist the current blocks immediately."""
        if self.session_manager is None:
            return False
        if self._save_task is not None and not self._save_task.done():
            await self._save_task
        return await self._persist(self.session.id, self.block_manager.snapshot(), self._generation)

    async def _persist(self, session_id: uuid.UUID, blocks: list[Block], generation: int) -> bool:
        if self.session_manager is None:
            return False
        try:
            await self.session_manager.save_blocks(session_id, blocks)
        except Exception:
            logger.exception("Failed to save session %s", session_id)
            return False
        if session_id != self.session.id:
            return True
        # Changes made while the save was in flight keep the session dirty.
        self._saved_generation = max(self._saved_generation, generation)
        self.last_save = time.monotonic()
        logger.debug("Auto-saved session %s", session_id)
        return True

    # Sessions

    def _adopt(self, session: Session) -> None:
        self.session = session
        self.block_manager = BlockManager.from_blocks(session.blocks)
        self.current_block_id = None
        self._stream = None
        self._generation = self._saved_generation = 0
        self.last_save = time.monotonic()

    async def switch_session(self, session_id: uuid.UUID) -> bool:
        if self.session_manager is None:
            return False
        if self.is_busy:
            logger.warning("Cannot switch sessions while a command is running")
            return False
        try:
            loaded = await self.session_manager.load_session(session_id)
        except SessionNotFoundError:
            logger.error("Failed to load session: %s", session_id)
            return False

        await self.save_now()
        self._adopt(loaded)
        try:
            await self.session_manager.set_active_session(session_id)
        except Exception:
            logger.exception("Failed to set active session")
        logger.info("Switched to session: %s", loaded.name)
        return True

    async def create_session(self, name: str, working_directory: Path | None = None) -> Session | None:
        if self.session_manager is None:
            return None
        session = Session.new(name, working_directory or Path.cwd())
        try:
            await self.session_manager.create_session(session)
        except Exception:
            logger.exception("Failed to create session")
            return None
        if not await self.switch_session(session.id):
            return None
        return self.session
