"""Durable persistence of sessions and their blocks."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Sequence
from pathlib import Path

from blockterm.core.block import Block, utc_now
from blockterm.core.session import Session
from blockterm.storage.database import Database
from blockterm.storage.models import (
    SessionInfo,
    block_from_row,
    block_to_row,
    dump_environment,
    format_timestamp,
    load_environment,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

UPSERT_BLOCK = """
    INSERT OR REPLACE INTO blocks
    (id, session_id, timestamp, command, output, exit_code, state, working_directory,
     environment, started_at, completed_at, duration_ms, is_collapsed, block_order)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


class SessionNotFoundError(LookupError):
    """No session row exists for the requested ID."""

    def __init__(self, session_id: uuid.UUID) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionManager:
    """Maps Session and Block aggregates to the ``sessions``/``blocks`` tables.

    All writes go through one lock so that a background auto-save and a
    foreground call never interleave their statements inside a single
    transaction on the shared connection.
    """

    def __init__(self, db: Database) -> None:
        self.db = db
        self._write_lock = asyncio.Lock()

    async def create_session(self, session: Session) -> None:
        """Insert a session row. It is not active until ``set_active_session``."""
        async with self._write_lock:
            conn = self.db.connection
            await conn.execute(
                """INSERT INTO sessions (id, name, created_at, updated_at, working_directory, environment, is_active)
                   VALUES (?, ?, ?, ?, ?, ?, 0)""",
                (
                    str(session.id),
                    session.name,
                    format_timestamp(session.created_at),
                    format_timestamp(session.updated_at),
                    str(session.working_directory),
                    dump_environment(session.environment),
                ),
            )
            await conn.commit()
        logger.info("Created session: %s (%s)", session.name, session.id)

    async def load_session(self, session_id: uuid.UUID) -> Session:
        """Rebuild a session with its blocks in persisted execution order."""
        cursor = await self.db.connection.execute(
            "SELECT id, name, created_at, updated_at, working_directory, environment FROM sessions WHERE id = ?",
            (str(session_id),),
        )
        row = await cursor.fetchone()
        if row is None:
            raise SessionNotFoundError(session_id)

        now = utc_now()
        return Session(
            id=uuid.UUID(row["id"]),
            name=row["name"],
            created_at=parse_timestamp(row["created_at"]) or now,
            updated_at=parse_timestamp(row["updated_at"]) or now,
            working_directory=Path(row["working_directory"]),
            environment=load_environment(row["environment"]),
            blocks=await self.load_blocks(session_id),
        )

    async def load_blocks(self, session_id: uuid.UUID) -> list[Block]:
        cursor = await self.db.connection.execute(
            """SELECT id, timestamp, command, output, exit_code, state, working_directory,
                      environment, started_at, completed_at, duration_ms, is_collapsed
               FROM blocks
               WHERE session_id = ?
               ORDER BY block_order ASC""",
            (str(session_id),),
        )
        rows = await cursor.fetchall()
        blocks: list[Block] = []
        for row in rows:
            try:
                blocks.append(block_from_row(row))
            except (KeyError, TypeError, ValueError):
                logger.exception("Skipping unreadable block row %s", row["id"])
        return blocks

    async def list_sessions(self) -> list[SessionInfo]:
        """All sessions without their blocks, most recently updated first."""
        cursor = await self.db.connection.execute(
            "SELECT id, name, created_at, updated_at, working_directory, is_active FROM sessions ORDER BY updated_at DESC"
        )
        rows = await cursor.fetchall()
        now = utc_now()
        return [
            SessionInfo(
                id=uuid.UUID(row["id"]),
                name=row["name"],
                created_at=parse_timestamp(row["created_at"]) or now,
                updated_at=parse_timestamp(row["updated_at"]) or now,
                is_active=bool(row["is_active"]),
                working_directory=row["working_directory"],
            )
            for row in rows
        ]

    async def save_block(self, session_id: uuid.UUID, block: Block, order: int) -> None:
        """Upsert one block keyed by its ID at the given position."""
        async with self._write_lock:
            conn = self.db.connection
            await conn.execute(UPSERT_BLOCK, block_to_row(session_id, block, order))
            await conn.commit()

    async def save_blocks(self, session_id: uuid.UUID, blocks: Sequence[Block], prune: bool = True) -> None:
        """Persist a whole block sequence in one transaction.

        Order is taken from each block's position in ``blocks``. With ``prune``
        the rows of blocks no longer in the sequence are deleted.
        """
        async with self._write_lock:
            conn = self.db.connection
            try:
                await conn.executemany(
                    UPSERT_BLOCK,
                    [block_to_row(session_id, block, order) for order, block in enumerate(blocks)],
                )
                if prune:
                    cursor = await conn.execute("SELECT id FROM blocks WHERE session_id = ?", (str(session_id),))
                    keep = {str(block.id) for block in blocks}
                    stale = [(row["id"],) for row in await cursor.fetchall() if row["id"] not in keep]
                    if stale:
                        await conn.executemany("DELETE FROM blocks WHERE id = ?", stale)
                await conn.execute(
                    "UPDATE sessions SET updated_at = MAX(updated_at, ?) WHERE id = ?",
                    (format_timestamp(utc_now()), str(session_id)),
                )
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        logger.debug("Saved %d blocks for session %s", len(blocks), session_id)

    async def delete_block(self, block_id: uuid.UUID) -> None:
        async with self._write_lock:
            conn = self.db.connection
            await conn.execute("DELETE FROM blocks WHERE id = ?", (str(block_id),))
            await conn.commit()

    async def touch_session(self, session_id: uuid.UUID) -> None:
        """Bump ``updated_at`` without touching blocks. It never moves backwards."""
        async with self._write_lock:
            conn = self.db.connection
            await conn.execute(
                "UPDATE sessions SET updated_at = MAX(updated_at, ?) WHERE id = ?",
                (format_timestamp(utc_now()), str(session_id)),
            )
            await conn.commit()

    async def rename_session(self, session_id: uuid.UUID, name: str) -> None:
        async with self._write_lock:
            conn = self.db.connection
            await conn.execute(
                "UPDATE sessions SET name = ?, updated_at = MAX(updated_at, ?) WHERE id = ?",
                (name, format_timestamp(utc_now()), str(session_id)),
            )
            await conn.commit()

    async def set_active_session(self, session_id: uuid.UUID) -> None:
        """Make ``session_id`` the only active session."""
        async with self._write_lock:
            conn = self.db.connection
            try:
                await conn.execute("UPDATE sessions SET is_active = 0")
                await conn.execute("UPDATE sessions SET is_active = 1 WHERE id = ?", (str(session_id),))
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        logger.info("Active session: %s", session_id)

    async def get_active_session(self) -> Session | None:
        cursor = await self.db.connection.execute("SELECT id FROM sessions WHERE is_active = 1 LIMIT 1")
        row = await cursor.fetchone()
        if row is None:
            return None
        return await self.load_session(uuid.UUID(row["id"]))

    async def delete_session(self, session_id: uuid.UUID) -> None:
        """Delete a session together with all of its blocks."""
        async with self._write_lock:
            conn = self.db.connection
            try:
                await conn.execute("DELETE FROM blocks WHERE session_id = ?", (str(session_id),))
                await conn.execute("DELETE FROM sessions WHERE id = ?", (str(session_id),))
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        logger.info("Deleted session: %s", session_id)
