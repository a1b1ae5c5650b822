"""Tests for session persistence."""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
import pytest_asyncio

from blockterm.core.block import Block, BlockState
from blockterm.core.session import Session
from blockterm.storage.session_manager import SessionNotFoundError


def _completed(command: str, output: str = "", code: int = 0) -> Block:
    block = Block.create(command, "/tmp")
    block.start_execution()
    if output:
        block.append_output(output)
    block.complete_execution(code)
    return block


@pytest_asyncio.fixture
async def stored_session(session_manager, tmp_path):
    session = Session.new("work", tmp_path)
    await session_manager.create_session(session)
    return session


class TestSessions:
    @pytest.mark.asyncio
    async def test_create_and_load(self, session_manager, tmp_path):
        session = Session.new("demo", tmp_path)
        session.environment = {"EDITOR": "vim"}
        await session_manager.create_session(session)

        loaded = await session_manager.load_session(session.id)
        assert loaded.id == session.id
        assert loaded.name == "demo"
        assert loaded.working_directory == tmp_path
        assert loaded.environment == {"EDITOR": "vim"}
        assert loaded.blocks == []

    @pytest.mark.asyncio
    async def test_created_session_is_inactive(self, session_manager, tmp_path):
        await session_manager.create_session(Session.new("idle", tmp_path))
        assert await session_manager.get_active_session() is None
        infos = await session_manager.list_sessions()
        assert [info.is_active for info in infos] == [False]

    @pytest.mark.asyncio
    async def test_load_missing(self, session_manager):
        missing = uuid.uuid4()
        with pytest.raises(SessionNotFoundError) as exc_info:
            await session_manager.load_session(missing)
        assert exc_info.value.session_id == missing

    @pytest.mark.asyncio
    async def test_exactly_one_active(self, session_manager, tmp_path):
        sessions = [Session.new(f"s{i}", tmp_path) for i in range(3)]
        for session in sessions:
            await session_manager.create_session(session)

        await session_manager.set_active_session(sessions[0].id)
        await session_manager.set_active_session(sessions[2].id)

        infos = await session_manager.list_sessions()
        active = [info.id for info in infos if info.is_active]
        assert active == [sessions[2].id]
        assert (await session_manager.get_active_session()).id == sessions[2].id

    @pytest.mark.asyncio
    async def test_list_most_recent_first(self, session_manager, tmp_path):
        old = Session.new("old", tmp_path)
        new = Session.new("new", tmp_path)
        old.updated_at -= timedelta(hours=1)
        old.created_at = old.updated_at
        await session_manager.create_session(old)
        await session_manager.create_session(new)

        assert [info.name for info in await session_manager.list_sessions()] == ["new", "old"]

        await session_manager.touch_session(old.id)
        assert [info.name for info in await session_manager.list_sessions()] == ["old", "new"]

    @pytest.mark.asyncio
    async def test_updated_at_never_decreases(self, session_manager, tmp_path):
        session = Session.new("ahead", tmp_path)
        session.updated_at += timedelta(days=1)
        future = session.updated_at
        await session_manager.create_session(session)

        await session_manager.touch_session(session.id)
        await session_manager.rename_session(session.id, "still ahead")
        await session_manager.save_blocks(session.id, [_completed("ls")])

        loaded = await session_manager.load_session(session.id)
        assert loaded.updated_at == future
        assert loaded.name == "still ahead"

    @pytest.mark.asyncio
    async def test_rename(self, session_manager, stored_session):
        await session_manager.rename_session(stored_session.id, "renamed")
        loaded = await session_manager.load_session(stored_session.id)
        assert loaded.name == "renamed"

    @pytest.mark.asyncio
    async def test_delete_removes_blocks(self, session_manager, stored_session, database):
        await session_manager.save_blocks(stored_session.id, [_completed("ls"), _completed("pwd")])
        await session_manager.delete_session(stored_session.id)

        assert await session_manager.list_sessions() == []
        cursor = await database.connection.execute(
            "SELECT COUNT(*) FROM blocks WHERE session_id = ?", (str(stored_session.id),)
        )
        assert (await cursor.fetchone())[0] == 0
        with pytest.raises(SessionNotFoundError):
            await session_manager.load_session(stored_session.id)


class TestBlocks:
    @pytest.mark.asyncio
    async def test_order_follows_position_not_timestamp(self, session_manager, stored_session):
        blocks = [_completed(f"echo {i}", f"{i}\n") for i in range(4)]
        # Timestamps run backwards relative to execution order.
        for i, block in enumerate(blocks):
            block.timestamp -= timedelta(minutes=i)

        await session_manager.save_blocks(stored_session.id, blocks)
        loaded = await session_manager.load_blocks(stored_session.id)
        assert [b.id for b in loaded] == [b.id for b in blocks]
        assert [b.command for b in loaded] == ["echo 0", "echo 1", "echo 2", "echo 3"]

    @pytest.mark.asyncio
    async def test_round_trip_fields(self, session_manager, stored_session):
        block = _completed("make", "built\n", 2)
        block.metadata.environment = {"CC": "clang"}
        block.toggle_collapsed()
        await session_manager.save_blocks(stored_session.id, [block])

        (loaded,) = await session_manager.load_blocks(stored_session.id)
        assert loaded.command == "make"
        assert loaded.output == "built\n"
        assert loaded.exit_code == 2
        assert loaded.state is BlockState.FAILED
        assert loaded.metadata.environment == {"CC": "clang"}
        assert loaded.metadata.duration == block.metadata.duration
        assert loaded.is_collapsed

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, session_manager, stored_session):
        block = _completed("ls", "a\n")
        await session_manager.save_blocks(stored_session.id, [block])
        await session_manager.save_blocks(stored_session.id, [block])
        assert len(await session_manager.load_blocks(stored_session.id)) == 1

    @pytest.mark.asyncio
    async def test_upsert_updates_row(self, session_manager, stored_session):
        block = Block.create("sleep 1", "/tmp")
        block.start_execution()
        await session_manager.save_block(stored_session.id, block, 0)

        block.append_output("done\n")
        block.complete_execution(0)
        await session_manager.save_block(stored_session.id, block, 0)

        (loaded,) = await session_manager.load_blocks(stored_session.id)
        assert loaded.state is BlockState.COMPLETED
        assert loaded.output == "done\n"

    @pytest.mark.asyncio
    async def test_running_block_loads_cancelled(self, session_manager, stored_session):
        block = Block.create("sleep 100", "/tmp")
        block.start_execution()
        block.append_output("partial")
        await session_manager.save_blocks(stored_session.id, [block])

        (loaded,) = await session_manager.load_blocks(stored_session.id)
        assert loaded.state is BlockState.CANCELLED
        assert loaded.exit_code is None
        assert loaded.output == "partial"

    @pytest.mark.asyncio
    async def test_prune_removes_stale_rows(self, session_manager, stored_session):
        keep, drop = _completed("keep"), _completed("drop")
        await session_manager.save_blocks(stored_session.id, [keep, drop])
        await session_manager.save_blocks(stored_session.id, [keep])
        assert [b.command for b in await session_manager.load_blocks(stored_session.id)] == ["keep"]

    @pytest.mark.asyncio
    async def test_no_prune_keeps_rows(self, session_manager, stored_session):
        first, second = _completed("first"), _completed("second")
        await session_manager.save_blocks(stored_session.id, [first, second])
        await session_manager.save_blocks(stored_session.id, [second], prune=False)
        assert len(await session_manager.load_blocks(stored_session.id)) == 2

    @pytest.mark.asyncio
    async def test_delete_block(self, session_manager, stored_session):
        block = _completed("ls")
        await session_manager.save_blocks(stored_session.id, [block])
        await session_manager.delete_block(block.id)
        assert await session_manager.load_blocks(stored_session.id) == []

    @pytest.mark.asyncio
    async def test_save_updates_session_timestamp(self, session_manager, stored_session):
        before = (await session_manager.load_session(stored_session.id)).updated_at
        await session_manager.save_blocks(stored_session.id, [_completed("ls")])
        after = (await session_manager.load_session(stored_session.id)).updated_at
        assert after >= before

    @pytest.mark.asyncio
    async def test_malformed_rows_degrade(self, session_manager, stored_session, database):
        await database.connection.execute(
            """INSERT INTO blocks (id, session_id, timestamp, command, output, exit_code, state,
                                   working_directory, environment, started_at, completed_at,
                                   duration_ms, is_collapsed, block_order)
               VALUES (?, ?, 'not-a-time', 'ls', '', 0, 'Bogus', '/tmp', 'x', 'bad', NULL, NULL, 0, 0)""",
            (str(uuid.uuid4()), str(stored_session.id)),
        )
        await database.connection.commit()

        (loaded,) = await session_manager.load_blocks(stored_session.id)
        assert loaded.state is BlockState.COMPLETED
        assert loaded.exit_code == 0
        assert loaded.metadata.started_at is None
        assert loaded.metadata.environment == {}

    @pytest.mark.asyncio
    async def test_unreadable_row_is_skipped(self, session_manager, stored_session, database):
        good = _completed("good")
        await session_manager.save_blocks(stored_session.id, [good])
        await database.connection.execute(
            """INSERT INTO blocks (id, session_id, timestamp, command, state, working_directory, block_order)
               VALUES ('not-a-uuid', ?, 'x', 'bad', 'Completed', '/tmp', 1)""",
            (str(stored_session.id),),
        )
        await database.connection.commit()

        loaded = await session_manager.load_blocks(stored_session.id)
        assert [b.command for b in loaded] == ["good"]

    @pytest.mark.asyncio
    async def test_closed_database(self, session_manager, database):
        await database.close()
        with pytest.raises(RuntimeError):
            await session_manager.list_sessions()
