"""Tests for database module."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from blockterm.core.block import Block, BlockState
from blockterm.storage.database import Database
from blockterm.storage.models import (
    block_from_row,
    block_to_row,
    format_timestamp,
    load_environment,
    parse_state,
    parse_timestamp,
)


def _row(**overrides):
    block = Block.create("echo hi", "/tmp")
    columns = (
        "id", "session_id", "timestamp", "command", "output", "exit_code", "state",
        "working_directory", "environment", "started_at", "completed_at", "duration_ms",
        "is_collapsed", "block_order",
    )
    row = dict(zip(columns, block_to_row(uuid.uuid4(), block, 0)))
    row.update(overrides)
    return row


class TestDatabase:
    @pytest.mark.asyncio
    async def test_init_creates_schema(self, tmp_path):
        db = await Database.connect(tmp_path / "nested" / "test.db")
        cursor = await db.connection.execute("SELECT name FROM sqlite_master WHERE type IN ('table', 'index')")
        names = {row["name"] for row in await cursor.fetchall()}
        assert {"sessions", "blocks"} <= names
        assert {
            "idx_blocks_session_id",
            "idx_blocks_timestamp",
            "idx_sessions_updated_at",
            "idx_sessions_active",
        } <= names
        await db.close()

    @pytest.mark.asyncio
    async def test_reopen_is_idempotent(self, tmp_path):
        path = tmp_path / "test.db"
        db = await Database.connect(path)
        await db.close()
        async with Database(path) as db:
            assert db.is_open
        assert not db.is_open

    @pytest.mark.asyncio
    async def test_foreign_keys_enabled(self, database):
        cursor = await database.connection.execute("PRAGMA foreign_keys")
        row = await cursor.fetchone()
        assert row[0] == 1

    def test_connection_before_open(self, tmp_path):
        db = Database(tmp_path / "test.db")
        with pytest.raises(RuntimeError, match="not initialized"):
            _ = db.connection


class TestTimestamps:
    def test_round_trip(self):
        block = Block.create("ls", "/tmp")
        assert parse_timestamp(format_timestamp(block.timestamp)) == block.timestamp

    def test_text_order_matches_time_order(self):
        earlier = Block.create("a", "/tmp").timestamp
        later = earlier + timedelta(seconds=1)
        assert format_timestamp(earlier) < format_timestamp(later)

    def test_fixed_width(self):
        whole = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert format_timestamp(whole) == "2024-01-01T12:00:00.000000+00:00"
        assert format_timestamp(whole) < format_timestamp(whole + timedelta(microseconds=1))

    @pytest.mark.parametrize("raw", [None, "", "yesterday", "2024-13-45T00:00:00"])
    def test_malformed(self, raw):
        assert parse_timestamp(raw) is None


class TestStateParsing:
    def test_known_states(self):
        assert parse_state("Completed", 0) is BlockState.COMPLETED
        assert parse_state("Failed", 2) is BlockState.FAILED
        assert parse_state("Editing", None) is BlockState.EDITING
        assert parse_state("PendingApproval", None) is BlockState.PENDING_APPROVAL
        assert parse_state("Cancelled", None) is BlockState.CANCELLED

    def test_running_becomes_cancelled(self):
        assert parse_state("Running", None) is BlockState.CANCELLED

    @pytest.mark.parametrize(
        ("exit_code", "expected"),
        [(0, BlockState.COMPLETED), (1, BlockState.FAILED), (None, BlockState.CANCELLED)],
    )
    def test_unknown_state_uses_exit_code(self, exit_code, expected):
        assert parse_state("Exploded", exit_code) is expected

    def test_finished_without_exit_code(self):
        assert parse_state("Completed", None) is BlockState.CANCELLED


class TestRowConversion:
    def test_round_trip(self):
        block = Block.create("echo hi", "/srv", {"A": "1"})
        block.start_execution()
        block.append_output("hi\n")
        block.complete_execution(0)
        block.toggle_collapsed()
        row = dict(zip(
            ("id", "session_id", "timestamp", "command", "output", "exit_code", "state",
             "working_directory", "environment", "started_at", "completed_at", "duration_ms",
             "is_collapsed", "block_order"),
            block_to_row(uuid.uuid4(), block, 3),
        ))
        assert row["block_order"] == 3
        assert row["state"] == "Completed"

        loaded = block_from_row(row)
        assert loaded.id == block.id
        assert loaded.output == "hi\n"
        assert loaded.exit_code == 0
        assert loaded.state is BlockState.COMPLETED
        assert loaded.metadata.environment == {"A": "1"}
        assert loaded.metadata.started_at == block.metadata.started_at
        assert loaded.metadata.duration == block.metadata.duration
        assert loaded.is_collapsed
        assert not loaded.is_selected

    def test_malformed_timestamps_degrade(self):
        block = block_from_row(_row(timestamp="garbage", started_at="nope", completed_at="nope", duration_ms=1500))
        assert block.timestamp is not None
        assert block.metadata.started_at is None
        assert block.metadata.completed_at is None
        assert block.metadata.duration == timedelta(milliseconds=1500)

    def test_exit_code_dropped_for_unfinished_states(self):
        block = block_from_row(_row(state="Running", exit_code=7))
        assert block.state is BlockState.CANCELLED
        assert block.exit_code is None

    def test_bad_environment_blob(self):
        assert load_environment("not json") == {}
        assert load_environment("[1, 2]") == {}
        assert block_from_row(_row(environment="{")).metadata.environment == {}
