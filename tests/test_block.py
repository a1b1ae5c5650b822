"""Tests for the block state machine."""

from __future__ import annotations

import time
from datetime import timedelta
from pathlib import Path

import pytest

from blockterm.core.block import Block, BlockState, BlockStateError


@pytest.fixture
def block():
    return Block.create("echo test", "/tmp")


class TestBlockCreation:
    def test_defaults(self, block):
        assert block.command == "echo test"
        assert block.state is BlockState.EDITING
        assert block.output == ""
        assert block.exit_code is None
        assert block.metadata.working_directory == Path("/tmp")
        assert block.metadata.started_at is None
        assert not block.is_collapsed
        assert not block.is_selected

    def test_ids_are_unique(self):
        assert Block.create("ls", "/tmp").id != Block.create("ls", "/tmp").id

    def test_environment_is_copied(self):
        env = {"FOO": "bar"}
        block = Block.create("env", "/tmp", env)
        env["FOO"] = "changed"
        assert block.metadata.environment == {"FOO": "bar"}

    def test_pending_approval(self):
        block = Block.pending_approval("list files", "ls -la", "/tmp")
        assert block.state is BlockState.PENDING_APPROVAL
        assert block.original_input == "list files"
        assert block.is_pending


class TestBlockLifecycle:
    def test_successful_execution(self, block):
        block.start_execution()
        assert block.state is BlockState.RUNNING
        assert block.metadata.started_at is not None

        time.sleep(0.01)
        block.complete_execution(0)
        assert block.state is BlockState.COMPLETED
        assert block.exit_code == 0
        assert block.metadata.completed_at is not None
        assert block.metadata.duration == block.metadata.completed_at - block.metadata.started_at
        assert block.metadata.duration >= timedelta(milliseconds=10)

    @pytest.mark.parametrize("code", [1, 2, 127, -1, -15])
    def test_nonzero_exit_fails(self, block, code):
        block.start_execution()
        block.complete_execution(code)
        assert block.state is BlockState.FAILED
        assert block.exit_code == code

    def test_append_output(self, block):
        block.start_execution()
        block.append_output("hello\n")
        block.append_output("world")
        assert block.output == "hello\nworld"

    def test_pending_block_can_start(self):
        block = Block.pending_approval("say hi", "echo hi", "/tmp")
        block.start_execution()
        assert block.is_running

    def test_cancel_leaves_exit_code_unset(self, block):
        block.start_execution()
        block.cancel()
        assert block.state is BlockState.CANCELLED
        assert block.exit_code is None
        assert block.is_terminal
        assert block.metadata.duration is not None

    def test_duration_never_negative(self, block):
        block.start_execution()
        block.complete_execution(0)
        assert block.metadata.duration >= timedelta(0)
        assert block.metadata.started_at <= block.metadata.completed_at


class TestBlockContract:
    def test_start_twice(self, block):
        block.start_execution()
        with pytest.raises(BlockStateError):
            block.start_execution()

    def test_append_before_start(self, block):
        with pytest.raises(BlockStateError):
            block.append_output("x")

    def test_complete_before_start(self, block):
        with pytest.raises(BlockStateError):
            block.complete_execution(0)

    def test_append_after_completion(self, block):
        block.start_execution()
        block.complete_execution(0)
        with pytest.raises(BlockStateError):
            block.append_output("late")

    def test_cancel_when_not_running(self, block):
        with pytest.raises(BlockStateError):
            block.cancel()


class TestBlockDisplay:
    def test_collapse(self, block):
        block.start_execution()
        block.append_output("test output")
        assert block.display_output == "test output"

        block.toggle_collapsed()
        assert block.display_output == ""

        block.toggle_collapsed()
        assert block.display_output == "test output"

    def test_display_command_truncates(self):
        block = Block.create("x" * 150, "/tmp")
        assert len(block.display_command) == 100
        assert block.display_command.endswith("...")

    def test_format_duration(self, block):
        assert block.format_duration() == ""
        block.metadata.duration = timedelta(milliseconds=250)
        assert block.format_duration() == "250ms"
        block.metadata.duration = timedelta(seconds=3)
        assert block.format_duration() == "3.0s"

    def test_snapshot_is_independent(self, block):
        block.start_execution()
        block.append_output("a")
        copy = block.snapshot()
        block.append_output("b")
        block.metadata.environment["X"] = "1"
        assert copy.output == "a"
        assert copy.metadata.environment == {}
        assert copy.id == block.id
