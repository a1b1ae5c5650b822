"""Shared test fixtures."""

from __future__ import annotations

import pytest
import pytest_asyncio

from blockterm.config import AppConfig, LoggingConfig, SessionConfig, ShellConfig, StorageConfig
from blockterm.storage.database import Database
from blockterm.storage.session_manager import SessionManager


@pytest.fixture
def app_config(tmp_path):
    """Create a test configuration."""
    return AppConfig(
        shell=ShellConfig(default_shell="/bin/bash", source_rc=False, poll_interval=0.005, kill_timeout=1.0),
        session=SessionConfig(default_name="test", auto_save_interval=0),
        storage=StorageConfig(db_path=str(tmp_path / "test.db")),
        logging=LoggingConfig(level="DEBUG", file=str(tmp_path / "test.log")),
    )


@pytest_asyncio.fixture
async def database(tmp_path):
    db = await Database.connect(tmp_path / "sessions.db")
    yield db
    await db.close()


@pytest.fixture
def session_manager(database):
    return SessionManager(database)
