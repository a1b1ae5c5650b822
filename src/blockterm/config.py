"""Configuration management using TOML + environment variables."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

import tomli_w

CONFIG_DIR = Path.home() / ".blockterm"
CONFIG_FILE = CONFIG_DIR / "config.toml"


@dataclass
class ShellConfig:
    default_shell: str = "/bin/bash"
    # Empty means the shell's usual rc file (~/.bashrc for bash).
    rc_file: str = ""
    source_rc: bool = True
    partial_flush_bytes: int = 4096
    poll_interval: float = 0.01
    kill_timeout: float = 3.0


@dataclass
class SessionConfig:
    default_name: str = "default"
    auto_save_interval: int = 30


@dataclass
class StorageConfig:
    db_path: str = "~/.blockterm/sessions.db"


@dataclass
class LoggingConfig:
    level: str = "WARNING"
    file: str = "~/.blockterm/blockterm.log"


@dataclass
class AppConfig:
    shell: ShellConfig = field(default_factory=ShellConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def sections(self) -> dict[str, object]:
        return {
            "shell": self.shell,
            "session": self.session,
            "storage": self.storage,
            "logging": self.logging,
        }


def ensure_config_dir() -> None:
    """Create config directory with secure permissions."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    os.chmod(CONFIG_DIR, 0o700)


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from TOML file with env var overrides."""
    config = AppConfig()
    config_file = path or CONFIG_FILE

    if config_file.exists():
        with open(config_file, "rb") as f:
            data = tomllib.load(f)

        shell = data.get("shell", {})
        config.shell.default_shell = shell.get("default_shell", config.shell.default_shell)
        config.shell.rc_file = shell.get("rc_file", config.shell.rc_file)
        config.shell.source_rc = shell.get("source_rc", config.shell.source_rc)
        config.shell.partial_flush_bytes = shell.get("partial_flush_bytes", config.shell.partial_flush_bytes)
        config.shell.poll_interval = shell.get("poll_interval", config.shell.poll_interval)
        config.shell.kill_timeout = shell.get("kill_timeout", config.shell.kill_timeout)

        session = data.get("session", {})
        config.session.default_name = session.get("default_name", config.session.default_name)
        config.session.auto_save_interval = session.get("auto_save_interval", config.session.auto_save_interval)

        storage = data.get("storage", {})
        config.storage.db_path = storage.get("db_path", config.storage.db_path)

        logging_cfg = data.get("logging", {})
        config.logging.level = logging_cfg.get("level", config.logging.level)
        config.logging.file = logging_cfg.get("file", config.logging.file)

    # Environment variable overrides
    if env_shell := os.environ.get("BLOCKTERM_SHELL"):
        config.shell.default_shell = env_shell
    if env_rc := os.environ.get("BLOCKTERM_RC_FILE"):
        config.shell.rc_file = env_rc
    if env_interval := os.environ.get("BLOCKTERM_AUTO_SAVE_INTERVAL"):
        config.session.auto_save_interval = int(env_interval)
    if env_db := os.environ.get("BLOCKTERM_DB_PATH"):
        config.storage.db_path = env_db
    if env_log_level := os.environ.get("BLOCKTERM_LOG_LEVEL"):
        config.logging.level = env_log_level
    if env_log_file := os.environ.get("BLOCKTERM_LOG_FILE"):
        config.logging.file = env_log_file

    return config


def save_config(config: AppConfig, path: Path | None = None) -> None:
    """Save configuration to TOML file."""
    config_file = path or CONFIG_FILE
    if path is None:
        ensure_config_dir()
    else:
        config_file.parent.mkdir(parents=True, exist_ok=True)

    data = {
        "shell": {
            "default_shell": config.shell.default_shell,
            "rc_file": config.shell.rc_file,
            "source_rc": config.shell.source_rc,
            "partial_flush_bytes": config.shell.partial_flush_bytes,
            "poll_interval": config.shell.poll_interval,
            "kill_timeout": config.shell.kill_timeout,
        },
        "session": {
            "default_name": config.session.default_name,
            "auto_save_interval": config.session.auto_save_interval,
        },
        "storage": {
            "db_path": config.storage.db_path,
        },
        "logging": {
            "level": config.logging.level,
            "file": config.logging.file,
        },
    }

    with open(config_file, "wb") as f:
        tomli_w.dump(data, f)

    os.chmod(config_file, 0o600)
