"""Block-oriented terminal: every command is a persistent, stateful block."""

__version__ = "0.1.0"
