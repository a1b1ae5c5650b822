"""SQLite persistence for sessions and blocks."""
