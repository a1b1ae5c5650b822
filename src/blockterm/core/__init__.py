"""Blocks, sessions and the in-memory block collection."""
