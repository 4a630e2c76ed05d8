"""Durable storage helpers: JSON state files and the SQLite journal."""
