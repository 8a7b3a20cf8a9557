# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
SQLite-backed storage implementation for palette-cli.

Handles all database operations: history lines and aliases.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path


class SQLiteStore:
    """SQLite implementation of the HistoryStore and AliasTable protocols."""

    def __init__(self, db_path: Path):
        """Initialize store with database path.

        Args:
            db_path: Path to SQLite database file (must have schema)

        Note:
            Store does NOT create schema. Schema must be created by
            db.ensure_schema() before constructing SQLiteStore.
        """
        self.db_path = db_path

        # Ensure parent directory exists
        db_path.parent.mkdir(parents=True, exist_ok=True)

    # ----------------------------------------------------------------
    # History
    # ----------------------------------------------------------------

    def load_history(self) -> list[str]:
        """Return all history lines, oldest first."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            cur = conn.execute(
                "SELECT line FROM history ORDER BY position"
            )
            return [row[0] for row in cur.fetchall()]
        finally:
            conn.close()

    def save_history(self, lines: list[str]) -> None:
        """Replace the stored history with lines in one transaction."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            with conn:
                conn.execute("DELETE FROM history")
                conn.executemany(
                    "INSERT INTO history (position, line) VALUES (?, ?)",
                    list(enumerate(lines)),
                )
        finally:
            conn.close()

    # ----------------------------------------------------------------
    # Alias operations
    # ----------------------------------------------------------------

    def add_alias(self, name: str, command: str) -> None:
        """Add or update an alias in the database."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            now = datetime.now().isoformat()
            conn.execute(
                """
                INSERT INTO aliases
                (name, command, created_at, updated_at, seeded)
                VALUES (?, ?, ?, ?, 0)
                ON CONFLICT(name) DO UPDATE SET
                    command = excluded.command,
                    updated_at = excluded.updated_at,
                    seeded = 0
                """,
                (name, command, now, now),
            )
            conn.commit()
        finally:
            conn.close()

    def find_alias(self, name: str) -> str | None:
        """Find an alias and return its replacement, or None if not found."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            cur = conn.execute(
                "SELECT command FROM aliases WHERE name = ?",
                (name,),
            )
            row = cur.fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def list_aliases(self) -> list[dict[str, str]]:
        """List all aliases, sorted by name."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            cur = conn.execute(
                "SELECT name, command FROM aliases ORDER BY name"
            )
            rows = cur.fetchall()
            return [
                {"name": name, "command": command}
                for name, command in rows
            ]
        finally:
            conn.close()

    def remove_alias(self, name: str) -> bool:
        """Remove an alias (hard delete).

        Returns:
            True if an alias was removed
        """
        conn = sqlite3.connect(str(self.db_path))
        try:
            cur = conn.execute(
                "DELETE FROM aliases WHERE name = ?",
                (name,),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()
