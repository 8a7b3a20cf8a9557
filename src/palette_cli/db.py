# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Low-level database schema for palette-cli.

Handles:
- Schema creation and migration
- Seeding aliases from configuration
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path


def ensure_schema(db_path: Path) -> None:
    """Create or migrate database schema.

    Creates required tables if they don't exist:
    - history: command history lines, ordered by position
    - aliases: command aliases (name -> replacement)

    Handles migration from the first schema, whose aliases table had no
    seeded flag.

    Args:
        db_path: Path to SQLite database file

    This function is idempotent - safe to call multiple times.
    """
    # Ensure parent directory exists
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS history (
                position INTEGER PRIMARY KEY,
                line TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS aliases (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                command TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                seeded INTEGER NOT NULL DEFAULT 0
            )
            """
        )

        # Migration: aliases created before seeding existed
        cur = conn.execute("PRAGMA table_info(aliases)")
        cols = {row[1] for row in cur.fetchall()}
        if "seeded" not in cols:
            conn.execute(
                "ALTER TABLE aliases "
                "ADD COLUMN seeded INTEGER NOT NULL DEFAULT 0"
            )

        conn.commit()
    finally:
        conn.close()


def seed_aliases(db_path: Path, aliases: dict[str, str]) -> int:
    """Insert configured aliases that the user has not defined.

    Aliases the user added (or changed) through the CLI always win over
    the configuration.

    Args:
        db_path: Path to database (must have schema)
        aliases: name -> replacement from configuration

    Returns:
        Number of aliases inserted
    """
    if not aliases:
        return 0
    conn = sqlite3.connect(str(db_path))
    try:
        now = datetime.now().isoformat()
        inserted = 0
        for name, command in aliases.items():
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO aliases
                (name, command, created_at, updated_at, seeded)
                VALUES (?, ?, ?, ?, 1)
                """,
                (str(name), str(command), now, now),
            )
            inserted += cur.rowcount
        conn.commit()
        return inserted
    finally:
        conn.close()
