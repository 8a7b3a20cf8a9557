# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Protocol definitions for dependency injection.

These interfaces keep the palette engine independent of the terminal
front-end, the database, the clipboard and the notification daemon.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from typing import Any, Protocol


class HistoryStore(Protocol):
    """Protocol for persistent command history."""

    def load_history(self) -> list[str]:
        """Return all stored history lines, oldest first."""
        ...

    def save_history(self, lines: list[str]) -> None:
        """Replace the stored history with lines (oldest first)."""
        ...


class AliasTable(Protocol):
    """Protocol for command aliases."""

    def find_alias(self, name: str) -> str | None:
        """Return the replacement for name, or None if not an alias."""
        ...


class Environment(Protocol):
    """Protocol for environment variable lookup."""

    def get(self, name: str) -> str | None:
        """Return the value of name, or None if unset."""
        ...


class Clipboard(Protocol):
    """Protocol for the system clipboard."""

    def get(self) -> str:
        ...

    def set(self, text: str) -> None:
        ...


class NotificationSink(Protocol):
    """Protocol for the notification log shown with Ctrl+N."""

    def add(
        self,
        summary: str,
        body: str = "",
        app_name: str = "",
        ident: int | None = None,
    ) -> int:
        """Add (or replace, when ident is given) a notification."""
        ...

    def entries(self) -> list[dict[str, Any]]:
        """Return notifications as dicts with id/summary/body/app_name."""
        ...

    def recall(self, ident: int) -> None:
        ...

    def purge(self, ident: int) -> None:
        ...


class Scheduler(Protocol):
    """Protocol for the interactive loop's timers.

    Every engine state change happens inside a callback delivered by the
    scheduler, so the engine never needs locks.
    """

    def call_later(self, delay: float, callback: Callable[[], None]) -> Any:
        """Run callback on the loop after delay seconds."""
        ...

    def call_soon_threadsafe(self, callback: Callable[[], None]) -> None:
        """Run callback on the loop; may be called from any thread."""
        ...


class ProcessLauncher(Protocol):
    """Protocol for starting and observing child processes.

    Implemented by executor.SubprocessExecutor; the relay and the engine
    only go through these methods.
    """

    def start_detached(
        self,
        argv: list[str],
        cwd: str | None = None,
        stdin_text: str | None = None,
    ) -> bool:
        """Start argv in its own session; False if it could not start."""
        ...

    def start_pipeline(
        self,
        stages: list[list[str]],
        stdin_text: str | None = None,
        detached: bool = False,
        cwd: str | None = None,
        new_session: bool | None = None,
    ) -> Any:
        """Start pipe-connected stages; None if any stage failed."""
        ...

    def probe_exit(self, run: Any) -> int | None:
        """Exit code of the last stage if it ends within the probe window."""
        ...

    def supervise(
        self,
        run: Any,
        on_finished: Callable[[Any, Any], None],
        auto_detach_after: float | None = None,
    ) -> None:
        """Deliver (run, result) through the scheduler unless detached."""
        ...


class OsEnvironment:
    """Environment implementation backed by os.environ."""

    def get(self, name: str) -> str | None:
        return os.environ.get(name)
