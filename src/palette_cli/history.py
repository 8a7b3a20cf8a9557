# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Command history: in-memory list with debounced persistence.

Every change is a "bump". The save timer is restarted by a bump once less
than 80% of the interval is left, so a quiet list is written back one
interval after the last change. More than ``max_bumps`` changes save at
once, and flush() saves on shutdown.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from typing import Any

from .interfaces import HistoryStore, Scheduler

logger = logging.getLogger(__name__)

# A bump restarts the timer once less than this share of it is left.
REARM_BELOW = 0.8


class CommandHistory:
    """Deduplicated, capped command history with up/down recall."""

    def __init__(
        self,
        store: HistoryStore | None = None,
        scheduler: Scheduler | None = None,
        limit: int = 1000,
        save_interval: float = 300.0,
        max_bumps: int = 8,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.limit = limit
        self.save_interval = save_interval
        self.max_bumps = max_bumps
        self.clock = clock
        self.lines: list[str] = []
        self.bumps = 0
        self._timer: Any = None
        self._deadline = 0.0
        # Recall cursor into lines; -1 when not browsing.
        self.index = -1
        self._stash = ""

    # ----------------------------
    # Persistence
    # ----------------------------

    def load(self) -> None:
        if self.store is None:
            return
        try:
            lines = self.store.load_history()
        except (sqlite3.Error, OSError) as e:
            logger.warning("could not load history: %s", e)
            return
        self.lines = lines[-self.limit:] if self.limit else lines

    def save(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.bumps = 0
        if self.store is None:
            return
        try:
            self.store.save_history(list(self.lines))
        except (sqlite3.Error, OSError) as e:
            logger.warning("could not save history: %s", e)

    def flush(self) -> None:
        """Write pending changes now (shutdown path)."""
        if self.bumps:
            self.save()

    def _timed_save(self) -> None:
        self._timer = None
        self.save()

    def bump(self) -> None:
        self.bumps += 1
        if self.bumps > self.max_bumps:
            self.save()
            return
        if self.scheduler is None:
            return
        now = self.clock()
        if self._timer is not None:
            if self._deadline - now >= self.save_interval * REARM_BELOW:
                return
            self._timer.cancel()
        self._deadline = now + self.save_interval
        self._timer = self.scheduler.call_later(
            self.save_interval, self._timed_save
        )

    # ----------------------------
    # Editing
    # ----------------------------

    def append(self, line: str) -> None:
        """Make line the newest entry, dropping older duplicates."""
        if not line.strip():
            return
        self.lines = [x for x in self.lines if x != line]
        self.lines.append(line)
        if self.limit and len(self.lines) > self.limit:
            del self.lines[: len(self.lines) - self.limit]
        self.reset_cursor()
        self.bump()

    def remove_all(self, line: str) -> bool:
        """Remove every occurrence of line.

        Returns:
            True if anything was removed
        """
        kept = [x for x in self.lines if x != line]
        if len(kept) == len(self.lines):
            return False
        self.lines = kept
        self.reset_cursor()
        self.bump()
        return True

    # ----------------------------
    # Recall
    # ----------------------------

    def reset_cursor(self) -> None:
        self.index = -1
        self._stash = ""

    @property
    def browsing(self) -> bool:
        return self.index > -1

    def older(self, current: str) -> str | None:
        """Step back one entry; current is kept to restore later."""
        if not self.lines:
            return None
        if self.index < 0:
            self._stash = current
            self.index = len(self.lines) - 1
        elif self.index > 0:
            self.index -= 1
        return self.lines[self.index]

    def newer(self) -> str | None:
        """Step forward; past the newest entry the stashed text returns."""
        if self.index < 0:
            return None
        if self.index < len(self.lines) - 1:
            self.index += 1
            return self.lines[self.index]
        stash = self._stash
        self.reset_cursor()
        return stash
