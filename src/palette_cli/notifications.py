# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
In-memory notification log (Ctrl+N).
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)


class NotificationLog:
    """NotificationSink implementation that keeps entries in memory.

    ``on_change`` fires after every mutation so a bound list can refresh;
    ``on_recall`` receives the entry picked with Enter.
    """

    def __init__(
        self,
        on_change: Callable[[], None] | None = None,
        on_recall: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self._items: dict[int, dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self.on_change = on_change
        self.on_recall = on_recall

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def add(
        self,
        summary: str,
        body: str = "",
        app_name: str = "",
        ident: int | None = None,
    ) -> int:
        if ident is None:
            ident = next(self._ids)
        self._items[ident] = {
            "id": ident,
            "summary": summary,
            "body": body,
            "app_name": app_name,
            "created_at": datetime.now().isoformat(),
        }
        self._changed()
        return ident

    def entries(self) -> list[dict[str, Any]]:
        """Newest first."""
        return sorted(
            self._items.values(), key=lambda r: r["id"], reverse=True
        )

    def recall(self, ident: int) -> None:
        item = self._items.get(ident)
        if item is None:
            logger.debug("recall of unknown notification %s", ident)
            return
        if self.on_recall is not None:
            self.on_recall(dict(item))

    def purge(self, ident: int) -> None:
        if self._items.pop(ident, None) is not None:
            self._changed()

    def __len__(self) -> int:
        return len(self._items)
