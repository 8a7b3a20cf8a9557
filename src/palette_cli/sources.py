# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Searchable collections bound to the palette list.

Every collection is a DataSource: a kind tag, an ordered entry list and
the few fields that only one kind needs (filesystem root, external
action, completion separator). Snapshot sources are rebuilt wholesale;
filesystem and notification sources are refreshed whenever they change
underneath the palette.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

logger = logging.getLogger(__name__)


class SourceKind(Enum):
    APPLICATIONS = auto()
    BINARIES = auto()
    FILESYSTEM = auto()
    HISTORY = auto()
    EXTERNAL = auto()
    SHELL_COMPLETION = auto()
    NOTIFICATION_LOG = auto()


# Label of the external source that holds the output of a "#" command.
LIST_OUTPUT_LABEL = "#"


@dataclass
class Entry:
    """One row of a data source.

    Identity is the position inside the owning source; ``exec_hint``
    (when set) is what gets launched instead of ``text``.
    """

    text: str
    exec_hint: str = ""
    tooltip: str = ""
    categories: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    needs_terminal: bool = False
    working_dir: str = ""
    ident: int | None = None
    score: int = 0
    hidden: bool = False

    @property
    def launch_text(self) -> str:
        return self.exec_hint or self.text


@dataclass
class DataSource:
    """A searchable collection bound (or bindable) to the list view."""

    kind: SourceKind
    entries: list[Entry] = field(default_factory=list)
    # FILESYSTEM
    root: str = ""
    # EXTERNAL
    label: str = ""
    action: str = ""
    # SHELL_COMPLETION
    separator: str = ""
    # Bumped on every wholesale rebuild; delayed callbacks compare it.
    generation: int = 0

    def replace_entries(self, entries: Iterable[Entry]) -> None:
        self.entries = list(entries)
        self.generation += 1

    def texts(self) -> list[str]:
        return [e.text for e in self.entries]

    def __len__(self) -> int:
        return len(self.entries)


# ----------------------------
# Builders
# ----------------------------


def _split_list(value: Any) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if str(v)]
    if isinstance(value, str):
        return [v for v in value.split(";") if v]
    return []


def application_entries(apps: Iterable[dict[str, Any]]) -> list[Entry]:
    """Build application entries from index records.

    Records without a name or without an exec line are useless for a
    launcher and are skipped.
    """
    out: list[Entry] = []
    for app in apps or []:
        if not isinstance(app, dict):
            continue
        name = str(app.get("name") or "").strip()
        exec_line = str(app.get("exec") or "").strip()
        if not name or not exec_line:
            continue
        out.append(
            Entry(
                text=name,
                exec_hint=exec_line,
                tooltip=str(app.get("comment") or ""),
                categories=_split_list(app.get("categories")),
                keywords=_split_list(app.get("keywords")),
                needs_terminal=bool(app.get("terminal", False)),
                working_dir=str(app.get("path") or ""),
            )
        )
    return out


def text_entries(lines: Iterable[str]) -> list[Entry]:
    return [Entry(text=line) for line in lines]


def split_entries(lines: Iterable[str], field_separator: str) -> list[Entry]:
    """Split each line into a display/exec pair on field_separator."""
    out: list[Entry] = []
    for line in lines:
        if not field_separator:
            out.append(Entry(text=line))
            continue
        parts = line.split(field_separator)
        exec_hint = parts[1] if len(parts) > 1 else ""
        out.append(Entry(text=parts[0], exec_hint=exec_hint))
    return out


def notification_entries(records: Iterable[dict[str, Any]]) -> list[Entry]:
    out: list[Entry] = []
    for r in records or []:
        out.append(
            Entry(
                text=str(r.get("summary", "")),
                tooltip=str(r.get("body", "")),
                keywords=[str(r.get("app_name", ""))],
                ident=r.get("id"),
            )
        )
    return out


# ----------------------------
# PATH binaries
# ----------------------------


class BinaryIndex:
    """Executable names available on PATH.

    Rescans only when PATH or the modification time of one of its
    directories changes.
    """

    def __init__(self, path_getter: Callable[[], str] | None = None) -> None:
        self._path_getter = path_getter or (
            lambda: os.environ.get("PATH", "")
        )
        self._cache: list[str] | None = None
        self._cache_set: frozenset[str] = frozenset()
        self._cache_key: tuple | None = None

    def _key(self, path_val: str) -> tuple:
        stamps = []
        for p in path_val.split(os.pathsep):
            try:
                stamps.append(os.stat(p).st_mtime_ns)
            except OSError:
                stamps.append(None)
        return (path_val, tuple(stamps))

    def names(self) -> list[str]:
        path_val = self._path_getter()
        key = self._key(path_val)
        if self._cache is not None and self._cache_key == key:
            return self._cache

        exes: set[str] = set()
        for p in path_val.split(os.pathsep):
            if not p:
                continue
            try:
                for name in os.listdir(p):
                    full = os.path.join(p, name)
                    if os.path.isfile(full) and os.access(full, os.X_OK):
                        exes.add(name)
            except OSError:
                continue

        self._cache = sorted(exes)
        self._cache_set = frozenset(exes)
        self._cache_key = key
        return self._cache

    def __contains__(self, name: object) -> bool:
        self.names()
        return name in self._cache_set


# ----------------------------
# Filesystem listing
# ----------------------------


def list_directory(path: str) -> list[Entry]:
    """List a directory as entries sorted by name.

    A vanished or unreadable directory yields an empty list.
    """
    try:
        names = os.listdir(path)
    except OSError as e:
        logger.debug("cannot list %s: %s", path, e)
        return []
    return [Entry(text=name) for name in sorted(names, key=str.lower)]


class DirectoryLister:
    """Enumerates directories off the interactive loop.

    ``on_done(root, entries)`` is delivered through ``deliver`` (normally
    the scheduler's call_soon_threadsafe). With ``threaded=False`` the
    listing happens inline, which is what the tests use.
    """

    def __init__(
        self,
        deliver: Callable[[Callable[[], None]], None] | None = None,
        threaded: bool = True,
    ) -> None:
        self.deliver = deliver or (lambda fn: fn())
        self.threaded = threaded
        self.requests = 0

    def request(
        self, root: str, on_done: Callable[[str, list[Entry]], None]
    ) -> None:
        self.requests += 1

        def _work() -> None:
            entries = list_directory(root)
            self.deliver(lambda: on_done(root, entries))

        if not self.threaded:
            _work()
            return
        threading.Thread(target=_work, daemon=True).start()
