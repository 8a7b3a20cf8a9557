# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Palette engine.

Core implementation of palette-cli:
- view-mode state machine (status / list / display / notebook)
- binding and filtering of the data sources
- tab completion cycling and token insertion
- running the input line (applications, files, commands, math)
- privilege relay and the external filter surface

Important boundary:
- Engine does not load YAML or touch the terminal.
- Every state change happens in a key handler or in a callback
  delivered by the injected Scheduler; the UI only renders.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import traceback
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any

from . import config as cfg_module
from .completion import (
    InputLine,
    advance_cycle,
    clean_completion,
    directory_request,
    expand_home,
    last_command,
    last_token,
    replace_token,
    resolve_directory,
    run_completion_helper,
    strip_sigil,
    token_bounds,
)
from .executor import Run, StreamResult, SubprocessExecutor
from .filtering import FilterState, MatchMode, apply_filter, step_selection
from .history import CommandHistory
from .interfaces import (
    AliasTable,
    Clipboard,
    Environment,
    NotificationSink,
    OsEnvironment,
    Scheduler,
)
from .output import Display, classify_output, message_panel
from .pipeline import (
    Command,
    Sigil,
    build_command,
    expand_tilde,
    strip_leading_sigil,
)
from .relay import (
    ABORTED,
    PrivilegeRelay,
    PrivilegeRelayState,
    ResponseChannel,
    is_privileged,
)
from .sources import (
    LIST_OUTPUT_LABEL,
    BinaryIndex,
    DataSource,
    DirectoryLister,
    Entry,
    SourceKind,
    application_entries,
    notification_entries,
    split_entries,
    text_entries,
)
from .utils import first_word, parse_duration, split_command

logger = logging.getLogger(__name__)

PRINT_ACTION = "%print"
CLIP_ACTION = "%clip"
FIELD_CODES = re.compile(r"%[fFuU]")

# Seconds before an idle palette hides itself after a launch.
HIDE_AFTER_COMMAND = 3.0
HIDE_AFTER_OPEN = 1.0
HIDE_AFTER_APPLICATION = 0.5
AUTO_ACCEPT_DELAY = 0.001
CUSTOM_SOURCE_TIMEOUT = 30.0


class ViewMode(Enum):
    STATUS = auto()
    LIST = auto()
    DISPLAY = auto()
    NOTEBOOK = auto()


def write_crash_log(
    error: Exception,
    mode: str = "",
    raw_command: str = "",
) -> None:
    """Write an entry to the crash log.

    Logs unhandled exceptions of the interactive loop.
    Only creates the log directory when actually needed.
    Appends to crash.log (never overwrites).
    """
    try:
        logs = cfg_module.logs_dir(cfg_module.get_data_root())
        logs.mkdir(parents=True, exist_ok=True)

        lines = [
            datetime.now().isoformat(),
            f"mode={mode}",
        ]
        if raw_command:
            lines.append(f"raw={raw_command}")
        lines.append(f"error={type(error).__name__}: {error}")
        lines.append("traceback:")
        lines.append(traceback.format_exc())
        lines.append("----")

        with (logs / "crash.log").open("a", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")
    except OSError as e:
        logger.warning("could not write crash log: %s", e)


def config_seconds(value: Any, default: float) -> float:
    """Seconds from a config value: a number, or a duration like "3s"."""
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return float(value)
    ms = parse_duration(str(value))
    if ms < 0:
        logger.warning("ignoring unparsable duration %r", value)
        return default
    return ms / 1000.0


def sed_rewrite(value: str, action: str, marker: str) -> str:
    """Apply ``<marker>SEPregexSEPreplacement[SEPregex...]`` to value.

    The character right after the marker is the separator. A regex
    without a replacement removes its matches.
    """
    rest = action[len(marker):]
    if not rest:
        return value
    sep = rest[0]
    parts = rest[1:].split(sep)
    for i in range(0, len(parts), 2):
        try:
            pattern = re.compile(parts[i])
        except re.error as e:
            logger.warning("bad rewrite pattern %r: %s", parts[i], e)
            continue
        replacement = parts[i + 1] if i + 1 < len(parts) else ""
        value = pattern.sub(replacement, value)
    return value


@dataclass
class Palette:
    """Palette session engine."""

    executor: SubprocessExecutor
    scheduler: Scheduler
    history: CommandHistory = field(default_factory=CommandHistory)
    aliases: AliasTable | None = None
    env: Environment = field(default_factory=OsEnvironment)
    clipboard: Clipboard | None = None
    notifications: NotificationSink | None = None
    binaries: BinaryIndex = field(default_factory=BinaryIndex)
    lister: DirectoryLister | None = None
    applications: list[dict[str, Any]] = field(default_factory=list)

    # Settings
    grace_seconds: float = 3.0
    relay_grace_seconds: float = 4.0
    terminal: str = ""
    completion_helper: str = ""
    completion_separator: str = ""
    helper_timeout_ms: int = 2000
    directory_marker: str = "dir:"
    page_rows: int = 10
    cwd: str = field(default_factory=os.getcwd)
    home: str = field(default_factory=lambda: os.path.expanduser("~"))

    # State
    mode: ViewMode = ViewMode.STATUS
    visible: bool = True
    was_visible: bool = True
    line: InputLine = field(default_factory=InputLine)
    filter_state: FilterState = field(default_factory=FilterState)
    display: Display | None = None
    # Offset of the current search hit inside display.text.
    display_match: int = -1
    relay_state: PrivilegeRelayState | None = None
    external_reply: ResponseChannel | None = None
    current_run: Run | None = None

    # ---- UI hooks ----
    on_change: Callable[[], None] | None = None
    on_hide: Callable[[], None] | None = None

    _sources: dict[SourceKind, DataSource] = field(
        default_factory=dict, init=False, repr=False
    )
    _bound: DataSource | None = field(default=None, init=False, repr=False)
    _history_buffer: str = field(default="", init=False, repr=False)
    _cycle_after_load: bool = field(default=False, init=False, repr=False)
    _hide_generation: int = field(default=0, init=False, repr=False)
    _binary_names: list[str] | None = field(
        default=None, init=False, repr=False
    )

    def __post_init__(self) -> None:
        self._sources = {kind: DataSource(kind=kind) for kind in SourceKind}
        self._sources[SourceKind.APPLICATIONS].replace_entries(
            application_entries(self.applications)
        )
        self._bound = self._sources[SourceKind.APPLICATIONS]
        if self.lister is None:
            self.lister = DirectoryLister(
                deliver=self.scheduler.call_soon_threadsafe
            )
        self.relay = PrivilegeRelay(
            self.executor, grace_seconds=self.relay_grace_seconds
        )

    @classmethod
    def from_config(cls, config, **deps: Any) -> Palette:
        """Build a palette from a YAMLConfig plus injected collaborators."""
        ex = config.execution
        comp = config.completion
        terminal = ex.get("terminal") or os.environ.get("TERMINAL", "")
        return cls(
            applications=config.applications,
            grace_seconds=config_seconds(ex.get("grace_seconds"), 3.0),
            relay_grace_seconds=config_seconds(
                ex.get("relay_grace_seconds"), 4.0
            ),
            terminal=str(terminal),
            completion_helper=str(comp.get("helper") or ""),
            completion_separator=str(comp.get("separator") or ""),
            helper_timeout_ms=int(comp.get("helper_timeout_ms", 2000)),
            directory_marker=str(comp.get("directory_marker", "dir:")),
            **deps,
        )

    # -----------------------
    # Small helpers
    # -----------------------

    @property
    def bound(self) -> DataSource:
        assert self._bound is not None
        return self._bound

    def source(self, kind: SourceKind) -> DataSource:
        return self._sources[kind]

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def selected_entry(self) -> Entry | None:
        sel = self.filter_state.selected
        entries = self.bound.entries
        if 0 <= sel < len(entries):
            return entries[sel]
        return None

    def visible_rows(self) -> list[tuple[int, Entry]]:
        """Visible entries of the bound source in presentation order."""
        entries = self.bound.entries
        return [
            (i, entries[i]) for i in self.filter_state.rows
            if i < len(entries)
        ]

    @property
    def password_pending(self) -> bool:
        return self.relay_state is not None and self.relay_state.pending

    def set_mode(self, mode: ViewMode) -> None:
        if mode != ViewMode.LIST:
            self.filter_state.cycling = False
        self.mode = mode

    def bind(self, kind: SourceKind, force: bool = False) -> DataSource:
        """Bind kind to the list; a new binding drops the selection."""
        src = self._sources[kind]
        if kind == SourceKind.BINARIES:
            names = self.binaries.names()
            if names is not self._binary_names:
                self._binary_names = names
                src.replace_entries(text_entries(names))
                force = True
        elif kind == SourceKind.NOTIFICATION_LOG:
            self._refresh_notification_entries()
            force = True
        if src is self._bound and not force:
            return src
        self._bound = src
        fs = self.filter_state
        fs.selected = -1
        fs.rows = []
        fs.visible = 0
        fs.first_visible_index = -1
        fs.last_visible_index = -1
        return src

    def show(self) -> None:
        self.visible = True
        self._changed()

    def hide(self) -> None:
        self._stop_auto_hide()
        self.visible = False
        if self.on_hide is not None:
            self.on_hide()

    def _auto_hide(self, delay: float) -> None:
        self._hide_generation += 1
        generation = self._hide_generation

        def _fire() -> None:
            if generation == self._hide_generation and self.visible:
                self.hide()

        self.scheduler.call_later(delay, _fire)

    def _stop_auto_hide(self) -> None:
        self._hide_generation += 1

    def show_message(self, display: Display) -> None:
        self._stop_auto_hide()
        self.display = display
        self.display_match = -1
        self.set_mode(ViewMode.DISPLAY)
        self._changed()

    def _set_input(self, text: str) -> None:
        """Programmatic text change (no filtering)."""
        self.line.set_text(text)
        self._text_changed()

    def _copy(self, text: str) -> None:
        if self.clipboard is not None:
            self.clipboard.set(text)

    def _clipboard_text(self) -> str:
        return self.clipboard.get() if self.clipboard is not None else ""

    def _reply_external(self, value: str) -> None:
        channel, self.external_reply = self.external_reply, None
        if channel is not None:
            channel.complete(value)

    # -----------------------
    # Filtering
    # -----------------------

    def filter(self, needle: str | None, mode: MatchMode) -> None:
        src = self.bound
        accept = apply_filter(
            src,
            needle,
            mode,
            self.filter_state,
            input_text=self.line.text,
            binaries=self.binaries,
        )
        if accept:
            self._schedule_auto_accept(src, self.filter_state.needle)

    def _schedule_auto_accept(self, src: DataSource, needle: str | None) -> None:
        generation = src.generation

        def _accept() -> None:
            if (
                self.mode != ViewMode.LIST
                or self._bound is not src
                or src.generation != generation
                or self.filter_state.needle != needle
            ):
                return
            self.insert_token()

        self.scheduler.call_later(AUTO_ACCEPT_DELAY, _accept)

    def _token_under_cursor(self) -> str:
        left, right = token_bounds(self.line.text, self.line.cursor)
        return self.line.text[left:right]

    def _filesystem_target(self, token: str) -> tuple[str, str]:
        path = expand_home(token.strip('"'))
        head, base = os.path.split(path)
        directory = (
            os.path.normpath(os.path.join(self.cwd, head)) if head
            else os.path.normpath(self.cwd)
        )
        return directory, base

    def filter_input(self) -> None:
        """Re-filter the bound source against the current input."""
        src = self.bound
        if src.kind in (
            SourceKind.APPLICATIONS, SourceKind.EXTERNAL, SourceKind.HISTORY
        ):
            self.filter(self.line.text, MatchMode.PARTIAL)
            return

        token = strip_sigil(self._token_under_cursor())
        if src.kind == SourceKind.FILESYSTEM:
            directory, token = self._filesystem_target(token)
            if directory != src.root:
                self._set_root(directory)
        elif src.kind == SourceKind.BINARIES and not token:
            self.set_mode(ViewMode.STATUS)
        self.filter(token, MatchMode.BEGIN)

    def _set_root(self, directory: str) -> None:
        src = self._sources[SourceKind.FILESYSTEM]
        src.root = directory
        src.replace_entries([])
        self.filter_state.selected = -1
        self.lister.request(directory, self._directory_loaded)

    def _directory_loaded(self, root: str, entries: list[Entry]) -> None:
        src = self._sources[SourceKind.FILESYSTEM]
        if src.root != root:
            return
        src.replace_entries(entries)
        if self._bound is not src or self.mode != ViewMode.LIST:
            return
        cycle = self._cycle_after_load
        self._cycle_after_load = False
        _directory, base = self._filesystem_target(
            strip_sigil(self._token_under_cursor())
        )
        self.filter(base, MatchMode.BEGIN)
        if cycle:
            self.filter_state.cycling = True
        self._changed()

    def refresh_notifications(self) -> None:
        """Rebuild the notification list after the log changed."""
        if self.bound.kind != SourceKind.NOTIFICATION_LOG:
            return
        self._refresh_notification_entries()
        self.filter(None, MatchMode.PARTIAL)
        self._changed()

    def _refresh_notification_entries(self) -> None:
        records = self.notifications.entries() if self.notifications else []
        self._sources[SourceKind.NOTIFICATION_LOG].replace_entries(
            notification_entries(records)
        )

    # -----------------------
    # Completion
    # -----------------------

    def insert_token(self) -> None:
        """Put the selected entry into the input."""
        src = self.bound
        if src.kind in (SourceKind.APPLICATIONS, SourceKind.NOTIFICATION_LOG):
            return
        entry = self.selected_entry()
        if entry is None:
            return
        if src.kind == SourceKind.EXTERNAL:
            # Only the output of a "#" command is meant to be reused.
            if src.label == LIST_OUTPUT_LABEL:
                self.line.set_text(entry.text)
                self._changed()
            return
        if src.kind == SourceKind.HISTORY:
            self.line.set_text(entry.text)
            self._changed()
            return

        token = entry.text
        if src.kind == SourceKind.FILESYSTEM:
            token = src.root.rstrip("/") + "/" + token
            if re.search(r"\s", token):
                token = f'"{token}"'
        elif src.kind == SourceKind.SHELL_COMPLETION:
            token = clean_completion(token, src.separator)
        replace_token(self.line, token)
        self._changed()

    def _bind_filesystem(self, directory: str) -> None:
        self.set_mode(ViewMode.LIST)
        src = self.bind(SourceKind.FILESYSTEM)
        if src.root == directory:
            # Already listed: filter the cached entries again, no relisting.
            _directory, base = self._filesystem_target(
                strip_sigil(self._token_under_cursor())
            )
            self.filter(base, MatchMode.BEGIN)
            self.filter_state.cycling = True
            self.insert_token()
            return
        self.filter_state.cycling = True
        self.filter_state.previous_needle = ""
        self._cycle_after_load = True
        self._set_root(directory)

    def explicitly_complete(self) -> None:
        """Tab on non-empty input."""
        fs = self.filter_state
        text, cursor = self.line.text, self.line.cursor
        token = last_token(text, cursor)
        if self.mode != ViewMode.LIST:
            fs.cycling = False

        if fs.cycling:
            advance_cycle(fs)
            self.insert_token()
            return

        resolved = resolve_directory(strip_sigil(token), self.cwd)
        if resolved is not None:
            self._bind_filesystem(resolved[0])
            return

        command = last_command(text, cursor)
        if first_word(command) in self.binaries:
            if self.completion_helper:
                self._complete_with_helper(command)
        else:
            self.bind(SourceKind.BINARIES)
            fs.previous_needle = ""
            self.filter(strip_sigil(token), MatchMode.BEGIN)
            self.set_mode(ViewMode.LIST)
        fs.cycling = True

    def _complete_with_helper(self, command: str) -> None:
        lines = run_completion_helper(
            self.completion_helper,
            command,
            timeout_ms=self.helper_timeout_ms,
            cwd=self.cwd,
        )
        if lines is None:
            return
        target = directory_request(lines, self.directory_marker)
        if target is not None:
            directory = os.path.normpath(
                os.path.join(self.cwd, expand_home(target))
            )
            if os.path.isdir(directory):
                self._bind_filesystem(directory)
            return
        src = self._sources[SourceKind.SHELL_COMPLETION]
        src.separator = self.completion_separator
        src.replace_entries(text_entries(lines))
        self.bind(SourceKind.SHELL_COMPLETION, force=True)
        self.set_mode(ViewMode.LIST)
        self.filter_input()

    # -----------------------
    # Key handlers
    # -----------------------

    def _text_changed(self) -> None:
        text = self.line.text
        if self.password_pending:
            return
        if not text:
            if self.mode == ViewMode.LIST and self.bound.kind in (
                SourceKind.EXTERNAL, SourceKind.NOTIFICATION_LOG
            ):
                return
            if self.mode != ViewMode.DISPLAY:
                self.set_mode(ViewMode.STATUS)
            return
        if self.mode == ViewMode.STATUS and len(text) == 1:
            self.bind(SourceKind.APPLICATIONS)
            self.filter_input()
            self.set_mode(ViewMode.LIST)

    def _user_edited(self) -> None:
        self._text_changed()
        if self.password_pending:
            pass
        elif self.mode == ViewMode.LIST:
            self.filter_input()
        elif self.mode == ViewMode.DISPLAY and self.line.text:
            self.search_display(0)
        self._changed()

    def type_text(self, text: str) -> None:
        self._stop_auto_hide()
        line = self.line
        if not self.password_pending and (
            text == " "
            or (text == "/" and self.bound.kind == SourceKind.FILESYSTEM)
        ):
            # Accept the suggested suffix so the next word starts cleanly.
            if (line.has_selection() and
                    line.selection_start + line.selection_length
                    == len(line.text)):
                line.deselect()
                line.cursor = len(line.text)
        line.insert(text)
        self._user_edited()

    def backspace(self) -> None:
        self._stop_auto_hide()
        self.line.backspace()
        self._user_edited()

    def delete(self) -> None:
        """Delete key: removes the selected history line / notification
        when the cursor sits at the end of the input, else edits."""
        self._stop_auto_hide()
        line = self.line
        entry = self.selected_entry()
        if (self.mode == ViewMode.LIST and not line.has_selection()
                and line.cursor == len(line.text) and entry is not None):
            kind = self.bound.kind
            if kind == SourceKind.HISTORY:
                self.history.remove_all(entry.text)
                self._sources[SourceKind.HISTORY].replace_entries(
                    text_entries(reversed(self.history.lines))
                )
                self.filter(None, MatchMode.PARTIAL)
                self._changed()
                return
            if kind == SourceKind.NOTIFICATION_LOG:
                if self.notifications is not None and entry.ident is not None:
                    self.notifications.purge(entry.ident)
                self._refresh_notification_entries()
                self.filter(None, MatchMode.PARTIAL)
                self._changed()
                return
        line.delete()
        self._user_edited()

    def move_cursor(self, delta: int) -> None:
        self.line.move(delta)
        self._changed()

    def home_key(self) -> None:
        self.line.move(-len(self.line.text))
        self._changed()

    def end_key(self) -> None:
        self.line.move(len(self.line.text))
        self._changed()

    def tab(self) -> None:
        self._stop_auto_hide()
        if self.password_pending:
            return
        if self.line.text:
            self.explicitly_complete()
            self._changed()
            return

        if self.mode == ViewMode.STATUS:
            self.bind(SourceKind.APPLICATIONS)
            self.filter("", MatchMode.PARTIAL)
            self.set_mode(ViewMode.LIST)
        elif self.mode == ViewMode.LIST:
            kind = self.bound.kind
            if kind == SourceKind.APPLICATIONS:
                self.bind(SourceKind.BINARIES)
                self.filter("", MatchMode.BEGIN)
            elif kind == SourceKind.BINARIES:
                self.bind(SourceKind.EXTERNAL)
                self.filter("", MatchMode.PARTIAL)
            elif kind == SourceKind.EXTERNAL:
                self.bind(SourceKind.APPLICATIONS)
                self.set_mode(ViewMode.DISPLAY)
        elif self.mode == ViewMode.DISPLAY:
            self.set_mode(ViewMode.STATUS)
        self._changed()

    def page(self, direction: int) -> None:
        """PageUp (-1) / PageDown (+1)."""
        self._stop_auto_hide()
        if self.mode == ViewMode.LIST:
            step_selection(self.filter_state, direction * self.page_rows)
            self.insert_token()
        elif self.mode == ViewMode.DISPLAY and self.line.text:
            self.search_display(direction)
        self._changed()

    def vertical(self, direction: int) -> None:
        """Up (-1) / Down (+1): list selection, else history recall."""
        self._stop_auto_hide()
        if self.password_pending:
            return
        if self.mode == ViewMode.LIST:
            step_selection(self.filter_state, direction)
            self.insert_token()
        else:
            text = (
                self.history.older(self.line.text) if direction < 0
                else self.history.newer()
            )
            if text is not None:
                self._set_input(text)
        self._changed()

    def escape(self) -> None:
        """Unwind one level."""
        self._stop_auto_hide()
        if self.password_pending:
            self.relay_state.channel.complete(ABORTED)
        elif (self.mode == ViewMode.LIST
              and self.bound.kind == SourceKind.HISTORY):
            self.filter_state.selected = -1
            self._leave_history()
            self._set_input(self._history_buffer)
        elif self.line.text:
            self._set_input("")
        elif self.mode in (ViewMode.DISPLAY, ViewMode.NOTEBOOK):
            self.set_mode(ViewMode.STATUS)
        elif (self.mode == ViewMode.LIST
              and self.bound.kind == SourceKind.EXTERNAL):
            self._reply_external("")
            if not self.was_visible:
                self.hide()
            self.set_mode(ViewMode.STATUS)
        elif (self.mode == ViewMode.LIST
              and self.bound.kind == SourceKind.NOTIFICATION_LOG):
            self.set_mode(ViewMode.STATUS)
        else:
            self._reply_external("")
            self.hide()
        self._changed()

    def enter(self) -> None:
        self._stop_auto_hide()
        if self.password_pending:
            self.relay_state.channel.complete(self.line.text)
            self._changed()
            return
        if self.run_input():
            self._set_input("")
        self._changed()

    def history_search(self) -> None:
        """Ctrl+R: bind command history, newest first."""
        self._stop_auto_hide()
        if self.password_pending:
            return
        self._history_buffer = self.line.text
        self._sources[SourceKind.HISTORY].replace_entries(
            text_entries(reversed(self.history.lines))
        )
        self.bind(SourceKind.HISTORY, force=True)
        self.filter(self._history_buffer, MatchMode.PARTIAL)
        self.set_mode(ViewMode.LIST)
        self._changed()

    def show_notifications(self) -> None:
        """Ctrl+N: bind the notification log."""
        self._stop_auto_hide()
        if self.password_pending:
            return
        self._set_input("")
        self.bind(SourceKind.NOTIFICATION_LOG)
        self.filter("", MatchMode.PARTIAL)
        self.set_mode(ViewMode.LIST)
        self._changed()

    def _leave_history(self) -> None:
        self.bind(SourceKind.BINARIES)
        self.set_mode(ViewMode.STATUS)
        self._sources[SourceKind.HISTORY].replace_entries([])

    # -----------------------
    # Display search
    # -----------------------

    def search_display(self, direction: int) -> bool:
        """Find the input text in the display.

        direction 0 searches forward from the current hit (so a growing
        needle stays put) and wraps backward; +1/-1 step to the next or
        previous hit without wrapping.
        """
        if self.display is None or not self.line.text:
            return False
        hay = self.display.text.lower()
        needle = self.line.text.lower()
        cur = self.display_match
        if direction < 0:
            end = cur + len(needle) - 1 if cur >= 0 else len(hay)
            pos = hay.rfind(needle, 0, end)
        else:
            start = 0 if cur < 0 else cur + (1 if direction > 0 else 0)
            pos = hay.find(needle, start)
            if pos < 0 and direction == 0:
                pos = hay.rfind(needle)
        if pos < 0:
            return False
        self.display_match = pos
        return True

    # -----------------------
    # Running the input
    # -----------------------

    def run_input(self) -> bool:
        """Act on Enter.

        Returns:
            True when something was started and the input can be cleared
        """
        current = self.bound.kind if self.mode == ViewMode.LIST else None
        entry = self.selected_entry()

        if (current == SourceKind.EXTERNAL and entry is not None
                and self.bound.label != LIST_OUTPUT_LABEL):
            return self._run_external_action(entry)

        if current == SourceKind.HISTORY:
            if entry is not None:
                self._set_input(entry.text)
            self._leave_history()
            return False

        if current == SourceKind.NOTIFICATION_LOG:
            if (entry is not None and entry.ident is not None
                    and self.notifications is not None):
                self.notifications.recall(entry.ident)
            return False

        raw = self.line.text
        command = expand_tilde(raw, self.home)
        if not command and entry is not None:
            command = entry.text

        target = self._existing_path(command)
        if target is not None:
            if os.path.isdir(target):
                self.cwd = target
                return True
            ok = self.executor.open_path(target)
            if ok:
                self._auto_hide(HIDE_AFTER_OPEN)
            return ok

        if current == SourceKind.APPLICATIONS and entry is not None:
            return self._launch_application(entry)

        if not command.strip():
            return False
        return self._run_command(raw, command)

    def _existing_path(self, command: str) -> str | None:
        if not command:
            return None
        candidates = [command]
        if len(command) > 1 and command.startswith('"') and command.endswith('"'):
            candidates.append(command[1:-1])
        for c in candidates:
            path = os.path.join(self.cwd, c)
            if os.path.exists(path):
                return os.path.normpath(path)
        return None

    def _run_external_action(self, entry: Entry) -> bool:
        value = entry.launch_text
        action = self.bound.action
        ok = True
        if action.startswith(CLIP_ACTION):
            self._copy(sed_rewrite(value, action, CLIP_ACTION))
        elif action.startswith(PRINT_ACTION):
            self._reply_external(sed_rewrite(value, action, PRINT_ACTION))
        else:
            ok = self.executor.start_detached(
                split_command(action) + [value], cwd=self.cwd
            )
        if not self.was_visible:
            self.hide()
        else:
            self._auto_hide(HIDE_AFTER_COMMAND)
        return ok

    def _launch_application(self, entry: Entry) -> bool:
        exec_line = FIELD_CODES.sub("", entry.launch_text)
        if entry.needs_terminal:
            if not self.terminal:
                self.show_message(
                    message_panel(
                        "",
                        "TERMINAL required",
                        f"{entry.text} needs a terminal. Set "
                        "execution.terminal or the TERMINAL "
                        "environment variable.",
                    )
                )
                return False
            argv = split_command(self.terminal) + split_command(exec_line)
        else:
            argv = split_command(exec_line)
        if not argv:
            return False
        ok = self.executor.start_detached(
            argv, cwd=entry.working_dir or None
        )
        if ok:
            self._auto_hide(HIDE_AFTER_APPLICATION)
        return ok

    def _fallback_expression(self, command: str) -> str:
        return strip_leading_sigil(command)[1].strip()

    def _run_command(self, raw: str, command: str) -> bool:
        cmd = build_command(
            command, aliases=self.aliases, env=self.env, home=self.home
        )
        if cmd.sigil == Sigil.MATH:
            return self._start_calculator(cmd.head.text)

        request = cmd.request(self.grace_seconds)
        stdin_text = (
            self._clipboard_text() if cmd.stages[0].feeds_from_clipboard
            else None
        )
        argvs = [s.argv for s in cmd.stages]

        if request.detached:
            run = self.executor.start_pipeline(
                argvs, stdin_text=stdin_text, detached=True, cwd=self.cwd
            )
            if run is None:
                return self._start_calculator(
                    self._fallback_expression(command)
                )
            self.history.append(raw)
            self._auto_hide(HIDE_AFTER_COMMAND)
            return True

        if cmd.sigil in (Sigil.FORCE_OUTPUT, Sigil.LIST):
            self.show_message(message_panel("Waiting for output…"))

        if len(cmd.stages) == 1 and is_privileged(cmd.head):
            return self._run_privileged(cmd, raw, command)

        run = self.executor.start_pipeline(
            argvs,
            stdin_text=stdin_text,
            cwd=self.cwd,
            # A plain command must outlive the palette.
            new_session=request.auto_detach_after is not None,
        )
        if run is None:
            return self._start_calculator(self._fallback_expression(command))
        if cmd.sigil == Sigil.LIST:
            run.output_type = "list"
        self._supervise(run, cmd, request.auto_detach_after)
        self.history.append(raw)
        if request.auto_detach_after is not None:
            self._auto_hide(HIDE_AFTER_COMMAND)
        return True

    def _supervise(
        self, run: Run, cmd: Command | None, auto_detach_after: float | None
    ) -> None:
        self.current_run = run
        self.executor.supervise(
            run,
            lambda r, result: self._on_finished(r, result, cmd),
            auto_detach_after=auto_detach_after,
        )

    def _start_calculator(self, expression: str) -> bool:
        if not expression:
            return False
        run = self.executor.start_calculator(expression)
        if run is None:
            return False
        self._supervise(run, None, None)
        return True

    def _on_finished(
        self, run: Run, result: StreamResult, cmd: Command | None
    ) -> None:
        if self.current_run is None or self.current_run.token != run.token:
            logger.debug("dropping stale result of %s", run.argv)
            return
        self.current_run = None

        if cmd is not None and cmd.clipboard_sink:
            self._copy(result.stdout)
            if result.exit_code == 0:
                self._changed()
                return

        classified = classify_output(
            result.exit_code,
            result.stdout,
            result.stderr,
            " ".join(run.argv),
            output_type=run.output_type,
            ansi_to_markup=self.executor.ansi_to_markup,
        )
        if classified.list_lines is not None:
            self._show_list_output(classified.list_lines)
        elif classified.display is not None:
            self.show_message(classified.display)
        if not self.visible:
            self._notify_finished(run, result)
        self._changed()

    def _notify_finished(self, run: Run, result: StreamResult) -> None:
        """Report a result that arrived while the palette was hidden."""
        if self.notifications is None:
            return
        command = " ".join(run.argv)
        if result.exit_code == 0:
            summary = f"{command} finished"
            output = result.stdout
        else:
            summary = f"{command} failed ({result.exit_code})"
            output = result.stderr
        tail = output.strip().splitlines()
        self.notifications.add(
            summary, body=tail[-1] if tail else "", app_name="palette"
        )

    def _show_list_output(self, lines: list[str]) -> None:
        self._stop_auto_hide()
        src = self._sources[SourceKind.EXTERNAL]
        src.label = LIST_OUTPUT_LABEL
        src.action = ""
        src.replace_entries(text_entries(lines))
        self.bind(SourceKind.EXTERNAL, force=True)
        self.filter("", MatchMode.PARTIAL)
        self.set_mode(ViewMode.LIST)

    # -----------------------
    # Privilege relay
    # -----------------------

    def _run_privileged(self, cmd: Command, raw: str, command: str) -> bool:
        run, code = self.relay.first_attempt(cmd.head, cwd=self.cwd)
        if run is None:
            return self._start_calculator(self._fallback_expression(command))

        if code is not None and code != 0:
            run.close()
            state = self.relay.begin(cmd.head, cmd.head.text)
            self.relay_state = state
            state.channel.add_done_callback(
                lambda secret: self._relay_answered(state, cmd, secret)
            )
            self.show_message(
                message_panel(
                    cmd.head.text,
                    "…enter your sudo password…",
                    "(press escape to abort)",
                )
            )
            self.line.clear()
            self.line.password = True
            return False

        if cmd.sigil == Sigil.LIST:
            run.output_type = "list"
        self._supervise(
            run, cmd, cmd.request(self.grace_seconds).auto_detach_after
        )
        self.history.append(raw)
        return True

    def _relay_answered(
        self, state: PrivilegeRelayState, cmd: Command, secret: str
    ) -> None:
        self.line.password = False
        self.line.clear()
        self.relay_state = None

        if secret == ABORTED:
            self.relay.abort(state)
            self.show_message(message_panel(state.command_text, "aborted"))
            self.set_mode(ViewMode.STATUS)
            return

        self.show_message(message_panel(state.command_text, "Password entered"))
        run = self.relay.submit(
            state,
            secret,
            lambda r, result: self._on_finished(r, result, cmd),
            cwd=self.cwd,
            detach_after_grace=(
                cmd.request(self.grace_seconds).auto_detach_after is not None
            ),
            output_type="list" if cmd.sigil == Sigil.LIST else "",
        )
        if run is None:
            self.show_message(
                message_panel(state.command_text, "could not start")
            )
            return
        self.current_run = run

    # -----------------------
    # External filter surface
    # -----------------------

    def filter_custom(
        self, source: str, action: str = "", field_separator: str = ""
    ) -> ResponseChannel | str | None:
        """Let the user pick from lines of a file or a command's output.

        Args:
            source: File path, or a command whose stdout provides the lines
            action: ``%print[rewrite]``, ``%clip[rewrite]`` or a command the
                picked value is appended to
            field_separator: Splits lines into display / value

        Returns:
            A ResponseChannel for ``%print`` actions (completed with the
            picked value, or "" on escape), "" for other actions, None if
            the source could not be read
        """
        lines = self._read_custom_source(source)
        if lines is None:
            return None

        self._reply_external("")
        src = self._sources[SourceKind.EXTERNAL]
        src.label = source
        src.action = action
        src.replace_entries(split_entries(lines, field_separator))

        self._set_input("")
        self.bind(SourceKind.EXTERNAL, force=True)
        self.set_mode(ViewMode.LIST)
        self.filter("", MatchMode.PARTIAL)
        self.was_visible = self.visible
        self.show()

        if action.startswith(PRINT_ACTION):
            self.external_reply = ResponseChannel()
            return self.external_reply
        return ""

    def _read_custom_source(self, source: str) -> list[str] | None:
        if os.path.isfile(source):
            try:
                with open(source, encoding="utf-8", errors="replace") as f:
                    text = f.read()
            except OSError as e:
                logger.warning("cannot read %s: %s", source, e)
                return None
        else:
            argv = split_command(source)
            if not argv:
                return None
            try:
                result = subprocess.run(
                    argv,
                    capture_output=True,
                    text=True,
                    errors="replace",
                    timeout=CUSTOM_SOURCE_TIMEOUT,
                    cwd=self.cwd,
                )
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.warning("cannot run %s: %s", source, e)
                return None
            text = result.stdout
        lines = text.split("\n")
        if lines and not lines[-1]:
            lines.pop()
        return lines

    # -----------------------
    # Lifecycle
    # -----------------------

    def shutdown(self) -> None:
        """Answer pending channels and persist history."""
        if self.password_pending:
            self.relay_state.channel.complete(ABORTED)
        self._reply_external("")
        self.history.flush()
