# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Tab completion helpers.

The engine drives the completion state machine; this module holds the
pieces it is built from: the editable input line, token boundaries,
token replacement, directory resolution, the external completion helper
and the cycle step.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass

from .filtering import FilterState, step_selection
from .utils import SEPARATORS, split_command

logger = logging.getLogger(__name__)

SIGIL_CHARS = ("=", "?", "!", "#")


@dataclass
class InputLine:
    """The palette's single-line input buffer."""

    text: str = ""
    cursor: int = 0
    selection_start: int = -1
    selection_length: int = 0
    password: bool = False

    def has_selection(self) -> bool:
        return self.selection_start > -1 and self.selection_length > 0

    def set_text(self, text: str) -> None:
        self.text = text
        self.cursor = len(text)
        self.deselect()

    def select(self, start: int, length: int) -> None:
        self.selection_start = start
        self.selection_length = length
        self.cursor = start + length

    def deselect(self) -> None:
        self.selection_start = -1
        self.selection_length = 0

    def clear(self) -> None:
        self.set_text("")

    def selected_text(self) -> str:
        if not self.has_selection():
            return ""
        s = self.selection_start
        return self.text[s:s + self.selection_length]

    def insert(self, s: str) -> None:
        """Type s, replacing the selection if there is one."""
        if self.has_selection():
            start = self.selection_start
            end = start + self.selection_length
            self.text = self.text[:start] + s + self.text[end:]
            self.cursor = start + len(s)
            self.deselect()
            return
        c = self.cursor
        self.text = self.text[:c] + s + self.text[c:]
        self.cursor = c + len(s)

    def backspace(self) -> None:
        if self.has_selection():
            self.insert("")
            return
        if self.cursor > 0:
            c = self.cursor
            self.text = self.text[:c - 1] + self.text[c:]
            self.cursor = c - 1

    def delete(self) -> None:
        if self.has_selection():
            self.insert("")
            return
        c = self.cursor
        if c < len(self.text):
            self.text = self.text[:c] + self.text[c + 1:]

    def move(self, delta: int) -> None:
        self.deselect()
        self.cursor = max(0, min(len(self.text), self.cursor + delta))


def _is_sep(ch: str) -> bool:
    return bool(SEPARATORS.match(ch))


def token_bounds(text: str, cursor: int) -> tuple[int, int]:
    """Return [left, right) of the token under the cursor.

    Tokens end at whitespace or ``;&|``. When the cursor sits inside an
    open double quote the token is widened to the surrounding quotes, so
    a quoted path with spaces is replaced as a whole.
    """
    cursor = max(0, min(cursor, len(text)))
    left = 0
    for i in range(cursor - 1, -1, -1):
        if _is_sep(text[i]):
            left = i + 1
            break
    right = len(text)
    for i in range(cursor, len(text)):
        if _is_sep(text[i]):
            right = i
            break

    if text[:left].count('"') % 2 == 1:
        left = text.rfind('"', 0, left)
        close = text.find('"', max(cursor, left + 1))
        right = close + 1 if close >= 0 else len(text)
    return left, right


def last_token(text: str, cursor: int) -> str:
    """The separator-delimited word right before the cursor."""
    return SEPARATORS.split(text[:cursor])[-1]


def strip_sigil(token: str) -> str:
    if token.startswith(SIGIL_CHARS):
        return token[1:]
    return token


def last_command(text: str, cursor: int) -> str:
    """The pipe segment under the cursor, sigil and indentation removed."""
    segment = text[:cursor].split("|")[-1].lstrip()
    return strip_sigil(segment)


def replace_token(line: InputLine, new_token: str) -> None:
    """Put new_token in place of the token (or selection) under the cursor.

    When the replacement extends what the user typed, the added part is
    left selected so the next keystroke or Tab overwrites it cleanly.
    """
    text = line.text
    if line.has_selection():
        start = line.selection_start
        end = start + line.selection_length
        left, _right = token_bounds(text, start)
        if left < len(text) and text[left] in SIGIL_CHARS:
            left += 1
        typed = text[left:start]
        if typed and new_token.lower().startswith(typed.lower()):
            line.text = text[:left] + new_token + text[end:]
            line.select(left + len(typed), len(new_token) - len(typed))
        else:
            line.text = text[:start] + new_token + text[end:]
            line.select(start, len(new_token))
        return

    left, right = token_bounds(text, line.cursor)
    if left < len(text) and text[left] in SIGIL_CHARS:
        left += 1
    typed = text[left:line.cursor]
    line.text = text[:left] + new_token + text[right:]
    line.deselect()
    if (typed and len(new_token) > len(typed) and
            new_token.lower().startswith(typed.lower())):
        line.select(left + len(typed), len(new_token) - len(typed))
    else:
        line.cursor = left + len(new_token)


def expand_home(path: str) -> str:
    if path.startswith("~"):
        return os.path.expanduser("~") + path[1:]
    return path


def resolve_directory(token: str, cwd: str) -> tuple[str, str] | None:
    """Directory and basename to browse for a path-like token.

    Returns None unless the token's directory exists and the token either
    names a directory other than cwd or contains a slash.
    """
    path = expand_home(token)
    head, base = os.path.split(path)
    directory = os.path.normpath(os.path.join(cwd, head or "."))
    if not os.path.isdir(directory) or not os.access(directory, os.R_OK):
        return None
    if directory == os.path.normpath(cwd) and "/" not in token:
        return None
    return directory, base


def run_completion_helper(
    helper: str, command: str, timeout_ms: int = 2000, cwd: str | None = None
) -> list[str] | None:
    """Ask the external completion helper for candidates.

    Returns:
        Deduplicated output lines, or None when the helper is missing,
        fails to start or does not answer in time.
    """
    argv = split_command(helper)
    if not argv:
        return None
    try:
        result = subprocess.run(
            argv + [command],
            capture_output=True,
            text=True,
            timeout=timeout_ms / 1000.0,
            cwd=cwd,
        )
    except subprocess.TimeoutExpired:
        logger.debug("completion helper timed out: %s", helper)
        return None
    except OSError as e:
        logger.debug("completion helper unavailable: %s", e)
        return None

    lines = result.stdout.split("\n")
    if lines and not lines[-1]:
        lines.pop()
    return list(dict.fromkeys(lines))


def directory_request(lines: list[str], marker: str) -> str | None:
    """Path named by the first directory-marker line, if any."""
    if not marker:
        return None
    for line in lines:
        if line.startswith(marker):
            return line[len(marker):].strip()
    return None


def clean_completion(candidate: str, separator: str) -> str:
    """Cut a helper line at the separator, dropping cursor control chars."""
    if not separator:
        return candidate
    token = candidate.split(separator, 1)[0]
    for ch in ("\r", "\t", "\a"):
        token = token.replace(ch, "")
    return token


def advance_cycle(state: FilterState) -> bool:
    """Move to the next visible row, wrapping to the first one."""
    return step_selection(state, +1, wrap=True)
