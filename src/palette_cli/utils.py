# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Utility functions for palette-cli.
"""

import re
import shlex
from enum import Enum, auto

# Token separators for the input line: whitespace plus shell list operators.
SEPARATORS = re.compile(r"[;&|\s]+")

_DURATION_UNITS_MS = {
    "d": 86_400_000,
    "h": 3_600_000,
    "m": 60_000,
    "s": 1_000,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)([dhms])", re.IGNORECASE)


def shell_quote(s: str) -> str:
    """Shell-escape string for safe substitution in shell commands.

    Args:
        s: String to escape

    Returns:
        Shell-safe quoted string
    """
    return shlex.quote(s)


class LexerState(Enum):
    """States for quote-aware lexer."""
    NORMAL = auto()
    SINGLE_QUOTE = auto()
    DOUBLE_QUOTE = auto()
    ESCAPE = auto()


def split_unquoted(text: str, sep: str = "|") -> list[str]:
    """Split text on a separator character outside of quotes.

    Handles single quotes, double quotes and backslash escapes the same
    way a POSIX shell would when looking for a pipe. The separator is
    dropped; quotes and escapes are kept verbatim in the segments.

    Args:
        text: The command line
        sep: Single separator character

    Returns:
        List of raw segments (at least one, possibly empty strings)
    """
    segments: list[str] = []
    current: list[str] = []
    state = LexerState.NORMAL

    for ch in text:
        if state == LexerState.ESCAPE:
            current.append(ch)
            state = LexerState.NORMAL
            continue

        if state == LexerState.NORMAL:
            if ch == "\\":
                state = LexerState.ESCAPE
            elif ch == "'":
                state = LexerState.SINGLE_QUOTE
            elif ch == '"':
                state = LexerState.DOUBLE_QUOTE
            elif ch == sep:
                segments.append("".join(current))
                current = []
                continue
            current.append(ch)

        elif state == LexerState.SINGLE_QUOTE:
            if ch == "'":
                state = LexerState.NORMAL
            current.append(ch)

        elif state == LexerState.DOUBLE_QUOTE:
            if ch == '"':
                state = LexerState.NORMAL
            current.append(ch)

    segments.append("".join(current))
    return segments


def split_command(text: str) -> list[str]:
    """Split a command into argv with shell-like quoting.

    Unbalanced quotes make shlex give up; the line is then split on plain
    whitespace so that the user still gets *something* started (or the
    calculator fallback kicks in).
    """
    try:
        return shlex.split(text)
    except ValueError:
        return text.split()


def first_word(text: str) -> str:
    """Return the first separator-delimited word of text."""
    stripped = text.lstrip()
    if not stripped:
        return ""
    return SEPARATORS.split(stripped, maxsplit=1)[0]


def parse_duration(text: str) -> int:
    """Parse a human duration into milliseconds.

    Accepted forms:
    - ``"1500"``: a bare integer is already milliseconds
    - ``"1:30"`` / ``"2:00:05"``: M:S or H:M:S, right aligned
    - ``"1h30m"``, ``"90s"``, ``"1d 2h"``: any subset of d/h/m/s units

    Returns:
        Milliseconds, or -1 if the text cannot be parsed
    """
    s = (text or "").strip()
    if not s:
        return -1

    if s.isdigit():
        return int(s)

    if ":" in s:
        parts = [p.strip() for p in s.split(":")]
        if len(parts) > 3 or not all(p.isdigit() for p in parts):
            return -1
        seconds = 0
        for p in parts:
            seconds = seconds * 60 + int(p)
        return seconds * 1000

    compact = re.sub(r"\s+", "", s)
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(compact):
        if match.start() != pos:
            return -1
        total += float(match.group(1)) * _DURATION_UNITS_MS[
            match.group(2).lower()
        ]
        pos = match.end()
    if pos == 0 or pos != len(compact):
        return -1
    return int(total)
