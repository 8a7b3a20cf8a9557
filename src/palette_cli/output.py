# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Classification and rendering of captured command output.

Every result becomes a Display: an HTML-ish ``markup`` rendition (what a
rich-text surface shows) plus the raw ``text`` the terminal front-end
renders directly (ANSI escapes included).
"""

from __future__ import annotations

import html
import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto

RICH_SNIFF_BYTES = 512

_KNOWN_TAG = re.compile(
    r"<(?:html|head|body|qt|p|div|span|pre|h[1-6]|table|tr|td|th|ul|ol|li|"
    r"b|i|u|em|strong|br|hr|img|a|font|center|code|tt|big|small|sub|sup)"
    r"(?:\s[^>]*)?/?>",
    re.IGNORECASE,
)


class DisplayKind(Enum):
    MESSAGE = auto()
    FAILURE = auto()
    MATH = auto()
    RICH = auto()
    TEXT = auto()


@dataclass(frozen=True)
class Display:
    kind: DisplayKind
    markup: str
    text: str
    title: str = ""


@dataclass(frozen=True)
class Classified:
    """Where a finished command's output goes."""

    display: Display | None = None
    list_lines: list[str] | None = None


def escape(s: str) -> str:
    return html.escape(s, quote=False)


def message_panel(heading: str, headline: str = "", note: str = "") -> Display:
    """Centered status message (waiting, password prompt, aborted...)."""
    parts = []
    text_parts = []
    if heading:
        parts.append(f"<h3 align=center>{escape(heading)}</h3>")
        text_parts.append(heading)
    if headline:
        parts.append(f"<h1 align=center>{escape(headline)}</h1>")
        text_parts.append(headline)
    if note:
        parts.append(f"<p align=center>{escape(note)}</p>")
        text_parts.append(note)
    return Display(
        kind=DisplayKind.MESSAGE,
        markup="".join(parts),
        text="\n".join(text_parts),
        title=heading,
    )


def might_be_rich_text(text: str) -> bool:
    """Sniff whether text is already marked up."""
    sample = text[:RICH_SNIFF_BYTES]
    if sample.startswith("﻿"):
        return True
    lowered = sample.lower()
    if "<html>" in lowered or "<!doctype html" in lowered:
        return True
    if "<!--" in sample:
        return True
    stripped = sample.replace("\n", "").lstrip()
    return bool(stripped.startswith("<") and _KNOWN_TAG.match(stripped))


def failure_panel(command_line: str, stderr: str) -> str:
    out = (
        '<h3 align=center style="color:#d01717;">'
        f"{escape(command_line)}</h3>"
    )
    if stderr:
        out += f'<p style="color:#d01717;">{escape(stderr)}</p>'
    return out


def render_stdout(
    stdout: str,
    ansi_to_markup: Callable[[str], str | None] | None = None,
) -> tuple[DisplayKind, str]:
    """Markup for plain (non-math, non-list) stdout."""
    if might_be_rich_text(stdout):
        return DisplayKind.RICH, stdout
    if "\x1b[" in stdout and ansi_to_markup is not None:
        converted = ansi_to_markup(stdout)
        if converted is not None:
            return DisplayKind.TEXT, f"<pre>{converted}</pre>"
    return DisplayKind.TEXT, f"<pre>{escape(stdout)}</pre>"


def classify_output(
    exit_code: int,
    stdout: str,
    stderr: str,
    command_line: str,
    output_type: str = "",
    ansi_to_markup: Callable[[str], str | None] | None = None,
) -> Classified:
    """Decide how a finished command is presented.

    Args:
        exit_code: Exit status of the last stage
        stdout: Captured standard output of the last stage
        stderr: Captured standard error of the last stage
        command_line: Command line shown in the failure heading
        output_type: "math", "list" or "" (tag set by the executor)
        ansi_to_markup: Optional ANSI-to-markup converter

    Returns:
        Classified with either a display, list lines, or nothing to show
    """
    markup = ""
    text = ""
    kind = DisplayKind.TEXT

    if exit_code != 0:
        kind = DisplayKind.FAILURE
        markup = failure_panel(command_line, stderr)
        text = command_line + ("\n" + stderr.rstrip() if stderr else "")

    if stdout:
        if output_type == "math":
            if kind != DisplayKind.FAILURE:
                kind = DisplayKind.MATH
            markup += (
                '<pre align=center style="font-size:xx-large;"><br><br>'
                f"{escape(stdout)}</pre>"
            )
        elif output_type == "list" and exit_code == 0:
            lines = stdout.split("\n")
            if lines and not lines[-1]:
                lines.pop()
            return Classified(list_lines=lines)
        else:
            stdout_kind, rendered = render_stdout(stdout, ansi_to_markup)
            if kind != DisplayKind.FAILURE:
                kind = stdout_kind
            markup += rendered
        text = (text + "\n" + stdout) if text else stdout

    if not markup:
        return Classified()
    return Classified(
        display=Display(
            kind=kind, markup=markup, text=text, title=command_line
        )
    )
