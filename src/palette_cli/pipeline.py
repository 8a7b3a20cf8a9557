# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Turns the raw input line into a Command.

Grammar (deliberately tiny):
- one optional leading sigil: ``=`` math, ``?`` force output,
  ``!`` suppress output (detach), ``#`` show output as a list
- stages separated by unquoted ``|``
- ``%clip`` as first stage reads the clipboard, as last stage copies
  the final output to the clipboard
- the head's first word may be an alias; ``{}`` in an alias takes the
  rest of the line as one argument
- ``$NAME`` tokens are replaced by environment values when set
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum, auto

from .interfaces import AliasTable, Environment
from .utils import SEPARATORS, shell_quote, split_command, split_unquoted

CLIPBOARD_MARKER = "%clip"
ALIAS_PLACEHOLDER = "{}"

_HOME_TILDE = re.compile(r"(^|\W)~(/|\W|$)")


class Sigil(Enum):
    NONE = auto()
    MATH = auto()
    FORCE_OUTPUT = auto()
    SUPPRESS = auto()
    LIST = auto()


SIGILS: dict[str, Sigil] = {
    "=": Sigil.MATH,
    "?": Sigil.FORCE_OUTPUT,
    "!": Sigil.SUPPRESS,
    "#": Sigil.LIST,
}

# An alias may introduce these, but never math.
ALIAS_SIGILS: dict[str, Sigil] = {
    "?": Sigil.FORCE_OUTPUT,
    "!": Sigil.SUPPRESS,
    "#": Sigil.LIST,
}


@dataclass
class Stage:
    """One program invocation of a pipeline."""

    text: str
    program: str = ""
    args: list[str] = field(default_factory=list)
    feeds_from_clipboard: bool = False

    @classmethod
    def parse(cls, text: str, feeds_from_clipboard: bool = False) -> Stage:
        argv = split_command(text)
        return cls(
            text=text,
            program=argv[0] if argv else "",
            args=argv[1:],
            feeds_from_clipboard=feeds_from_clipboard,
        )

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args] if self.program else []


@dataclass(frozen=True)
class ExecutionRequest:
    detached: bool
    captures_output: bool
    auto_detach_after: float | None = None


@dataclass
class Command:
    raw: str
    sigil: Sigil
    stages: list[Stage]
    clipboard_sink: bool = False

    @property
    def head(self) -> Stage:
        return self.stages[-1]

    @property
    def upstream(self) -> list[Stage]:
        return self.stages[:-1]

    @property
    def text(self) -> str:
        """Display form of the resolved command line."""
        return " | ".join(s.text for s in self.stages)

    def request(self, grace_seconds: float = 3.0) -> ExecutionRequest:
        if self.clipboard_sink:
            return ExecutionRequest(detached=False, captures_output=True)
        if self.sigil == Sigil.SUPPRESS:
            return ExecutionRequest(detached=True, captures_output=False)
        if self.sigil in (Sigil.MATH, Sigil.FORCE_OUTPUT, Sigil.LIST):
            return ExecutionRequest(detached=False, captures_output=True)
        return ExecutionRequest(
            detached=False,
            captures_output=True,
            auto_detach_after=grace_seconds,
        )


def expand_tilde(text: str, home: str | None = None) -> str:
    home = home if home is not None else os.path.expanduser("~")
    return _HOME_TILDE.sub(lambda m: m.group(1) + home + m.group(2), text)


def strip_leading_sigil(text: str) -> tuple[Sigil, str]:
    if text[:1] in SIGILS:
        return SIGILS[text[:1]], text[1:]
    return Sigil.NONE, text


def expand_alias(
    head: str, aliases: AliasTable | None
) -> str:
    """Replace the head's leading word by its alias, if it has one."""
    if aliases is None:
        return head
    m = SEPARATORS.search(head)
    sp = m.start() if m else len(head)
    word = head[:sp]
    if not word:
        return head
    replacement = aliases.find_alias(word)
    if replacement is None:
        return head
    if ALIAS_PLACEHOLDER in replacement:
        rest = head[sp:].strip()
        arg = shell_quote(rest) if rest else ""
        return replacement.replace(ALIAS_PLACEHOLDER, arg).strip()
    return replacement + head[sp:]


def expand_environment(text: str, env: Environment | None) -> str:
    if env is None:
        return text
    for token in text.split():
        if token.startswith("$") and len(token) > 1:
            value = env.get(token[1:])
            if value is not None:
                text = text.replace(token, value)
    return text


def build_command(
    text: str,
    aliases: AliasTable | None = None,
    env: Environment | None = None,
    home: str | None = None,
) -> Command:
    """Parse an input line into a Command.

    Math commands are never split or alias-expanded: the whole text goes
    to the calculator.
    """
    raw = text
    text = expand_tilde(text, home)
    sigil, text = strip_leading_sigil(text)
    text = text.strip()

    if sigil == Sigil.MATH:
        return Command(raw=raw, sigil=sigil, stages=[Stage(text=text)])

    segments = [s.strip() for s in split_unquoted(text, "|")]

    from_clipboard = False
    if len(segments) > 1 and segments[0] == CLIPBOARD_MARKER:
        segments.pop(0)
        from_clipboard = True

    clipboard_sink = False
    if len(segments) > 1 and segments[-1] == CLIPBOARD_MARKER:
        segments.pop()
        clipboard_sink = True

    head = expand_alias(segments[-1], aliases)
    # The alias could have introduced a sigil: strip it, but only let it
    # upgrade a plain command.
    if head[:1] in ALIAS_SIGILS:
        if sigil == Sigil.NONE:
            sigil = ALIAS_SIGILS[head[:1]]
        head = head[1:].strip()
    segments[-1] = head

    stages = [
        Stage.parse(
            expand_environment(seg, env),
            feeds_from_clipboard=(from_clipboard and i == 0),
        )
        for i, seg in enumerate(segments)
    ]
    return Command(
        raw=raw, sigil=sigil, stages=stages, clipboard_sink=clipboard_sink
    )
