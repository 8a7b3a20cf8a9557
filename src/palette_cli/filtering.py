# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Filtering and ranking of the bound data source.

Three policies, picked by source kind and match mode:
- multi-field AND of tokens (applications, notification log), no scores
- prefix (binaries, filesystem, shell completion, tab completion)
- substring AND with ranking (external lists, command history)

``apply_filter`` updates visibility and score of every entry in place,
recomputes the presentation order, decides the implicit selection and
reports whether the sole remaining match should be auto-accepted.
"""

from __future__ import annotations

from collections.abc import Container
from dataclasses import dataclass, field
from enum import Enum, auto

from .sources import DataSource, Entry, SourceKind
from .utils import SEPARATORS, first_word

SCORE_PREFIX = 100
SCORE_SUBSTRING = 50
SCORE_TOKENS = 1


class MatchMode(Enum):
    BEGIN = auto()
    PARTIAL = auto()


MULTI_FIELD_KINDS = (SourceKind.APPLICATIONS, SourceKind.NOTIFICATION_LOG)
COMMAND_AWARE_KINDS = (SourceKind.APPLICATIONS, SourceKind.EXTERNAL)


@dataclass
class FilterState:
    """Filter/selection state of the single list view."""

    needle: str | None = None
    match_mode: MatchMode = MatchMode.PARTIAL
    previous_needle: str = ""
    cycling: bool = False
    shrink: bool = False
    visible: int = 0
    previous_visible: int = 0
    first_visible_index: int = -1
    last_visible_index: int = -1
    # Visible entry indices in presentation order.
    rows: list[int] = field(default_factory=list)
    # Selected entry index, -1 for none.
    selected: int = -1


def tokenize(needle: str) -> list[str]:
    return [t for t in SEPARATORS.split(needle or "") if t]


def _fields(entry: Entry) -> list[str]:
    return [
        entry.text,
        entry.exec_hint,
        entry.tooltip,
        *entry.categories,
        *entry.keywords,
    ]


def matches_all_fields(entry: Entry, tokens: list[str]) -> bool:
    """Every token must be found in at least one field of entry."""
    haystacks = [f.lower() for f in _fields(entry) if f]
    for token in tokens:
        t = token.lower()
        if not any(t in h for h in haystacks):
            return False
    return True


def matches_prefix(text: str, needle: str) -> bool:
    if text.startswith(".") and not needle.startswith("."):
        return False
    return text.lower().startswith(needle.lower())


def partial_score(text: str, needle: str) -> int:
    """Score text against needle; 0 means not visible."""
    hay = text.lower()
    n = (needle or "").lower()
    tokens = tokenize(n)
    if not all(t in hay for t in tokens):
        return 0
    if hay.startswith(n):
        return SCORE_PREFIX
    if n in hay:
        return SCORE_SUBSTRING
    return SCORE_TOKENS


def ranked_rows(entries: list[Entry]) -> list[int]:
    """Visible indices sorted by descending score.

    The sort is stable, so equal scores keep source order. The entry
    list itself is never reordered.
    """
    visible = [i for i, e in enumerate(entries) if not e.hidden]
    return sorted(visible, key=lambda i: -entries[i].score)


def looks_like_command(input_text: str, binaries: Container[str]) -> bool:
    """Whether the raw input already reads as a full command line."""
    if "|" in input_text:
        return True
    stripped = input_text.strip()
    if not SEPARATORS.search(stripped):
        return False
    return first_word(input_text) in binaries


def apply_filter(
    source: DataSource,
    needle: str | None,
    mode: MatchMode,
    state: FilterState,
    input_text: str = "",
    binaries: Container[str] = (),
) -> bool:
    """Filter source against needle and update state.

    A ``None`` needle re-applies the previous one without counting as a
    new query (cycling survives).

    Returns:
        True when the sole visible match should be auto-accepted.
    """
    if needle is not None:
        state.cycling = False
        state.needle = needle
    else:
        needle = state.needle or ""
    state.match_mode = mode

    entries = source.entries
    shrink = False
    ranked = False

    if source.kind in MULTI_FIELD_KINDS:
        tokens = tokenize(needle)
        for e in entries:
            e.hidden = not matches_all_fields(e, tokens)
            e.score = 0
    elif mode == MatchMode.BEGIN:
        for e in entries:
            e.hidden = not matches_prefix(e.text, needle)
            e.score = 0
        shrink = state.previous_needle.lower().startswith(needle.lower())
    else:
        for e in entries:
            e.score = partial_score(e.text, needle)
            e.hidden = e.score == 0
        shrink = needle.lower() in state.previous_needle.lower()
        ranked = True

    # First/last visible in source order, independent of presentation.
    visible_idx = [i for i, e in enumerate(entries) if not e.hidden]
    state.first_visible_index = visible_idx[0] if visible_idx else -1
    state.last_visible_index = visible_idx[-1] if visible_idx else -1
    state.rows = ranked_rows(entries) if ranked else visible_idx
    visible = len(visible_idx)

    state.previous_needle = needle
    state.shrink = shrink

    sel = state.selected
    sel_valid = 0 <= sel < len(entries)
    if (sel_valid and source.kind in COMMAND_AWARE_KINDS and
            looks_like_command(input_text, binaries)):
        state.selected = -1
    elif visible > 0 and (not sel_valid or entries[sel].hidden):
        state.selected = state.rows[0]
    elif not visible or (
        visible > 1 and shrink and state.previous_visible == 1
    ):
        state.selected = -1

    state.previous_visible = visible
    state.visible = visible
    return visible == 1 and not shrink and bool(needle)


def step_selection(state: FilterState, delta: int, wrap: bool = False) -> bool:
    """Move the selection delta rows through the presentation order.

    Returns:
        True if the selection changed.
    """
    rows = state.rows
    if not rows:
        return False
    old = state.selected
    if old not in rows:
        state.selected = rows[0] if delta >= 0 else rows[-1]
        return state.selected != old
    pos = rows.index(old) + delta
    if wrap:
        pos %= len(rows)
    else:
        pos = max(0, min(pos, len(rows) - 1))
    state.selected = rows[pos]
    return state.selected != old
