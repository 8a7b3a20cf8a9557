# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
System clipboard access through pyperclip.
"""

from __future__ import annotations

import logging

import pyperclip

logger = logging.getLogger(__name__)


class PyperclipClipboard:
    """Clipboard implementation; a missing backend is logged, not raised."""

    def get(self) -> str:
        try:
            return pyperclip.paste() or ""
        except pyperclip.PyperclipException as e:
            logger.warning("clipboard unavailable: %s", e)
            return ""

    def set(self, text: str) -> None:
        try:
            pyperclip.copy(text)
        except pyperclip.PyperclipException as e:
            logger.warning("could not copy to clipboard: %s", e)
