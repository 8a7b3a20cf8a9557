"""
Tests for the pyperclip-backed clipboard.
"""

from __future__ import annotations

import pyperclip
import pytest

from palette_cli.clipboard import PyperclipClipboard


def test_get_and_set_delegate_to_pyperclip(monkeypatch: pytest.MonkeyPatch):
    copied = []
    monkeypatch.setattr(pyperclip, "paste", lambda: "from system")
    monkeypatch.setattr(pyperclip, "copy", copied.append)

    clip = PyperclipClipboard()
    clip.set("hello")

    assert copied == ["hello"]
    assert clip.get() == "from system"


def test_missing_backend_is_not_fatal(monkeypatch: pytest.MonkeyPatch):
    def unavailable(*_args):
        raise pyperclip.PyperclipException("no clipboard mechanism")

    monkeypatch.setattr(pyperclip, "paste", unavailable)
    monkeypatch.setattr(pyperclip, "copy", unavailable)

    clip = PyperclipClipboard()
    clip.set("x")
    assert clip.get() == ""
