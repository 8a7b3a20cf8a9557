"""
Tests for the quote-aware lexer helpers and the duration parser.
"""

from __future__ import annotations

import pytest

from palette_cli.utils import (
    first_word,
    parse_duration,
    shell_quote,
    split_command,
    split_unquoted,
)

# ----------------------------------------------------------------
# split_unquoted
# ----------------------------------------------------------------


def test_split_unquoted_splits_on_plain_pipes():
    assert split_unquoted("ls | grep foo") == ["ls ", " grep foo"]


def test_split_unquoted_ignores_pipes_inside_quotes():
    assert split_unquoted("echo 'a|b' | cat") == ["echo 'a|b' ", " cat"]
    assert split_unquoted('echo "a|b"') == ['echo "a|b"']


def test_split_unquoted_ignores_escaped_pipe():
    assert split_unquoted(r"echo a\|b") == [r"echo a\|b"]


def test_split_unquoted_always_returns_one_segment():
    assert split_unquoted("") == [""]


# ----------------------------------------------------------------
# split_command / first_word / shell_quote
# ----------------------------------------------------------------


def test_split_command_honours_quotes():
    assert split_command('grep "two words" file') == [
        "grep", "two words", "file"
    ]


def test_split_command_falls_back_to_whitespace_on_unbalanced_quotes():
    assert split_command('echo "oops') == ["echo", '"oops']


def test_first_word_stops_at_separators():
    assert first_word("  ls -la") == "ls"
    assert first_word("make;echo done") == "make"
    assert first_word("   ") == ""


def test_shell_quote_round_trips_through_split_command():
    arg = "it's a test"
    assert split_command("echo " + shell_quote(arg)) == ["echo", arg]


# ----------------------------------------------------------------
# parse_duration
# ----------------------------------------------------------------


@pytest.mark.parametrize(
    "text, expected",
    [
        ("1500", 1500),
        ("1:30", 90_000),
        ("1:00:05", 3_605_000),
        ("1h30m", 5_400_000),
        ("90s", 90_000),
        ("1d 2h", 93_600_000),
        ("2M", 120_000),
    ],
)
def test_parse_duration_accepts_supported_forms(text, expected):
    assert parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "abc", "1x", "1:2:3:4", "h1", "5m later"])
def test_parse_duration_rejects_garbage(text):
    assert parse_duration(text) == -1
