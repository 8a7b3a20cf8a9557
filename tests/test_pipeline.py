"""
Tests for the command pipeline builder.
"""

from __future__ import annotations

from palette_cli.pipeline import (
    Sigil,
    build_command,
    expand_alias,
    expand_environment,
    expand_tilde,
    strip_leading_sigil,
)


class FakeAliases:
    """Fake AliasTable."""

    def __init__(self, table: dict[str, str]):
        self.table = table

    def find_alias(self, name: str) -> str | None:
        return self.table.get(name)


class FakeEnv:
    """Fake Environment."""

    def __init__(self, values: dict[str, str]):
        self.values = values

    def get(self, name: str) -> str | None:
        return self.values.get(name)


# ----------------------------------------------------------------
# Sigils and stages
# ----------------------------------------------------------------


def test_math_command_is_a_single_unsplit_stage():
    cmd = build_command("= 2+2")
    assert cmd.sigil == Sigil.MATH
    assert [s.text for s in cmd.stages] == ["2+2"]


def test_math_is_not_pipe_split_or_aliased():
    cmd = build_command("=5 | 3", aliases=FakeAliases({"5": "rm -rf"}))
    assert cmd.sigil == Sigil.MATH
    assert cmd.head.text == "5 | 3"


def test_suppressed_pipeline_has_two_stages():
    cmd = build_command("!ls | grep foo")
    assert cmd.sigil == Sigil.SUPPRESS
    assert [s.argv for s in cmd.stages] == [["ls"], ["grep", "foo"]]
    assert cmd.head is cmd.stages[-1]
    assert [s.argv for s in cmd.upstream] == [["ls"]]


def test_quoted_pipe_stays_in_stage():
    cmd = build_command("echo 'a | b' | wc -c")
    assert [s.argv for s in cmd.stages] == [["echo", "a | b"], ["wc", "-c"]]


def test_strip_leading_sigil():
    assert strip_leading_sigil("#ls") == (Sigil.LIST, "ls")
    assert strip_leading_sigil("?ls") == (Sigil.FORCE_OUTPUT, "ls")
    assert strip_leading_sigil("ls") == (Sigil.NONE, "ls")


# ----------------------------------------------------------------
# Execution requests
# ----------------------------------------------------------------


def test_requests_per_sigil():
    assert build_command("!sleep 9").request().detached is True
    force = build_command("?ls").request()
    assert force.detached is False and force.auto_detach_after is None
    plain = build_command("ls").request(grace_seconds=3.0)
    assert plain.captures_output is True
    assert plain.auto_detach_after == 3.0


# ----------------------------------------------------------------
# Clipboard markers
# ----------------------------------------------------------------


def test_clipboard_source_feeds_first_stage():
    cmd = build_command("%clip | sort | uniq")
    assert [s.argv for s in cmd.stages] == [["sort"], ["uniq"]]
    assert cmd.stages[0].feeds_from_clipboard is True
    assert cmd.stages[1].feeds_from_clipboard is False


def test_clipboard_sink_forces_capture():
    cmd = build_command("!date | %clip")
    assert cmd.clipboard_sink is True
    assert [s.argv for s in cmd.stages] == [["date"]]
    req = cmd.request()
    assert req.detached is False
    assert req.auto_detach_after is None


def test_lone_clipboard_marker_is_a_plain_stage():
    cmd = build_command("%clip")
    assert cmd.clipboard_sink is False
    assert cmd.head.program == "%clip"


# ----------------------------------------------------------------
# Aliases, environment, tilde
# ----------------------------------------------------------------


def test_alias_replaces_first_word_and_keeps_arguments():
    aliases = FakeAliases({"ll": "ls -la"})
    assert expand_alias("ll /tmp", aliases) == "ls -la /tmp"
    assert expand_alias("ls /tmp", aliases) == "ls /tmp"


def test_alias_placeholder_takes_rest_as_one_argument():
    aliases = FakeAliases({"g": "grep -rn {} ."})
    cmd = build_command("g two words", aliases=aliases)
    assert cmd.head.argv == ["grep", "-rn", "two words", "."]


def test_alias_sigil_upgrades_plain_command_only():
    aliases = FakeAliases({"g": "?grep -rn {} ."})

    plain = build_command("g x", aliases=aliases)
    assert plain.sigil == Sigil.FORCE_OUTPUT
    assert plain.head.program == "grep"

    suppressed = build_command("!g x", aliases=aliases)
    assert suppressed.sigil == Sigil.SUPPRESS
    assert suppressed.head.program == "grep"


def test_alias_only_applies_to_head():
    aliases = FakeAliases({"ll": "ls -la"})
    cmd = build_command("ll | ll", aliases=aliases)
    assert [s.argv for s in cmd.stages] == [["ll"], ["ls", "-la"]]


def test_environment_tokens_are_expanded_when_set():
    env = FakeEnv({"EDITOR": "vim"})
    assert expand_environment("$EDITOR notes $UNSET", env) == (
        "vim notes $UNSET"
    )
    cmd = build_command("echo $EDITOR | cat $EDITOR", env=env)
    assert [s.argv for s in cmd.stages] == [["echo", "vim"], ["cat", "vim"]]


def test_tilde_expands_only_at_word_boundaries():
    assert expand_tilde("ls ~/src", "/home/u") == "ls /home/u/src"
    assert expand_tilde("~", "/home/u") == "/home/u"
    assert expand_tilde("a~b", "/home/u") == "a~b"


def test_raw_text_is_kept():
    cmd = build_command("  ls ~ ", home="/home/u")
    assert cmd.raw == "  ls ~ "
    assert cmd.head.argv == ["ls", "/home/u"]
