"""
Tests for the privilege relay and the one-shot response channel.
A fake launcher records every launch; no real sudo is involved.
"""

from __future__ import annotations

import asyncio

from palette_cli.executor import Run, StreamResult
from palette_cli.pipeline import Stage
from palette_cli.relay import (
    PrivilegeRelay,
    RelayPhase,
    ResponseChannel,
    is_privileged,
    non_interactive_argv,
    stdin_argv,
)


def _result(exit_code: int) -> StreamResult:
    return StreamResult(
        exit_code=exit_code,
        stdout="",
        stderr="",
        started_at="",
        duration_ms=1,
        stdout_bytes=0,
        stderr_bytes=0,
        truncated=False,
    )


class FakeLauncher:
    """Fake ProcessLauncher that never spawns anything."""

    def __init__(self, first_exit: int | None = 1, fail_start: bool = False):
        self.first_exit = first_exit
        self.fail_start = fail_start
        self.launches: list[dict] = []
        self.supervised: list[tuple[Run, object, float | None]] = []

    def start_detached(self, argv, cwd=None, stdin_text=None):
        self.launches.append({"stages": [argv], "detached": True})
        return not self.fail_start

    def start_pipeline(
        self, stages, stdin_text=None, detached=False, cwd=None,
        new_session=None,
    ):
        self.launches.append(
            {"stages": stages, "stdin_text": stdin_text, "cwd": cwd}
        )
        if self.fail_start:
            return None
        return Run(argv=stages[-1])

    def probe_exit(self, run):
        return self.first_exit

    def supervise(self, run, on_finished, auto_detach_after=None):
        self.supervised.append((run, on_finished, auto_detach_after))

    def finish(self, exit_code: int) -> None:
        run, on_finished, _grace = self.supervised[-1]
        on_finished(run, _result(exit_code))


# ----------------------------------------------------------------
# Argument handling
# ----------------------------------------------------------------


def test_privileged_detection():
    assert is_privileged(Stage.parse("sudo ls /root"))
    assert is_privileged(Stage.parse("sudoedit /etc/hosts"))
    assert not is_privileged(Stage.parse("sudo -k"))
    assert not is_privileged(Stage.parse("ls"))


def test_flag_insertion():
    stage = Stage.parse("sudo ls /root")
    assert non_interactive_argv(stage) == ["sudo", "-n", "ls", "/root"]
    assert stdin_argv(stage) == ["sudo", "-S", "ls", "/root"]


# ----------------------------------------------------------------
# Relay flow
# ----------------------------------------------------------------


def test_first_attempt_probes_non_interactive_run():
    launcher = FakeLauncher(first_exit=1)
    relay = PrivilegeRelay(launcher)

    run, code = relay.first_attempt(Stage.parse("sudo ls"), cwd="/tmp")

    assert run is not None
    assert code == 1
    assert launcher.launches[0]["stages"] == [["sudo", "-n", "ls"]]
    assert launcher.launches[0]["cwd"] == "/tmp"


def test_first_attempt_that_cannot_start():
    relay = PrivilegeRelay(FakeLauncher(fail_start=True))
    assert relay.first_attempt(Stage.parse("sudo ls")) == (None, None)


def test_submit_relaunches_exactly_once_with_secret():
    launcher = FakeLauncher()
    relay = PrivilegeRelay(launcher, grace_seconds=4.0)
    state = relay.begin(Stage.parse("sudo ls"), "sudo ls")
    finished = []

    run = relay.submit(state, "hunter2", lambda r, res: finished.append(res))
    again = relay.submit(state, "hunter2", lambda r, res: None)

    assert run is not None
    assert again is None
    assert len(launcher.launches) == 1
    assert launcher.launches[0]["stages"] == [["sudo", "-S", "ls"]]
    assert launcher.launches[0]["stdin_text"] == "hunter2\n"
    assert launcher.supervised[0][2] == 4.0

    launcher.finish(0)

    assert [r.exit_code for r in finished] == [0]
    assert state.transitions == [
        RelayPhase.PROMPT, RelayPhase.SUBMITTED, RelayPhase.SUCCEEDED
    ]


def test_forced_output_relaunch_is_watched_until_exit():
    launcher = FakeLauncher()
    relay = PrivilegeRelay(launcher, grace_seconds=4.0)
    state = relay.begin(Stage.parse("sudo apt update"), "sudo apt update")

    run = relay.submit(
        state,
        "hunter2",
        lambda r, res: None,
        detach_after_grace=False,
        output_type="list",
    )

    assert launcher.supervised[0][2] is None
    assert run.output_type == "list"


def test_failed_relaunch_ends_in_failed():
    launcher = FakeLauncher()
    relay = PrivilegeRelay(launcher)
    state = relay.begin(Stage.parse("sudo ls"), "sudo ls")

    relay.submit(state, "wrong", lambda r, res: None)
    launcher.finish(1)

    assert state.phase == RelayPhase.FAILED


def test_abort_spawns_nothing():
    launcher = FakeLauncher()
    relay = PrivilegeRelay(launcher)
    state = relay.begin(Stage.parse("sudo ls"), "sudo ls")

    relay.abort(state)

    assert state.phase == RelayPhase.ABORTED
    assert relay.submit(state, "late", lambda r, res: None) is None
    assert launcher.launches == []


def test_relaunch_that_cannot_start():
    launcher = FakeLauncher(fail_start=True)
    relay = PrivilegeRelay(launcher)
    state = relay.begin(Stage.parse("sudo ls"), "sudo ls")

    assert relay.submit(state, "x", lambda r, res: None) is None
    assert state.phase == RelayPhase.FAILED
    assert launcher.supervised == []


# ----------------------------------------------------------------
# ResponseChannel
# ----------------------------------------------------------------


def test_channel_completes_once():
    channel = ResponseChannel()
    seen = []
    channel.add_done_callback(seen.append)

    assert channel.complete("first") is True
    assert channel.complete("second") is False

    assert channel.done()
    assert channel.result() == "first"
    assert seen == ["first"]


def test_callback_after_completion_fires_immediately():
    channel = ResponseChannel()
    channel.complete("")
    seen = []
    channel.add_done_callback(seen.append)
    assert seen == [""]


def test_channel_can_be_awaited():
    async def scenario() -> str:
        channel = ResponseChannel()
        loop = asyncio.get_running_loop()
        loop.call_soon(channel.complete, "picked")
        return await channel.wait()

    assert asyncio.run(scenario()) == "picked"
