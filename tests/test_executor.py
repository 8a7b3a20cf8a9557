"""
Tests for the subprocess executor.
Uses short-lived POSIX commands only (sh, echo, cat, true, false, sleep).
"""

from __future__ import annotations

import threading
import time

import pytest

from palette_cli.executor import StreamResult, SubprocessExecutor


class FakeScheduler:
    """Records timers and thread-safe calls instead of running a loop."""

    def __init__(self):
        self.later: list[tuple[float, object]] = []
        self.soon: list[object] = []

    def call_later(self, delay, callback):
        self.later.append((delay, callback))
        return None

    def call_soon_threadsafe(self, callback):
        self.soon.append(callback)


def _supervised_result(executor, run, **kwargs) -> StreamResult:
    done = threading.Event()
    box: dict[str, StreamResult] = {}

    def on_finished(r, result):
        box["result"] = result
        done.set()

    executor.supervise(run, on_finished, **kwargs)
    assert done.wait(5.0), "no result delivered"
    return box["result"]


@pytest.fixture
def executor() -> SubprocessExecutor:
    """Executor without a scheduler: results are delivered inline."""
    return SubprocessExecutor(force_color=False)


# ----------------------------------------------------------------
# Supervised pipelines
# ----------------------------------------------------------------


def test_single_stage_output_is_captured(executor):
    run = executor.start_pipeline([["echo", "hello"]])
    assert run is not None

    result = _supervised_result(executor, run)

    assert result.exit_code == 0
    assert result.stdout == "hello\n"
    assert result.stderr == ""
    assert result.duration_ms >= 0
    assert result.truncated is False


def test_stages_are_pipe_connected(executor):
    run = executor.start_pipeline([["echo", "one two"], ["tr", " ", "\n"]])
    assert len(run.procs) == 2
    assert run.argv == ["tr", " ", "\n"]

    result = _supervised_result(executor, run)

    assert result.stdout == "one\ntwo\n"


def test_stdin_text_is_fed_to_first_stage(executor):
    run = executor.start_pipeline([["cat"]], stdin_text="secret\n")
    assert _supervised_result(executor, run).stdout == "secret\n"


def test_stderr_and_exit_code_of_last_stage(executor):
    run = executor.start_pipeline([["sh", "-c", "echo err >&2; exit 3"]])
    result = _supervised_result(executor, run)
    assert result.exit_code == 3
    assert result.stderr == "err\n"


def test_capture_is_capped():
    executor = SubprocessExecutor(max_capture_bytes=5)
    run = executor.start_pipeline([["echo", "hello world"]])
    result = _supervised_result(executor, run)
    assert result.stdout == "hello"
    assert result.truncated is True
    assert result.stdout_bytes == len("hello world\n")


# ----------------------------------------------------------------
# Start failures
# ----------------------------------------------------------------


def test_unknown_program_returns_none(executor):
    assert executor.start_pipeline([["no-such-program-palette-test"]]) is None


def test_failing_later_stage_returns_none(executor):
    run = executor.start_pipeline(
        [["sleep", "5"], ["no-such-program-palette-test"]]
    )
    assert run is None


def test_empty_stage_list_returns_none(executor):
    assert executor.start_pipeline([]) is None
    assert executor.start_pipeline([[]]) is None


def test_start_detached(executor):
    assert executor.start_detached(["true"]) is True
    assert executor.start_detached(["no-such-program-palette-test"]) is False


# ----------------------------------------------------------------
# Probing and grace window
# ----------------------------------------------------------------


def test_probe_exit_reports_quick_exit():
    executor = SubprocessExecutor(probe_ms=5000)
    run = executor.start_pipeline([["false"]])
    assert executor.probe_exit(run) == 1
    run.close()


def test_probe_exit_is_bounded():
    executor = SubprocessExecutor(probe_ms=50)
    run = executor.start_pipeline([["sleep", "5"]])
    try:
        assert executor.probe_exit(run) is None
        assert run.running()
    finally:
        run.kill()
        run.close()
    assert not run.running()


def test_grace_window_detaches_without_killing():
    scheduler = FakeScheduler()
    executor = SubprocessExecutor(scheduler=scheduler)
    run = executor.start_pipeline([["sh", "-c", "sleep 0.2; echo late"]])

    executor.supervise(run, lambda r, res: None, auto_detach_after=3.0)

    ((delay, callback),) = scheduler.later
    assert delay == 3.0
    callback()
    assert run.detached is True

    assert run.head.wait(timeout=5.0) == 0
    time.sleep(0.3)
    assert scheduler.soon == []
    assert run.head.stdout.closed


def test_detach_releases_pipes_of_silent_child():
    scheduler = FakeScheduler()
    executor = SubprocessExecutor(scheduler=scheduler)
    run = executor.start_pipeline([["sleep", "5"]])
    try:
        executor.supervise(run, lambda r, res: None, auto_detach_after=0.1)
        ((_delay, callback),) = scheduler.later
        callback()

        deadline = time.time() + 3.0
        while not (run.head.stdout.closed and run.head.stderr.closed):
            assert time.time() < deadline
            time.sleep(0.05)

        assert run.running()
    finally:
        run.kill()


def test_results_go_through_scheduler():
    scheduler = FakeScheduler()
    executor = SubprocessExecutor(scheduler=scheduler)
    run = executor.start_pipeline([["echo", "hi"]])
    got = []

    executor.supervise(run, lambda r, res: got.append(res.stdout))

    deadline = time.time() + 5.0
    while not scheduler.soon and time.time() < deadline:
        time.sleep(0.01)
    assert got == []
    scheduler.soon[0]()
    assert got == ["hi\n"]


def test_auto_detach_needs_scheduler(executor):
    run = executor.start_pipeline([["true"]])
    with pytest.raises(ValueError):
        executor.supervise(run, lambda r, res: None, auto_detach_after=1.0)


# ----------------------------------------------------------------
# Calculator and ANSI filter
# ----------------------------------------------------------------


def test_calculator_prefers_configured_then_defaults():
    def which(name):
        return "/usr/bin/" + name if name in ("bc", "mycalc") else None

    assert SubprocessExecutor(which=which).calculator_argv() == ["bc", "-ilq"]
    assert SubprocessExecutor(
        calculator="mycalc -x", which=which
    ).calculator_argv() == ["mycalc", "-x"]
    assert SubprocessExecutor(
        calculator="missing", which=which
    ).calculator_argv() is None


def test_start_calculator_tags_math_and_pipes_expression():
    executor = SubprocessExecutor(calculator="cat")
    run = executor.start_calculator("2+2")
    assert run.output_type == "math"
    assert _supervised_result(executor, run).stdout == "2+2\n"


def test_start_calculator_without_calculator():
    executor = SubprocessExecutor(which=lambda name: None)
    assert executor.start_calculator("1+1") is None


def test_ansi_to_markup_uses_filter():
    executor = SubprocessExecutor(ansi_filter="cat", probe_ms=5000)
    assert executor.ansi_to_markup("\x1b[1mx\x1b[0m") == "\x1b[1mx\x1b[0m"


def test_ansi_to_markup_without_filter():
    executor = SubprocessExecutor(which=lambda name: None)
    assert executor.ansi_to_markup("x") is None
