# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Subprocess-backed executor implementation for palette-cli.

This module provides:
- start_detached(): fire-and-forget launch in a new session
- start_pipeline(): launch pipe-connected stages, upstream stdout wired
  to the next stage's stdin, optional text fed to the first stage
- supervise(): observe the last stage from daemon reader threads and
  deliver a StreamResult through the scheduler, with an optional grace
  window after which the palette stops listening (the child keeps running)
- calculator / ANSI filter helpers used as fallbacks by the engine

Nothing here blocks longer than the configured probe window.
"""

from __future__ import annotations

import codecs
import itertools
import logging
import os
import select
import shutil
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from .interfaces import Scheduler
from .utils import split_command

logger = logging.getLogger(__name__)

DEFAULT_CALCULATORS = ("qalc -f -", "bc -ilq")
DEFAULT_ANSI_FILTERS = ("ansifilter -f -H", "aha -x -n")

# How often supervising threads look at Run.detached.
POLL_SECONDS = 0.1
READ_CHUNK = 65536

_run_tokens = itertools.count(1)


@dataclass(frozen=True)
class StreamResult:
    exit_code: int
    stdout: str
    stderr: str
    started_at: str
    duration_ms: int
    stdout_bytes: int
    stderr_bytes: int
    truncated: bool


@dataclass
class Run:
    """Handle on a launched pipeline.

    ``token`` identifies the run for stale-result checks; once
    ``detached`` is set nothing more is delivered for it.
    """

    argv: list[str]
    procs: list[subprocess.Popen] = field(default_factory=list)
    output_type: str = ""
    token: int = field(default_factory=lambda: next(_run_tokens))
    detached: bool = False
    started_at: str = field(
        default_factory=lambda: datetime.now().isoformat()
    )
    start_ts: float = field(default_factory=time.time)

    @property
    def head(self) -> subprocess.Popen:
        return self.procs[-1]

    def running(self) -> bool:
        return any(p.poll() is None for p in self.procs)

    def detach(self) -> None:
        """Stop listening without killing anything.

        Supervising threads notice within POLL_SECONDS, close the parent's
        read ends and exit. stdin is owned by the feeder thread, which
        always closes it.
        """
        self.detached = True

    def close(self) -> None:
        """Release the parent's pipe ends of a run nobody supervises."""
        for p in self.procs:
            for pipe in (p.stdin, p.stdout, p.stderr):
                if pipe is None:
                    continue
                try:
                    pipe.close()
                except OSError:
                    pass

    def kill(self) -> None:
        for p in self.procs:
            if p.poll() is not None:
                continue
            try:
                p.terminate()
                p.wait(timeout=1.0)
            except subprocess.TimeoutExpired:
                p.kill()
                p.wait()
            except OSError as e:
                logger.debug("cannot stop pid %s: %s", p.pid, e)


def _first_available(
    configured: str | None,
    defaults: tuple[str, ...],
    which: Callable[[str], str | None],
) -> list[str] | None:
    candidates = (configured,) if configured else defaults
    for cmd in candidates:
        argv = split_command(cmd)
        if argv and which(argv[0]):
            return argv
    return None


class SubprocessExecutor:
    """Subprocess implementation of the ProcessLauncher protocol."""

    def __init__(
        self,
        scheduler: Scheduler | None = None,
        probe_ms: int = 250,
        calculator: str | None = None,
        ansi_filter: str | None = None,
        opener: str = "xdg-open",
        max_capture_bytes: int = 256_000,
        force_color: bool = True,
        which: Callable[[str], str | None] = shutil.which,
    ):
        """Initialize executor with configuration.

        Args:
            scheduler: Loop used to deliver results (inline when None)
            probe_ms: Bound for start and first-exit probes
            calculator: Calculator command line, None to autodetect
            ansi_filter: ANSI-to-markup command line, None to autodetect
            opener: Desktop file opener
            max_capture_bytes: Max bytes to keep in captured
                stdout/stderr buffers
            force_color: If True, set color-forcing env variables
            which: PATH lookup (tests inject a fake)
        """
        self.scheduler = scheduler
        self.probe_ms = probe_ms
        self.calculator = calculator
        self.ansi_filter = ansi_filter
        self.opener = opener
        self.max_capture_bytes = max_capture_bytes
        self.force_color = force_color
        self.which = which

    def _build_env(self) -> dict:
        env = os.environ.copy()
        if self.force_color:
            env["PY_COLORS"] = "1"
            env["FORCE_COLOR"] = "1"
            env["CLICOLOR_FORCE"] = "1"
        return env

    def _deliver(self, callback: Callable[[], None]) -> None:
        if self.scheduler is None:
            callback()
        else:
            self.scheduler.call_soon_threadsafe(callback)

    # ----------------------------
    # Launching
    # ----------------------------

    def start_detached(
        self,
        argv: list[str],
        cwd: str | None = None,
        stdin_text: str | None = None,
    ) -> bool:
        """Start argv in its own session and forget about it.

        Returns:
            False when the program could not be started
        """
        run = self.start_pipeline(
            [argv], stdin_text=stdin_text, detached=True, cwd=cwd
        )
        return run is not None

    def open_path(self, path: str) -> bool:
        return self.start_detached(split_command(self.opener) + [path])

    def start_pipeline(
        self,
        stages: list[list[str]],
        stdin_text: str | None = None,
        detached: bool = False,
        cwd: str | None = None,
        new_session: bool | None = None,
    ) -> Run | None:
        """Launch pipe-connected stages.

        Each stage's stdout feeds the next stage's stdin. stdin_text, when
        given, is written to the first stage and its stdin closed. A
        detached pipeline discards output and runs in a new session.

        Returns:
            The Run, or None if any stage failed to start (stages that did
            start are stopped again)
        """
        if not stages or not all(stages):
            return None
        if new_session is None:
            new_session = detached

        env = self._build_env()
        run = Run(argv=stages[-1])
        last = len(stages) - 1

        for i, argv in enumerate(stages):
            if i > 0:
                stdin = run.procs[-1].stdout
            elif stdin_text is not None:
                stdin = subprocess.PIPE
            else:
                stdin = subprocess.DEVNULL

            if i < last:
                stdout = subprocess.PIPE
                stderr = subprocess.DEVNULL
            elif detached:
                stdout = stderr = subprocess.DEVNULL
            else:
                stdout = stderr = subprocess.PIPE

            try:
                proc = subprocess.Popen(
                    argv,
                    stdin=stdin,
                    stdout=stdout,
                    stderr=stderr,
                    text=True,
                    errors="replace",
                    bufsize=1,
                    env=env,
                    cwd=cwd,
                    start_new_session=new_session,
                )
            except (OSError, ValueError) as e:
                logger.debug("cannot start %s: %s", argv, e)
                if i > 0 and run.procs[-1].stdout is not None:
                    run.procs[-1].stdout.close()
                run.kill()
                return None

            # The parent keeps no copy of intermediate pipe ends.
            if i > 0 and run.procs[-1].stdout is not None:
                run.procs[-1].stdout.close()
            run.procs.append(proc)

        if stdin_text is not None:
            self._feed(run.procs[0], stdin_text)
        return run

    def _feed(self, proc: subprocess.Popen, text: str) -> None:
        """Write text to proc's stdin and close it, off the caller's thread."""
        pipe = proc.stdin
        if pipe is None:
            return

        def _write() -> None:
            try:
                pipe.write(text)
                pipe.flush()
            except (BrokenPipeError, OSError, ValueError) as e:
                logger.debug("stdin of pid %s closed early: %s", proc.pid, e)
            finally:
                try:
                    pipe.close()
                except (BrokenPipeError, OSError):
                    pass

        threading.Thread(target=_write, daemon=True).start()

    def probe_exit(self, run: Run) -> int | None:
        """Wait up to the probe window for the last stage to exit.

        Returns:
            The exit code, or None if it is still running
        """
        try:
            return run.head.wait(timeout=self.probe_ms / 1000.0)
        except subprocess.TimeoutExpired:
            return None

    # ----------------------------
    # Supervision
    # ----------------------------

    def supervise(
        self,
        run: Run,
        on_finished: Callable[[Run, StreamResult], None],
        auto_detach_after: float | None = None,
    ) -> None:
        """Observe run and deliver its result unless detached first.

        Args:
            run: Pipeline returned by start_pipeline (not detached)
            on_finished: Called on the loop with (run, result)
            auto_detach_after: Grace window in seconds, None to wait
                indefinitely
        """
        proc = run.head
        cap_out: list[str] = []
        cap_err: list[str] = []
        out_bytes = 0
        err_bytes = 0
        truncated = False
        max_bytes = max(0, int(self.max_capture_bytes))

        def _append_capped(buf: list[str], s: str, current_bytes: int) -> int:
            nonlocal truncated
            b = len(s.encode("utf-8", errors="replace"))
            if max_bytes == 0 or current_bytes >= max_bytes:
                truncated = True
                return current_bytes + b
            remaining = max_bytes - current_bytes
            if b > remaining:
                raw = s.encode("utf-8", errors="replace")[:remaining]
                buf.append(raw.decode("utf-8", errors="replace"))
                truncated = True
                return current_bytes + b
            buf.append(s)
            return current_bytes + b

        def _reader(pipe, is_err: bool) -> None:
            nonlocal out_bytes, err_bytes
            # Raw reads with a poll timeout so a detached run releases its
            # pipe even while the child stays silent.
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            try:
                fd = pipe.fileno()
                while not run.detached:
                    ready, _w, _x = select.select([fd], [], [], POLL_SECONDS)
                    if not ready:
                        continue
                    chunk = os.read(fd, READ_CHUNK)
                    text = decoder.decode(chunk, final=not chunk)
                    if text and is_err:
                        err_bytes = _append_capped(cap_err, text, err_bytes)
                    elif text:
                        out_bytes = _append_capped(cap_out, text, out_bytes)
                    if not chunk:
                        break
            except (OSError, ValueError) as e:
                logger.debug("reader for pid %s stopped: %s", proc.pid, e)
            finally:
                try:
                    pipe.close()
                except OSError:
                    pass

        readers = []
        for pipe, is_err in ((proc.stdout, False), (proc.stderr, True)):
            if pipe is None:
                continue
            t = threading.Thread(
                target=_reader, args=(pipe, is_err), daemon=True
            )
            t.start()
            readers.append(t)

        def _waiter() -> None:
            while True:
                try:
                    exit_code = proc.wait(timeout=POLL_SECONDS)
                    break
                except subprocess.TimeoutExpired:
                    if run.detached:
                        return
            for t in readers:
                t.join()
            if run.detached:
                return
            result = StreamResult(
                exit_code=exit_code,
                stdout="".join(cap_out),
                stderr="".join(cap_err),
                started_at=run.started_at,
                duration_ms=int((time.time() - run.start_ts) * 1000),
                stdout_bytes=out_bytes,
                stderr_bytes=err_bytes,
                truncated=truncated,
            )

            def _finish() -> None:
                if not run.detached:
                    on_finished(run, result)

            self._deliver(_finish)

        threading.Thread(target=_waiter, daemon=True).start()

        if auto_detach_after is not None:
            if self.scheduler is None:
                raise ValueError("auto-detach needs a scheduler")
            self.scheduler.call_later(auto_detach_after, run.detach)

    # ----------------------------
    # Fallback helpers
    # ----------------------------

    def calculator_argv(self) -> list[str] | None:
        return _first_available(
            self.calculator, DEFAULT_CALCULATORS, self.which
        )

    def start_calculator(self, expression: str) -> Run | None:
        """Pipe expression into the calculator.

        Returns:
            A Run tagged ``math``, or None when no calculator is available
        """
        argv = self.calculator_argv()
        if argv is None:
            return None
        run = self.start_pipeline([argv], stdin_text=expression + "\n")
        if run is not None:
            run.output_type = "math"
        return run

    def ansi_to_markup(self, raw: str) -> str | None:
        """Convert ANSI-colored text to markup within the probe budget."""
        argv = _first_available(
            self.ansi_filter, DEFAULT_ANSI_FILTERS, self.which
        )
        if argv is None:
            return None
        try:
            result = subprocess.run(
                argv,
                input=raw,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.probe_ms / 1000.0,
            )
        except subprocess.TimeoutExpired:
            logger.debug("ANSI filter timed out: %s", argv[0])
            return None
        except OSError as e:
            logger.debug("ANSI filter unavailable: %s", e)
            return None
        if result.returncode != 0:
            return None
        return result.stdout
