# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Privilege relay for sudo-style commands.

A privileged command is first tried with ``-n`` (never prompt). If that
fails the palette asks for the password itself and relaunches the
command once with ``-S``, writing the secret to its stdin.

The answer travels through a ResponseChannel: a one-shot slot that the
Enter/Escape handlers complete and that callers can ``await``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, auto

from .executor import Run, StreamResult
from .interfaces import ProcessLauncher
from .pipeline import Stage

logger = logging.getLogger(__name__)

PRIVILEGED_PROGRAMS = ("sudo", "sudoedit")
NON_INTERACTIVE_FLAG = "-n"
STDIN_FLAG = "-S"
RESET_FLAG = "-k"

# Reply of an aborted prompt; None means "not answered yet".
ABORTED = ""


class ResponseChannel:
    """One-shot reply slot."""

    def __init__(self) -> None:
        self._result: str | None = None
        self._done = False
        self._callbacks: list[Callable[[str], None]] = []

    def done(self) -> bool:
        return self._done

    def result(self) -> str | None:
        return self._result

    def complete(self, value: str) -> bool:
        """Fill the slot; later completions are ignored.

        Returns:
            True if this call completed the channel
        """
        if self._done:
            return False
        self._done = True
        self._result = value
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb(value)
        return True

    def add_done_callback(self, callback: Callable[[str], None]) -> None:
        if self._done:
            callback(self._result or "")
            return
        self._callbacks.append(callback)

    async def wait(self) -> str:
        if self._done:
            return self._result or ""
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[str] = loop.create_future()

        def _resolve(value: str) -> None:
            if not fut.done():
                fut.set_result(value)

        self.add_done_callback(_resolve)
        return await fut


class RelayPhase(Enum):
    PROMPT = auto()
    SUBMITTED = auto()
    SUCCEEDED = auto()
    FAILED = auto()
    ABORTED = auto()


@dataclass
class PrivilegeRelayState:
    """Exists between the failed ``-n`` attempt and submit/abort."""

    stage: Stage
    command_text: str
    channel: ResponseChannel = field(default_factory=ResponseChannel)
    phase: RelayPhase = RelayPhase.PROMPT
    transitions: list[RelayPhase] = field(
        default_factory=lambda: [RelayPhase.PROMPT]
    )

    def advance(self, phase: RelayPhase) -> None:
        self.phase = phase
        self.transitions.append(phase)

    @property
    def pending(self) -> bool:
        return self.phase == RelayPhase.PROMPT


def is_privileged(stage: Stage) -> bool:
    return stage.program in PRIVILEGED_PROGRAMS and RESET_FLAG not in stage.args


def non_interactive_argv(stage: Stage) -> list[str]:
    return [stage.program, NON_INTERACTIVE_FLAG, *stage.args]


def stdin_argv(stage: Stage) -> list[str]:
    return [stage.program, STDIN_FLAG, *stage.args]


class PrivilegeRelay:
    """Runs the two attempts of a privileged command.

    The launcher is normally the SubprocessExecutor; tests pass a fake.
    """

    def __init__(
        self, launcher: ProcessLauncher, grace_seconds: float = 4.0
    ) -> None:
        self.launcher = launcher
        self.grace_seconds = grace_seconds

    def first_attempt(
        self, stage: Stage, cwd: str | None = None
    ) -> tuple[Run | None, int | None]:
        """Start the ``-n`` attempt and probe it briefly.

        Returns:
            (run, exit_code); run is None if nothing started, exit_code is
            None while the command is still running
        """
        run = self.launcher.start_pipeline(
            [non_interactive_argv(stage)], cwd=cwd, new_session=False
        )
        if run is None:
            return None, None
        return run, self.launcher.probe_exit(run)

    def begin(self, stage: Stage, command_text: str) -> PrivilegeRelayState:
        logger.debug("asking for privileges for %s", stage.program)
        return PrivilegeRelayState(stage=stage, command_text=command_text)

    def submit(
        self,
        state: PrivilegeRelayState,
        secret: str,
        on_finished: Callable[[Run, StreamResult], None],
        cwd: str | None = None,
        detach_after_grace: bool = True,
        output_type: str = "",
    ) -> Run | None:
        """Relaunch once with ``-S`` and hand it the secret.

        Only a plain command stops being watched after the grace window;
        forced-output and list commands are supervised until they exit.

        Returns:
            The relaunched Run, or None if the state was not pending or the
            program could not be started
        """
        if not state.pending:
            return None
        state.advance(RelayPhase.SUBMITTED)
        run = self.launcher.start_pipeline(
            [stdin_argv(state.stage)], stdin_text=secret + "\n", cwd=cwd
        )
        if run is None:
            state.advance(RelayPhase.FAILED)
            return None
        run.output_type = output_type

        def _finished(r: Run, result: StreamResult) -> None:
            state.advance(
                RelayPhase.SUCCEEDED if result.exit_code == 0
                else RelayPhase.FAILED
            )
            on_finished(r, result)

        self.launcher.supervise(
            run,
            _finished,
            auto_detach_after=(
                self.grace_seconds if detach_after_grace else None
            ),
        )
        return run

    def abort(self, state: PrivilegeRelayState) -> None:
        if state.pending:
            state.advance(RelayPhase.ABORTED)
