# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
palette CLI entry point.

Design:
- CLI owns process startup, logging setup and DB resolution.
- Palette is the session engine (store, executor, clipboard injected).
- UI is a full-screen prompt_toolkit Application driving the engine.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Callable
from typing import Any

from . import config
from .clipboard import PyperclipClipboard
from .db import ensure_schema, seed_aliases
from .engine import Palette
from .executor import SubprocessExecutor
from .history import CommandHistory
from .notifications import NotificationLog
from .output import message_panel
from .store import SQLiteStore
from .ui import LoopScheduler, PaletteUI

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool = False) -> None:
    """Log to a file under the data root; the terminal belongs to the UI."""
    logs = config.logs_dir(config.get_data_root())
    logs.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=str(logs / "palette.log"),
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="palette", description="Keystroke-driven command palette."
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="debug logging"
    )
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="open the palette (default)")
    run.add_argument(
        "--resident",
        action="store_true",
        help="stay open after launching; hiding returns to the status view",
    )

    flt = sub.add_parser("filter", help="pick a line from a file or command")
    flt.add_argument("source", help="file path, or a command to read from")
    flt.add_argument(
        "--action",
        default="%print",
        help="%%print[rewrite], %%clip[rewrite] or a command to run",
    )
    flt.add_argument(
        "--separator", default="", help="splits lines into label/value"
    )

    alias = sub.add_parser("alias", help="manage aliases")
    alias_sub = alias.add_subparsers(dest="alias_command", required=True)
    add = alias_sub.add_parser("add")
    add.add_argument("name")
    add.add_argument("body", nargs=argparse.REMAINDER)
    rm = alias_sub.add_parser("rm")
    rm.add_argument("name")
    alias_sub.add_parser("list")

    hist = sub.add_parser("history", help="show or clear command history")
    hist_sub = hist.add_subparsers(dest="history_command", required=True)
    show = hist_sub.add_parser("list")
    show.add_argument("-n", "--limit", type=int, default=0)
    hist_sub.add_parser("clear")
    return parser


def open_store(cfg: config.YAMLConfig) -> SQLiteStore:
    """Create the schema if needed and seed configured aliases."""
    db = config.db_path(config.get_data_root())
    ensure_schema(db)
    seed_aliases(db, cfg.aliases)
    return SQLiteStore(db)


def build_palette(
    cfg: config.YAMLConfig,
    store: SQLiteStore,
    scheduler: Any,
    clipboard: Any = None,
) -> Palette:
    """Explicit wiring of the engine and its collaborators."""
    ex = cfg.execution
    hist = cfg.history
    executor = SubprocessExecutor(
        scheduler=scheduler,
        probe_ms=int(ex.get("probe_ms", 250)),
        calculator=ex.get("calculator") or None,
        ansi_filter=ex.get("ansi_filter") or None,
        opener=str(ex.get("opener") or "xdg-open"),
    )
    history = CommandHistory(
        store=store,
        scheduler=scheduler,
        limit=int(hist.get("limit", 1000)),
        save_interval=float(hist.get("save_interval_seconds", 300)),
        max_bumps=int(hist.get("max_bumps", 8)),
    )
    history.load()
    notifications = NotificationLog()
    palette = Palette.from_config(
        cfg,
        executor=executor,
        scheduler=scheduler,
        history=history,
        aliases=store,
        clipboard=clipboard if clipboard is not None else PyperclipClipboard(),
        notifications=notifications,
    )
    notifications.on_change = palette.refresh_notifications
    notifications.on_recall = lambda item: palette.show_message(
        message_panel(item["app_name"], item["summary"], item["body"])
    )
    return palette


async def run_palette(
    cfg: config.YAMLConfig,
    store: SQLiteStore,
    resident: bool = False,
    custom: argparse.Namespace | None = None,
    output_fn: Callable[[str], None] = print,
) -> int:
    """Open the full-screen palette until it hides (or forever if resident)."""
    ui: PaletteUI | None = None

    def _guard(fn: Callable[[], None]) -> None:
        if ui is not None:
            ui.guard(fn)
        else:
            fn()

    def _after() -> None:
        if ui is not None:
            ui.invalidate()

    scheduler = LoopScheduler(guard=_guard, after=_after)
    palette = build_palette(cfg, store, scheduler)
    ui = PaletteUI(palette, config=cfg, resident=resident)

    reply = None
    if custom is not None:
        # Picking (or escaping) ends the session.
        palette.visible = False
        reply = palette.filter_custom(
            custom.source, custom.action, custom.separator
        )
        if reply is None:
            print(f"palette: cannot read {custom.source}", file=sys.stderr)
            return 1

    await ui.run_async()

    if reply:
        value = reply.result()
        if value:
            output_fn(value)
    return 0


def cmd_alias(
    args: argparse.Namespace,
    store: SQLiteStore,
    output_fn: Callable[[str], None] = print,
) -> int:
    if args.alias_command == "add":
        body = " ".join(args.body).strip()
        if not body:
            output_fn("usage: palette alias add NAME COMMAND...")
            return 2
        store.add_alias(args.name, body)
        output_fn(f"{args.name} = {body}")
        return 0
    if args.alias_command == "rm":
        if store.remove_alias(args.name):
            return 0
        output_fn(f"no such alias: {args.name}")
        return 1
    for row in store.list_aliases():
        output_fn(f"{row['name']}\t{row['command']}")
    return 0


def cmd_history(
    args: argparse.Namespace,
    store: SQLiteStore,
    output_fn: Callable[[str], None] = print,
) -> int:
    if args.history_command == "clear":
        store.save_history([])
        return 0
    lines = store.load_history()
    if args.limit > 0:
        lines = lines[-args.limit:]
    for line in lines:
        output_fn(line)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for palette."""
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        cfg = config.load_config()
    except (ValueError, FileNotFoundError) as e:
        print(f"palette: {e}", file=sys.stderr)
        return 2

    store = open_store(cfg)

    if args.command == "alias":
        return cmd_alias(args, store)
    if args.command == "history":
        return cmd_history(args, store)

    custom = args if args.command == "filter" else None
    resident = bool(getattr(args, "resident", False))
    return asyncio.run(
        run_palette(cfg, store, resident=resident, custom=custom)
    )
