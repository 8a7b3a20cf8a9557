# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from prompt_toolkit.application import Application
from prompt_toolkit.formatted_text import ANSI, to_formatted_text
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.styles import Style

from .engine import ViewMode, write_crash_log
from .output import DisplayKind, message_panel
from .sources import SourceKind

if TYPE_CHECKING:
    from .config import YAMLConfig  # pragma: no cover
    from .engine import Palette  # pragma: no cover

logger = logging.getLogger(__name__)

StyleAndText = tuple[str, str]


# ----------------------------
# Config helpers
# ----------------------------


def _cfg_get_path(config: YAMLConfig | None, path: str, default):
    if config is None or not hasattr(config, "get_path"):
        return default
    return config.get_path(path, default)


def _cfg_dict(config: YAMLConfig | None, path: str, default: dict) -> dict:
    val = _cfg_get_path(config, path, default)
    return val if isinstance(val, dict) else default


def _cfg_int(config: YAMLConfig | None, path: str, default: int) -> int:
    val = _cfg_get_path(config, path, default)
    try:
        return int(val)
    except (TypeError, ValueError):
        return default


# ----------------------------
# Theme / Style
# ----------------------------


def _default_style_dict() -> dict[str, str]:
    return {
        "palette.header": "bg:#0b0b0b #a0a0a0",
        "palette.header.mode": "bg:#d0d0d0 #0b0b0b bold",
        "palette.status": "#808080",
        "palette.status.key": "#d0d0d0 bold",
        "palette.row": "#d0d0d0",
        "palette.row.selected": "bg:#303030 #ffffff bold",
        "palette.row.meta": "#808080",
        "palette.display": "#d0d0d0",
        "palette.display.heading": "#ffffff bold",
        "palette.display.failure": "#d01717 bold",
        "palette.display.match": "bg:#d0d040 #000000",
        "palette.input": "bg:#111111 #ffffff",
        "palette.input.selection": "bg:#505050 #ffffff",
        "palette.input.password": "bg:#111111 #d0d040",
    }


def _build_style(config: YAMLConfig | None) -> Style:
    base = _default_style_dict()
    overrides = _cfg_dict(config, "ui.theme.style", {})
    # only keep string->string
    for k, v in list(overrides.items()):
        if isinstance(k, str) and isinstance(v, str):
            base[k] = v
    return Style.from_dict(base)


# ----------------------------
# Scheduler on the asyncio loop
# ----------------------------


class LoopScheduler:
    """Scheduler implementation over an asyncio event loop.

    Every delivered callback runs through ``guard`` (crash logging) and
    is followed by ``after`` (normally a redraw).
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        guard: Callable[[Callable[[], None]], None] | None = None,
        after: Callable[[], None] | None = None,
    ) -> None:
        self.loop = loop or asyncio.get_running_loop()
        self.guard = guard
        self.after = after

    def _wrap(self, callback: Callable[[], None]) -> Callable[[], None]:
        def _run() -> None:
            if self.guard is not None:
                self.guard(callback)
            else:
                callback()
            if self.after is not None:
                self.after()

        return _run

    def call_later(
        self, delay: float, callback: Callable[[], None]
    ) -> asyncio.TimerHandle:
        return self.loop.call_later(delay, self._wrap(callback))

    def call_soon_threadsafe(self, callback: Callable[[], None]) -> None:
        self.loop.call_soon_threadsafe(self._wrap(callback))


# ----------------------------
# Rendering (pure functions of the palette state)
# ----------------------------


_HINTS = (
    ("Tab", "browse"),
    ("Ctrl-R", "history"),
    ("Ctrl-N", "notifications"),
    ("Esc", "close"),
)


def render_header(palette: Palette) -> list[StyleAndText]:
    mode = palette.mode.name.lower()
    if palette.mode == ViewMode.LIST:
        src = palette.bound
        if src.kind == SourceKind.FILESYSTEM:
            label = src.root
        elif src.kind == SourceKind.EXTERNAL and src.label:
            label = src.label
        else:
            label = src.kind.name.lower().replace("_", " ")
        fs = palette.filter_state
        label = f"{label}  ({fs.visible}/{len(src)})"
    elif palette.mode == ViewMode.DISPLAY and palette.display is not None:
        label = palette.display.title
    else:
        label = palette.cwd
    return [
        ("class:palette.header.mode", f" {mode} "),
        ("class:palette.header", f" {label}"),
    ]


def render_status(palette: Palette) -> list[StyleAndText]:
    out: list[StyleAndText] = []
    for key, what in _HINTS:
        out.append(("class:palette.status.key", key))
        out.append(("class:palette.status", f" {what}   "))
    out.append(("class:palette.status", "\n"))
    count = len(palette.history.lines)
    out.append(("class:palette.status", f"{count} commands in history"))
    if palette.current_run is not None:
        out.append(
            ("class:palette.status",
             f"\nrunning: {' '.join(palette.current_run.argv)}")
        )
    return out


def _window_rows(rows: list[int], selected: int, height: int) -> list[int]:
    """Slice of rows that keeps the selection on screen."""
    if height <= 0 or len(rows) <= height:
        return rows
    pos = rows.index(selected) if selected in rows else 0
    start = max(0, min(pos - height // 2, len(rows) - height))
    return rows[start:start + height]


def render_list(palette: Palette, height: int) -> list[StyleAndText]:
    fs = palette.filter_state
    entries = palette.bound.entries
    out: list[StyleAndText] = []
    for i in _window_rows(fs.rows, fs.selected, height):
        e = entries[i]
        selected = i == fs.selected
        style = (
            "class:palette.row.selected" if selected else "class:palette.row"
        )
        if selected:
            out.append(("[SetCursorPosition]", ""))
        out.append((style, f" {e.text}"))
        if e.tooltip:
            out.append(("class:palette.row.meta", f"  {e.tooltip}"))
        out.append(("", "\n"))
    return out


def render_display(palette: Palette) -> list[StyleAndText]:
    display = palette.display
    if display is None:
        return []
    text = display.text
    if display.kind == DisplayKind.MESSAGE:
        lines = text.split("\n")
        out: list[StyleAndText] = []
        for n, line in enumerate(lines):
            style = (
                "class:palette.display.heading" if n == 0
                else "class:palette.display"
            )
            out.append((style, line + "\n"))
        return out

    pos = palette.display_match
    needle = len(palette.line.text)
    if pos >= 0 and needle:
        return [
            ("class:palette.display", text[:pos]),
            ("[SetCursorPosition]", ""),
            ("class:palette.display.match", text[pos:pos + needle]),
            ("class:palette.display", text[pos + needle:]),
        ]

    if display.kind == DisplayKind.FAILURE:
        head, _sep, rest = text.partition("\n")
        return [
            ("class:palette.display.failure", head + "\n"),
            *to_formatted_text(ANSI(rest)),
        ]
    return list(to_formatted_text(ANSI(text)))


def render_input(palette: Palette) -> list[StyleAndText]:
    line = palette.line
    if line.password:
        return [
            ("class:palette.input.password", "password: "),
            ("class:palette.input", "•" * len(line.text)),
            ("[SetCursorPosition]", ""),
        ]

    text = line.text
    prompt = ("class:palette.input", "> ")
    if line.has_selection():
        s = line.selection_start
        e = s + line.selection_length
        return [
            prompt,
            ("class:palette.input", text[:s]),
            ("[SetCursorPosition]", ""),
            ("class:palette.input.selection", text[s:e]),
            ("class:palette.input", text[e:]),
        ]
    c = line.cursor
    return [
        prompt,
        ("class:palette.input", text[:c]),
        ("[SetCursorPosition]", ""),
        ("class:palette.input", text[c:]),
    ]


# ----------------------------
# Application
# ----------------------------


class PaletteUI:
    """
    Full-screen terminal front-end:
      - header line (mode + bound source / display title)
      - body: status hints, filtered list or output display
      - single input line (masked while a password is requested)

    It only renders and forwards keys; all state lives in the Palette.
    """

    def __init__(
        self,
        palette: Palette,
        config: YAMLConfig | None = None,
        resident: bool = False,
    ) -> None:
        self.palette = palette
        self.config = config
        self.resident = resident
        self.app: Application | None = None
        self._style = _build_style(config)
        palette.page_rows = _cfg_int(config, "ui.page_rows", palette.page_rows)
        palette.on_change = self.invalidate
        palette.on_hide = self._on_hide

    # ---------- plumbing ----------

    def invalidate(self) -> None:
        if self.app is not None and self.app.is_running:
            self.app.invalidate()

    def guard(self, fn: Callable[[], Any]) -> None:
        """Run a handler; unexpected errors are logged, not fatal."""
        try:
            fn()
        except Exception as e:
            logger.exception("handler failed")
            write_crash_log(
                e, mode=self.palette.mode.name, raw_command=self.palette.line.text
            )
            self.palette.show_message(
                message_panel("internal error", type(e).__name__, str(e))
            )

    def _on_hide(self) -> None:
        if self.resident:
            self.invalidate()
            return
        if self.app is not None and self.app.is_running:
            self.app.exit()

    # ---------- layout ----------

    def _body(self) -> list[StyleAndText]:
        p = self.palette
        if not p.visible:
            return [("class:palette.status", "hidden, press any key")]
        if p.mode == ViewMode.LIST:
            return render_list(p, self._list_height())
        if p.mode in (ViewMode.DISPLAY, ViewMode.NOTEBOOK):
            return render_display(p)
        return render_status(p)

    def _list_height(self) -> int:
        try:
            rows = self.app.output.get_size().rows if self.app else 0
        except OSError:
            rows = 0
        return max(self.palette.page_rows, rows - 2)

    def build_layout(self) -> Layout:
        header = Window(
            FormattedTextControl(lambda: render_header(self.palette)),
            height=1,
            style="class:palette.header",
        )
        body = Window(
            FormattedTextControl(self._body, show_cursor=False),
            wrap_lines=True,
        )
        input_line = Window(
            FormattedTextControl(
                lambda: render_input(self.palette),
                focusable=True,
                show_cursor=True,
            ),
            height=1,
            style="class:palette.input",
        )
        return Layout(HSplit([header, body, input_line]), focused_element=input_line)

    # ---------- keybindings ----------

    def build_key_bindings(self) -> KeyBindings:
        kb = KeyBindings()
        p = self.palette

        def _on(*keys: str, eager: bool = False):
            def register(handler: Callable[[], None]):
                @kb.add(*keys, eager=eager)
                def _(event):
                    if not p.visible:
                        p.show()
                    self.guard(handler)
                    self.invalidate()

                return handler

            return register

        _on("tab")(p.tab)
        _on("escape", eager=True)(p.escape)
        _on("enter")(p.enter)
        _on("up")(lambda: p.vertical(-1))
        _on("down")(lambda: p.vertical(+1))
        _on("pageup")(lambda: p.page(-1))
        _on("pagedown")(lambda: p.page(+1))
        _on("c-r")(p.history_search)
        _on("c-n")(p.show_notifications)
        _on("delete")(p.delete)
        _on("backspace")(p.backspace)
        _on("left")(lambda: p.move_cursor(-1))
        _on("right")(lambda: p.move_cursor(+1))
        _on("home")(p.home_key)
        _on("end")(p.end_key)

        @kb.add("c-c")
        def _(event):
            event.app.exit()

        @kb.add("<any>")
        def _(event):
            data = event.data
            if not data or not data.isprintable():
                return
            if not p.visible:
                p.show()
            self.guard(lambda: p.type_text(data))
            self.invalidate()

        return kb

    # ---------- public API ----------

    def build_application(self) -> Application:
        self.app = Application(
            layout=self.build_layout(),
            key_bindings=self.build_key_bindings(),
            style=self._style,
            full_screen=True,
        )
        # Escape must not wait for a possible Alt sequence.
        self.app.ttimeoutlen = 0.05
        return self.app

    async def run_async(self) -> None:
        app = self.build_application()
        try:
            await app.run_async()
        finally:
            self.palette.shutdown()
