"""Terminal output for the ``loopauth`` commands.

stdout carries data only: the access token from ``auth token``, the
status and doctor records. Everything a human reads while signing in
(the sign-in banner, progress, warnings, errors, next-step hints) goes to
stderr, so ``$(loopauth auth token)`` captures exactly one token.

Rich styling is used when stdout is a terminal and colour is allowed;
``NO_COLOR``, ``TERM=dumb`` and ``--no-color`` turn it off.

:func:`~loopauth.app.main_callback` installs one :class:`OutputManager`
with :func:`set_output`; the module-level helpers write through it.
"""

from __future__ import annotations

import json
import os
import sys
from enum import Enum
from typing import Any, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


class OutputFormat(str, Enum):
    """How records are written to stdout. ``AUTO`` picks RICH or PLAIN."""

    AUTO = "auto"
    JSON = "json"
    PLAIN = "plain"
    RICH = "rich"


class OutputManager:
    """Routes command output to stdout and diagnostics to stderr.

    Args:
        format: Record format; ``AUTO`` means RICH on a colour terminal,
            PLAIN otherwise.
        no_color: Never style anything.
        quiet: Drop info, success and hint lines. Warnings, errors and
            the sign-in banner are always shown.
        verbose: Show debug lines.
    """

    def __init__(
        self,
        format: OutputFormat = OutputFormat.AUTO,
        no_color: bool = False,
        quiet: bool = False,
        verbose: bool = False,
    ) -> None:
        self._no_color = no_color or _should_disable_color()
        self._quiet = quiet
        self._verbose = verbose

        if format == OutputFormat.AUTO:
            rich_ok = _is_tty() and not self._no_color
            format = OutputFormat.RICH if rich_ok else OutputFormat.PLAIN
        self._format = format

        self._stdout = Console(
            file=sys.stdout,
            no_color=self._no_color,
            force_terminal=(format == OutputFormat.RICH),
        )
        self._stderr = Console(file=sys.stderr, no_color=self._no_color, stderr=True)

    @property
    def format(self) -> OutputFormat:
        return self._format

    # ------------------------------------------------------------------ #
    # stdout
    # ------------------------------------------------------------------ #

    def print_data(self, text: str) -> None:
        """Write *text* to stdout unstyled, e.g. an access token."""
        print(text, file=sys.stdout, flush=True)

    def print_json(self, data: Any) -> None:
        """Write *data* to stdout as indented JSON (the ``--json`` records)."""
        self.print_data(json.dumps(data, indent=2, ensure_ascii=False, default=str))

    def print_table(
        self,
        headers: list[str],
        rows: list[list[str]],
        title: Optional[str] = None,
    ) -> None:
        """Write a two-dimensional report to stdout.

        PLAIN output is tab separated with a header line; RICH output is
        a :class:`~rich.table.Table` under *title*.
        """
        if self._format != OutputFormat.RICH:
            for line in [headers, *rows]:
                self.print_data("\t".join(line))
            return

        table = Table(title=title, header_style="bold cyan")
        for header in headers:
            table.add_column(header)
        for row in rows:
            table.add_row(*row)
        self._stdout.print(table)

    # ------------------------------------------------------------------ #
    # stderr
    # ------------------------------------------------------------------ #

    def info(self, message: str) -> None:
        self._note(message, shown=not self._quiet)

    def success(self, message: str) -> None:
        self._note(message, style="green", shown=not self._quiet)

    def warning(self, message: str) -> None:
        self._note(message, label=("Warning: ", "yellow"))

    def error(self, message: str) -> None:
        self._note(message, label=("Error: ", "bold red"))

    def suggest(self, message: str) -> None:
        """A next-step hint such as ``loopauth auth status``."""
        self._note(f"→ {message}", style="dim", shown=not self._quiet)

    def debug(self, message: str) -> None:
        self._note(f"[debug] {message}", style="dim", shown=self._verbose)

    def banner(self, title: str, body: str, style: str = "cyan") -> None:
        """Box *body* under *title* on stderr, ignoring ``--quiet``.

        Used for the sign-in instructions and the blocked-flow notice.
        The body is never parsed as markup, so authorization URLs keep
        their brackets.
        """
        if self._no_color:
            rule = "=" * 60
            print(f"\n{rule}\n{title}\n{rule}\n{body}\n{rule}\n", file=sys.stderr, flush=True)
            return
        self._stderr.print(Panel(Text(body), title=Text(title), border_style=style, expand=False))

    def _note(
        self,
        message: str,
        style: str = "",
        label: Optional[tuple[str, str]] = None,
        shown: bool = True,
    ) -> None:
        if not shown:
            return
        if self._no_color:
            prefix = label[0] if label else ""
            print(f"{prefix}{message}", file=sys.stderr, flush=True)
            return
        text = Text.assemble(label or "", (message, style))
        self._stderr.print(text, highlight=False)


def _is_tty() -> bool:
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _should_disable_color() -> bool:
    """``NO_COLOR`` set to anything, or ``TERM=dumb``."""
    return os.environ.get("NO_COLOR") is not None or os.environ.get("TERM") == "dumb"


# ------------------------------------------------------------------ #
# Process-wide manager
# ------------------------------------------------------------------ #

_output: Optional[OutputManager] = None


def get_output() -> OutputManager:
    """Return the installed manager, or a default one for library callers."""
    global _output
    if _output is None:
        _output = OutputManager()
    return _output


def set_output(output: OutputManager) -> None:
    global _output
    _output = output


def reset_output() -> None:
    """Forget the installed manager (tests start each case clean)."""
    global _output
    _output = None


def print_data(text: str) -> None:
    get_output().print_data(text)


def print_json(data: Any) -> None:
    get_output().print_json(data)


def info(message: str) -> None:
    get_output().info(message)


def success(message: str) -> None:
    get_output().success(message)


def warning(message: str) -> None:
    get_output().warning(message)


def error(message: str) -> None:
    get_output().error(message)


def suggest(message: str) -> None:
    get_output().suggest(message)


def debug(message: str) -> None:
    get_output().debug(message)


def banner(title: str, body: str, style: str = "cyan") -> None:
    get_output().banner(title, body, style)
