"""
PEScope Console Interface
==========================

Thin layer over :class:`rich.console.Console` used by the command-line
tool: the title banner, section rules, one-line status messages and the
two table shapes PEScope prints (generic rows and findings).

References:
    - Rich library: https://github.com/Textualize/rich
"""

from __future__ import annotations

from typing import Any, Sequence

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

from common.models import Finding, Severity

_SCOPE_THEME = Theme(
    {
        "scope.banner": "bold bright_cyan",
        "scope.section": "bold bright_magenta",
        "scope.success": "bold green",
        "scope.warning": "bold yellow",
        "scope.error": "bold red",
        "scope.info": "bold bright_blue",
        "scope.dim": "dim white",
    }
)

# Severity -> Rich style for the findings table
_SEVERITY_STYLES: dict[Severity, str] = {
    Severity.CRITICAL: "bold white on red",
    Severity.HIGH: "bold red",
    Severity.MEDIUM: "bold yellow",
    Severity.LOW: "bold bright_cyan",
    Severity.INFO: "bold bright_blue",
}

# style, marker, label
_MESSAGE_KINDS: dict[str, tuple[str, str, str]] = {
    "success": ("scope.success", "✔", "SUCCESS"),
    "warning": ("scope.warning", "⚠", "WARNING"),
    "error": ("scope.error", "✘", "ERROR"),
    "info": ("scope.info", "ℹ", "INFO"),
}


class ScopeConsole:
    """Console used by the ``pescope`` command.

    Usage::

        con = ScopeConsole()
        con.banner("1.0.0")
        con.section("Imports")
        con.success("Import directory parsed completely.")
    """

    def __init__(self) -> None:
        self._console = Console(theme=_SCOPE_THEME, highlight=False)

    @property
    def rich(self) -> Console:
        """The wrapped Rich console, for renderables built elsewhere."""
        return self._console

    def banner(self, version: str) -> None:
        title = Text("PEScope", style="scope.banner")
        title.append("  static PE import analysis", style="scope.dim")
        title.append(f"\nVersion: {version}", style="scope.dim")
        self._console.print(Panel(title, border_style="bright_cyan", padding=(0, 2)))

    def section(self, title: str) -> None:
        self._console.rule(f"  {escape(title)}  ", style="scope.section", characters="─")
        self._console.print()

    # ------------------------------------------------------------------ #
    #  One-line messages (Rich markup is interpreted)
    # ------------------------------------------------------------------ #

    def _message(self, kind: str, message: str) -> None:
        style, marker, label = _MESSAGE_KINDS[kind]
        self._console.print(f"[{style}][{marker}] {label}:[/{style}] {message}")

    def success(self, message: str) -> None:
        self._message("success", message)

    def warning(self, message: str) -> None:
        self._message("warning", message)

    def error(self, message: str) -> None:
        self._message("error", message)

    def info(self, message: str) -> None:
        self._message("info", message)

    # ------------------------------------------------------------------ #
    #  Tables
    # ------------------------------------------------------------------ #

    def table(
        self,
        title: str,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        *,
        caption: str | None = None,
        styles: Sequence[str] | None = None,
    ) -> None:
        """Print *rows* under *columns*; cells are stringified and escaped.

        *styles* gives one Rich style per column, missing entries are plain.
        """
        tbl = Table(
            title=title or None,
            caption=caption,
            border_style="bright_cyan",
            header_style="bold bright_magenta",
        )
        column_styles = list(styles or [])
        column_styles += [""] * (len(columns) - len(column_styles))
        for name, style in zip(columns, column_styles):
            tbl.add_column(name, style=style)
        for row in rows:
            tbl.add_row(*(escape(str(cell)) for cell in row))
        self._console.print(tbl)

    def findings_table(self, findings: Sequence[Finding]) -> None:
        tbl = Table(
            title="Findings",
            border_style="bright_cyan",
            header_style="bold bright_magenta",
            show_lines=True,
        )
        tbl.add_column("#", style="dim", width=4, justify="right")
        tbl.add_column("Severity", width=10)
        tbl.add_column("Title")
        tbl.add_column("Description", ratio=2)

        for idx, finding in enumerate(findings, start=1):
            tbl.add_row(
                str(idx),
                Text(finding.severity.value, style=_SEVERITY_STYLES[finding.severity]),
                escape(finding.title),
                escape(finding.description),
            )
        self._console.print(tbl)

    def blank(self) -> None:
        self._console.print()

    def divider(self) -> None:
        self._console.rule(style="dim")
