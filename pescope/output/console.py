"""
PEScope Console Output
=======================

Rich-powered terminal display for PEScope analysis results: image
metadata, the section table, the import tree (library -> symbols), the
import parse status and query results.

Uses the ScopeConsole abstraction for consistent styling across all
PEScope components.

References:
    - Rich library: https://github.com/Textualize/rich
"""

from __future__ import annotations

from typing import Sequence

from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from common.console import ScopeConsole
from common.models import Finding

from pescope.core.models import (
    ImageAnalysisResult,
    ImageInfo,
    ImportTable,
    SectionEntry,
)
from pescope.parsers.pe_parser import section_flags


# Maximum symbols listed per library in the import tree
_MAX_TREE_ENTRIES: int = 200


# ---------------------------------------------------------------------------
# ScopeConsoleOutput
# ---------------------------------------------------------------------------

class ScopeConsoleOutput:
    """Rich terminal display for PEScope analysis results.

    Usage::

        output = ScopeConsoleOutput()
        output.display(analysis_result, scan.findings)
    """

    def __init__(self, console: ScopeConsole | None = None) -> None:
        """Initialise the output renderer.

        Args:
            console: Optional ScopeConsole instance.  A new one is
                     created if not provided.
        """
        self._console: ScopeConsole = console or ScopeConsole()

    def display(
        self,
        result: ImageAnalysisResult,
        findings: Sequence[Finding] = (),
    ) -> None:
        """Display the complete analysis result.

        Args:
            result: The ImageAnalysisResult to render.
            findings: Diagnostics from the scan, if any.
        """
        self._console.section("Image Analysis Results")
        self.display_header(result.info)

        if not result.parsed:
            self._console.error(f"{escape(result.info.path)} is not a PE image.")
        else:
            if result.sections:
                self.display_sections(result.sections)
            self.display_imports(result.imports)
            self.display_import_status(result.imports)

        if findings:
            self._console.findings_table(findings)
            self._console.blank()

        self._console.divider()

    def display_header(self, info: ImageInfo) -> None:
        """Display image metadata panel."""
        lines: list[str] = [
            f"[bold]File:[/bold]         {escape(info.path)}",
            f"[bold]Size:[/bold]         {info.size:,} bytes ({info.size / 1024:.1f} KiB)",
        ]
        if info.bits:
            lines += [
                f"[bold]Format:[/bold]       {'PE32+' if info.bits == 64 else 'PE32'}",
                f"[bold]Arch:[/bold]         {info.arch} ({info.bits}-bit)",
                f"[bold]Subsystem:[/bold]    {info.subsystem}{' (DLL)' if info.is_dll else ''}",
                f"[bold]Image Base:[/bold]   0x{info.image_base:x}",
                f"[bold]Entry Point:[/bold]  0x{info.entry_point:x}",
            ]
        if info.compiled_at is not None:
            lines.append(
                f"[bold]Compiled:[/bold]     {info.compiled_at:%Y-%m-%d %H:%M:%S} UTC"
            )
        if info.md5:
            lines.append(f"[bold]MD5:[/bold]          {info.md5}")
        if info.sha256:
            lines.append(f"[bold]SHA-256:[/bold]      {info.sha256}")

        panel = Panel(
            "\n".join(lines),
            title="[bold bright_cyan]Image Information[/bold bright_cyan]",
            border_style="bright_cyan",
            padding=(1, 2),
        )
        self._console.rich.print(panel)
        self._console.blank()

    def display_sections(self, sections: Sequence[SectionEntry]) -> None:
        """Display the section table."""
        self._console.section("Sections")

        tbl = Table(
            border_style="bright_cyan",
            header_style="bold bright_magenta",
            show_lines=False,
            padding=(0, 1),
        )
        tbl.add_column("#", style="dim", width=4, justify="right")
        tbl.add_column("Name", style="bold", min_width=10)
        tbl.add_column("VAddr", justify="right")
        tbl.add_column("VSize", justify="right")
        tbl.add_column("Offset", justify="right")
        tbl.add_column("Raw Size", justify="right")
        tbl.add_column("Flags")

        for i, sec in enumerate(sections, 1):
            tbl.add_row(
                str(i),
                sec.name or "<unnamed>",
                f"0x{sec.virtual_address:x}",
                f"0x{sec.virtual_size:x}",
                f"0x{sec.raw_offset:x}",
                f"0x{sec.raw_size:x}",
                section_flags(sec.characteristics),
            )

        self._console.rich.print(tbl)
        self._console.blank()

    def display_imports(self, table: ImportTable) -> None:
        """Display the import table as a library -> symbol tree."""
        self._console.section("Imports")

        if not table.directory_present:
            self._console.info("Image has no import directory.")
            self._console.blank()
            return

        self._console.rich.print(
            f"[bold]Libraries:[/bold] {len(table.libraries)}  "
            f"[bold]Imports:[/bold] {table.entry_count}"
        )
        self._console.blank()

        tree = Tree("[bold bright_cyan]Import Directory[/bold bright_cyan]")
        for library in table.libraries:
            branch = tree.add(
                f"[bold]{escape(library.name)}[/bold] [dim]({len(library.entries)})[/dim]"
            )
            for entry in library.entries[:_MAX_TREE_ENTRIES]:
                if entry.is_ordinal:
                    branch.add(f"[yellow]{entry.label}[/yellow]")
                else:
                    branch.add(f"{escape(entry.name)} [dim]hint {entry.hint}[/dim]")
            hidden = len(library.entries) - _MAX_TREE_ENTRIES
            if hidden > 0:
                branch.add(f"[dim]... {hidden} more[/dim]")

        self._console.rich.print(tree)
        self._console.blank()

    def display_import_status(self, table: ImportTable) -> None:
        """Display whether the import parse completed, and any warnings."""
        if table.error is None:
            self._console.success("Import directory parsed completely.")
        else:
            error = table.error
            location = f" at 0x{error.offset:x}" if error.offset is not None else ""
            self._console.error(
                f"Import parsing aborted ({error.kind.value}){location}: {escape(error.message)}"
            )
        for warning in table.warnings:
            self._console.warning(escape(warning))
        self._console.blank()

    def display_functions(self, library_name: str, functions: Sequence[str]) -> None:
        """Display the symbols imported from one library."""
        self._console.section(f"Functions imported from {library_name}")
        if not functions:
            self._console.warning(f"No library named {library_name!r} is imported.")
        else:
            self._console.table(
                "",
                ["#", "Function"],
                [(i, name) for i, name in enumerate(functions, 1)],
                styles=["dim", "bold"],
            )
        self._console.blank()

    def display_search(
        self,
        pattern: str,
        matches: Sequence[tuple[str, Sequence[str]]],
    ) -> None:
        """Display the result of a symbol search."""
        self._console.section(f"Search: {pattern}")
        if not matches:
            self._console.info("No imported symbol matches.")
        else:
            rows = [
                (library, function)
                for library, functions in matches
                for function in functions
            ]
            self._console.table(
                "",
                ["Library", "Function"],
                rows,
                caption=f"{len(rows)} match(es)",
                styles=["bold", ""],
            )
        self._console.blank()
