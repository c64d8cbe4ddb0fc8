"""
PEScope CLI -- Static PE Import Analysis
=========================================

Click-based command-line interface for PEScope.  Analyses one or more PE
files, displays headers, sections and the import tree, and optionally
lists the symbols of one library or searches imported symbols by regular
expression.

Usage::

    # Full analysis
    pescope sample.exe

    # Several files, analysed concurrently
    pescope a.exe b.dll c.sys

    # Symbols imported from one library (exact, case-sensitive name)
    pescope sample.exe --library KERNEL32.dll

    # Search symbols across libraries
    pescope sample.exe --search "Create.*" --library-pattern "kernel32\\.dll" -i

    # JSON to stdout, or a report file (.json or .txt)
    pescope sample.exe --json
    pescope sample.exe --output report.txt

References:
    - Click documentation: https://click.palletsprojects.com/
"""

from __future__ import annotations

import asyncio
import re
import sys
from pathlib import Path
from typing import Optional

import click
from rich.markup import escape

from common.config import ScopeConfig
from common.console import ScopeConsole
from common.logger import ScopeLogger

from pescope.analyzers.import_query import ImportQuery
from pescope.core.engine import ScopeEngine
from pescope.core.models import ImageAnalysisResult
from pescope.output.console import ScopeConsoleOutput
from pescope.output.report import ScopeReportGenerator


def _validate_regex(
    ctx: click.Context,
    param: click.Parameter,
    value: Optional[str],
) -> Optional[str]:
    if value is None:
        return value
    try:
        re.compile(value)
    except re.error as exc:
        raise click.BadParameter(f"invalid regular expression: {exc}") from exc
    return value


# ---------------------------------------------------------------------------
# CLI command
# ---------------------------------------------------------------------------

@click.command("pescope")
@click.argument(
    "paths",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, dir_okay=False),
)
@click.option(
    "--library", "-l",
    "library_name",
    default=None,
    help="List the symbols imported from this library (exact name).",
)
@click.option(
    "--search", "-s",
    "function_pattern",
    default=None,
    callback=_validate_regex,
    help="Regex an imported symbol name must fully match.",
)
@click.option(
    "--library-pattern",
    default=".*",
    show_default=True,
    callback=_validate_regex,
    help="Regex a library name must fully match (with --search).",
)
@click.option(
    "--ignore-case", "-i",
    is_flag=True,
    default=False,
    help="Case-insensitive --search and --library-pattern.",
)
@click.option(
    "--json", "json_output",
    is_flag=True,
    default=False,
    help="Output results as JSON to stdout.",
)
@click.option(
    "--output", "-o",
    "output_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Output report path (.json or .txt).",
)
@click.option(
    "--config", "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="TOML configuration file.",
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    default=False,
    help="Enable verbose/debug output.",
)
def pescope_cli(
    paths: tuple[str, ...],
    library_name: str | None,
    function_pattern: str | None,
    library_pattern: str,
    ignore_case: bool,
    json_output: bool,
    output_path: str | None,
    config_path: str | None,
    verbose: bool,
) -> None:
    """PEScope -- Static PE Import Analysis.

    Parse the import directory of each PE file in PATHS without executing
    it, and report libraries, imported symbols and parse diagnostics.

    Examples:

    \b
        pescope sample.exe
        pescope sample.exe --library KERNEL32.dll
        pescope *.dll --search "Virtual.*" -i --output report.json
    """
    console = ScopeConsole()

    if config_path:
        try:
            config = ScopeConfig.load(config_path)
        except Exception as exc:
            console.error(f"Could not load configuration: {exc}")
            sys.exit(1)
    else:
        try:
            config = ScopeConfig.load()
        except Exception:
            config = ScopeConfig()

    settings = config.global_settings
    logger = ScopeLogger(
        "cli",
        log_level="DEBUG" if verbose or settings.debug else settings.log_level,
        log_file=settings.log_file or None,
        json_logs=settings.log_json,
    )
    engine = ScopeEngine(config=config, logger=logger)

    try:
        scans = asyncio.run(engine.analyze_many(paths))
    except KeyboardInterrupt:
        console.warning("Analysis interrupted by user.")
        sys.exit(130)
    except Exception as exc:
        console.error(f"Analysis failed: {escape(str(exc))}")
        if verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)

    report_gen = ScopeReportGenerator(version=settings.version)

    # JSON output mode
    if json_output:
        click.echo(report_gen.render_json(scans))
    else:
        case_sensitive = not ignore_case and config.imports.case_sensitive_search
        output_display = ScopeConsoleOutput(console=console)
        console.banner(settings.version)

        for scan in scans:
            analysis_result = ImageAnalysisResult.from_metadata(scan.metadata)
            if analysis_result is None:
                console.error(f"{escape(scan.target)}: {escape(scan.summary)}")
                continue

            output_display.display(analysis_result, scan.findings)

            query = ImportQuery(analysis_result.imports)
            if library_name is not None:
                output_display.display_functions(
                    library_name, query.list_functions(library_name)
                )
            if function_pattern is not None:
                output_display.display_search(
                    function_pattern,
                    query.search_by_library(
                        function_pattern, library_pattern, case_sensitive
                    ),
                )

            console.info(f"{escape(scan.target)}: {escape(scan.summary)}")
            if scan.duration_seconds is not None:
                console.info(f"Scan Duration: {scan.duration_seconds:.2f}s")
            console.blank()

    # Generate report if output path specified
    if output_path:
        if Path(output_path).suffix.lower() == ".json":
            report_path = report_gen.generate_json(scans, output_path)
            if not json_output:
                console.success(f"JSON report saved: {report_path}")
        else:
            report_path = report_gen.generate_text(scans, output_path)
            if not json_output:
                console.success(f"Text report saved: {report_path}")

    if not all(scan.success for scan in scans):
        sys.exit(1)


# ---------------------------------------------------------------------------
# Module entry point
# ---------------------------------------------------------------------------

def main() -> None:
    """Entry point for ``pescope`` and ``python -m pescope``."""
    pescope_cli()


if __name__ == "__main__":
    main()
