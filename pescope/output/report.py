"""
PEScope Report Generator
=========================

Generates JSON and plain-text reports from PEScope scan results.

The JSON report follows a structured format suitable for machine
consumption and downstream heuristics: one entry per analysed file with
header metadata, the section table, the data-directory array and the full
import table (descriptors, lookup entries, parse outcome).

The text report is meant for terminals without colour and for diffing.
Each file gets a dashed banner; each category is a titled block of
``key: value`` lines aligned on the longest key; multi-valued keys (such
as the symbols of one library) continue on the following lines, aligned
under the first value; empty lists print ``(EMPTY)``::

    -------------------------------------------------------------------------------
    /samples/dropper.exe
    -------------------------------------------------------------------------------

    Imports:
    --------
    KERNEL32.dll: CreateFileA
                  CreateMutexW
                  #7
    WS2_32.dll:   (EMPTY)

References:
    - ECMA-404 The JSON Data Interchange Standard.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence, Union

from common.models import ScanResult

from pescope.core.models import ImageAnalysisResult, ImportTable
from pescope.parsers.pe_parser import section_flags


_BANNER: str = "-" * 79
_EMPTY: str = "(EMPTY)"

_Value = Union[str, Sequence[str]]


# ---------------------------------------------------------------------------
# Text layout helpers
# ---------------------------------------------------------------------------

def _format_category(title: str, items: Sequence[tuple[str, _Value]]) -> list[str]:
    """Lay out one titled block of aligned ``key: value`` lines."""
    lines = [f"{title}:", "-" * (len(title) + 1)]
    width = max((len(key) for key, _ in items), default=0)

    for key, value in items:
        lead = f"{key}: " + " " * (width - len(key))
        if isinstance(value, str):
            lines.append(lead + value)
            continue
        if not value:
            lines.append(lead + _EMPTY)
            continue
        lines.append(lead + value[0])
        lines.extend(" " * len(lead) + item for item in value[1:])

    lines.append("")
    return lines


def _import_status(table: ImportTable) -> str:
    if not table.directory_present:
        return "no import directory"
    if table.error is None:
        return "ok"
    return f"aborted ({table.error.kind.value})"


# ---------------------------------------------------------------------------
# ScopeReportGenerator
# ---------------------------------------------------------------------------

class ScopeReportGenerator:
    """Generate JSON and text reports from scan results.

    Usage::

        generator = ScopeReportGenerator()
        generator.generate_json(scans, "report.json")
        generator.generate_text(scans, "report.txt")
    """

    def __init__(self, version: str = "1.0.0") -> None:
        self._version = version

    # ------------------------------------------------------------------ #
    #  JSON
    # ------------------------------------------------------------------ #

    def build_report(self, scans: Sequence[ScanResult]) -> dict[str, Any]:
        """Assemble the JSON-serialisable report structure."""
        return {
            "report_type": "pescope_import_analysis",
            "version": self._version,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "files": [self._scan_entry(scan) for scan in scans],
        }

    def render_json(self, scans: Sequence[ScanResult]) -> str:
        return json.dumps(
            self.build_report(scans), indent=2, ensure_ascii=False, default=str
        )

    def generate_json(self, scans: Sequence[ScanResult], output_path: str) -> str:
        """Write a structured JSON report.

        Args:
            scans: Scan results to report.
            output_path: Filesystem path for the output JSON file.

        Returns:
            The absolute path of the generated report.
        """
        return self._write(output_path, self.render_json(scans))

    def _scan_entry(self, scan: ScanResult) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "target": scan.target,
            "success": scan.success,
            "summary": scan.summary,
            "duration_seconds": scan.duration_seconds,
            "highest_severity": (
                scan.highest_severity.value if scan.highest_severity else None
            ),
            "severity_counts": scan.severity_counts,
            "findings": [f.model_dump(mode="json") for f in scan.findings],
        }
        result = ImageAnalysisResult.from_metadata(scan.metadata)
        if result is not None:
            entry["image"] = self._image_entry(result)
        return entry

    @staticmethod
    def _image_entry(result: ImageAnalysisResult) -> dict[str, Any]:
        table = result.imports
        compiled_at = result.info.compiled_at
        return {
            "info": {
                **result.info.model_dump(mode="json"),
                "compiled_at": compiled_at.isoformat() if compiled_at else None,
            },
            "parsed": result.parsed,
            "sections": [
                {**s.model_dump(mode="json"), "flags": section_flags(s.characteristics)}
                for s in result.sections
            ],
            "data_directories": [d.model_dump(mode="json") for d in result.data_directories],
            "imports": {
                "status": _import_status(table),
                "bits": table.bits,
                "directory_present": table.directory_present,
                "error": table.error.model_dump(mode="json") if table.error else None,
                "warnings": list(table.warnings),
                "library_count": len(table.libraries),
                "entry_count": table.entry_count,
                "libraries": [
                    {
                        **library.descriptor.model_dump(mode="json"),
                        "functions": [entry.label for entry in library.entries],
                        "entries": [
                            {**entry.model_dump(mode="json"), "label": entry.label}
                            for entry in library.entries
                        ],
                    }
                    for library in table.libraries
                ],
            },
        }

    # ------------------------------------------------------------------ #
    #  Plain text
    # ------------------------------------------------------------------ #

    def render_text(self, scans: Sequence[ScanResult]) -> str:
        """Render the plain-text report for *scans*."""
        lines: list[str] = []
        for scan in scans:
            lines += [_BANNER, scan.target, _BANNER, ""]

            result = ImageAnalysisResult.from_metadata(scan.metadata)
            if result is None or not result.parsed:
                lines += _format_category(
                    "Summary",
                    [("Status", "failed"), ("Message", scan.summary)],
                )
                continue

            lines += _format_category("Summary", self._summary_items(result))
            if result.sections:
                lines += _format_category(
                    "Sections",
                    [
                        (
                            s.name or "<unnamed>",
                            f"VA 0x{s.virtual_address:x}  VSize 0x{s.virtual_size:x}  "
                            f"Raw 0x{s.raw_offset:x}+0x{s.raw_size:x}  "
                            f"{section_flags(s.characteristics)}",
                        )
                        for s in result.sections
                    ],
                )

            table = result.imports
            status: list[tuple[str, _Value]] = [("Status", _import_status(table))]
            if table.error is not None:
                status.append(("Error", table.error.message))
            status.append(("Warnings", list(table.warnings)))
            lines += _format_category("Import parsing", status)

            if table.libraries:
                lines += _format_category(
                    "Imports",
                    [
                        (library.name, [entry.label for entry in library.entries])
                        for library in table.libraries
                    ],
                )

        return "\n".join(lines) + ("\n" if lines else "")

    def generate_text(self, scans: Sequence[ScanResult], output_path: str) -> str:
        """Write the plain-text report and return its absolute path."""
        return self._write(output_path, self.render_text(scans))

    @staticmethod
    def _summary_items(result: ImageAnalysisResult) -> list[tuple[str, _Value]]:
        info = result.info
        items: list[tuple[str, _Value]] = [
            ("Size", f"{info.size} bytes"),
            ("MD5", info.md5),
            ("SHA256", info.sha256),
            ("Architecture", info.arch),
        ]
        if info.bits:
            items += [
                ("Format", "PE32+" if info.bits == 64 else "PE32"),
                ("Subsystem", info.subsystem),
                ("DLL", "yes" if info.is_dll else "no"),
                ("Image base", f"0x{info.image_base:x}"),
                ("Entry point", f"0x{info.entry_point:x}"),
            ]
        if info.compiled_at is not None:
            items.append(("Compilation date", info.compiled_at.strftime("%Y-%m-%d %H:%M:%S UTC")))
        return items

    # ------------------------------------------------------------------ #
    #  Helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _write(output_path: str, content: str) -> str:
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return str(path.resolve())
