"""Tests for JSON and plain-text reports."""
from __future__ import annotations

import asyncio
import json

import pytest

from common.config import ScopeConfig
from pescope.core.engine import ScopeEngine
from pescope.output.report import ScopeReportGenerator, _format_category

from conftest import PEBuilder


@pytest.fixture
def engine(quiet_logger):
    return ScopeEngine(config=ScopeConfig(), logger=quiet_logger)


@pytest.fixture
def sample_scans(engine, sample_file, tmp_path):
    bogus = tmp_path / "bogus.bin"
    bogus.write_bytes(b"\x00" * 80)
    return asyncio.run(engine.analyze_many([str(sample_file), str(bogus)]))


class TestFormatCategory:
    def test_alignment(self):
        lines = _format_category("Imports", [
            ("KERNEL32.dll", ["CreateFileA", "CreateMutexW", "#7"]),
            ("WS2_32.dll", []),
            ("a.dll", "single"),
        ])
        assert lines == [
            "Imports:",
            "--------",
            "KERNEL32.dll: CreateFileA",
            "              CreateMutexW",
            "              #7",
            "WS2_32.dll:   (EMPTY)",
            "a.dll:        single",
            "",
        ]

    def test_empty_category(self):
        assert _format_category("Warnings", []) == ["Warnings:", "---------", ""]


class TestJsonReport:
    def test_structure(self, sample_scans):
        report = json.loads(ScopeReportGenerator(version="9.9").render_json(sample_scans))
        assert report["report_type"] == "pescope_import_analysis"
        assert report["version"] == "9.9"
        assert len(report["files"]) == 2

        good, bad = report["files"]
        assert good["success"] is True
        imports = good["image"]["imports"]
        assert imports["status"] == "ok"
        assert imports["library_count"] == 3
        assert imports["entry_count"] == 7
        kernel32 = imports["libraries"][0]
        assert kernel32["name"] == "kernel32.dll"
        assert kernel32["functions"] == ["CreateFileA", "CreateMutexW", "#7", "ExitProcess"]
        assert kernel32["entries"][2]["is_ordinal"] is True
        assert kernel32["entries"][2]["ordinal_or_rva"] == 7
        assert good["image"]["sections"][0]["flags"] == "R W IDATA"
        assert good["image"]["info"]["compiled_at"] == "2020-07-04T04:05:20+00:00"

        assert bad["success"] is False
        assert bad["image"]["parsed"] is False
        assert bad["findings"][0]["severity"] == "HIGH"
        assert bad["highest_severity"] == "HIGH"
        assert bad["severity_counts"]["HIGH"] == 1
        assert good["highest_severity"] is None

    def test_aborted_status(self, quiet_logger, tmp_path):
        builder = PEBuilder()
        builder.add_library("kernel32.dll", ["ExitProcess"])
        builder.descriptor_overrides[0] = {"original_first_thunk": 0x600000}
        path = tmp_path / "broken.exe"
        path.write_bytes(builder.build())
        scans = asyncio.run(ScopeEngine(logger=quiet_logger).analyze_many([str(path)]))

        imports = ScopeReportGenerator().build_report(scans)["files"][0]["image"]["imports"]
        assert imports["status"] == "aborted (lookup_table_unreachable)"
        assert imports["error"]["kind"] == "lookup_table_unreachable"
        assert imports["error"]["library"] == "kernel32.dll"

    def test_generate_json(self, sample_scans, tmp_path):
        out = tmp_path / "reports" / "scan.json"
        path = ScopeReportGenerator().generate_json(sample_scans, str(out))
        assert path == str(out.resolve())
        assert json.loads(out.read_text(encoding="utf-8"))["files"][0]["success"]


class TestTextReport:
    def test_sample_blocks(self, sample_scans, sample_file):
        text = ScopeReportGenerator().render_text(sample_scans[:1])
        lines = text.splitlines()
        assert lines[0] == "-" * 79
        assert lines[1] == str(sample_file)
        assert lines[2] == "-" * 79
        assert "Summary:" in lines
        assert "Format:           PE32" in lines
        assert "Compilation date: 2020-07-04 04:05:20 UTC" in lines
        assert "Status:   ok" in lines
        assert "Warnings: (EMPTY)" in lines

        start = lines.index("Imports:")
        assert lines[start + 1:start + 9] == [
            "--------",
            "kernel32.dll: CreateFileA",
            "              CreateMutexW",
            "              #7",
            "              ExitProcess",
            "USER32.dll:   MessageBoxA",
            "WS2_32.dll:   #3",
            "              #115",
        ]
        assert text.endswith("\n")

    def test_failed_file(self, sample_scans):
        text = ScopeReportGenerator().render_text(sample_scans[1:])
        assert "Status:  failed" in text
        assert "Message: Not a PE image | Findings: 1" in text
        assert "Imports:" not in text

    def test_empty(self):
        assert ScopeReportGenerator().render_text([]) == ""

    def test_generate_text(self, sample_scans, tmp_path):
        out = tmp_path / "scan.txt"
        ScopeReportGenerator().generate_text(sample_scans, str(out))
        assert out.read_text(encoding="utf-8").count("-" * 79) == 4
