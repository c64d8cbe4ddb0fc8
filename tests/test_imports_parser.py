"""Tests for the import directory parser.

Images come from :class:`conftest.PEBuilder`; each test breaks one
structure and checks which failure kind is reported and what data
survives it.
"""
from __future__ import annotations

import pytest

from common.config import ImportsConfig
from pescope.core.models import (
    DataDirectory,
    ImportErrorKind,
    SectionEntry,
)
from pescope.parsers.byte_source import ByteSource
from pescope.parsers.imports import ImportDirectoryParser
from pescope.parsers.sections import SectionMap

from conftest import HEADERS_SIZE, SECTION_RVA, PEBuilder, parse_imports


# ---------------------------------------------------------------------------
# Well-formed images
# ---------------------------------------------------------------------------

class TestWellFormed:
    def test_libraries_in_file_order(self, sample_builder):
        table = parse_imports(sample_builder)
        assert table.ok
        assert table.directory_present
        assert table.bits == 32
        assert table.warnings == ()
        assert [lib.name for lib in table.libraries] == [
            "kernel32.dll", "USER32.dll", "WS2_32.dll",
        ]
        assert table.entry_count == 7

    def test_by_name_entries_carry_hint_and_name(self, sample_builder):
        table = parse_imports(sample_builder)
        entries = table.libraries[0].entries
        assert [e.label for e in entries] == [
            "CreateFileA", "CreateMutexW", "#7", "ExitProcess",
        ]
        assert [e.hint for e in entries] == [0, 1, None, 3]
        assert not entries[0].is_ordinal

    def test_ordinal_entries(self, sample_builder):
        table = parse_imports(sample_builder)
        ws2 = table.libraries[2]
        assert [e.is_ordinal for e in ws2.entries] == [True, True]
        assert [e.ordinal_or_rva for e in ws2.entries] == [3, 115]
        assert [e.label for e in ws2.entries] == ["#3", "#115"]
        assert ws2.entries[0].raw_value == 0x80000003
        assert ws2.entries[0].name == ""

    def test_descriptor_fields_preserved(self, sample_builder):
        table = parse_imports(sample_builder)
        descriptor = table.libraries[1].descriptor
        assert descriptor.name == "USER32.dll"
        assert descriptor.name_rva == sample_builder.name_rvas[1]
        assert descriptor.original_first_thunk == sample_builder.lookup_table_rvas[1]
        assert descriptor.first_thunk > descriptor.original_first_thunk

    def test_pe32_plus(self):
        builder = PEBuilder(bits=64)
        builder.add_library("KERNEL32.dll", ["VirtualAlloc", 42, "VirtualProtect"])
        table = parse_imports(builder)
        assert table.ok
        assert table.bits == 64
        entries = table.libraries[0].entries
        assert [e.label for e in entries] == ["VirtualAlloc", "#42", "VirtualProtect"]
        assert entries[1].raw_value == (1 << 63) | 42

    def test_first_thunk_used_when_lookup_table_missing(self, builder):
        builder.add_library("packed.dll", ["LoadLibraryA", "GetProcAddress"], use_ilt=False)
        table = parse_imports(builder)
        assert table.ok
        library = table.libraries[0]
        assert library.descriptor.original_first_thunk == 0
        assert [e.name for e in library.entries] == ["LoadLibraryA", "GetProcAddress"]

    def test_library_without_symbols(self, builder):
        builder.add_library("empty.dll", [])
        builder.add_library("user32.dll", ["MessageBoxA"])
        table = parse_imports(builder)
        assert table.ok
        assert table.libraries[0].entries == ()
        assert table.libraries[1].entries[0].name == "MessageBoxA"

    def test_no_libraries(self, builder):
        table = parse_imports(builder)
        assert table.ok
        assert table.directory_present
        assert table.libraries == ()

    def test_hint_name_reads_do_not_disturb_the_scan(self, builder):
        names = [f"Function{i:03d}" for i in range(40)]
        builder.add_library("many.dll", names)
        table = parse_imports(builder)
        assert table.ok
        assert [e.name for e in table.libraries[0].entries] == names
        assert [e.hint for e in table.libraries[0].entries] == list(range(40))

    def test_long_decorated_name(self, builder):
        decorated = "?" + "A" * 600 + "@@YAXXZ"
        builder.add_library("kernel32.dll", ["ExitProcess", decorated])
        table = parse_imports(builder)
        assert table.ok
        assert table.libraries[0].entries[1].name == decorated

    def test_name_longer_than_limit(self, builder):
        builder.add_library("kernel32.dll", ["A" * 64])
        table = parse_imports(builder, max_string_length=32)
        assert table.error.kind is ImportErrorKind.HINT_NAME_UNREADABLE


# ---------------------------------------------------------------------------
# Absent directory
# ---------------------------------------------------------------------------

class TestAbsentDirectory:
    def test_zero_rva(self, builder):
        builder.add_library("kernel32.dll", ["ExitProcess"])
        builder.import_dir_rva = 0
        table = parse_imports(builder)
        assert table.ok
        assert not table.directory_present
        assert table.libraries == ()

    def test_directory_array_too_short(self, builder):
        builder.add_library("kernel32.dll", ["ExitProcess"])
        builder.number_of_directories = 1
        table = parse_imports(builder)
        assert table.ok
        assert not table.directory_present


# ---------------------------------------------------------------------------
# Graceful degradation
# ---------------------------------------------------------------------------

class TestWarnings:
    def test_unreadable_name_after_first_truncates(self, sample_builder):
        sample_builder.descriptor_overrides[1] = {"name_rva": 0x7FFF0000}
        table = parse_imports(sample_builder)
        assert table.ok
        assert [lib.name for lib in table.libraries] == ["kernel32.dll"]
        assert len(table.libraries[0].entries) == 4
        assert len(table.warnings) == 1
        assert "descriptor #1" in table.warnings[0]
        assert "0x7fff0000" in table.warnings[0]

    def test_duplicate_library_names(self, builder):
        builder.add_library("KERNEL32.dll", ["ExitProcess"])
        builder.add_library("user32.dll", ["MessageBoxA"])
        builder.add_library("kernel32.DLL", ["Sleep"])
        table = parse_imports(builder)
        assert table.ok
        assert len(table.libraries) == 3
        assert table.warnings == (
            "Library KERNEL32.dll is imported by 2 descriptors.",
        )

    def test_name_outside_sections_read_as_file_offset(self, builder):
        builder.add_library("kernel32.dll", ["ExitProcess"])
        builder.build()
        name_offset = HEADERS_SIZE + builder.name_rvas[0] - SECTION_RVA
        builder.descriptor_overrides[0] = {"name_rva": name_offset}
        table = parse_imports(builder)
        assert table.ok
        assert table.libraries[0].name == "kernel32.dll"

    def test_name_offset_fallback_disabled(self, builder):
        builder.add_library("kernel32.dll", ["ExitProcess"])
        builder.build()
        name_offset = HEADERS_SIZE + builder.name_rvas[0] - SECTION_RVA
        builder.descriptor_overrides[0] = {"name_rva": name_offset}
        table = parse_imports(builder, name_offset_fallback=False)
        assert table.error.kind is ImportErrorKind.DESCRIPTOR_NAME_UNREADABLE


# ---------------------------------------------------------------------------
# Fatal conditions
# ---------------------------------------------------------------------------

class TestFatal:
    def test_unknown_optional_header_magic(self, sample_builder):
        sample_builder.magic = 0x107
        table = parse_imports(sample_builder)
        assert table.error.kind is ImportErrorKind.HEADER_UNAVAILABLE
        assert table.libraries == ()

    def test_directory_outside_every_section(self, sample_builder):
        sample_builder.import_dir_rva = 0x700000
        table = parse_imports(sample_builder)
        assert table.error.kind is ImportErrorKind.DIRECTORY_UNREACHABLE
        assert table.error.offset == 0x700000
        assert table.directory_present

    def test_descriptor_beyond_end_of_file(self, sample_builder):
        sample_builder.section_raw_size = 0x10000
        sample_builder.import_dir_rva = SECTION_RVA + 0x8000
        table = parse_imports(sample_builder)
        assert table.error.kind is ImportErrorKind.DESCRIPTOR_UNREADABLE

    def test_first_name_unreadable(self, sample_builder):
        sample_builder.descriptor_overrides[0] = {"name_rva": 0x7FFF0000}
        table = parse_imports(sample_builder)
        assert table.error.kind is ImportErrorKind.DESCRIPTOR_NAME_UNREADABLE
        assert table.libraries == ()

    def test_too_many_libraries(self, sample_builder):
        table = parse_imports(sample_builder, max_libraries=2)
        assert table.error.kind is ImportErrorKind.TABLE_TOO_LARGE
        assert [lib.name for lib in table.libraries] == ["kernel32.dll", "USER32.dll"]
        # The lookup phase never ran.
        assert table.entry_count == 0

    def test_too_many_entries(self, sample_builder):
        table = parse_imports(sample_builder, max_entries_per_library=2)
        assert table.error.kind is ImportErrorKind.TABLE_TOO_LARGE
        assert table.error.library == "kernel32.dll"
        assert [e.name for e in table.libraries[0].entries] == [
            "CreateFileA", "CreateMutexW",
        ]
        assert len(table.libraries) == 3

    def test_lookup_table_unmapped(self, sample_builder):
        sample_builder.descriptor_overrides[1] = {"original_first_thunk": 0x600000}
        table = parse_imports(sample_builder)
        assert table.error.kind is ImportErrorKind.LOOKUP_TABLE_UNREACHABLE
        assert table.error.library == "USER32.dll"
        assert table.error.offset == 0x600000
        # Data gathered before the failure is kept.
        assert len(table.libraries) == 3
        assert len(table.libraries[0].entries) == 4
        assert table.libraries[1].entries == ()

    def test_lookup_table_short_read(self, sample_builder):
        sample_builder.build()
        sample_builder.section_raw_size = 0x10000
        sample_builder.descriptor_overrides[0] = {
            "original_first_thunk": sample_builder.section_end_rva - 2,
        }
        table = parse_imports(sample_builder)
        assert table.error.kind is ImportErrorKind.LOOKUP_TABLE_UNREADABLE
        assert table.error.library == "kernel32.dll"

    def test_lookup_table_runs_past_section(self, builder):
        builder.add_library("kernel32.dll", ["CreateFileA", "CreateMutexW", "ExitProcess"])
        builder.build()
        # Keep only the first lookup entry inside the section's raw data.
        builder.section_raw_size = (
            builder.lookup_table_rvas[0] - SECTION_RVA + builder.thunk_size
        )
        table = parse_imports(builder)
        assert table.error.kind is ImportErrorKind.TABLE_TOO_LARGE
        assert [e.name for e in table.libraries[0].entries] == ["CreateFileA"]

    def test_lookup_table_points_into_descriptors(self, sample_builder):
        sample_builder.descriptor_overrides[0] = {"original_first_thunk": SECTION_RVA}
        table = parse_imports(sample_builder)
        assert table.error.kind is ImportErrorKind.POSSIBLE_LOOP
        assert table.error.library == "kernel32.dll"
        assert table.error.offset == HEADERS_SIZE

    def test_hint_name_unmapped(self, builder):
        builder.add_library(
            "kernel32.dll",
            ["CreateFileA", "CreateMutexW"],
            thunk_overrides={1: 0x00500000},
        )
        table = parse_imports(builder)
        assert table.error.kind is ImportErrorKind.HINT_NAME_TABLE_UNREACHABLE
        assert table.error.offset == 0x00500000
        assert [e.name for e in table.libraries[0].entries] == ["CreateFileA"]

    def test_hint_name_beyond_end_of_file(self, builder):
        builder.add_library(
            "kernel32.dll",
            ["CreateFileA"],
            thunk_overrides={0: SECTION_RVA + 0x8000},
        )
        builder.section_raw_size = 0x10000
        table = parse_imports(builder)
        assert table.error.kind is ImportErrorKind.HINT_NAME_UNREADABLE
        assert table.error.library == "kernel32.dll"


# ---------------------------------------------------------------------------
# Parser used directly
# ---------------------------------------------------------------------------

def _single_section(raw_size: int) -> SectionMap:
    return SectionMap([
        SectionEntry(name=".idata", virtual_address=0x1000, virtual_size=raw_size,
                     raw_offset=0, raw_size=raw_size),
    ])


class TestDirectParser:
    @pytest.mark.parametrize("bits", [None, 16, 128])
    def test_bits_must_be_known(self, bits, quiet_logger):
        parser = ImportDirectoryParser(
            ByteSource.from_bytes(b"\x00" * 64),
            _single_section(64),
            [DataDirectory(), DataDirectory(rva=0x1000, size=20)],
            bits=bits,
            logger=quiet_logger,
        )
        table = parser.parse()
        assert table.error.kind is ImportErrorKind.HEADER_UNAVAILABLE
        assert table.bits == 32

    def test_descriptor_array_without_terminator(self, quiet_logger):
        data = bytearray(0x20)
        # One descriptor, then the library name where the next one would be.
        data[0:20] = (
            (0x1018).to_bytes(4, "little")      # OriginalFirstThunk
            + bytes(8)
            + (0x1014).to_bytes(4, "little")    # Name
            + (0x1018).to_bytes(4, "little")    # FirstThunk
        )
        data[0x14:0x1A] = b"a.dll\x00"
        parser = ImportDirectoryParser(
            ByteSource.from_bytes(bytes(data)),
            _single_section(0x20),
            [DataDirectory(), DataDirectory(rva=0x1000, size=40)],
            bits=32,
            config=ImportsConfig(),
            logger=quiet_logger,
        )
        table = parser.parse()
        assert table.error.kind is ImportErrorKind.TABLE_TOO_LARGE
        assert table.error.offset == 20
        assert [lib.name for lib in table.libraries] == ["a.dll"]
