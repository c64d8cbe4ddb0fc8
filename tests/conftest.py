"""Shared fixtures for PEScope tests.

:class:`PEBuilder` assembles small but well-formed PE32 / PE32+ images with
a single ``.idata`` section, and exposes knobs for the malformations the
import parser has to survive (unmapped RVAs, truncated data, missing
terminators, self-referencing tables).

Layout of the ``.idata`` section, in order::

    descriptor array (n + 1 records, last one the terminator)
    library names
    hint/name entries
    per library: import lookup table, then import address table
"""
from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Union

import pytest

from common.config import ImportsConfig
from common.logger import ScopeLogger

from pescope.core.models import ImportTable
from pescope.parsers.byte_source import ByteSource
from pescope.parsers.pe_parser import PEParser


FILE_ALIGNMENT = 0x200
HEADERS_SIZE = 0x200
SECTION_RVA = 0x1000
E_LFANEW = 0x40

Import = Union[str, int]  # str: by name, int: by ordinal


def _align(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


@dataclass
class LibrarySpec:
    name: str
    imports: list[Import]
    use_ilt: bool = True
    thunk_overrides: dict[int, int] = field(default_factory=dict)


class PEBuilder:
    """Build a minimal PE image around an import directory."""

    def __init__(self, bits: int = 32) -> None:
        self.bits = bits
        self.libraries: list[LibrarySpec] = []
        self.descriptor_overrides: dict[int, dict[str, int]] = {}
        self.import_dir_rva: int | None = None
        self.number_of_directories = 16
        self.magic: int | None = None
        self.section_raw_size: int | None = None
        self.characteristics = 0x0102
        self.timestamp = 0x5F000000

        # Filled in by build()
        self.raw_data_size = 0
        self.name_rvas: list[int] = []
        self.lookup_table_rvas: list[int] = []

    # ------------------------------------------------------------------ #

    def add_library(
        self,
        name: str,
        imports: list[Import],
        *,
        use_ilt: bool = True,
        thunk_overrides: dict[int, int] | None = None,
    ) -> PEBuilder:
        self.libraries.append(
            LibrarySpec(name, list(imports), use_ilt, dict(thunk_overrides or {}))
        )
        return self

    @property
    def thunk_size(self) -> int:
        return self.bits // 8

    @property
    def ordinal_flag(self) -> int:
        return 1 << (self.bits - 1)

    @property
    def section_end_rva(self) -> int:
        """RVA one past the last byte of section data present in the file."""
        return SECTION_RVA + self.raw_data_size

    # ------------------------------------------------------------------ #

    def _build_section(self) -> bytes:
        thunk_fmt = "<I" if self.bits == 32 else "<Q"
        count = len(self.libraries)
        blob = bytearray((count + 1) * 20)

        def rva(pos: int) -> int:
            return SECTION_RVA + pos

        name_pos: list[int] = []
        for lib in self.libraries:
            name_pos.append(len(blob))
            blob += lib.name.encode("ascii") + b"\x00"
            if len(blob) % 2:
                blob += b"\x00"

        thunk_values: list[list[int]] = []
        for lib in self.libraries:
            values: list[int] = []
            for hint, item in enumerate(lib.imports):
                if isinstance(item, int):
                    values.append(self.ordinal_flag | item)
                    continue
                values.append(rva(len(blob)))
                blob += struct.pack("<H", hint) + item.encode("ascii") + b"\x00"
                if len(blob) % 2:
                    blob += b"\x00"
            for index, value in lib.thunk_overrides.items():
                values[index] = value
            thunk_values.append(values)

        while len(blob) % 8:
            blob += b"\x00"

        self.name_rvas = [rva(pos) for pos in name_pos]
        self.lookup_table_rvas = []
        for index, (lib, values) in enumerate(zip(self.libraries, thunk_values)):
            table = b"".join(struct.pack(thunk_fmt, v) for v in values + [0])
            ilt_pos = len(blob)
            blob += table
            iat_pos = len(blob)
            blob += table

            fields = {
                "original_first_thunk": rva(ilt_pos) if lib.use_ilt else 0,
                "time_date_stamp": 0,
                "forwarder_chain": 0,
                "name_rva": self.name_rvas[index],
                "first_thunk": rva(iat_pos),
            }
            fields.update(self.descriptor_overrides.get(index, {}))
            self.lookup_table_rvas.append(
                fields["original_first_thunk"] or fields["first_thunk"]
            )
            struct.pack_into(
                "<IIIII", blob, index * 20,
                fields["original_first_thunk"],
                fields["time_date_stamp"],
                fields["forwarder_chain"],
                fields["name_rva"],
                fields["first_thunk"],
            )

        return bytes(blob)

    def build(self) -> bytes:
        section = self._build_section()
        virtual_size = len(section)
        padded = section + b"\x00" * (_align(len(section), FILE_ALIGNMENT) - len(section))
        self.raw_data_size = len(padded)
        raw_size = self.section_raw_size if self.section_raw_size is not None else len(padded)

        is_64 = self.bits == 64
        magic = self.magic if self.magic is not None else (0x20B if is_64 else 0x10B)

        directories = [(0, 0)] * self.number_of_directories
        if self.number_of_directories > 1:
            import_rva = SECTION_RVA if self.import_dir_rva is None else self.import_dir_rva
            directories[1] = (import_rva, (len(self.libraries) + 1) * 20)
        data_dirs = b"".join(struct.pack("<II", r, s) for r, s in directories)

        size_of_image = SECTION_RVA + _align(max(virtual_size, raw_size), 0x1000)
        if is_64:
            std = struct.pack("<HBBIIIII", magic, 14, 0, 0, raw_size, 0, SECTION_RVA, SECTION_RVA)
            win = struct.pack(
                "<QIIHHHHHHIIIIHHQQQQII",
                0x140000000, 0x1000, FILE_ALIGNMENT, 6, 0, 0, 0, 6, 0, 0,
                size_of_image, HEADERS_SIZE, 0, 3, 0,
                0x100000, 0x1000, 0x100000, 0x1000, 0, self.number_of_directories,
            )
        else:
            std = struct.pack(
                "<HBBIIIIII", magic, 14, 0, 0, raw_size, 0, SECTION_RVA, SECTION_RVA, SECTION_RVA
            )
            win = struct.pack(
                "<IIIHHHHHHIIIIHHIIIIII",
                0x400000, 0x1000, FILE_ALIGNMENT, 6, 0, 0, 0, 6, 0, 0,
                size_of_image, HEADERS_SIZE, 0, 3, 0,
                0x100000, 0x1000, 0x100000, 0x1000, 0, self.number_of_directories,
            )
        optional_header = std + win + data_dirs

        coff = struct.pack(
            "<HHIIIHH",
            0x8664 if is_64 else 0x14C,
            1,
            self.timestamp,
            0,
            0,
            len(optional_header),
            self.characteristics,
        )
        section_header = struct.pack(
            "<8sIIIIIIHHI",
            b".idata",
            virtual_size,
            SECTION_RVA,
            raw_size,
            HEADERS_SIZE,
            0, 0, 0, 0,
            0xC0000040,
        )

        dos = bytearray(64)
        dos[0:2] = b"MZ"
        struct.pack_into("<I", dos, 60, E_LFANEW)

        headers = bytes(dos) + b"PE\x00\x00" + coff + optional_header + section_header
        assert len(headers) <= HEADERS_SIZE
        headers += b"\x00" * (HEADERS_SIZE - len(headers))
        return headers + padded


def parse_image(
    data: bytes,
    logger: ScopeLogger | None = None,
    **limits: object,
) -> PEParser:
    parser = PEParser(
        ByteSource.from_bytes(data, "test.exe"),
        ImportsConfig(**limits),  # type: ignore[arg-type]
        logger,
    )
    assert parser.parse()
    return parser


def parse_imports(builder: PEBuilder, **limits: object) -> ImportTable:
    """Build the image and return its import table."""
    return parse_image(builder.build(), _quiet_logger(), **limits).imports


def _quiet_logger() -> ScopeLogger:
    return ScopeLogger("tests", log_level="CRITICAL", console_output=False)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def quiet_logger():
    """A logger that emits nothing."""
    return _quiet_logger()


@pytest.fixture
def builder():
    """A fresh PE32 builder."""
    return PEBuilder(bits=32)


@pytest.fixture
def sample_builder():
    """PE32 image importing from three libraries, with one ordinal import."""
    b = PEBuilder(bits=32)
    b.add_library("kernel32.dll", ["CreateFileA", "CreateMutexW", 7, "ExitProcess"])
    b.add_library("USER32.dll", ["MessageBoxA"])
    b.add_library("WS2_32.dll", [3, 115])
    return b


@pytest.fixture
def sample_image(sample_builder):
    """Raw bytes of the sample image."""
    return sample_builder.build()


@pytest.fixture
def sample_file(tmp_path, sample_image):
    """The sample image written to disk."""
    path = tmp_path / "sample.exe"
    path.write_bytes(sample_image)
    return path
