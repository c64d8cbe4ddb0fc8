"""
PE/COFF Container Parser
=========================

Struct-based parser for the headers of a Portable Executable image: the
DOS stub header, the PE signature, the COFF file header, the optional
header (PE32 and PE32+) with its data-directory array, and the section
table.  Once the headers are known the Import Directory is handed to
:class:`~pescope.parsers.imports.ImportDirectoryParser`.

All reads go through a :class:`~pescope.parsers.byte_source.ByteSource`,
so the file never has to be loaded into memory in full, and every read is
length-checked.

The parser extracts:
    - DOS header (MZ stub, ``e_lfanew``)
    - PE signature verification
    - COFF file header (machine, section count, timestamp, characteristics)
    - Optional header (magic/bitness, entry point, image base, subsystem,
      data directories)
    - Section table (name, virtual size/address, raw size/offset, flags)
    - Import table (libraries and their imported symbols)

References:
    - Microsoft. (2024). PE Format. Microsoft Learn.
      https://learn.microsoft.com/en-us/windows/win32/debug/pe-format
    - Pietrek, M. (1994). Peering Inside the PE: A Tour of the Win32
      Portable Executable File Format. Microsoft Systems Journal.
"""

from __future__ import annotations

import struct
from typing import Optional

from common.config import ImportsConfig
from common.logger import ScopeLogger

from pescope.core.models import (
    DataDirectory,
    ImageAnalysisResult,
    ImageInfo,
    ImportTable,
    SectionEntry,
)
from pescope.parsers.byte_source import ByteSource
from pescope.parsers.imports import ImportDirectoryParser
from pescope.parsers.sections import SectionMap


# ---------------------------------------------------------------------------
# PE Constants
# ---------------------------------------------------------------------------

# Magic numbers
MZ_MAGIC: bytes = b"MZ"
PE_MAGIC: bytes = b"PE\x00\x00"

# Optional header magic
PE32_MAGIC: int = 0x10B      # PE32 (32-bit)
PE32PLUS_MAGIC: int = 0x20B  # PE32+ (64-bit)

_BITS_BY_MAGIC: dict[int, int] = {
    PE32_MAGIC: 32,
    PE32PLUS_MAGIC: 64,
}

# Machine types
IMAGE_FILE_MACHINE_UNKNOWN: int = 0x0
IMAGE_FILE_MACHINE_I386: int = 0x14C
IMAGE_FILE_MACHINE_ARM: int = 0x1C0
IMAGE_FILE_MACHINE_ARMNT: int = 0x1C4
IMAGE_FILE_MACHINE_AMD64: int = 0x8664
IMAGE_FILE_MACHINE_ARM64: int = 0xAA64
IMAGE_FILE_MACHINE_IA64: int = 0x200

_MACHINE_NAMES: dict[int, str] = {
    IMAGE_FILE_MACHINE_UNKNOWN: "Unknown",
    IMAGE_FILE_MACHINE_I386: "x86",
    IMAGE_FILE_MACHINE_ARM: "ARM",
    IMAGE_FILE_MACHINE_ARMNT: "ARM Thumb-2",
    IMAGE_FILE_MACHINE_AMD64: "x86_64",
    IMAGE_FILE_MACHINE_ARM64: "AArch64",
    IMAGE_FILE_MACHINE_IA64: "IA-64",
}

# Characteristics flags (COFF header)
IMAGE_FILE_DLL: int = 0x2000

# Subsystem values
_SUBSYSTEM_NAMES: dict[int, str] = {
    0: "Unknown",
    1: "Native",
    2: "Windows GUI",
    3: "Windows Console",
    7: "POSIX Console",
    9: "Windows CE GUI",
    10: "EFI Application",
    11: "EFI Boot Service Driver",
    12: "EFI Runtime Driver",
    13: "EFI ROM",
    14: "Xbox",
}

# Section characteristics
IMAGE_SCN_CNT_CODE: int = 0x00000020
IMAGE_SCN_CNT_INITIALIZED_DATA: int = 0x00000040
IMAGE_SCN_CNT_UNINITIALIZED_DATA: int = 0x00000080
IMAGE_SCN_MEM_EXECUTE: int = 0x20000000
IMAGE_SCN_MEM_READ: int = 0x40000000
IMAGE_SCN_MEM_WRITE: int = 0x80000000

# Fixed structure layouts
_DOS_HEADER_SIZE: int = 64
_E_LFANEW_OFFSET: int = 60
_COFF_HEADER = struct.Struct("<HHIIIHH")
_OPT_PE32_STD = struct.Struct("<HBBIIIIII")
_OPT_PE32_WIN = struct.Struct("<IIIHHHHHHIIIIHHIIIIII")
_OPT_PE32PLUS_STD = struct.Struct("<HBBIIIII")
_OPT_PE32PLUS_WIN = struct.Struct("<QIIHHHHHHIIIIHHQQQQII")
_DATA_DIRECTORY = struct.Struct("<II")
_SECTION_HEADER = struct.Struct("<8sIIIIIIHHI")
_MAX_DATA_DIRECTORIES: int = 16


# ---------------------------------------------------------------------------
# Internal parsed structures
# ---------------------------------------------------------------------------

class _COFFHeader:
    """Parsed COFF file header."""
    __slots__ = (
        "machine", "number_of_sections", "time_date_stamp",
        "pointer_to_symbol_table", "number_of_symbols",
        "size_of_optional_header", "characteristics",
    )

    def __init__(self) -> None:
        self.machine: int = 0
        self.number_of_sections: int = 0
        self.time_date_stamp: int = 0
        self.pointer_to_symbol_table: int = 0
        self.number_of_symbols: int = 0
        self.size_of_optional_header: int = 0
        self.characteristics: int = 0


class _OptionalHeader:
    """The optional-header fields PEScope reports."""
    __slots__ = (
        "magic", "address_of_entry_point", "image_base",
        "subsystem", "number_of_rva_and_sizes",
    )

    def __init__(self) -> None:
        self.magic: int = 0
        self.address_of_entry_point: int = 0
        self.image_base: int = 0
        self.subsystem: int = 0
        self.number_of_rva_and_sizes: int = 0


# ---------------------------------------------------------------------------
# PE Parser
# ---------------------------------------------------------------------------

class PEParser:
    """Struct-based PE/COFF container parser.

    Parses PE32 and PE32+ (64-bit) Windows executables from a
    :class:`ByteSource`.  A file that is not a PE image makes :meth:`parse`
    return ``False``.  A PE image whose optional header or import directory
    is damaged still parses; the damage is reported on :attr:`imports`.

    Usage::

        with ByteSource.open("sample.exe") as source:
            parser = PEParser(source)
            if parser.parse():
                info = parser.get_image_info()
                for library in parser.imports.libraries:
                    print(library.name, len(library.entries))
    """

    def __init__(
        self,
        source: ByteSource,
        config: ImportsConfig | None = None,
        logger: ScopeLogger | None = None,
    ) -> None:
        """Initialise the parser.

        Args:
            source: Byte source positioned anywhere; the parser seeks freely.
            config: Import-parsing limits.
            logger: Logger for parse diagnostics.
        """
        self._source = source
        self._config = config or ImportsConfig()
        self._logger = logger or ScopeLogger("parser")
        self._e_lfanew: int = 0
        self._coff_header: _COFFHeader = _COFFHeader()
        self._optional_header: _OptionalHeader = _OptionalHeader()
        self._optional_header_parsed: bool = False
        self._data_directories: list[DataDirectory] = []
        self._sections: list[SectionEntry] = []
        self._section_map: SectionMap = SectionMap(())
        self._imports: ImportTable = ImportTable()
        self._parsed: bool = False

    # ------------------------------------------------------------------ #
    #  Public interface
    # ------------------------------------------------------------------ #

    def parse(self) -> bool:
        """Parse the PE headers, section table and import directory.

        Returns:
            ``True`` if the file is a PE image, ``False`` otherwise.
        """
        if self._source.size < _DOS_HEADER_SIZE:
            return False
        if self._source.read_at(0, 2) != MZ_MAGIC:
            return False

        if not self._parse_dos_header():
            return False
        if not self._verify_pe_signature():
            return False
        if not self._parse_coff_header():
            return False

        self._parse_optional_header()
        self._parse_section_table()
        self._section_map = SectionMap(self._sections)
        self._parse_import_directory()
        self._parsed = True
        return True

    @property
    def parsed(self) -> bool:
        return self._parsed

    @property
    def bits(self) -> Optional[int]:
        """32 or 64 from the optional header magic; ``None`` if unavailable."""
        if not self._optional_header_parsed:
            return None
        return _BITS_BY_MAGIC.get(self._optional_header.magic)

    @property
    def sections(self) -> list[SectionEntry]:
        return list(self._sections)

    @property
    def section_map(self) -> SectionMap:
        return self._section_map

    @property
    def data_directories(self) -> list[DataDirectory]:
        return list(self._data_directories)

    @property
    def imports(self) -> ImportTable:
        return self._imports

    def get_image_info(self) -> ImageInfo:
        """Build an :class:`ImageInfo` from the parsed headers.

        Hashes are left empty; the engine fills them in.
        """
        machine = self._coff_header.machine
        return ImageInfo(
            path=self._source.name,
            size=self._source.size,
            machine=machine,
            arch=_MACHINE_NAMES.get(machine, f"unknown(0x{machine:x})"),
            bits=self.bits or 0,
            entry_point=self._optional_header.address_of_entry_point,
            image_base=self._optional_header.image_base,
            subsystem=self.get_subsystem(),
            is_dll=self.is_dll(),
            timestamp=self._coff_header.time_date_stamp,
        )

    def to_result(self) -> ImageAnalysisResult:
        """Bundle everything parsed into an :class:`ImageAnalysisResult`."""
        return ImageAnalysisResult(
            info=self.get_image_info(),
            sections=self.sections,
            data_directories=self.data_directories,
            imports=self._imports,
            parsed=self._parsed,
        )

    def get_subsystem(self) -> str:
        return _SUBSYSTEM_NAMES.get(
            self._optional_header.subsystem,
            f"Unknown(0x{self._optional_header.subsystem:x})",
        )

    def is_dll(self) -> bool:
        """Check if the binary has the DLL characteristics flag set."""
        return bool(self._coff_header.characteristics & IMAGE_FILE_DLL)

    # ------------------------------------------------------------------ #
    #  DOS header
    # ------------------------------------------------------------------ #

    def _parse_dos_header(self) -> bool:
        """Read ``e_lfanew`` (offset 60) from the 64-byte DOS header."""
        raw = self._source.read_at(_E_LFANEW_OFFSET, 4)
        if raw is None:
            return False
        self._e_lfanew = struct.unpack("<I", raw)[0]
        return True

    def _verify_pe_signature(self) -> bool:
        """Verify the ``PE\\0\\0`` signature at offset ``e_lfanew``."""
        return self._source.read_at(self._e_lfanew, 4) == PE_MAGIC

    # ------------------------------------------------------------------ #
    #  COFF header
    # ------------------------------------------------------------------ #

    def _parse_coff_header(self) -> bool:
        """Parse the COFF file header (20 bytes after the PE signature)."""
        raw = self._source.read_at(self._e_lfanew + 4, _COFF_HEADER.size)
        if raw is None:
            return False

        coff = self._coff_header
        (
            coff.machine,
            coff.number_of_sections,
            coff.time_date_stamp,
            coff.pointer_to_symbol_table,
            coff.number_of_symbols,
            coff.size_of_optional_header,
            coff.characteristics,
        ) = _COFF_HEADER.unpack(raw)
        return True

    # ------------------------------------------------------------------ #
    #  Optional header
    # ------------------------------------------------------------------ #

    def _parse_optional_header(self) -> None:
        """Parse the PE optional header (PE32 or PE32+).

        Leaves the header marked unavailable when it is absent, has an
        unknown magic, or is truncated.
        """
        if self._coff_header.size_of_optional_header == 0:
            self._logger.debug("Image has no optional header")
            return

        offset = self._e_lfanew + 4 + _COFF_HEADER.size
        raw_magic = self._source.read_at(offset, 2)
        if raw_magic is None:
            return

        oh = self._optional_header
        oh.magic = struct.unpack("<H", raw_magic)[0]
        if oh.magic == PE32PLUS_MAGIC:
            std, win = _OPT_PE32PLUS_STD, _OPT_PE32PLUS_WIN
        elif oh.magic == PE32_MAGIC:
            std, win = _OPT_PE32_STD, _OPT_PE32_WIN
        else:
            self._logger.warning("Unknown optional header magic 0x%x", oh.magic)
            return

        raw_std = self._source.read_at(offset, std.size)
        raw_win = self._source.read_at(offset + std.size, win.size)
        if raw_std is None or raw_win is None:
            self._logger.warning("Optional header is truncated")
            return

        oh.address_of_entry_point = std.unpack(raw_std)[6]
        win_fields = win.unpack(raw_win)
        oh.image_base = win_fields[0]
        oh.subsystem = win_fields[13]
        oh.number_of_rva_and_sizes = win_fields[20]
        self._optional_header_parsed = True

        self._parse_data_directories(
            offset + std.size + win.size, oh.number_of_rva_and_sizes
        )

    def _parse_data_directories(self, offset: int, count: int) -> None:
        """Parse the data directory array.

        Args:
            offset: File offset of the first data directory entry.
            count: NumberOfRvaAndSizes from the optional header.
        """
        self._data_directories = []
        # Cap at 16 to prevent malformed binaries from causing issues
        count = min(count, _MAX_DATA_DIRECTORIES)

        for i in range(count):
            raw = self._source.read_at(offset + i * _DATA_DIRECTORY.size, _DATA_DIRECTORY.size)
            if raw is None:
                self._data_directories.append(DataDirectory())
                continue
            rva, size = _DATA_DIRECTORY.unpack(raw)
            self._data_directories.append(DataDirectory(rva=rva, size=size))

    # ------------------------------------------------------------------ #
    #  Section table
    # ------------------------------------------------------------------ #

    def _parse_section_table(self) -> None:
        """Parse the section table immediately following the optional header."""
        offset = (
            self._e_lfanew
            + 4  # PE signature
            + _COFF_HEADER.size
            + self._coff_header.size_of_optional_header
        )

        for i in range(self._coff_header.number_of_sections):
            raw = self._source.read_at(
                offset + i * _SECTION_HEADER.size, _SECTION_HEADER.size
            )
            if raw is None:
                self._logger.warning(
                    "Section table truncated after %d of %d entries",
                    i, self._coff_header.number_of_sections,
                )
                break

            (
                raw_name,
                virtual_size,
                virtual_address,
                size_of_raw_data,
                pointer_to_raw_data,
                _relocations,
                _linenumbers,
                _number_of_relocations,
                _number_of_linenumbers,
                characteristics,
            ) = _SECTION_HEADER.unpack(raw)

            self._sections.append(SectionEntry(
                name=raw_name.split(b"\x00", 1)[0].decode("ascii", errors="replace"),
                virtual_address=virtual_address,
                virtual_size=virtual_size,
                raw_offset=pointer_to_raw_data,
                raw_size=size_of_raw_data,
                characteristics=characteristics,
            ))

    # ------------------------------------------------------------------ #
    #  Import directory
    # ------------------------------------------------------------------ #

    def _parse_import_directory(self) -> None:
        parser = ImportDirectoryParser(
            self._source,
            self._section_map,
            self._data_directories,
            bits=self.bits,
            config=self._config,
            logger=self._logger,
        )
        self._imports = parser.parse()


# ---------------------------------------------------------------------------
# Section helpers
# ---------------------------------------------------------------------------

def section_flags(characteristics: int) -> str:
    """Convert section characteristics to a readable string.

    Args:
        characteristics: Section characteristics flags.

    Returns:
        Flags string like ``"R X CODE"``, or ``"-"`` if none are set.
    """
    parts: list[str] = []
    if characteristics & IMAGE_SCN_MEM_READ:
        parts.append("R")
    if characteristics & IMAGE_SCN_MEM_WRITE:
        parts.append("W")
    if characteristics & IMAGE_SCN_MEM_EXECUTE:
        parts.append("X")
    if characteristics & IMAGE_SCN_CNT_CODE:
        parts.append("CODE")
    if characteristics & IMAGE_SCN_CNT_INITIALIZED_DATA:
        parts.append("IDATA")
    if characteristics & IMAGE_SCN_CNT_UNINITIALIZED_DATA:
        parts.append("UDATA")
    return " ".join(parts) if parts else "-"
