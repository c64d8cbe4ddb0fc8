"""
PEScope Data Models
====================

Pydantic-based data models for the structures PEScope decodes from a
Portable Executable image: the section map, the data-directory array and
the import table (descriptors, lookup entries, libraries).

Parse products are frozen: the import table is built in a single pass at
load time and never revisited, so it can be shared between threads and
consumers without synchronisation.

References:
    - Microsoft. (2024). PE Format. Microsoft Learn.
      https://learn.microsoft.com/en-us/windows/win32/debug/pe-format
    - Pietrek, M. (2002). An In-Depth Look into the Win32 Portable
      Executable File Format. MSDN Magazine.
"""

from __future__ import annotations

import datetime as _dt
import enum
import struct
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class ImportErrorKind(str, enum.Enum):
    """Fatal conditions that abort the import parse.

    An aborted import parse keeps whatever libraries and entries were
    collected before the failure; the enclosing image parse continues.
    """
    HEADER_UNAVAILABLE = "header_unavailable"
    DIRECTORY_UNREACHABLE = "directory_unreachable"
    DESCRIPTOR_UNREADABLE = "descriptor_unreadable"
    DESCRIPTOR_NAME_UNREADABLE = "descriptor_name_unreadable"
    LOOKUP_TABLE_UNREACHABLE = "lookup_table_unreachable"
    LOOKUP_TABLE_UNREADABLE = "lookup_table_unreadable"
    HINT_NAME_TABLE_UNREACHABLE = "hint_name_table_unreachable"
    HINT_NAME_UNREADABLE = "hint_name_unreadable"
    TABLE_TOO_LARGE = "table_too_large"
    POSSIBLE_LOOP = "possible_loop"


class ImportParseFailure(BaseModel):
    """Failure indicator attached to an aborted import table.

    Attributes:
        kind: Which fatal condition stopped the parse.
        message: Human-readable description.
        offset: File offset (or RVA, when untranslatable) involved, if any.
        library: Name of the library being processed, if any.
    """
    model_config = ConfigDict(frozen=True)

    kind: ImportErrorKind
    message: str = ""
    offset: Optional[int] = None
    library: str = ""


# ---------------------------------------------------------------------------
# Section map and data directories
# ---------------------------------------------------------------------------

class SectionEntry(BaseModel):
    """One row of the section table.

    Attributes:
        name: Section name (e.g. ``.idata``), NUL padding stripped.
        virtual_address: RVA of the first byte of the section.
        virtual_size: Size of the section once loaded.
        raw_offset: File offset of the section data (PointerToRawData).
        raw_size: Size of the section data on disk (SizeOfRawData).
        characteristics: Section flags.
    """
    model_config = ConfigDict(frozen=True)

    name: str = ""
    virtual_address: int = 0
    virtual_size: int = 0
    raw_offset: int = 0
    raw_size: int = 0
    characteristics: int = 0

    @property
    def virtual_end(self) -> int:
        """Exclusive end of the section's virtual range."""
        return self.virtual_address + max(self.virtual_size, self.raw_size)

    @property
    def raw_end(self) -> int:
        """Exclusive end of the section's data in the file."""
        return self.raw_offset + self.raw_size


class DataDirectory(BaseModel):
    """An ``(RVA, size)`` pair from the optional header's directory array."""
    model_config = ConfigDict(frozen=True)

    rva: int = 0
    size: int = 0


# ---------------------------------------------------------------------------
# Import structures
# ---------------------------------------------------------------------------

class ImportDescriptor(BaseModel):
    """An IMAGE_IMPORT_DESCRIPTOR plus the resolved library name.

    The on-disk record is five little-endian u32 fields (20 bytes).  A record
    whose two thunk RVAs are both zero terminates the descriptor array.

    Attributes:
        original_first_thunk: RVA of the Import Lookup Table (may be 0).
        time_date_stamp: Zero unless the import is bound.
        forwarder_chain: Index of the first forwarder reference.
        name_rva: RVA of the ASCII library name.
        first_thunk: RVA of the Import Address Table.
        name: Library name resolved from ``name_rva``.
    """
    model_config = ConfigDict(frozen=True)

    SIZE: ClassVar[int] = 20
    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<IIIII")

    original_first_thunk: int = 0
    time_date_stamp: int = 0
    forwarder_chain: int = 0
    name_rva: int = 0
    first_thunk: int = 0
    name: str = ""

    @classmethod
    def decode(cls, window: bytes) -> ImportDescriptor:
        """Build a descriptor from exactly :attr:`SIZE` bytes."""
        if len(window) != cls.SIZE:
            raise ValueError(
                f"import descriptor needs {cls.SIZE} bytes, got {len(window)}"
            )
        (
            original_first_thunk,
            time_date_stamp,
            forwarder_chain,
            name_rva,
            first_thunk,
        ) = cls.LAYOUT.unpack(window)
        return cls(
            original_first_thunk=original_first_thunk,
            time_date_stamp=time_date_stamp,
            forwarder_chain=forwarder_chain,
            name_rva=name_rva,
            first_thunk=first_thunk,
        )

    @property
    def is_sentinel(self) -> bool:
        return self.original_first_thunk == 0 and self.first_thunk == 0

    @property
    def lookup_table_rva(self) -> int:
        """RVA of the table to walk: the ILT, or the IAT when the ILT is absent.

        Packed executables frequently zero ``OriginalFirstThunk``.
        """
        return self.original_first_thunk or self.first_thunk


class ImportLookupEntry(BaseModel):
    """One imported symbol from an Import Lookup Table.

    Attributes:
        raw_value: The 32-bit (PE32) or 64-bit (PE32+) thunk value.
        is_ordinal: Whether the top bit of ``raw_value`` is set.
        ordinal_or_rva: ``raw_value`` without its top bit.
        hint: Export-name-table hint, for by-name imports.
        name: Imported symbol name, for by-name imports.
    """
    model_config = ConfigDict(frozen=True)

    HINT_NAME_RVA_MASK: ClassVar[int] = 0x7FFFFFFF

    raw_value: int
    is_ordinal: bool = False
    ordinal_or_rva: int = 0
    hint: Optional[int] = None
    name: str = ""

    @classmethod
    def from_raw(cls, raw_value: int, bits: int) -> ImportLookupEntry:
        """Split a thunk value into its ordinal flag and payload bits."""
        flag = 1 << (bits - 1)
        return cls(
            raw_value=raw_value,
            is_ordinal=bool(raw_value & flag),
            ordinal_or_rva=raw_value & (flag - 1),
        )

    @property
    def hint_name_rva(self) -> int:
        """RVA of the Hint/Name entry; bits 30..0 for both PE32 and PE32+."""
        return self.ordinal_or_rva & self.HINT_NAME_RVA_MASK

    @property
    def label(self) -> str:
        """The symbol name, or ``"#<ordinal>"`` for by-ordinal imports."""
        if self.is_ordinal:
            return f"#{self.ordinal_or_rva}"
        return self.name


class Library(BaseModel):
    """An imported library and its symbols, in lookup-table order."""
    model_config = ConfigDict(frozen=True)

    descriptor: ImportDescriptor
    entries: tuple[ImportLookupEntry, ...] = ()

    @property
    def name(self) -> str:
        return self.descriptor.name


class ImportTable(BaseModel):
    """The parsed import directory of one image.

    Attributes:
        libraries: Libraries in descriptor order.
        bits: Image bitness the thunks were decoded with (32 or 64).
        directory_present: ``False`` when the image declares no imports.
        error: Failure indicator when the parse was aborted, else ``None``.
        warnings: Non-fatal diagnostics (truncation, duplicate names).
    """
    model_config = ConfigDict(frozen=True)

    libraries: tuple[Library, ...] = ()
    bits: int = 32
    directory_present: bool = True
    error: Optional[ImportParseFailure] = None
    warnings: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def entry_count(self) -> int:
        return sum(len(lib.entries) for lib in self.libraries)


# ---------------------------------------------------------------------------
# Image-level results
# ---------------------------------------------------------------------------

class ImageInfo(BaseModel):
    """Top-level metadata about an analysed image.

    Attributes:
        path: Filesystem path (or ``<memory>``).
        size: File size in bytes.
        machine: Raw COFF machine value.
        arch: Architecture string (x86, x86_64, AArch64, ...).
        bits: 32 for PE32, 64 for PE32+.
        entry_point: RVA of the entry point.
        image_base: Preferred load address.
        subsystem: Subsystem name.
        is_dll: Whether IMAGE_FILE_DLL is set.
        timestamp: COFF TimeDateStamp (raw).
        md5: MD5 of the file contents.
        sha256: SHA-256 of the file contents.
    """
    path: str = ""
    size: int = 0
    machine: int = 0
    arch: str = "unknown"
    bits: int = 0
    entry_point: int = 0
    image_base: int = 0
    subsystem: str = ""
    is_dll: bool = False
    timestamp: int = 0
    md5: str = ""
    sha256: str = ""

    @property
    def compiled_at(self) -> Optional[_dt.datetime]:
        """Link time from ``timestamp`` as a UTC datetime, ``None`` when unset."""
        if not self.timestamp:
            return None
        try:
            return _dt.datetime.fromtimestamp(self.timestamp, tz=_dt.timezone.utc)
        except (OSError, ValueError, OverflowError):
            return None


class ImageAnalysisResult(BaseModel):
    """Complete structural analysis of one PE image.

    Attributes:
        info: Header metadata.
        sections: Section table, file order.
        data_directories: Optional header directory array.
        imports: Parsed import table.
        parsed: Whether the PE headers were valid.
    """
    info: ImageInfo = Field(default_factory=ImageInfo)
    sections: list[SectionEntry] = Field(default_factory=list)
    data_directories: list[DataDirectory] = Field(default_factory=list)
    imports: ImportTable = Field(default_factory=ImportTable)
    parsed: bool = False

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any]) -> Optional[ImageAnalysisResult]:
        """Rebuild the result stored by the engine in ``ScanResult.metadata``."""
        payload = metadata.get("image_analysis")
        if payload is None:
            return None
        return cls.model_validate(payload)
