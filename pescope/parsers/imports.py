"""
PE Import Directory Parser
===========================

Walks the Import Directory of a PE image and builds its
:class:`~pescope.core.models.ImportTable`.

Parsing happens in two phases over a single :class:`ByteSource` cursor:

1. **Descriptors.**  IMAGE_IMPORT_DESCRIPTOR records (20 bytes) are read
   sequentially until the all-zero-thunk sentinel.  Each library name is
   fetched with a side read.  A name that cannot be read ends the table
   gracefully if at least one library was already accepted (the loader
   tolerates trailing garbage), and is fatal otherwise.

2. **Lookup tables.**  For every accepted library the Import Lookup Table
   (or the IAT, when ``OriginalFirstThunk`` is zero) is read entry by
   entry.  By-name entries are resolved through the Hint/Name table with a
   side read bracketed by :meth:`ByteSource.preserve_position`, so the
   sequential scan resumes right after the previous thunk.

Any fatal condition aborts the whole import parse.  The table returned
then holds everything collected so far together with an
:class:`~pescope.core.models.ImportParseFailure`.  Every loop is bounded by
the raw extent of the containing section and by configured counts.

References:
    - Microsoft. (2024). PE Format -- The .idata Section. Microsoft Learn.
    - Pietrek, M. (2002). An In-Depth Look into the Win32 Portable
      Executable File Format, Part 2. MSDN Magazine.
"""

from __future__ import annotations

import struct
from collections import Counter
from typing import Optional, Sequence

from common.config import ImportsConfig
from common.logger import ScopeLogger

from pescope.core.models import (
    DataDirectory,
    ImportDescriptor,
    ImportErrorKind,
    ImportLookupEntry,
    ImportParseFailure,
    ImportTable,
    Library,
)
from pescope.parsers.byte_source import ByteSource
from pescope.parsers.sections import (
    IMAGE_DIRECTORY_ENTRY_IMPORT,
    DirectoryLocator,
    DirectoryUnreachable,
    SectionMap,
)


_THUNK_FORMATS: dict[int, struct.Struct] = {
    32: struct.Struct("<I"),
    64: struct.Struct("<Q"),
}
_HINT = struct.Struct("<H")


class ImportParseError(Exception):
    """Fatal import-parse condition.

    Raised internally by :class:`ImportDirectoryParser` and converted into
    an :class:`ImportParseFailure` by :meth:`ImportDirectoryParser.parse`.
    """

    def __init__(
        self,
        kind: ImportErrorKind,
        message: str,
        *,
        offset: Optional[int] = None,
        library: str = "",
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.offset = offset
        self.library = library

    def to_failure(self) -> ImportParseFailure:
        return ImportParseFailure(
            kind=self.kind,
            message=self.message,
            offset=self.offset,
            library=self.library,
        )


class ImportDirectoryParser:
    """Single-use parser for one image's Import Directory.

    Args:
        source: Byte source of the image.  Its cursor is shared mutable
            state for the duration of :meth:`parse`.
        sections: Section map used for RVA translation.
        directories: The optional header's data-directory array.
        bits: Image bitness (32 or 64) from the optional header magic, or
            ``None`` if the optional header could not be parsed.
        config: Loop bounds and string limits.
        logger: Sink for non-fatal warnings.

    Usage::

        table = ImportDirectoryParser(source, sections, directories, bits=64).parse()
        if not table.ok:
            print(table.error.kind, len(table.libraries))
    """

    def __init__(
        self,
        source: ByteSource,
        sections: SectionMap,
        directories: Sequence[DataDirectory],
        *,
        bits: Optional[int],
        config: ImportsConfig | None = None,
        logger: ScopeLogger | None = None,
    ) -> None:
        self._source = source
        self._sections = sections
        self._directories = tuple(directories)
        self._bits = bits
        self._config = config or ImportsConfig()
        self._logger = logger or ScopeLogger("imports")

        self._descriptors: list[ImportDescriptor] = []
        self._entries: list[list[ImportLookupEntry]] = []
        self._warnings: list[str] = []
        self._descriptor_array: range = range(0)

    # ------------------------------------------------------------------ #
    #  Public interface
    # ------------------------------------------------------------------ #

    def parse(self) -> ImportTable:
        """Parse the Import Directory.

        Returns:
            The import table.  ``directory_present`` is ``False`` when the
            image has no imports; ``error`` is set when the parse was
            aborted, in which case the libraries and entries read before
            the failure are still present.
        """
        error: Optional[ImportParseFailure] = None
        directory_present = True

        with self._logger.operation("import_directory"):
            try:
                directory_present = self._parse()
            except ImportParseError as exc:
                error = exc.to_failure()
                self._logger.error(
                    "Import parsing aborted (%s): %s", exc.kind.value, exc.message
                )

        libraries = tuple(
            Library(descriptor=descriptor, entries=tuple(entries))
            for descriptor, entries in zip(self._descriptors, self._entries)
        )
        return ImportTable(
            libraries=libraries,
            bits=self._bits if self._bits in _THUNK_FORMATS else 32,
            directory_present=directory_present,
            error=error,
            warnings=tuple(self._warnings),
        )

    # ------------------------------------------------------------------ #
    #  Driver
    # ------------------------------------------------------------------ #

    def _parse(self) -> bool:
        if self._bits not in _THUNK_FORMATS:
            raise ImportParseError(
                ImportErrorKind.HEADER_UNAVAILABLE,
                "The optional header was not parsed; image bitness is unknown.",
            )

        locator = DirectoryLocator(self._directories, self._sections)
        try:
            location = locator.locate(IMAGE_DIRECTORY_ENTRY_IMPORT)
        except DirectoryUnreachable as exc:
            raise ImportParseError(
                ImportErrorKind.DIRECTORY_UNREACHABLE, str(exc), offset=exc.rva
            ) from exc

        if location is None:
            self._logger.debug("Image has no import directory")
            return False

        self._read_descriptors(location.rva, location.offset)
        self._warn_duplicates()

        for descriptor, entries in zip(self._descriptors, self._entries):
            self._read_lookup_table(descriptor, entries)
        return True

    def _warn(self, message: str) -> None:
        self._warnings.append(message)
        self._logger.warning(message)

    # ------------------------------------------------------------------ #
    #  Phase 1: import descriptors
    # ------------------------------------------------------------------ #

    def _read_descriptors(self, rva: int, offset: int) -> None:
        source = self._source
        if not source.seek(offset):
            raise ImportParseError(
                ImportErrorKind.DESCRIPTOR_UNREADABLE,
                f"Import directory offset 0x{offset:x} is beyond the end of the file.",
                offset=offset,
            )
        table_end = self._sections.raw_end_for_rva(rva)

        try:
            while True:
                position = source.tell()
                if table_end is not None and position + ImportDescriptor.SIZE > table_end:
                    raise ImportParseError(
                        ImportErrorKind.TABLE_TOO_LARGE,
                        "The import descriptor array runs past the end of its "
                        "section without a terminating entry.",
                        offset=position,
                    )

                window = source.read_exact(ImportDescriptor.SIZE)
                if window is None:
                    raise ImportParseError(
                        ImportErrorKind.DESCRIPTOR_UNREADABLE,
                        f"Could not read the import descriptor at 0x{position:x}.",
                        offset=position,
                    )

                descriptor = ImportDescriptor.decode(window)
                if descriptor.is_sentinel:
                    break

                name = self._read_library_name(descriptor)
                if name is None:
                    if self._descriptors:
                        self._warn(
                            f"Could not read the name of import descriptor "
                            f"#{len(self._descriptors)} (name RVA "
                            f"0x{descriptor.name_rva:x}); keeping the "
                            f"{len(self._descriptors)} libraries read so far."
                        )
                        break
                    raise ImportParseError(
                        ImportErrorKind.DESCRIPTOR_NAME_UNREADABLE,
                        f"Could not read the name of the first import descriptor "
                        f"(name RVA 0x{descriptor.name_rva:x}).",
                        offset=position,
                    )

                if len(self._descriptors) >= self._config.max_libraries:
                    raise ImportParseError(
                        ImportErrorKind.TABLE_TOO_LARGE,
                        f"More than {self._config.max_libraries} import descriptors.",
                        offset=position,
                    )
                self._descriptors.append(descriptor.model_copy(update={"name": name}))
                self._entries.append([])
        finally:
            self._descriptor_array = range(offset, source.tell())

    def _read_library_name(self, descriptor: ImportDescriptor) -> Optional[str]:
        offset = self._sections.rva_to_offset(descriptor.name_rva)
        if offset is None:
            if not self._config.name_offset_fallback:
                return None
            # Packers sometimes store the name outside every section.
            offset = descriptor.name_rva
        return self._source.read_cstring_at(offset, self._config.max_string_length)

    def _warn_duplicates(self) -> None:
        counts = Counter(d.name.lower() for d in self._descriptors)
        for descriptor in self._descriptors:
            key = descriptor.name.lower()
            if counts.get(key, 0) > 1:
                self._warn(
                    f"Library {descriptor.name} is imported by "
                    f"{counts[key]} descriptors."
                )
                counts[key] = 0

    # ------------------------------------------------------------------ #
    #  Phase 2: import lookup tables
    # ------------------------------------------------------------------ #

    def _read_lookup_table(
        self,
        descriptor: ImportDescriptor,
        entries: list[ImportLookupEntry],
    ) -> None:
        source = self._source
        library = descriptor.name
        rva = descriptor.lookup_table_rva

        offset = self._sections.rva_to_offset(rva)
        if offset is None or not source.seek(offset):
            raise ImportParseError(
                ImportErrorKind.LOOKUP_TABLE_UNREACHABLE,
                f"Could not reach the import lookup table of {library} "
                f"(RVA 0x{rva:x}).",
                offset=rva if offset is None else offset,
                library=library,
            )
        if offset in self._descriptor_array:
            raise ImportParseError(
                ImportErrorKind.POSSIBLE_LOOP,
                f"The import lookup table of {library} points back into the "
                f"import descriptor array (offset 0x{offset:x}).",
                offset=offset,
                library=library,
            )

        thunk = _THUNK_FORMATS[self._bits]  # type: ignore[index]
        table_end = self._sections.raw_end_for_rva(rva)

        while True:
            position = source.tell()
            if table_end is not None and position + thunk.size > table_end:
                raise ImportParseError(
                    ImportErrorKind.TABLE_TOO_LARGE,
                    f"The import lookup table of {library} runs past the end "
                    f"of its section without a terminating entry.",
                    offset=position,
                    library=library,
                )

            raw = source.read_exact(thunk.size)
            if raw is None:
                raise ImportParseError(
                    ImportErrorKind.LOOKUP_TABLE_UNREADABLE,
                    f"Could not read the import lookup table of {library} "
                    f"at 0x{position:x}.",
                    offset=position,
                    library=library,
                )

            value = thunk.unpack(raw)[0]
            if value == 0:
                return

            if len(entries) >= self._config.max_entries_per_library:
                raise ImportParseError(
                    ImportErrorKind.TABLE_TOO_LARGE,
                    f"{library} imports more than "
                    f"{self._config.max_entries_per_library} symbols.",
                    offset=position,
                    library=library,
                )

            entry = ImportLookupEntry.from_raw(value, self._bits)  # type: ignore[arg-type]
            if not entry.is_ordinal:
                entry = self._resolve_hint_name(entry, library)
            entries.append(entry)

    def _resolve_hint_name(
        self,
        entry: ImportLookupEntry,
        library: str,
    ) -> ImportLookupEntry:
        source = self._source
        rva = entry.hint_name_rva
        offset = self._sections.rva_to_offset(rva)
        if offset is None:
            raise ImportParseError(
                ImportErrorKind.HINT_NAME_TABLE_UNREACHABLE,
                f"Could not reach the hint/name entry of an import from "
                f"{library} (RVA 0x{rva:x}).",
                offset=rva,
                library=library,
            )

        with source.preserve_position():
            raw_hint = source.read_exact(_HINT.size) if source.seek(offset) else None
            name = (
                source.read_cstring(self._config.max_string_length)
                if raw_hint is not None
                else None
            )
        if raw_hint is None or name is None:
            raise ImportParseError(
                ImportErrorKind.HINT_NAME_UNREADABLE,
                f"Could not read the hint/name entry of an import from "
                f"{library} at 0x{offset:x}.",
                offset=offset,
                library=library,
            )

        return entry.model_copy(update={"hint": _HINT.unpack(raw_hint)[0], "name": name})
