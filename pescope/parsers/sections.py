"""
Section Map and Directory Locator
==================================

Translation from Relative Virtual Addresses to file offsets, and lookup of
entries in the optional header's data-directory array.

An RVA is mapped through the section whose virtual range contains it.  The
virtual range of a section spans ``max(VirtualSize, SizeOfRawData)`` bytes,
since linkers and packers disagree on which of the two is authoritative,
but only the part backed by raw data has a file offset.  Everything else is
*unmapped*: the translator returns ``None`` and leaves any fallback policy
to the caller.

References:
    - Microsoft. (2024). PE Format -- Section Table (Section Headers).
    - Microsoft. (2024). PE Format -- Optional Header Data Directories.
"""

from __future__ import annotations

from typing import NamedTuple, Optional, Sequence

from pescope.core.models import DataDirectory, SectionEntry


# Data directory index
IMAGE_DIRECTORY_ENTRY_IMPORT: int = 1


class SectionMap:
    """Immutable view over the section table used for RVA translation.

    Usage::

        sections = SectionMap(parser.sections)
        offset = sections.rva_to_offset(0x2040)
        if offset is None:
            ...  # unmapped
    """

    def __init__(self, sections: Sequence[SectionEntry]) -> None:
        self._sections: tuple[SectionEntry, ...] = tuple(sections)

    def __len__(self) -> int:
        return len(self._sections)

    def __iter__(self):
        return iter(self._sections)

    def section_for_rva(self, rva: int) -> Optional[SectionEntry]:
        """Return the first section whose virtual range contains *rva*."""
        for section in self._sections:
            if section.virtual_address <= rva < section.virtual_end:
                return section
        return None

    def rva_to_offset(self, rva: int) -> Optional[int]:
        """Translate *rva* to a file offset.

        Args:
            rva: Relative Virtual Address.

        Returns:
            File offset, or ``None`` if no section maps the RVA to file data.
        """
        section = self.section_for_rva(rva)
        if section is None:
            return None
        delta = rva - section.virtual_address
        if delta >= section.raw_size:
            return None
        return section.raw_offset + delta

    def raw_end_for_rva(self, rva: int) -> Optional[int]:
        """File offset where the data of the section containing *rva* ends."""
        section = self.section_for_rva(rva)
        if section is None:
            return None
        return section.raw_end


class DirectoryLocation(NamedTuple):
    """A resolved data directory."""

    index: int
    rva: int
    size: int
    offset: int


class DirectoryUnreachable(Exception):
    """A data directory has a non-zero RVA that no section maps."""

    def __init__(self, index: int, rva: int) -> None:
        super().__init__(
            f"data directory {index} at RVA 0x{rva:x} is outside every section"
        )
        self.index = index
        self.rva = rva


class DirectoryLocator:
    """Resolve data-directory indices to file offsets.

    Args:
        directories: The optional header's ``(RVA, size)`` array.
        sections: Section map used for translation (no fallback).
    """

    def __init__(
        self,
        directories: Sequence[DataDirectory],
        sections: SectionMap,
    ) -> None:
        self._directories = tuple(directories)
        self._sections = sections

    def locate(self, index: int) -> Optional[DirectoryLocation]:
        """Resolve directory *index*.

        Returns:
            The location, or ``None`` when the image has no such directory
            (index beyond the array, or RVA 0).

        Raises:
            DirectoryUnreachable: The RVA is non-zero but unmapped.
        """
        if index >= len(self._directories):
            return None
        directory = self._directories[index]
        if directory.rva == 0:
            return None
        offset = self._sections.rva_to_offset(directory.rva)
        if offset is None:
            raise DirectoryUnreachable(index, directory.rva)
        return DirectoryLocation(index, directory.rva, directory.size, offset)
