"""
Import Query Layer
===================

Read-only lookups over a parsed :class:`~pescope.core.models.ImportTable`:
library names in file order, the symbols imported from one library, and
regular-expression search across libraries and symbols.

Patterns are matched with :func:`re.fullmatch`, so ``"Create"`` only
matches a symbol literally named ``Create``; use ``"Create.*"`` for a
prefix search.  Anchors are accepted and redundant.

Example::

    query = ImportQuery(table)
    query.search("^Create.*", "^KERNEL32\\.DLL$", case_sensitive=False)
    # ["CreateFileA", "CreateProcessW"]

References:
    - Python ``re`` module documentation.
      https://docs.python.org/3/library/re.html
"""

from __future__ import annotations

import re

from pescope.core.models import ImportTable, Library


class ImportQuery:
    """Query helper bound to one import table.

    The table is frozen, so a query object can be shared freely between
    threads.
    """

    def __init__(self, table: ImportTable) -> None:
        self._table = table

    @property
    def table(self) -> ImportTable:
        return self._table

    def list_library_names(self) -> tuple[str, ...]:
        """Names of all imported libraries, in file order (duplicates kept)."""
        return tuple(library.name for library in self._table.libraries)

    def list_functions(self, library_name: str) -> tuple[str, ...]:
        """Symbols imported from *library_name*.

        The library is matched exactly and case-sensitively; the first
        matching library wins.  By-ordinal imports are reported as
        ``"#<ordinal>"``.

        Returns:
            Symbol labels in lookup-table order, or an empty tuple when no
            library has that name.
        """
        for library in self._table.libraries:
            if library.name == library_name:
                return tuple(entry.label for entry in library.entries)
        return ()

    def find_libraries(
        self,
        pattern: str,
        case_sensitive: bool = True,
    ) -> list[Library]:
        """Libraries whose whole name matches *pattern*.

        Raises:
            re.error: *pattern* is not a valid regular expression.
        """
        regex = _compile(pattern, case_sensitive)
        return [lib for lib in self._table.libraries if regex.fullmatch(lib.name)]

    def search(
        self,
        function_pattern: str,
        library_pattern: str = ".*",
        case_sensitive: bool = True,
    ) -> list[str]:
        """Find imported symbols by name.

        Args:
            function_pattern: Regex the whole symbol name must match.
            library_pattern: Regex the whole library name must match.
            case_sensitive: Applies to both patterns.

        Returns:
            Matching symbol names, flattened in file order: every match
            from the first matching library, then the next one.  By-ordinal
            imports are never matched.  Use :meth:`search_by_library` to
            keep the grouping.

        Raises:
            re.error: Either pattern is not a valid regular expression.
        """
        return [
            name
            for _, names in self.search_by_library(
                function_pattern, library_pattern, case_sensitive
            )
            for name in names
        ]

    def search_by_library(
        self,
        function_pattern: str,
        library_pattern: str = ".*",
        case_sensitive: bool = True,
    ) -> list[tuple[str, tuple[str, ...]]]:
        """Same matching as :meth:`search`, grouped per library.

        Returns ``(library_name, symbols)`` pairs in file order; libraries
        with no matching symbol are omitted.
        """
        function_regex = _compile(function_pattern, case_sensitive)
        results: list[tuple[str, tuple[str, ...]]] = []

        for library in self.find_libraries(library_pattern, case_sensitive):
            matches = tuple(
                entry.name
                for entry in library.entries
                if not entry.is_ordinal
                and entry.name
                and function_regex.fullmatch(entry.name)
            )
            if matches:
                results.append((library.name, matches))
        return results


def _compile(pattern: str, case_sensitive: bool) -> re.Pattern[str]:
    return re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
