"""
Random-Access Byte Source
==========================

A seekable reader over a PE file on disk or an in-memory buffer.

Every read reports short reads explicitly: :meth:`ByteSource.read_exact`
returns ``None`` instead of a truncated buffer, and :meth:`ByteSource.seek`
refuses offsets outside the file instead of silently positioning past EOF.
Parsers therefore never depend on exceptions to detect malformed input.

Side reads that must not disturb a sequential scan are bracketed by
:meth:`ByteSource.preserve_position`::

    with source.preserve_position():
        source.seek(hint_name_offset)
        hint = source.read_exact(2)
    # the cursor is back where the scan left it
"""

from __future__ import annotations

import io
import os
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Generator, Optional


class ByteSource:
    """Seekable, length-checked reader over a binary stream.

    Args:
        stream: A readable, seekable binary stream.
        name: Display name used in diagnostics.
        owns_stream: Close *stream* when :meth:`close` is called.
    """

    def __init__(
        self,
        stream: BinaryIO,
        name: str = "<memory>",
        *,
        owns_stream: bool = False,
    ) -> None:
        self._stream = stream
        self._name = name
        self._owns_stream = owns_stream
        self._size = stream.seek(0, os.SEEK_END)
        stream.seek(0)

    # ------------------------------------------------------------------ #
    #  Construction
    # ------------------------------------------------------------------ #

    @classmethod
    def from_bytes(cls, data: bytes, name: str = "<memory>") -> ByteSource:
        """Wrap an in-memory buffer."""
        return cls(io.BytesIO(data), name, owns_stream=True)

    @classmethod
    def open(cls, path: str | Path) -> ByteSource:
        """Open *path* for reading.  Use as a context manager to close it."""
        file_path = Path(path)
        return cls(open(file_path, "rb"), str(file_path), owns_stream=True)

    def close(self) -> None:
        if self._owns_stream:
            self._stream.close()

    def __enter__(self) -> ByteSource:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    #  Properties
    # ------------------------------------------------------------------ #

    @property
    def name(self) -> str:
        return self._name

    @property
    def size(self) -> int:
        return self._size

    # ------------------------------------------------------------------ #
    #  Cursor
    # ------------------------------------------------------------------ #

    def tell(self) -> int:
        return self._stream.tell()

    def seek(self, offset: int) -> bool:
        """Move the cursor to *offset*.

        Returns:
            ``False`` (cursor unchanged) if *offset* lies outside
            ``[0, size]``.
        """
        if offset < 0 or offset > self._size:
            return False
        self._stream.seek(offset)
        return True

    @contextmanager
    def preserve_position(self) -> Generator[int, None, None]:
        """Restore the current cursor position when the block exits.

        Yields:
            The saved position.
        """
        saved = self._stream.tell()
        try:
            yield saved
        finally:
            self._stream.seek(saved)

    # ------------------------------------------------------------------ #
    #  Reads
    # ------------------------------------------------------------------ #

    def read(self, count: int) -> bytes:
        """Read up to *count* bytes; the result is short at end of file."""
        if count <= 0:
            return b""
        return self._stream.read(count)

    def read_exact(self, count: int) -> Optional[bytes]:
        """Read exactly *count* bytes, or return ``None`` on a short read."""
        data = self.read(count)
        if len(data) != count:
            return None
        return data

    def read_at(self, offset: int, count: int) -> Optional[bytes]:
        """Read exactly *count* bytes at *offset* without moving the cursor."""
        with self.preserve_position():
            if not self.seek(offset):
                return None
            return self.read_exact(count)

    def read_cstring(self, max_length: int = 4096) -> Optional[str]:
        """Read a NUL-terminated ASCII string at the cursor.

        The cursor ends just past the terminator.  Non-ASCII bytes are
        decoded as U+FFFD.

        Returns:
            The string without its terminator, or ``None`` if end of file
            is reached first or the string is longer than *max_length*.
        """
        budget = max_length + 1  # room for the terminator
        chunks: list[bytes] = []
        consumed = 0
        while consumed < budget:
            block = self.read(min(64, budget - consumed))
            if not block:
                return None
            end = block.find(b"\x00")
            if end != -1:
                chunks.append(block[:end])
                # Rewind the bytes read past the terminator.
                self._stream.seek(end + 1 - len(block), os.SEEK_CUR)
                return b"".join(chunks).decode("ascii", errors="replace")
            chunks.append(block)
            consumed += len(block)
        return None

    def read_cstring_at(self, offset: int, max_length: int = 4096) -> Optional[str]:
        """Read a NUL-terminated ASCII string at *offset*, keeping the cursor."""
        with self.preserve_position():
            if not self.seek(offset):
                return None
            return self.read_cstring(max_length)
