"""
PEScope Structured Logger
==========================

Provides :class:`ScopeLogger`, a logging facade that writes Rich-formatted
records to stderr and, optionally, text or JSON lines to a rotating file.

Every record carries the component name, the current operation (for
example ``"import_directory"``) and the image being parsed, so that the
log of a batch run over many binaries can be filtered per file.  Keyword
arguments that :mod:`logging` does not know are kept as structured
``extra`` data::

    log.warning("Library %s is imported twice", name, count=2)

References:
    - Python logging HOWTO. https://docs.python.org/3/howto/logging.html
    - Rich library. https://github.com/Textualize/rich
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

_LOG_THEME = Theme(
    {
        "log.level.debug": "dim cyan",
        "log.level.info": "bold bright_blue",
        "log.level.warning": "bold yellow",
        "log.level.error": "bold red",
        "log.level.critical": "bold white on red",
    }
)

_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Record attributes set from the logger's context
_CONTEXT_FIELDS: tuple[str, ...] = ("component", "operation", "image")

# Keyword arguments passed straight through to logging.Logger.log
_LOGGING_KWARGS = frozenset({"exc_info", "stack_info", "stacklevel"})


class _JSONFormatter(logging.Formatter):
    """One JSON object per record.

    Keys: ``timestamp``, ``level``, ``logger``, ``message``, then any
    non-empty context field, ``extra`` and ``exc_info``.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: dict[str, Any] = {
            "timestamp": created.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (name, getattr(record, name))
            for name in _CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        )
        if getattr(record, "scope_extra", None):
            entry["extra"] = record.scope_extra
        if record.exc_info and record.exc_info[1] is not None:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _console_handler(level: int) -> RichHandler:
    # stderr keeps stdout free for reports (``--json``).
    return RichHandler(
        level=level,
        console=Console(theme=_LOG_THEME, stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )


def _file_handler(
    path: Path, level: int, json_logs: bool, max_bytes: int, backup_count: int
) -> RotatingFileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        filename=str(path),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(
        _JSONFormatter()
        if json_logs
        else logging.Formatter(fmt=_TEXT_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z")
    )
    return handler


class ScopeLogger:
    """Context-aware logger for PEScope components.

    An instance is bound to a *component* (``"engine"``, ``"imports"``);
    :meth:`for_image` derives a view bound to one image and
    :meth:`operation` tags records for the duration of a ``with`` block.

    The import parser uses a ScopeLogger as its warning sink: warnings
    (truncated descriptor tables, duplicate library names) are emitted here
    and never interrupt parsing.

    Args:
        component:       Component name; the stdlib logger is ``pescope.<component>``.
        log_level:       Minimum severity name.
        log_file:        Rotating log file; ``None`` or empty disables it.
        json_logs:       Write JSON lines instead of text to the file.
        max_bytes:       File size that triggers rotation.
        backup_count:    Rotated files kept.
        console_output:  Attach the Rich stderr handler.
    """

    def __init__(
        self,
        component: str,
        *,
        log_level: str = "INFO",
        log_file: str | Path | None = None,
        json_logs: bool = False,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
        console_output: bool = True,
    ) -> None:
        self._component = component
        self._operation: str | None = None
        self._image: str | None = None
        level = getattr(logging, log_level.upper(), logging.INFO)

        # Re-creating a logger for the same component replaces its handlers.
        self._logger = logging.getLogger(f"pescope.{component}")
        self._logger.setLevel(level)
        self._logger.propagate = False
        self._logger.handlers.clear()

        if console_output:
            self._logger.addHandler(_console_handler(level))
        if log_file:
            self._logger.addHandler(
                _file_handler(Path(log_file), level, json_logs, max_bytes, backup_count)
            )

    def for_image(self, image: str) -> ScopeLogger:
        """Return a view whose records carry ``image=<image>``.

        The view shares this logger's handlers but has its own operation
        context, so concurrent parses do not overwrite each other's.
        """
        view = object.__new__(ScopeLogger)
        view._component = self._component
        view._operation = self._operation
        view._image = image
        view._logger = self._logger
        return view

    @contextmanager
    def operation(self, name: str) -> Iterator[ScopeLogger]:
        """Tag records emitted inside the block with ``operation=<name>``."""
        previous, self._operation = self._operation, name
        try:
            yield self
        finally:
            self._operation = previous

    @contextmanager
    def timed(self, label: str) -> Iterator[None]:
        """Log *label* at DEBUG on entry and with the elapsed time on exit."""
        start = time.perf_counter()
        self.debug("Started: %s", label)
        try:
            yield
        finally:
            self.debug("Completed: %s (%.3f sec)", label, time.perf_counter() - start)

    # ------------------------------------------------------------------ #
    #  Log methods
    # ------------------------------------------------------------------ #

    def _log(self, level: int, msg: str, args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
        passthrough = {k: kwargs.pop(k) for k in list(kwargs) if k in _LOGGING_KWARGS}
        extra = dict(kwargs.pop("extra", None) or {})
        extra.update(
            component=self._component,
            operation=self._operation,
            image=self._image,
            scope_extra=kwargs,
        )
        passthrough.setdefault("stacklevel", 3)
        self._logger.log(level, msg, *args, extra=extra, **passthrough)

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, args, kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, args, kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, args, kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, args, kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """ERROR record with the active exception's traceback attached."""
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, msg, args, kwargs)

    @property
    def component(self) -> str:
        return self._component

    @property
    def image(self) -> str | None:
        return self._image
