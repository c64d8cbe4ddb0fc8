"""
PEScope Analysis Engine
========================

Orchestrates the analysis of one or many PE images: reading the file,
hashing it, parsing the container headers and the import directory, and
turning parse diagnostics into :class:`~common.models.Finding` objects.

Analysis Pipeline:
    1. Read file (size-guarded) and compute hashes (MD5, SHA-256)
    2. Parse DOS/PE/COFF/optional headers and the section table
    3. Parse the import directory (descriptors, lookup tables, Hint/Name)
    4. Generate diagnostics for aborted or truncated import parsing

The CPU-bound pipeline runs in an executor so that :meth:`ScopeEngine.analyze`
can be awaited; :meth:`ScopeEngine.analyze_many` fans several files out over
a thread pool.  Each image gets its own byte source, section map and import
table, so no state is shared between concurrent parses.

References:
    - Microsoft. (2024). PE Format. Microsoft Learn.
    - Sikorski, M., & Honig, A. (2012). Practical Malware Analysis.
      No Starch Press.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import hashlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from common.config import ScopeConfig
from common.logger import ScopeLogger
from common.models import Finding, ScanResult, Severity

from pescope.core.models import ImageAnalysisResult, ImportErrorKind
from pescope.parsers.byte_source import ByteSource
from pescope.parsers.pe_parser import PEParser


_REFERENCES: list[str] = [
    "Microsoft. (2024). PE Format -- The .idata Section. Microsoft Learn.",
]

_FORMAT_NAMES: dict[int, str] = {32: "PE32", 64: "PE32+"}

_ERROR_HINTS: dict[ImportErrorKind, str] = {
    ImportErrorKind.HEADER_UNAVAILABLE: (
        "The optional header is missing or damaged, so thunk width is unknown."
    ),
    ImportErrorKind.DIRECTORY_UNREACHABLE: (
        "The import directory RVA points outside every section; the image "
        "may be packed or its section table tampered with."
    ),
    ImportErrorKind.TABLE_TOO_LARGE: (
        "A table did not terminate within its section or exceeded the "
        "configured limits; this is typical of deliberately malformed files."
    ),
    ImportErrorKind.POSSIBLE_LOOP: (
        "A lookup table points back into the descriptor array; this is "
        "typical of deliberately malformed files."
    ),
}


# ---------------------------------------------------------------------------
# ScopeEngine
# ---------------------------------------------------------------------------

class ScopeEngine:
    """Orchestrates PE import analysis for single files and batches.

    Usage::

        engine = ScopeEngine()
        scan = await engine.analyze("/path/to/sample.exe")
        print(scan.summary)

    Or synchronously::

        scan = engine.analyze_sync("/path/to/sample.exe")

    Or for a batch::

        scans = await engine.analyze_many(["a.exe", "b.dll"])
    """

    def __init__(
        self,
        config: ScopeConfig | None = None,
        logger: ScopeLogger | None = None,
    ) -> None:
        """Initialise the analysis engine.

        Args:
            config: PEScope configuration.  Defaults are used if not provided.
            logger: Logger instance.  A new one is created if not provided.
        """
        self._config: ScopeConfig = config or ScopeConfig()
        settings = self._config.global_settings
        self._logger: ScopeLogger = logger or ScopeLogger(
            "engine",
            log_level=settings.log_level,
            log_file=settings.log_file or None,
            json_logs=settings.log_json,
        )

    @property
    def config(self) -> ScopeConfig:
        return self._config

    # ------------------------------------------------------------------ #
    #  Main analysis entry points
    # ------------------------------------------------------------------ #

    async def analyze(
        self,
        file_path: str,
        executor: Optional[concurrent.futures.Executor] = None,
    ) -> ScanResult:
        """Analyse one file.

        All CPU-bound work is delegated to :meth:`_run_pipeline`, which runs
        in *executor* (the loop's default executor when ``None``).

        Args:
            file_path: Path to the PE file.
            executor: Executor for the parsing pipeline.

        Returns:
            ScanResult whose ``metadata["image_analysis"]`` holds the
            serialised :class:`ImageAnalysisResult`.
        """
        self._logger.info("Starting analysis of %s", file_path)

        scan = ScanResult(
            tool_name="pescope",
            target=file_path,
            start_time=datetime.now(timezone.utc),
        )

        try:
            path = Path(file_path)
            if not path.is_file():
                scan.summary = f"File not found: {file_path}"
                self._logger.error(scan.summary)
                return self._fail(scan)

            file_size = path.stat().st_size
            max_size = self._config.imports.max_file_size
            if file_size > max_size:
                scan.summary = (
                    f"File too large: {file_size:,} bytes "
                    f"(max: {max_size:,} bytes)"
                )
                self._logger.error(scan.summary)
                return self._fail(scan)

            data = path.read_bytes()

            result = await asyncio.get_running_loop().run_in_executor(
                executor,
                self._run_pipeline,
                data,
                str(path.resolve()),
            )

            for finding in self._generate_findings(result):
                scan.add_finding(finding)

            scan.metadata = {
                "image_analysis": result.model_dump(mode="json"),
            }
            scan.success = result.parsed
            scan.finalize(self._summarize(result, scan.finding_count))
            self._logger.info(scan.summary)

        except Exception as exc:
            scan.summary = f"Analysis failed: {exc}"
            self._logger.exception(scan.summary)
            self._fail(scan)

        return scan

    def analyze_sync(self, file_path: str) -> ScanResult:
        """Synchronous wrapper around :meth:`analyze`.

        Creates a new event loop if one is not already running.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop and loop.is_running():
            # Already in an async context; create a new thread
            with concurrent.futures.ThreadPoolExecutor() as pool:
                future = pool.submit(asyncio.run, self.analyze(file_path))
                return future.result()
        return asyncio.run(self.analyze(file_path))

    async def analyze_many(self, file_paths: Iterable[str]) -> list[ScanResult]:
        """Analyse several files concurrently.

        Files are parsed on a thread pool of ``global.max_workers`` threads.
        Results are returned in input order; a failure on one file never
        affects the others.
        """
        paths = list(file_paths)
        workers = max(1, self._config.global_settings.max_workers)
        self._logger.info("Analysing %d files with %d workers", len(paths), workers)

        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as pool:
            return list(
                await asyncio.gather(
                    *(self.analyze(path, executor=pool) for path in paths)
                )
            )

    def analyze_data(
        self,
        data: bytes,
        file_path: str = "<memory>",
    ) -> ImageAnalysisResult:
        """Analyse raw bytes directly (without reading from disk).

        Useful for testing or analysing data already in memory.
        """
        return self._run_pipeline(data, file_path)

    # ------------------------------------------------------------------ #
    #  Pipeline implementation
    # ------------------------------------------------------------------ #

    def _run_pipeline(self, data: bytes, file_path: str) -> ImageAnalysisResult:
        """Parse one image.

        Args:
            data: Raw file bytes.
            file_path: File path for metadata and log context.

        Returns:
            Populated ImageAnalysisResult; ``parsed`` is ``False`` when the
            data is not a PE image.
        """
        log = self._logger.for_image(file_path)

        with log.timed(f"parse {file_path}"), ByteSource.from_bytes(data, file_path) as source:
            parser = PEParser(source, self._config.imports, log)
            if parser.parse():
                result = parser.to_result()
                log.info(
                    "PE: %s %d-bit, %d sections, %d libraries, %d imports",
                    result.info.arch,
                    result.info.bits,
                    len(result.sections),
                    len(result.imports.libraries),
                    result.imports.entry_count,
                )
            else:
                log.error("Not a PE image")
                result = ImageAnalysisResult()

        result.info.path = file_path
        result.info.size = len(data)
        result.info.md5 = hashlib.md5(data).hexdigest()
        result.info.sha256 = hashlib.sha256(data).hexdigest()
        return result

    # ------------------------------------------------------------------ #
    #  Findings and summary
    # ------------------------------------------------------------------ #

    def _generate_findings(self, result: ImageAnalysisResult) -> list[Finding]:
        """Turn parse diagnostics into findings.

        Args:
            result: Complete analysis result.

        Returns:
            List of Finding models.
        """
        findings: list[Finding] = []

        if not result.parsed:
            findings.append(Finding(
                title="Not a PE image",
                description=(
                    "The file lacks a valid MZ header, PE signature or COFF "
                    "header and was not analysed."
                ),
                severity=Severity.HIGH,
                evidence={"size": result.info.size, "sha256": result.info.sha256},
                recommendation="Confirm the file type before further analysis.",
                references=list(_REFERENCES),
            ))
            return findings

        table = result.imports

        if not table.directory_present:
            findings.append(Finding(
                title="Image has no import directory",
                description=(
                    "The import data directory is absent or zero.  Images "
                    "without imports usually resolve APIs at run time."
                ),
                severity=Severity.INFO,
                references=list(_REFERENCES),
            ))

        if table.error is not None:
            error = table.error
            description = (
                f"Import parsing stopped ({error.kind.value}): {error.message} "
                f"{len(table.libraries)} libraries and {table.entry_count} "
                f"imports were recovered."
            )
            findings.append(Finding(
                title="Import table parsing aborted",
                description=description,
                severity=Severity.MEDIUM,
                evidence={
                    "kind": error.kind.value,
                    "offset": error.offset,
                    "library": error.library,
                    "libraries_recovered": len(table.libraries),
                    "imports_recovered": table.entry_count,
                },
                recommendation=_ERROR_HINTS.get(
                    error.kind,
                    "Inspect the import directory manually; recovered data is partial.",
                ),
                references=list(_REFERENCES),
            ))

        for warning in table.warnings:
            findings.append(Finding(
                title="Import table anomaly",
                description=warning,
                severity=Severity.LOW,
                references=list(_REFERENCES),
            ))

        return findings

    @staticmethod
    def _summarize(result: ImageAnalysisResult, finding_count: int) -> str:
        if not result.parsed:
            return f"Not a PE image | Findings: {finding_count}"

        table = result.imports
        status = "ok" if table.ok else f"aborted ({table.error.kind.value})"  # type: ignore[union-attr]
        summary_parts = [
            f"Analysis complete: {_FORMAT_NAMES.get(result.info.bits, 'PE')}",
            f"{result.info.arch} {result.info.bits}-bit",
            f"Sections: {len(result.sections)}",
            f"Libraries: {len(table.libraries)}",
            f"Imports: {table.entry_count}",
            f"Import parse: {status}",
            f"Findings: {finding_count}",
        ]
        return " | ".join(summary_parts)

    @staticmethod
    def _fail(scan: ScanResult) -> ScanResult:
        scan.success = False
        return scan.finalize(scan.summary)
