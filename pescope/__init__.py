"""
PEScope -- Static PE Import Analysis
=====================================

PEScope extracts structural metadata from Windows Portable Executable
images without executing them.  Its core walks the Import Directory, the
per-library Import Lookup Tables and the Hint/Name tables, producing an
ordered "library -> imported symbol" table while tolerating deliberately
malformed input.

Capabilities:
    - PE32 / PE32+ header and section table parsing
    - RVA to file offset translation
    - Import descriptor and lookup table parsing with bounded loops
    - Partial results with a typed failure indicator on malformed input
    - Library listing, per-library symbol listing and regex search
    - Concurrent batch analysis
    - Rich console, JSON and plain-text reports

References:
    - Microsoft. (2024). PE Format. Microsoft Learn.
    - Pietrek, M. (2002). An In-Depth Look into the Win32 Portable
      Executable File Format. MSDN Magazine.
"""

__version__ = "1.0.0"

from pescope.analyzers.import_query import ImportQuery
from pescope.core.engine import ScopeEngine
from pescope.core.models import ImageAnalysisResult
from pescope.output.console import ScopeConsoleOutput
from pescope.output.report import ScopeReportGenerator

__all__ = [
    "ScopeEngine",
    "ImageAnalysisResult",
    "ImportQuery",
    "ScopeConsoleOutput",
    "ScopeReportGenerator",
]
