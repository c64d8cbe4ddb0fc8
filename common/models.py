"""
PEScope Shared Data Models
===========================

Pydantic v2 models shared by every PEScope component: the severity scale,
individual findings, and the top-level scan result emitted per analysed
file.

Findings here are *parse diagnostics* (a truncated import table, a lookup
table that could not be reached, an image without imports).  PEScope does
not score or classify binaries; downstream heuristics consume the
structured data carried in :attr:`ScanResult.metadata`.

References:
    - SARIF v2.1.0 Specification (OASIS, 2020).
    - Pydantic v2 documentation. https://docs.pydantic.dev/latest/
"""

from __future__ import annotations

import datetime as _dt
import json as _json
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


# ========================== Enumerations ===================================


class Severity(str, Enum):
    """Diagnostic severity level.

    Attributes:
        CRITICAL: The file could not be analysed at all.
        HIGH:     A structure was unreadable and its data is missing.
        MEDIUM:   A structure was malformed; data is partial.
        LOW:      An anomaly was tolerated (e.g. graceful truncation).
        INFO:     Informational observation.
    """

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"


# ========================== Core Models ====================================


class Finding(BaseModel):
    """A single diagnostic produced while analysing a file.

    Attributes:
        severity:       Qualitative severity rating.
        title:          Short, descriptive finding title.
        description:    Detailed explanation of the finding.
        evidence:       Raw data supporting the finding (dicts are JSON-encoded).
        recommendation: Suggested follow-up for the analyst.
        references:     External references or citations.
    """

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        use_enum_values=False,
        extra="ignore",
    )

    severity: Severity = Field(..., description="Severity level of this finding")
    title: str = Field(..., min_length=1, max_length=256, description="Short descriptive title")
    description: str = Field(..., min_length=1, description="Detailed explanation")
    evidence: str = Field(default="", description="Supporting evidence or raw data")
    recommendation: str = Field(default="", description="Suggested follow-up")
    references: list[str] = Field(default_factory=list, description="Technical references")

    @field_validator("evidence", mode="before")
    @classmethod
    def _coerce_evidence(cls, v: Any) -> str:
        """Auto-convert non-string evidence (dict, list) to JSON string."""
        if isinstance(v, str):
            return v
        if isinstance(v, (dict, list)):
            return _json.dumps(v, ensure_ascii=False, default=str)
        return str(v)


class ScanResult(BaseModel):
    """Aggregated result of analysing one file.

    Attributes:
        tool_name:  Name of the producing tool.
        target:     File that was analysed.
        start_time: UTC timestamp when the analysis started.
        end_time:   UTC timestamp when the analysis ended.
        success:    Whether the file was parsed as a PE image.
        findings:   Parse diagnostics.
        summary:    Human-readable one-line summary.
        metadata:   Structured analysis payload (``image_analysis`` key).
    """

    model_config = ConfigDict(
        validate_assignment=True,
        use_enum_values=False,
        extra="ignore",
    )

    tool_name: str = Field(..., min_length=1, description="Tool name")
    target: str = Field(..., min_length=1, description="Analysed file path")
    start_time: _dt.datetime = Field(default_factory=_utcnow, description="Start timestamp (UTC)")
    end_time: Optional[_dt.datetime] = Field(default=None, description="End timestamp (UTC)")
    success: bool = Field(default=False, description="Whether analysis completed")
    findings: list[Finding] = Field(default_factory=list, description="Diagnostics")
    summary: str = Field(default="", description="Human-readable result summary")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Additional metadata")

    # ------------------------------------------------------------------ #
    #  Derived properties
    # ------------------------------------------------------------------ #

    @property
    def duration_seconds(self) -> float | None:
        """Elapsed time in seconds, or ``None`` if *end_time* is unset."""
        if self.end_time is None or self.start_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    @property
    def severity_counts(self) -> dict[str, int]:
        """Count of findings grouped by severity."""
        counts: dict[str, int] = {s.value: 0 for s in Severity}
        for finding in self.findings:
            counts[finding.severity.value] += 1
        return counts

    @property
    def highest_severity(self) -> Severity | None:
        """The most severe finding, or ``None`` when the list is empty."""
        if not self.findings:
            return None
        order = list(Severity)
        return min((f.severity for f in self.findings), key=order.index)

    @property
    def finding_count(self) -> int:
        return len(self.findings)

    # ------------------------------------------------------------------ #
    #  Mutating helpers
    # ------------------------------------------------------------------ #

    def add_finding(self, finding: Finding) -> None:
        """Append a finding to the scan result."""
        self.findings.append(finding)

    def finalize(self, summary: str | None = None) -> ScanResult:
        """Mark the scan as complete by setting *end_time* and *summary*.

        If *summary* is ``None`` a default is generated from severity counts.

        Returns:
            ``self`` for fluent chaining.
        """
        self.end_time = _utcnow()
        if summary is not None:
            self.summary = summary
        else:
            parts = [f"{sev}: {cnt}" for sev, cnt in self.severity_counts.items() if cnt > 0]
            self.summary = (
                f"Analysis complete. Findings: {len(self.findings)} "
                f"({', '.join(parts) if parts else 'none'})"
            )
        return self
