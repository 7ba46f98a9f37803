"""Scan gate schemas.

Key Components:
    Severity: Ordered severity levels (LOW < MEDIUM < HIGH < CRITICAL)
    ScanTargetKind: What a scanner inspects (source tree or image)
    Finding: A single scanner finding
    ScanResult: Aggregated outcome of one scan gate evaluation
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

_SEVERITY_RANK = {"LOW": 1, "MEDIUM": 2, "HIGH": 3, "CRITICAL": 4}


class Severity(str, Enum):
    """Finding severity, ordered from LOW to CRITICAL.

    Examples:
        >>> Severity.HIGH >= Severity.MEDIUM
        True
        >>> Severity.from_cvss(7.5)
        <Severity.HIGH: 'HIGH'>
    """

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        """Numeric rank used for threshold comparisons."""
        return _SEVERITY_RANK[self.value]

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    @classmethod
    def parse(cls, value: str) -> Severity | None:
        """Parse a scanner severity label, returning None for unknown labels.

        Scanners use mixed case ("Critical", "HIGH") and extra levels
        ("Negligible", "UNKNOWN", "INFO") which are not counted.
        """
        normalized = value.strip().upper()
        if normalized == "MODERATE":
            normalized = "MEDIUM"
        try:
            return cls(normalized)
        except ValueError:
            return None

    @classmethod
    def from_cvss(cls, score: float) -> Severity | None:
        """Map a CVSS base score onto a severity (CVSS v3 qualitative scale)."""
        if score >= 9.0:
            return cls.CRITICAL
        if score >= 7.0:
            return cls.HIGH
        if score >= 4.0:
            return cls.MEDIUM
        if score > 0.0:
            return cls.LOW
        return None


class ScanTargetKind(str, Enum):
    """What a scanner inspects."""

    SOURCE = "source"
    IMAGE = "image"


class Finding(BaseModel):
    """A single finding reported by a scanner.

    Attributes:
        id: Finding identifier (CVE ID, quality gate metric key, ...).
        severity: Normalized severity.
        scanner: Name of the scanner that reported it.
        package: Affected package, if any.
        title: Short description.
        fixed: Whether a fix is available upstream.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1, description="Finding identifier")
    severity: Severity = Field(..., description="Normalized severity")
    scanner: str = Field(..., description="Scanner that reported the finding")
    package: str | None = Field(default=None, description="Affected package")
    title: str | None = Field(default=None, description="Short description")
    fixed: bool = Field(default=True, description="Whether a fix is available")


class ScanResult(BaseModel):
    """Outcome of a scan gate evaluation against one target.

    Invariant: a run may only move past the scan gate when ``passed`` is True.

    Examples:
        >>> result = ScanResult(
        ...     target="registry/app:42",
        ...     severity_threshold=Severity.CRITICAL,
        ...     findings=[],
        ...     passed=True,
        ... )
        >>> result.blocking_ids
        []
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    target: str = Field(..., description="Scanned source path or image reference")
    severity_threshold: Severity = Field(..., description="Threshold that blocks the run")
    findings: list[Finding] = Field(default_factory=list, description="Findings kept after filtering")
    passed: bool = Field(..., description="Whether the gate passed")
    scanners: list[str] = Field(default_factory=list, description="Scanners that ran")
    errors: list[str] = Field(
        default_factory=list,
        description="Scanner errors; any error fails the gate closed",
    )
    ignored_unfixed: int = Field(default=0, ge=0, description="Findings dropped as unfixed")
    report_path: str | None = Field(default=None, description="Written report artifact")
    scanned_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the evaluation finished (UTC)",
    )

    @property
    def blocking_ids(self) -> list[str]:
        """IDs of findings at or above the severity threshold."""
        return [f.id for f in self.findings if f.severity >= self.severity_threshold]

    def counts_by_severity(self) -> dict[str, int]:
        """Count findings per severity level."""
        counts = {severity.value: 0 for severity in Severity}
        for finding in self.findings:
            counts[finding.severity.value] += 1
        return counts


__all__ = ["Severity", "ScanTargetKind", "Finding", "ScanResult"]
