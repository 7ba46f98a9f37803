"""Scan gate: scanner adapters, output parsers and threshold evaluation."""

from __future__ import annotations

from keel_core.scanning.gate import ScanGate, merge_findings
from keel_core.scanning.parsers import (
    ScanParseError,
    parse_dependency_check_report,
    parse_grype_output,
    parse_sonarqube_quality_gate,
    parse_trivy_output,
)
from keel_core.scanning.scanners import (
    DependencyCheckScanner,
    GrypeScanner,
    Scanner,
    SonarQubeScanner,
    TrivyScanner,
    build_scanners,
)

__all__ = [
    "DependencyCheckScanner",
    "GrypeScanner",
    "ScanGate",
    "ScanParseError",
    "Scanner",
    "SonarQubeScanner",
    "TrivyScanner",
    "build_scanners",
    "merge_findings",
    "parse_dependency_check_report",
    "parse_grype_output",
    "parse_sonarqube_quality_gate",
    "parse_trivy_output",
]
