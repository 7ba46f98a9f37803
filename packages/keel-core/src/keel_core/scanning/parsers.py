"""Scanner output parsers.

Each parser turns one scanner's native output into a list of ``Finding``:

- Trivy JSON (``trivy image --format json``)
- Grype JSON (``grype <image> -o json``)
- OWASP Dependency-Check JSON report (``--format JSON``)
- SonarQube quality gate status (``/api/qualitygates/project_status``)

Threshold and ``ignore_unfixed`` handling happen in the gate, not here, so a
parser never drops a finding. Duplicate IDs (the same CVE in several layers
or packages) are reported once.

Example:
    >>> findings = parse_trivy_output('{"Results": []}')
    >>> findings
    []
"""

from __future__ import annotations

import json
from typing import Any

import structlog

from keel_core.schemas.scan import Finding, Severity

logger = structlog.get_logger(__name__)


class ScanParseError(Exception):
    """Raised when scanner output cannot be parsed.

    Attributes:
        message: Description of the parse error.
        scanner_format: Scanner format that failed.
        raw_output: First 500 chars of the problematic output.
    """

    def __init__(
        self,
        message: str,
        scanner_format: str = "unknown",
        raw_output: str | None = None,
    ) -> None:
        self.message = message
        self.scanner_format = scanner_format
        self.raw_output = raw_output[:500] if raw_output else None
        super().__init__(f"{scanner_format}: {message}")


def _load_json(output: str, scanner_format: str) -> Any:
    try:
        return json.loads(output)
    except json.JSONDecodeError as e:
        logger.error("scan_output_parse_failed", scanner=scanner_format, error=str(e))
        raise ScanParseError(
            f"Invalid {scanner_format} JSON: {e}",
            scanner_format=scanner_format,
            raw_output=output,
        ) from e


def _require_key(data: Any, key: str, scanner_format: str, output: str) -> None:
    if not isinstance(data, dict) or key not in data:
        raise ScanParseError(
            f"Missing '{key}' key in {scanner_format} output",
            scanner_format=scanner_format,
            raw_output=output,
        )


def parse_trivy_output(output: str) -> list[Finding]:
    """Parse Trivy JSON output.

    A missing ``FixedVersion`` marks the finding as unfixed. Severities
    Trivy reports as ``UNKNOWN`` are skipped.

    Raises:
        ScanParseError: If output is not valid Trivy JSON.
    """
    data = _load_json(output, "trivy")
    _require_key(data, "Results", "trivy", output)

    findings: list[Finding] = []
    seen: set[str] = set()
    skipped = 0
    for result in data.get("Results") or []:
        for vuln in result.get("Vulnerabilities") or []:
            cve_id = vuln.get("VulnerabilityID", "UNKNOWN")
            if cve_id in seen:
                continue
            seen.add(cve_id)

            severity = Severity.parse(vuln.get("Severity", "UNKNOWN"))
            if severity is None:
                skipped += 1
                continue
            fixed_version = vuln.get("FixedVersion")
            findings.append(
                Finding(
                    id=cve_id,
                    severity=severity,
                    scanner="trivy",
                    package=vuln.get("PkgName"),
                    title=vuln.get("Title"),
                    fixed=bool(fixed_version and fixed_version.strip()),
                )
            )

    logger.debug("trivy_parse_complete", findings=len(findings), skipped=skipped)
    return findings


def parse_grype_output(output: str) -> list[Finding]:
    """Parse Grype JSON output.

    Grype fix states are ``fixed``, ``not-fixed``, ``wont-fix`` and
    ``unknown``; only ``fixed`` counts as having a fix.

    Raises:
        ScanParseError: If output is not valid Grype JSON.
    """
    data = _load_json(output, "grype")
    _require_key(data, "matches", "grype", output)

    findings: list[Finding] = []
    seen: set[str] = set()
    for match in data.get("matches") or []:
        vulnerability = match.get("vulnerability", {})
        cve_id = vulnerability.get("id", "UNKNOWN")
        if cve_id in seen:
            continue
        seen.add(cve_id)

        severity = Severity.parse(vulnerability.get("severity", "UNKNOWN"))
        if severity is None:
            continue
        artifact = match.get("artifact", {})
        findings.append(
            Finding(
                id=cve_id,
                severity=severity,
                scanner="grype",
                package=artifact.get("name"),
                title=vulnerability.get("description"),
                fixed=vulnerability.get("fix", {}).get("state", "unknown") == "fixed",
            )
        )

    logger.debug("grype_parse_complete", findings=len(findings))
    return findings


def _dependency_check_severity(vuln: dict[str, Any]) -> Severity | None:
    # CVSS v3 score wins over the textual label, then CVSS v2
    for key, score_key in (("cvssv3", "baseScore"), ("cvssv2", "score")):
        score = (vuln.get(key) or {}).get(score_key)
        if isinstance(score, (int, float)):
            return Severity.from_cvss(float(score))
    return Severity.parse(str(vuln.get("severity", "UNKNOWN")))


def parse_dependency_check_report(output: str) -> list[Finding]:
    """Parse an OWASP Dependency-Check JSON report.

    Severity comes from the CVSS base score (v3, else v2) mapped onto the
    qualitative scale. Dependency-Check does not report fix availability,
    so every finding counts as fixed.

    Raises:
        ScanParseError: If the report is not valid Dependency-Check JSON.
    """
    data = _load_json(output, "dependency-check")
    _require_key(data, "dependencies", "dependency-check", output)

    findings: list[Finding] = []
    seen: set[str] = set()
    for dependency in data.get("dependencies") or []:
        for vuln in dependency.get("vulnerabilities") or []:
            vuln_id = vuln.get("name", "UNKNOWN")
            if vuln_id in seen:
                continue
            seen.add(vuln_id)

            severity = _dependency_check_severity(vuln)
            if severity is None:
                continue
            description = vuln.get("description") or ""
            findings.append(
                Finding(
                    id=vuln_id,
                    severity=severity,
                    scanner="dependency-check",
                    package=dependency.get("fileName"),
                    title=description.splitlines()[0][:200] if description else None,
                )
            )

    logger.debug("dependency_check_parse_complete", findings=len(findings))
    return findings


_SONAR_CONDITION_SEVERITY = {"ERROR": Severity.CRITICAL, "WARN": Severity.MEDIUM}


def parse_sonarqube_quality_gate(output: str) -> list[Finding]:
    """Parse a SonarQube quality gate status response.

    Each failing condition becomes a finding ``sonarqube:<metric>``: ``ERROR``
    conditions are CRITICAL, ``WARN`` conditions MEDIUM. A failed gate with
    no condition details yields a single ``sonarqube:quality-gate`` finding.

    Raises:
        ScanParseError: If the response is not a quality gate status.
    """
    data = _load_json(output, "sonarqube")
    _require_key(data, "projectStatus", "sonarqube", output)

    status_block = data["projectStatus"] or {}
    findings: list[Finding] = []
    for condition in status_block.get("conditions") or []:
        severity = _SONAR_CONDITION_SEVERITY.get(str(condition.get("status", "")).upper())
        if severity is None:
            continue
        metric = condition.get("metricKey", "unknown")
        findings.append(
            Finding(
                id=f"sonarqube:{metric}",
                severity=severity,
                scanner="sonarqube",
                title=(
                    f"{metric} {condition.get('comparator', '')} "
                    f"{condition.get('errorThreshold', '')} "
                    f"(actual: {condition.get('actualValue', 'n/a')})"
                ),
            )
        )

    gate_status = str(status_block.get("status", "NONE")).upper()
    if gate_status == "ERROR" and not any(f.severity is Severity.CRITICAL for f in findings):
        findings.append(
            Finding(
                id="sonarqube:quality-gate",
                severity=Severity.CRITICAL,
                scanner="sonarqube",
                title="Quality gate failed",
            )
        )

    logger.debug("sonarqube_parse_complete", gate_status=gate_status, findings=len(findings))
    return findings


__all__ = [
    "ScanParseError",
    "parse_dependency_check_report",
    "parse_grype_output",
    "parse_sonarqube_quality_gate",
    "parse_trivy_output",
]
