"""Scan gate evaluation.

Runs every configured scanner for a target, aggregates the findings and
decides whether the run may proceed:

    passed = no scanner errors
             and (not fail_on_threshold or no finding >= severity_threshold)

The gate fails closed. A scanner that cannot produce a result (missing
binary, non-zero exit, unparseable output, or transient errors that outlast
the retry budget) fails the gate even when no findings were reported.

Example:
    >>> gate = ScanGate(ScanGateConfig(), build_scanners(config.scanners, secrets))
    >>> result = gate.evaluate("registry/app:42", ScanTargetKind.IMAGE)
    >>> gate.require_passed(result)
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable, Sequence
from pathlib import Path

import structlog

from keel_core.errors import ScanFailure, ScannerError, ScannerUnavailableError
from keel_core.resilience import RetryPolicy
from keel_core.scanning.scanners import Scanner
from keel_core.schemas.config import ScanGateConfig
from keel_core.schemas.scan import Finding, ScanResult, ScanTargetKind

logger = structlog.get_logger(__name__)

_REPORT_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def merge_findings(findings: Sequence[Finding]) -> list[Finding]:
    """Deduplicate findings by ID across scanners, keeping the most severe."""
    merged: dict[str, Finding] = {}
    for finding in findings:
        current = merged.get(finding.id)
        if current is None or finding.severity > current.severity:
            merged[finding.id] = finding
    return list(merged.values())


class ScanGate:
    """Aggregates scanner findings and enforces the severity threshold."""

    def __init__(
        self,
        config: ScanGateConfig,
        scanners: Sequence[Scanner],
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.scanners = list(scanners)
        self._retry = RetryPolicy(
            config.retry,
            retryable_exceptions=(ScannerUnavailableError,),
            sleep=sleep,
        )

    def scanners_for(self, kind: ScanTargetKind) -> list[Scanner]:
        return [s for s in self.scanners if s.target_kind is kind]

    def evaluate(
        self,
        target: str,
        kind: ScanTargetKind,
        timeout_seconds: float | None = None,
    ) -> ScanResult:
        """Scan ``target`` with every scanner for ``kind`` and apply the threshold."""
        log = logger.bind(target=target, target_kind=kind.value)
        scanners = self.scanners_for(kind)

        collected: list[Finding] = []
        errors: list[str] = []
        ran: list[str] = []
        for scanner in scanners:
            ran.append(scanner.name)
            try:
                collected.extend(self._retry.call(scanner.scan, target, timeout_seconds))
            except ScannerError as e:
                log.error("scanner_failed", scanner=scanner.name, error=str(e))
                errors.append(str(e))

        findings = merge_findings(collected)
        ignored = 0
        if self.config.ignore_unfixed:
            kept = [f for f in findings if f.fixed]
            ignored = len(findings) - len(kept)
            findings = kept

        threshold = self.config.severity_threshold
        blocking = [f for f in findings if f.severity >= threshold]
        passed = not errors and (not self.config.fail_on_threshold or not blocking)

        result = ScanResult(
            target=target,
            severity_threshold=threshold,
            findings=findings,
            passed=passed,
            scanners=ran,
            errors=errors,
            ignored_unfixed=ignored,
        )
        if self.config.report_dir is not None:
            result = self._write_report(result, kind)

        log_method = log.info if passed else log.warning
        log_method(
            "scan_gate_evaluated",
            passed=passed,
            scanners=ran,
            threshold=threshold.value,
            blocking=len(blocking),
            errors=len(errors),
            ignored_unfixed=ignored,
            **{f"count_{k.lower()}": v for k, v in result.counts_by_severity().items()},
        )
        return result

    def require_passed(self, result: ScanResult) -> None:
        """Raise ScanFailure unless ``result`` passed."""
        if result.passed:
            return
        if result.errors:
            reason = f"{len(result.errors)} scanner error(s): {'; '.join(result.errors)}"
        else:
            reason = (
                f"{len(result.blocking_ids)} finding(s) at or above "
                f"{result.severity_threshold.value}"
            )
        raise ScanFailure(result.target, reason, blocking=result.blocking_ids)

    def _write_report(self, result: ScanResult, kind: ScanTargetKind) -> ScanResult:
        report_dir = Path(self.config.report_dir)  # type: ignore[arg-type]
        report_dir.mkdir(parents=True, exist_ok=True)
        name = _REPORT_NAME_UNSAFE.sub("_", result.target).strip("_") or "target"
        path = report_dir / f"scan-{kind.value}-{name}.json"
        result = result.model_copy(update={"report_path": str(path)})
        path.write_text(result.model_dump_json(indent=2), encoding="utf-8")
        logger.debug("scan_report_written", path=str(path))
        return result


__all__ = ["ScanGate", "merge_findings"]
