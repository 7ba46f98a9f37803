"""Scanner adapters.

Each adapter invokes one external scanner and returns its findings:

- ``TrivyScanner``: image vulnerabilities via ``trivy image``
- ``GrypeScanner``: image vulnerabilities via ``grype``
- ``DependencyCheckScanner``: dependency CVEs in the source tree via OWASP
  Dependency-Check
- ``SonarQubeScanner``: static analysis via ``sonar-scanner`` plus the
  quality gate status polled from the SonarQube web API

Adapters raise ``ScannerUnavailableError`` for infrastructure problems worth
retrying (network, vulnerability DB download, server busy) and
``ScannerInvocationError`` when the scanner is missing, fails, or produces
unparseable output.
"""

from __future__ import annotations

import os
import subprocess
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol, runtime_checkable

import httpx
import structlog

from keel_core.errors import ScannerInvocationError, ScannerUnavailableError
from keel_core.scanning.parsers import (
    ScanParseError,
    parse_dependency_check_report,
    parse_grype_output,
    parse_sonarqube_quality_gate,
    parse_trivy_output,
)
from keel_core.schemas.config import ScannerConfig
from keel_core.schemas.scan import Finding, ScanTargetKind
from keel_core.secrets import SecretStore, scoped_secret
from keel_core.telemetry.sanitization import sanitize_error_message

logger = structlog.get_logger(__name__)

# Output fragments that indicate scanner infrastructure trouble, not a scan failure
_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "temporary failure",
    "toomanyrequests",
    "too many requests",
    "failed to download",
    "db download",
    "service unavailable",
)


@runtime_checkable
class Scanner(Protocol):
    """Capability interface for a vulnerability or quality scanner."""

    name: str
    target_kind: ScanTargetKind

    def scan(self, target: str, timeout_seconds: float | None = None) -> list[Finding]:
        """Scan ``target`` (a source path or image reference).

        Raises:
            ScannerUnavailableError: On transient infrastructure errors.
            ScannerInvocationError: If the scanner failed or its output is unusable.
        """
        ...


class _CommandScanner:
    """Shared subprocess handling for CLI scanners."""

    name = "scanner"
    default_binary = "scanner"
    target_kind = ScanTargetKind.IMAGE

    def __init__(self, config: ScannerConfig | None = None) -> None:
        self.config = config or ScannerConfig(kind=self.name)  # type: ignore[arg-type]
        self.binary = self.config.binary or self.default_binary

    def _run(
        self,
        cmd: list[str],
        timeout_seconds: float | None,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        ok_codes: tuple[int, ...] = (0,),
    ) -> subprocess.CompletedProcess[str]:
        logger.debug("scanner_invoked", scanner=self.name, binary=self.binary)
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                check=False,
            )
        except FileNotFoundError as e:
            raise ScannerInvocationError(self.name, f"{self.binary} not found in PATH") from e
        except subprocess.TimeoutExpired as e:
            raise ScannerUnavailableError(self.name, f"timed out after {timeout_seconds}s") from e

        if result.returncode not in ok_codes:
            detail = (result.stderr or result.stdout or "").strip()
            reason = sanitize_error_message(f"exit {result.returncode}: {detail}")
            if any(marker in detail.lower() for marker in _TRANSIENT_MARKERS):
                raise ScannerUnavailableError(self.name, reason)
            raise ScannerInvocationError(self.name, reason)
        return result

    def _parse(self, parser: Callable[[str], list[Finding]], output: str) -> list[Finding]:
        try:
            return parser(output)
        except ScanParseError as e:
            raise ScannerInvocationError(self.name, f"unparseable output: {e.message}") from e


class TrivyScanner(_CommandScanner):
    """Image scanning with Trivy."""

    name = "trivy"
    default_binary = "trivy"
    target_kind = ScanTargetKind.IMAGE

    def scan(self, target: str, timeout_seconds: float | None = None) -> list[Finding]:
        cmd = [self.binary, "image", "--format", "json", "--quiet", *self.config.args, target]
        result = self._run(cmd, timeout_seconds)
        return self._parse(parse_trivy_output, result.stdout)


class GrypeScanner(_CommandScanner):
    """Image scanning with Grype."""

    name = "grype"
    default_binary = "grype"
    target_kind = ScanTargetKind.IMAGE

    def scan(self, target: str, timeout_seconds: float | None = None) -> list[Finding]:
        cmd = [self.binary, target, "-o", "json", "--quiet", *self.config.args]
        result = self._run(cmd, timeout_seconds)
        return self._parse(parse_grype_output, result.stdout)


class DependencyCheckScanner(_CommandScanner):
    """Dependency CVE scanning of the source tree with OWASP Dependency-Check."""

    name = "dependency-check"
    default_binary = "dependency-check"
    target_kind = ScanTargetKind.SOURCE

    def scan(self, target: str, timeout_seconds: float | None = None) -> list[Finding]:
        with tempfile.TemporaryDirectory(prefix="keel-depcheck-") as out_dir:
            cmd = [
                self.binary,
                "--scan",
                target,
                "--format",
                "JSON",
                "--out",
                out_dir,
                "--project",
                Path(target).resolve().name or "source",
                *self.config.args,
            ]
            self._run(cmd, timeout_seconds)
            report = Path(out_dir) / "dependency-check-report.json"
            if not report.exists():
                raise ScannerInvocationError(self.name, "no dependency-check-report.json produced")
            return self._parse(parse_dependency_check_report, report.read_text(encoding="utf-8"))


def read_report_task(path: Path) -> dict[str, str]:
    """Read the ``key=value`` report-task file written by sonar-scanner."""
    values: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        if "=" in line and not line.lstrip().startswith("#"):
            key, _, value = line.partition("=")
            values[key.strip()] = value.strip()
    return values


class SonarQubeScanner(_CommandScanner):
    """Static analysis with sonar-scanner and a SonarQube quality gate.

    The analysis is submitted by ``sonar-scanner``; the compute-engine task
    is then polled until it completes and the quality gate status of the
    resulting analysis is parsed into findings.
    """

    name = "sonarqube"
    default_binary = "sonar-scanner"
    target_kind = ScanTargetKind.SOURCE

    def __init__(
        self,
        config: ScannerConfig,
        secrets: SecretStore,
        client: httpx.Client | None = None,
        poll_interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(config)
        if not config.host_url or not config.project_key:
            raise ValueError("SonarQubeScanner requires host_url and project_key")
        self.host_url = config.host_url.rstrip("/")
        self.project_key = config.project_key
        self._secrets = secrets
        self._client = client
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    def scan(self, target: str, timeout_seconds: float | None = None) -> list[Finding]:
        source = Path(target)
        with scoped_secret(self._secrets, self.config.token_secret) as token_buf:
            token = token_buf.decode("utf-8")
            env = {**os.environ, "SONAR_TOKEN": token}
            cmd = [
                self.binary,
                f"-Dsonar.projectKey={self.project_key}",
                f"-Dsonar.host.url={self.host_url}",
                *self.config.args,
            ]
            self._run(cmd, timeout_seconds, cwd=source, env=env)

            task_file = source / ".scannerwork" / "report-task.txt"
            if not task_file.exists():
                raise ScannerInvocationError(self.name, f"{task_file} not written by sonar-scanner")
            task_id = read_report_task(task_file).get("ceTaskId")
            if not task_id:
                raise ScannerInvocationError(self.name, "report-task.txt has no ceTaskId")

            client = self._client or httpx.Client(base_url=self.host_url, timeout=30.0)
            try:
                analysis_id = self._wait_for_analysis(client, token, task_id)
                response = self._get(
                    client,
                    token,
                    "/api/qualitygates/project_status",
                    {"analysisId": analysis_id},
                )
            finally:
                if self._client is None:
                    client.close()

        return self._parse(parse_sonarqube_quality_gate, response.text)

    def _wait_for_analysis(self, client: httpx.Client, token: str, task_id: str) -> str:
        deadline = self._clock() + self.config.poll_timeout_seconds
        while True:
            response = self._get(client, token, "/api/ce/task", {"id": task_id})
            task = response.json().get("task", {})
            status = task.get("status")
            if status == "SUCCESS":
                analysis_id = task.get("analysisId")
                if not analysis_id:
                    raise ScannerInvocationError(self.name, f"task {task_id} has no analysisId")
                return str(analysis_id)
            if status in ("FAILED", "CANCELED"):
                raise ScannerInvocationError(self.name, f"analysis task {task_id} ended {status}")
            if self._clock() >= deadline:
                raise ScannerUnavailableError(
                    self.name,
                    f"analysis task {task_id} still {status} after "
                    f"{self.config.poll_timeout_seconds:.0f}s",
                )
            logger.debug("sonarqube_task_pending", task_id=task_id, status=status)
            self._sleep(self._poll_interval)

    def _get(
        self,
        client: httpx.Client,
        token: str,
        path: str,
        params: dict[str, str],
    ) -> httpx.Response:
        try:
            response = client.get(path, params=params, auth=(token, ""))
        except httpx.TransportError as e:
            raise ScannerUnavailableError(self.name, f"{path}: {type(e).__name__}") from e
        if response.status_code >= 500 or response.status_code == 429:
            raise ScannerUnavailableError(self.name, f"{path}: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ScannerInvocationError(self.name, f"{path}: HTTP {response.status_code}")
        return response


def build_scanners(configs: list[ScannerConfig], secrets: SecretStore) -> list[Scanner]:
    """Instantiate scanners from configuration, in configured order."""
    scanners: list[Scanner] = []
    for config in configs:
        if config.kind == "trivy":
            scanners.append(TrivyScanner(config))
        elif config.kind == "grype":
            scanners.append(GrypeScanner(config))
        elif config.kind == "dependency-check":
            scanners.append(DependencyCheckScanner(config))
        else:
            scanners.append(SonarQubeScanner(config, secrets))
    return scanners


__all__ = [
    "DependencyCheckScanner",
    "GrypeScanner",
    "Scanner",
    "SonarQubeScanner",
    "TrivyScanner",
    "build_scanners",
    "read_report_task",
]
