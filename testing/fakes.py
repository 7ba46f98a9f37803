"""In-memory collaborators for pipeline tests.

The fakes implement the capability interfaces the pipeline depends on
(builder, image builder, scanner) so state machine tests run without
docker, scanners or a cluster.
"""

from __future__ import annotations

import hashlib
import time
from collections.abc import Callable

from keel_core.errors import ScannerError
from keel_core.schemas.artifacts import BuildArtifact, Image
from keel_core.schemas.config import RetryConfig
from keel_core.schemas.pipeline import RunContext
from keel_core.schemas.scan import Finding, ScanTargetKind, Severity

REPOSITORY = "registry.example.com/spring-app"
KEY_PASSWORD = b"test-password"

NO_WAIT_RETRY = RetryConfig(max_attempts=3, initial_delay_ms=0, jitter=False)


def digest_of(text: str) -> str:
    """sha256 digest string of ``text``."""
    return f"sha256:{hashlib.sha256(text.encode('utf-8')).hexdigest()}"


def finding(cve_id: str, severity: Severity, scanner: str = "trivy", fixed: bool = True) -> Finding:
    return Finding(id=cve_id, severity=severity, scanner=scanner, package="openssl", fixed=fixed)


class FakeBuilder:
    """Builder returning a deterministic artifact per commit and build id."""

    def __init__(
        self,
        error: Exception | None = None,
        delay: float = 0.0,
        on_build: Callable[[RunContext], None] | None = None,
    ) -> None:
        self.error = error
        self.delay = delay
        self.on_build = on_build
        self.calls: list[RunContext] = []

    def build(self, context: RunContext, timeout_seconds: float | None = None) -> BuildArtifact:
        self.calls.append(context)
        if self.on_build is not None:
            self.on_build(context)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return BuildArtifact(
            source_commit_id=context.commit_id,
            build_id=context.build_id,
            artifact_digest=digest_of(f"{context.commit_id}/{context.build_id}"),
            artifact_path="target/app.jar",
        )


class FakeImageBuilder:
    """Image builder whose local image id depends on commit and build id."""

    def __init__(self) -> None:
        self.calls: list[BuildArtifact] = []

    def assemble(
        self,
        context: RunContext,
        artifact: BuildArtifact,
        timeout_seconds: float | None = None,
    ) -> Image:
        self.calls.append(artifact)
        return Image(
            repository=context.repository,
            tag=context.image_tag,
            local_id=digest_of(f"image/{context.commit_id}/{context.build_id}"),
        )


class FakeScanner:
    """Scanner returning canned findings, or raising queued errors first."""

    def __init__(
        self,
        name: str = "trivy",
        target_kind: ScanTargetKind = ScanTargetKind.IMAGE,
        findings: list[Finding] | None = None,
        errors: list[ScannerError] | None = None,
    ) -> None:
        self.name = name
        self.target_kind = target_kind
        self.findings = findings or []
        self.errors = list(errors or [])
        self.targets: list[str] = []

    def scan(self, target: str, timeout_seconds: float | None = None) -> list[Finding]:
        self.targets.append(target)
        if self.errors:
            raise self.errors.pop(0)
        return list(self.findings)


__all__ = [
    "KEY_PASSWORD",
    "NO_WAIT_RETRY",
    "REPOSITORY",
    "FakeBuilder",
    "FakeImageBuilder",
    "FakeScanner",
    "digest_of",
    "finding",
]
