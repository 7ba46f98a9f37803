"""Artifact builder.

Runs the configured build command in the source tree and hashes the build
outputs into a content-addressed ``BuildArtifact``. Build failures are not
retried: they are surfaced to the operator and the source has to change.

Example:
    >>> builder = ArtifactBuilder(BuildConfig())
    >>> artifact = builder.build(context, timeout_seconds=1800)
    >>> artifact.artifact_digest
    'sha256:...'
"""

from __future__ import annotations

import hashlib
import subprocess
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

import structlog

from keel_core.errors import BuildError
from keel_core.schemas.artifacts import BuildArtifact
from keel_core.schemas.config import BuildConfig
from keel_core.schemas.pipeline import RunContext
from keel_core.telemetry.sanitization import sanitize_error_message

logger = structlog.get_logger(__name__)

_CHUNK_SIZE = 1024 * 1024


class Builder(Protocol):
    """Capability interface for the build step."""

    def build(self, context: RunContext, timeout_seconds: float | None = None) -> BuildArtifact: ...


def compute_artifact_digest(paths: Iterable[Path], root: Path) -> str:
    """sha256 over the relative path and content of each file, in sorted order.

    The digest depends only on file names relative to ``root`` and file
    contents, so identical outputs in different checkouts hash the same.
    """
    hasher = hashlib.sha256()
    for path in sorted(paths, key=lambda p: p.relative_to(root).as_posix()):
        hasher.update(path.relative_to(root).as_posix().encode("utf-8"))
        hasher.update(b"\0")
        with path.open("rb") as f:
            while chunk := f.read(_CHUNK_SIZE):
                hasher.update(chunk)
        hasher.update(b"\0")
    return f"sha256:{hasher.hexdigest()}"


class ArtifactBuilder:
    """Runs the build command and produces a ``BuildArtifact``."""

    def __init__(self, config: BuildConfig) -> None:
        self.config = config

    def build(self, context: RunContext, timeout_seconds: float | None = None) -> BuildArtifact:
        """Build the source tree of ``context``.

        Raises:
            BuildError: On a missing tool, non-zero exit, timeout, or when no
                output matches the artifact glob.
        """
        source_dir = context.source_dir
        step = " ".join(self.config.command)
        log = logger.bind(run_id=context.run_id, build_id=context.build_id, step=step)
        log.info("build_started", source_dir=str(source_dir))

        try:
            result = subprocess.run(
                self.config.command,
                cwd=source_dir,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                check=False,
            )
        except FileNotFoundError as e:
            raise BuildError(step, f"build tool not found: {e.filename or self.config.command[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise BuildError(step, f"timed out after {timeout_seconds}s") from e

        if result.returncode != 0:
            tail = (result.stderr or result.stdout or "").strip()[-2000:]
            log.error("build_failed", returncode=result.returncode)
            raise BuildError(step, sanitize_error_message(tail, 2000), returncode=result.returncode)

        outputs = [p for p in source_dir.glob(self.config.artifact_glob) if p.is_file()]
        if not outputs:
            raise BuildError(step, f"no build output matched '{self.config.artifact_glob}'")

        digest = compute_artifact_digest(outputs, source_dir)
        primary = sorted(outputs)[0].relative_to(source_dir).as_posix()
        log.info("build_completed", artifact_digest=digest, outputs=len(outputs))

        return BuildArtifact(
            source_commit_id=context.commit_id,
            build_id=context.build_id,
            artifact_digest=digest,
            artifact_path=primary,
        )


__all__ = ["ArtifactBuilder", "Builder", "compute_artifact_digest"]
