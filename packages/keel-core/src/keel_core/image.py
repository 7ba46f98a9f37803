"""Container image assembly.

Builds the Dockerfile in the source tree into an image tagged by build id.
The build id is also passed as the ``VERSION`` build argument so the
application can report it at runtime.
"""

from __future__ import annotations

import subprocess
from typing import Protocol

import structlog

from keel_core.errors import BuildError
from keel_core.schemas.artifacts import BuildArtifact, Image
from keel_core.schemas.config import BuildConfig
from keel_core.schemas.pipeline import RunContext
from keel_core.telemetry.sanitization import sanitize_error_message

logger = structlog.get_logger(__name__)


class ImageBuilder(Protocol):
    """Capability interface for turning a build artifact into an image."""

    def assemble(
        self,
        context: RunContext,
        artifact: BuildArtifact,
        timeout_seconds: float | None = None,
    ) -> Image: ...


class ImageAssembler:
    """Assembles images with the docker CLI."""

    def __init__(self, config: BuildConfig, docker: str = "docker") -> None:
        self.config = config
        self.docker = docker

    def build_command(self, context: RunContext) -> list[str]:
        """``docker build`` invocation for ``context``."""
        reference = f"{context.repository}:{context.image_tag}"
        cmd = [
            self.docker,
            "build",
            "-f",
            self.config.dockerfile,
            "-t",
            reference,
            "--build-arg",
            f"VERSION={context.image_tag}",
        ]
        for key, value in sorted(self.config.build_args.items()):
            if key == "VERSION":
                continue
            cmd.extend(["--build-arg", f"{key}={value}"])
        cmd.append(".")
        return cmd

    def assemble(
        self,
        context: RunContext,
        artifact: BuildArtifact,
        timeout_seconds: float | None = None,
    ) -> Image:
        """Build the image for ``artifact``.

        Raises:
            BuildError: If docker is missing, the build fails or times out.
        """
        image = Image(repository=context.repository, tag=context.image_tag)
        log = logger.bind(run_id=context.run_id, image=image.reference)
        log.info("image_build_started", artifact_digest=artifact.artifact_digest)

        self._run(self.build_command(context), context, "docker build", timeout_seconds)
        inspect = self._run(
            [self.docker, "image", "inspect", "--format", "{{.Id}}", image.reference],
            context,
            "docker image inspect",
            timeout_seconds,
        )
        local_id = inspect.stdout.strip() or None

        log.info("image_build_completed", local_id=local_id)
        return Image(repository=image.repository, tag=image.tag, local_id=local_id)

    def _run(
        self,
        cmd: list[str],
        context: RunContext,
        step: str,
        timeout_seconds: float | None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(
                cmd,
                cwd=context.source_dir,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                check=False,
            )
        except FileNotFoundError as e:
            raise BuildError(step, f"{self.docker} not found in PATH") from e
        except subprocess.TimeoutExpired as e:
            raise BuildError(step, f"timed out after {timeout_seconds}s") from e

        if result.returncode != 0:
            reason = sanitize_error_message((result.stderr or result.stdout or "").strip(), 2000)
            raise BuildError(step, reason or "no output", returncode=result.returncode)
        return result


__all__ = ["ImageAssembler", "ImageBuilder"]
