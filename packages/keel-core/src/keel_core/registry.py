"""Image registry access.

Images are addressed by ``{repository, tag, digest}``. Once a tag has been
pushed its digest is immutable: pushing different content under the same
tag raises ``ImmutabilityViolationError``, while re-pushing identical content
is a no-op returning the same digest.

Registry failures raise ``RegistryError``, which callers retry with backoff
(see ``keel_core.resilience``).

Example:
    >>> registry = DockerRegistry(RegistryConfig(repository="123.dkr.ecr.eu-west-1.amazonaws.com/app",
    ...                                          ecr_region="eu-west-1"))
    >>> pushed = registry.push(image)
    >>> pushed.digest
    'sha256:...'
"""

from __future__ import annotations

import hashlib
import json
import re
import subprocess
import threading
from typing import Protocol, runtime_checkable

import structlog

from keel_core.errors import ImageNotFoundError, ImmutabilityViolationError, RegistryError
from keel_core.schemas.artifacts import DIGEST_PATTERN, Image
from keel_core.schemas.config import RegistryConfig
from keel_core.telemetry.sanitization import sanitize_error_message

logger = structlog.get_logger(__name__)

_PUSH_DIGEST = re.compile(r"digest: (sha256:[0-9a-f]{64})")
_NOT_FOUND_MARKERS = ("not found", "manifest unknown", "name unknown", "no such manifest")
_IMMUTABLE_MARKERS = ("immutable", "already exists")
_AUTH_MARKERS = ("unauthorized", "authorization token has expired", "no basic auth credentials")


def _matches(output: str | None, markers: tuple[str, ...]) -> bool:
    text = (output or "").lower()
    return any(marker in text for marker in markers)


@runtime_checkable
class Registry(Protocol):
    """Capability interface for an image registry."""

    def push(self, image: Image) -> Image:
        """Push ``image`` and return it bound to the registry digest."""
        ...

    def resolve(self, repository: str, tag: str) -> Image:
        """Resolve a tag to its digest.

        Raises:
            ImageNotFoundError: If the tag does not exist.
        """
        ...

    def exists(self, image: Image) -> bool:
        """Whether ``image`` (by digest when set) is present in the registry."""
        ...


class DockerRegistry:
    """Registry driven through the docker CLI, with optional ECR login."""

    def __init__(
        self,
        config: RegistryConfig,
        docker: str = "docker",
        aws: str = "aws",
        timeout_seconds: float | None = None,
    ) -> None:
        self.config = config
        self.docker = docker
        self.aws = aws
        self.timeout_seconds = timeout_seconds
        self._logged_in = False

    def login(self) -> None:
        """Log docker in to ECR when ``ecr_region`` is configured.

        The login is cached per instance; ``_run_registry_command`` drops the
        cache when the registry rejects the token (ECR tokens expire after 12h).

        Raises:
            RegistryError: If the login fails.
        """
        if self.config.ecr_region is None or self._logged_in:
            return
        host = self.config.host
        password = self._run(
            [self.aws, "ecr", "get-login-password", "--region", self.config.ecr_region],
            "ecr get-login-password",
        ).stdout.strip()
        self._run(
            [self.docker, "login", "--username", "AWS", "--password-stdin", host],
            "docker login",
            input_text=password,
        )
        self._logged_in = True
        logger.info("registry_login_succeeded", registry=host)

    def push(self, image: Image) -> Image:
        """Push the image tag.

        Raises:
            ImmutabilityViolationError: If the tag exists with other content.
            RegistryError: If the push fails.
        """
        self.login()
        log = logger.bind(image=image.reference)

        existing = self._try_resolve(image.repository, image.tag)
        if existing is not None and existing.digest is not None:
            if existing.digest in self._local_digests(image):
                log.info("image_already_pushed", digest=existing.digest)
                return image.with_digest(existing.digest)
            raise ImmutabilityViolationError(image.reference, existing.digest)

        result = self._run_registry_command([self.docker, "push", image.reference], "docker push")
        if result.returncode != 0:
            if _matches(result.stderr, _IMMUTABLE_MARKERS):
                current = self.resolve(image.repository, image.tag)
                raise ImmutabilityViolationError(image.reference, current.digest or "unknown")
            raise self._failure("docker push", result)

        match = _PUSH_DIGEST.search(result.stdout)
        if match is None:
            raise RegistryError(image.repository, "push output did not report a digest")
        digest = match.group(1)
        log.info("image_pushed", digest=digest)
        return image.with_digest(digest)

    def resolve(self, repository: str, tag: str) -> Image:
        resolved = self._try_resolve(repository, tag)
        if resolved is None:
            raise ImageNotFoundError(repository, tag)
        return resolved

    def exists(self, image: Image) -> bool:
        resolved = self._try_resolve(image.repository, image.tag)
        if resolved is None:
            return False
        return image.digest is None or resolved.digest == image.digest

    def _try_resolve(self, repository: str, tag: str) -> Image | None:
        reference = f"{repository}:{tag}"
        result = self._run_registry_command(
            [self.docker, "buildx", "imagetools", "inspect", reference, "--format", "{{json .Manifest}}"],
            "imagetools inspect",
        )
        if result.returncode != 0:
            # Only the tool's own error output decides "tag absent"
            if _matches(result.stderr, _NOT_FOUND_MARKERS):
                return None
            raise self._failure("imagetools inspect", result)

        try:
            manifest = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise RegistryError(repository, f"unreadable manifest for {reference}") from e
        digest = manifest.get("digest") if isinstance(manifest, dict) else None
        if not isinstance(digest, str) or not DIGEST_PATTERN.match(digest):
            raise RegistryError(repository, f"manifest for {reference} has no digest")
        return Image(repository=repository, tag=tag, digest=digest)

    def _local_digests(self, image: Image) -> set[str]:
        """Manifest digests the local image is known under for its repository."""
        try:
            result = self._run(
                [self.docker, "image", "inspect", "--format", "{{json .RepoDigests}}", image.reference],
                "docker image inspect",
            )
            repo_digests = json.loads(result.stdout) or []
        except (RegistryError, json.JSONDecodeError):
            return set()
        prefix = f"{image.repository}@"
        return {d[len(prefix) :] for d in repo_digests if isinstance(d, str) and d.startswith(prefix)}

    def _run_registry_command(self, cmd: list[str], step: str) -> subprocess.CompletedProcess[str]:
        """Run a command against the registry, logging in again once on an auth failure."""
        result = self._exec(cmd, step)
        if result.returncode != 0 and self.config.ecr_region is not None and _matches(result.stderr, _AUTH_MARKERS):
            logger.info("registry_login_expired", registry=self.config.host, step=step)
            self._logged_in = False
            self.login()
            result = self._exec(cmd, step)
        return result

    def _failure(self, step: str, result: subprocess.CompletedProcess[str]) -> RegistryError:
        reason = sanitize_error_message((result.stderr or result.stdout or "").strip())
        return RegistryError(self.config.repository, f"{step} failed: {reason}")

    def _exec(
        self,
        cmd: list[str],
        step: str,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(
                cmd,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as e:
            raise RegistryError(self.config.repository, f"{cmd[0]} not found in PATH") from e
        except subprocess.TimeoutExpired as e:
            raise RegistryError(self.config.repository, f"{step} timed out") from e
        return result

    def _run(
        self,
        cmd: list[str],
        step: str,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        result = self._exec(cmd, step, input_text)
        if result.returncode != 0:
            raise self._failure(step, result)
        return result


class InMemoryRegistry:
    """Registry kept in process memory, for dry runs and tests.

    The digest of a pushed image is derived from its local image id (or its
    reference when it has none), so identical content yields identical digests.
    """

    def __init__(self) -> None:
        self._tags: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    @staticmethod
    def content_digest(image: Image) -> str:
        """Digest the registry assigns to ``image``."""
        seed = image.local_id or image.reference
        return f"sha256:{hashlib.sha256(seed.encode('utf-8')).hexdigest()}"

    def push(self, image: Image) -> Image:
        digest = image.digest or self.content_digest(image)
        key = (image.repository, image.tag)
        with self._lock:
            existing = self._tags.get(key)
            if existing is not None and existing != digest:
                raise ImmutabilityViolationError(image.reference, existing)
            self._tags[key] = digest
        logger.info("image_pushed", image=image.reference, digest=digest, registry="memory")
        return image.with_digest(digest)

    def resolve(self, repository: str, tag: str) -> Image:
        with self._lock:
            digest = self._tags.get((repository, tag))
        if digest is None:
            raise ImageNotFoundError(repository, tag)
        return Image(repository=repository, tag=tag, digest=digest)

    def exists(self, image: Image) -> bool:
        with self._lock:
            digest = self._tags.get((image.repository, image.tag))
        if digest is None:
            return False
        return image.digest is None or digest == image.digest

    def tags(self, repository: str) -> dict[str, str]:
        """``{tag: digest}`` for a repository."""
        with self._lock:
            return {tag: d for (repo, tag), d in self._tags.items() if repo == repository}


__all__ = ["DockerRegistry", "InMemoryRegistry", "Registry"]
