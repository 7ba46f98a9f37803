"""Deployment executor.

Renders the release manifest, applies it through a ``ClusterApplier`` while
holding the namespace lock, and appends a ``DeploymentRecord`` for every
attempt. A failed apply is recorded and re-raised; it is never retried or
rolled back here. An apply that finishes after its deadline is recorded as
failed and raises ``StageTimeoutError``.

Example:
    >>> executor = DeploymentExecutor(HelmApplier(Path("helm/spring-app")), ManifestRenderer(), log)
    >>> record = executor.deploy(run_id, StageName.DEV, release, image, commit_id)
    >>> record.outcome
    <DeployOutcome.SUCCEEDED: 'succeeded'>
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path

import structlog

from keel_core.deploy.appliers import ClusterApplier, configure_eks_context
from keel_core.deploy.history import DeploymentLog
from keel_core.deploy.render import ManifestRenderer
from keel_core.errors import DeployError, StageTimeoutError
from keel_core.locks import resource_lock
from keel_core.schemas.artifacts import Image
from keel_core.schemas.config import ClusterConfig, DeployConfig, StageConfig
from keel_core.schemas.deployment import DeploymentRecord, DeployOutcome, ReleaseSpec
from keel_core.schemas.stages import StageName
from keel_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

ContextConfigurer = Callable[[ClusterConfig, ReleaseSpec], str]


def build_release_spec(stage: StageConfig, image: Image, deploy: DeployConfig) -> ReleaseSpec:
    """Release parameters for deploying ``image`` to ``stage``."""
    return ReleaseSpec(
        namespace=stage.namespace,
        release_name=stage.release_name,
        image_repository=image.repository,
        image_tag=image.tag,
        replica_count=stage.replica_count,
        pull_policy=deploy.pull_policy,
        container_port=deploy.container_port,
        resources=stage.resources,
        values=stage.values,
    )


class DeploymentExecutor:
    """Applies releases and keeps the deployment log."""

    def __init__(
        self,
        applier: ClusterApplier,
        renderer: ManifestRenderer,
        log: DeploymentLog,
        lock_dir: Path | None = None,
        lock_timeout_seconds: float | None = None,
        configure_context: ContextConfigurer = configure_eks_context,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.applier = applier
        self.renderer = renderer
        self.log = log
        self.lock_dir = lock_dir
        self.lock_timeout_seconds = lock_timeout_seconds
        self._configure_context = configure_context
        self._clock = clock

    def deploy(
        self,
        run_id: str,
        stage: StageName,
        release: ReleaseSpec,
        image: Image,
        source_commit_id: str | None = None,
        cluster: ClusterConfig | None = None,
        timeout_seconds: float | None = None,
    ) -> DeploymentRecord:
        """Deploy ``release`` and record the attempt.

        Raises:
            DeployError: If rendering or applying fails (after recording it).
            StageTimeoutError: If the apply outlasts ``timeout_seconds`` (after
                recording it as failed).
            ConcurrentLockError: If the namespace lock is not acquired in time.
        """
        log = logger.bind(
            run_id=run_id,
            stage=stage.value,
            namespace=release.namespace,
            release=release.release_name,
        )
        with create_span(
            "keel.deploy.apply",
            attributes={
                "keel.stage": stage.value,
                "keel.namespace": release.namespace,
                "keel.image.reference": image.reference,
            },
        ) as span, resource_lock(
            "namespace",
            release.namespace,
            timeout_seconds=self.lock_timeout_seconds,
            lock_dir=self.lock_dir,
        ):
            started = self._clock()
            manifest_digest: str | None = None
            try:
                manifest = self.renderer.render(release)
                manifest_digest = manifest.digest
                kube_context = (
                    self._configure_context(cluster, release) if cluster is not None else None
                )
                result = self.applier.apply(release, manifest, kube_context)
                elapsed = self._clock() - started
                if timeout_seconds is not None and elapsed > timeout_seconds:
                    raise StageTimeoutError("deploy", timeout_seconds)
            except DeployError as e:
                self._record_failure(run_id, stage, release, image, source_commit_id, manifest_digest, e.reason)
                log.error("deployment_failed", error=e.reason)
                raise
            except StageTimeoutError as e:
                self._record_failure(run_id, stage, release, image, source_commit_id, manifest_digest, str(e))
                log.error("deployment_timed_out", timeout_seconds=timeout_seconds)
                raise

            record = DeploymentRecord(
                run_id=run_id,
                source_commit_id=source_commit_id,
                stage=stage,
                image=image,
                namespace=release.namespace,
                release_name=release.release_name,
                outcome=DeployOutcome.SUCCEEDED,
                action=result.action,
                revision=result.revision,
                manifest_digest=manifest_digest,
            )
            self.log.append(record)
            span.set_attribute("keel.deploy.action", result.action.value)

        log.info("deployment_succeeded", action=result.action.value, revision=result.revision)
        return record

    def _record_failure(
        self,
        run_id: str,
        stage: StageName,
        release: ReleaseSpec,
        image: Image,
        source_commit_id: str | None,
        manifest_digest: str | None,
        error: str,
    ) -> None:
        self.log.append(
            DeploymentRecord(
                run_id=run_id,
                source_commit_id=source_commit_id,
                stage=stage,
                image=image,
                namespace=release.namespace,
                release_name=release.release_name,
                outcome=DeployOutcome.FAILED,
                manifest_digest=manifest_digest,
                error=error,
            )
        )


__all__ = ["DeploymentExecutor", "build_release_spec"]
