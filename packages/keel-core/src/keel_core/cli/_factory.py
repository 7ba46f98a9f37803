"""Wiring of pipeline components from configuration.

State directory layout (``state_dir``, default ``.keel``)::

    provenance/        run records, scan results, signatures
    approvals.jsonl    approvals written by ``keel approve``
    deployments.jsonl  deployment log
    cancel/            cancellation markers written by ``keel cancel``
"""

from __future__ import annotations

from pathlib import Path

from keel_core.approvals import FileApprovalStore
from keel_core.builder import ArtifactBuilder
from keel_core.deploy import (
    ClusterApplier,
    DeploymentExecutor,
    DeploymentLog,
    HelmApplier,
    InMemoryClusterApplier,
    KubectlApplier,
    ManifestRenderer,
)
from keel_core.image import ImageAssembler
from keel_core.pipeline import FileCancellationToken, PromotionPipeline
from keel_core.provenance import ProvenanceStore
from keel_core.registry import DockerRegistry, InMemoryRegistry, Registry
from keel_core.scanning import ScanGate, build_scanners
from keel_core.schemas.config import PipelineConfig
from keel_core.secrets import EnvSecretStore, SecretStore
from keel_core.signing import CosignSigner, KeyPairSigner, Signer, SigningService


def provenance_store(config: PipelineConfig) -> ProvenanceStore:
    return ProvenanceStore(Path(config.state_dir) / "provenance")


def approval_store(config: PipelineConfig) -> FileApprovalStore:
    return FileApprovalStore(Path(config.state_dir) / "approvals.jsonl")


def deployment_log(config: PipelineConfig) -> DeploymentLog:
    return DeploymentLog(Path(config.state_dir) / "deployments.jsonl")


def cancellation(config: PipelineConfig) -> FileCancellationToken:
    return FileCancellationToken(Path(config.state_dir) / "cancel")


def make_signer(config: PipelineConfig) -> Signer:
    if config.signing.mode == "cosign":
        return CosignSigner(timeout_seconds=config.timeouts.sign_seconds)
    return KeyPairSigner()


def make_applier(config: PipelineConfig, dry_run: bool = False) -> ClusterApplier:
    if dry_run or config.deploy.applier == "memory":
        return InMemoryClusterApplier()
    if config.deploy.applier == "kubectl":
        return KubectlApplier(timeout_seconds=config.timeouts.deploy_seconds)
    return HelmApplier(
        config.deploy.chart_path,
        helm_timeout=config.deploy.helm_timeout,
        timeout_seconds=config.timeouts.deploy_seconds,
    )


def build_pipeline(
    config: PipelineConfig,
    dry_run: bool = False,
    secrets: SecretStore | None = None,
) -> PromotionPipeline:
    """Assemble a ``PromotionPipeline`` for ``config``.

    ``dry_run`` swaps the registry and cluster for in-memory stand-ins; build
    and scan still run for real.
    """
    secrets = secrets or EnvSecretStore()
    registry: Registry = (
        InMemoryRegistry()
        if dry_run
        else DockerRegistry(config.registry, timeout_seconds=config.timeouts.push_seconds)
    )
    executor = DeploymentExecutor(
        make_applier(config, dry_run),
        ManifestRenderer(config.deploy.template_path),
        deployment_log(config),
        lock_timeout_seconds=config.deploy.lock_timeout_seconds,
    )
    return PromotionPipeline(
        config=config,
        builder=ArtifactBuilder(config.build),
        image_builder=ImageAssembler(config.build),
        scan_gate=ScanGate(config.scan, build_scanners(config.scan.scanners, secrets)),
        registry=registry,
        signing=SigningService(make_signer(config), secrets, config.signing, registry),
        executor=executor,
        approvals=approval_store(config),
        store=provenance_store(config),
        cancellation=cancellation(config),
    )


__all__ = [
    "approval_store",
    "build_pipeline",
    "cancellation",
    "deployment_log",
    "make_applier",
    "make_signer",
    "provenance_store",
]
