"""Unit test fixtures: signing keys, configuration and a wired pipeline.

The pipeline harness uses the fakes from ``testing.fakes`` together with
the in-memory registry and cluster, so state machine tests run without
docker, scanners or a cluster.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from keel_core.approvals import InMemoryApprovalStore
from keel_core.deploy import DeploymentExecutor, DeploymentLog, InMemoryClusterApplier, ManifestRenderer
from keel_core.pipeline import PromotionPipeline
from keel_core.provenance import ProvenanceStore
from keel_core.registry import InMemoryRegistry
from keel_core.scanning import ScanGate
from keel_core.schemas.config import (
    DeployConfig,
    PipelineConfig,
    RegistryConfig,
    ScanGateConfig,
    ScannerConfig,
)
from keel_core.secrets import MappingSecretStore
from keel_core.signing import KeyPair, KeyPairSigner, SigningService
from testing.fakes import (
    KEY_PASSWORD,
    NO_WAIT_RETRY,
    REPOSITORY,
    FakeBuilder,
    FakeImageBuilder,
    FakeScanner,
)


@pytest.fixture(scope="session")
def key_pair() -> KeyPair:
    """Password-protected signing key pair shared by the session."""
    return KeyPairSigner.generate_key_pair(KEY_PASSWORD)


@pytest.fixture
def secrets(key_pair: KeyPair) -> MappingSecretStore:
    """Secret store holding the signing key pair under the default names."""
    return MappingSecretStore(
        {
            "signing-private-key": key_pair.private_pem,
            "signing-key-password": KEY_PASSWORD,
            "signing-public-key": key_pair.public_pem,
        }
    )


@pytest.fixture
def pipeline_config(tmp_path: Path) -> PipelineConfig:
    """Default stage chain with an in-memory cluster and state under tmp_path."""
    return PipelineConfig(
        registry=RegistryConfig(repository=REPOSITORY, retry=NO_WAIT_RETRY),
        scan=ScanGateConfig(scanners=[ScannerConfig(kind="trivy")], retry=NO_WAIT_RETRY),
        deploy=DeployConfig(applier="memory"),
        state_dir=tmp_path / ".keel",
    )


@dataclass
class PipelineHarness:
    """A pipeline wired to in-memory collaborators, plus handles on them."""

    pipeline: PromotionPipeline
    config: PipelineConfig
    builder: FakeBuilder
    image_builder: FakeImageBuilder
    scanners: list[FakeScanner]
    registry: Any
    applier: Any
    approvals: InMemoryApprovalStore
    store: ProvenanceStore
    log: DeploymentLog
    sleeps: list[float] = field(default_factory=list)


@pytest.fixture
def make_harness(
    pipeline_config: PipelineConfig,
    secrets: MappingSecretStore,
    lock_dir: Path,
    tmp_path: Path,
) -> Callable[..., PipelineHarness]:
    """Factory building a ``PipelineHarness``; keyword arguments replace defaults.

    Every harness built by one test shares the provenance store and the
    deployment log, like runs of one installation do.
    """
    store = ProvenanceStore(tmp_path / "provenance")
    log = DeploymentLog(tmp_path / "deployments.jsonl")

    def _make(
        config: PipelineConfig | None = None,
        builder: FakeBuilder | None = None,
        scanners: list[FakeScanner] | None = None,
        registry: Any = None,
        applier: Any = None,
        secret_store: MappingSecretStore | None = None,
    ) -> PipelineHarness:
        config = config or pipeline_config
        builder = builder or FakeBuilder()
        image_builder = FakeImageBuilder()
        scanners = scanners if scanners is not None else [FakeScanner()]
        registry = registry or InMemoryRegistry()
        applier = applier or InMemoryClusterApplier()
        approvals = InMemoryApprovalStore()
        sleeps: list[float] = []

        pipeline = PromotionPipeline(
            config=config,
            builder=builder,
            image_builder=image_builder,
            scan_gate=ScanGate(config.scan, scanners, sleep=sleeps.append),
            registry=registry,
            signing=SigningService(
                KeyPairSigner(),
                secret_store or secrets,
                config.signing,
                registry,
                lock_dir=lock_dir,
            ),
            executor=DeploymentExecutor(applier, ManifestRenderer(), log, lock_dir=lock_dir),
            approvals=approvals,
            store=store,
            sleep=sleeps.append,
        )
        return PipelineHarness(
            pipeline=pipeline,
            config=config,
            builder=builder,
            image_builder=image_builder,
            scanners=scanners,
            registry=registry,
            applier=applier,
            approvals=approvals,
            store=store,
            log=log,
            sleeps=sleeps,
        )

    return _make
