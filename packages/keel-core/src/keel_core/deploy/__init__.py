"""Deployment: manifest rendering, cluster appliers and the deployment log."""

from __future__ import annotations

from keel_core.deploy.appliers import (
    ClusterApplier,
    HelmApplier,
    InMemoryClusterApplier,
    KubectlApplier,
    configure_eks_context,
)
from keel_core.deploy.executor import DeploymentExecutor, build_release_spec
from keel_core.deploy.history import DeploymentLog
from keel_core.deploy.render import ManifestRenderer, RenderedManifest

__all__ = [
    "ClusterApplier",
    "DeploymentExecutor",
    "DeploymentLog",
    "HelmApplier",
    "InMemoryClusterApplier",
    "KubectlApplier",
    "ManifestRenderer",
    "RenderedManifest",
    "build_release_spec",
    "configure_eks_context",
]
