"""Unit tests for cluster appliers.

``helm``, ``kubectl`` and ``aws`` are replaced by patching ``subprocess.run``.
"""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from keel_core.deploy import (
    ClusterApplier,
    HelmApplier,
    InMemoryClusterApplier,
    KubectlApplier,
    ManifestRenderer,
    RenderedManifest,
    configure_eks_context,
)
from keel_core.errors import DeployError
from keel_core.schemas.config import ClusterConfig
from keel_core.schemas.deployment import ApplyAction, ReleaseSpec
from testing.fakes import REPOSITORY


def completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def release() -> ReleaseSpec:
    return ReleaseSpec(namespace="dev", release_name="spring-app", image_repository=REPOSITORY, image_tag="42")


@pytest.fixture
def manifest(release: ReleaseSpec) -> RenderedManifest:
    return ManifestRenderer().render(release)


class FakeHelm:
    """Answers ``helm get values``, ``helm status`` and ``helm upgrade``."""

    def __init__(self, deployed: dict[str, Any] | None, version: int = 1, upgrade_error: str | None = None) -> None:
        self.deployed = deployed
        self.version = version
        self.upgrade_error = upgrade_error
        self.calls: list[list[str]] = []
        self.uploaded_values: dict[str, Any] | None = None

    def __call__(self, cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        self.calls.append(cmd)
        args = cmd[3:] if cmd[1] == "--kube-context" else cmd[1:]
        verb = args[0]
        if verb == "get":
            if self.deployed is None:
                return completed(returncode=1, stderr="Error: release: not found")
            return completed(stdout=json.dumps(self.deployed))
        if verb == "status":
            return completed(stdout=json.dumps({"name": "spring-app", "version": self.version}))
        if verb == "upgrade":
            self.uploaded_values = json.loads(Path(cmd[cmd.index("-f") + 1]).read_text())
            if self.upgrade_error is not None:
                return completed(returncode=1, stderr=self.upgrade_error)
            return completed(stdout=json.dumps({"name": "spring-app", "version": self.version}))
        raise AssertionError(f"unexpected command {cmd}")


class TestHelmApplier:
    def test_first_apply_installs(self, release: ReleaseSpec, manifest: RenderedManifest) -> None:
        helm = FakeHelm(deployed=None)

        with patch("keel_core.deploy.appliers.subprocess.run", side_effect=helm):
            result = HelmApplier(Path("helm/spring-app")).apply(release, manifest)

        assert result.action is ApplyAction.INSTALLED
        assert result.revision == 1
        upgrade = helm.calls[-1]
        assert upgrade[:5] == ["helm", "upgrade", "--install", "spring-app", "helm/spring-app"]
        assert upgrade[upgrade.index("-n") + 1] == "dev"
        assert f"image.repository={REPOSITORY}" in upgrade
        assert "image.tag=42" in upgrade
        assert helm.uploaded_values == release.helm_values()

    def test_changed_values_upgrade(self, release: ReleaseSpec, manifest: RenderedManifest) -> None:
        previous = release.model_copy(update={"image_tag": "41"}).helm_values()
        helm = FakeHelm(deployed=previous, version=4)

        with patch("keel_core.deploy.appliers.subprocess.run", side_effect=helm):
            result = HelmApplier(Path("chart")).apply(release, manifest)

        assert result.action is ApplyAction.UPGRADED
        assert result.revision == 4

    def test_identical_values_are_unchanged(self, release: ReleaseSpec, manifest: RenderedManifest) -> None:
        helm = FakeHelm(deployed=release.helm_values(), version=3)

        with patch("keel_core.deploy.appliers.subprocess.run", side_effect=helm):
            result = HelmApplier(Path("chart")).apply(release, manifest)

        assert result.action is ApplyAction.UNCHANGED
        assert result.revision == 3
        assert not any("upgrade" in cmd for cmd in helm.calls)

    def test_kube_context_is_passed(self, release: ReleaseSpec, manifest: RenderedManifest) -> None:
        helm = FakeHelm(deployed=None)

        with patch("keel_core.deploy.appliers.subprocess.run", side_effect=helm):
            HelmApplier(Path("chart")).apply(release, manifest, kube_context="ctx")

        assert all(cmd[1:3] == ["--kube-context", "ctx"] for cmd in helm.calls)

    def test_failed_upgrade(self, release: ReleaseSpec, manifest: RenderedManifest) -> None:
        helm = FakeHelm(deployed=None, upgrade_error="Error: context deadline exceeded")

        with patch("keel_core.deploy.appliers.subprocess.run", side_effect=helm):
            with pytest.raises(DeployError, match="helm upgrade failed: Error: context deadline exceeded"):
                HelmApplier(Path("chart")).apply(release, manifest)

    def test_unreachable_cluster(self, release: ReleaseSpec, manifest: RenderedManifest) -> None:
        unreachable = completed(returncode=1, stderr="Error: Kubernetes cluster unreachable")

        with patch("keel_core.deploy.appliers.subprocess.run", return_value=unreachable):
            with pytest.raises(DeployError, match="helm get values failed"):
                HelmApplier(Path("chart")).apply(release, manifest)

    def test_missing_helm(self, release: ReleaseSpec, manifest: RenderedManifest) -> None:
        with patch("keel_core.deploy.appliers.subprocess.run", side_effect=FileNotFoundError("helm")):
            with pytest.raises(DeployError, match="helm not found in PATH"):
                HelmApplier(Path("chart")).apply(release, manifest)

    def test_timeout(self, release: ReleaseSpec, manifest: RenderedManifest) -> None:
        timeout = subprocess.TimeoutExpired(cmd="helm", timeout=1)

        with patch("keel_core.deploy.appliers.subprocess.run", side_effect=timeout):
            with pytest.raises(DeployError, match="timed out"):
                HelmApplier(Path("chart"), timeout_seconds=1).apply(release, manifest)


class TestKubectlApplier:
    @pytest.mark.parametrize(
        ("output", "action"),
        [
            ("deployment.apps/spring-app-deployment created\n", ApplyAction.INSTALLED),
            ("deployment.apps/spring-app-deployment configured\n", ApplyAction.UPGRADED),
            ("deployment.apps/spring-app-deployment unchanged\n", ApplyAction.UNCHANGED),
            ("service/spring-app unchanged\ndeployment.apps/spring-app-deployment created\n", ApplyAction.UPGRADED),
            ("", ApplyAction.UNCHANGED),
        ],
    )
    def test_parse_action(self, output: str, action: ApplyAction) -> None:
        assert KubectlApplier.parse_action(output) is action

    def test_apply_pipes_manifest(self, release: ReleaseSpec, manifest: RenderedManifest) -> None:
        output = completed("deployment.apps/spring-app-deployment created\n")

        with patch("keel_core.deploy.appliers.subprocess.run", return_value=output) as run:
            result = KubectlApplier().apply(release, manifest, kube_context="eks-dev")

        assert run.call_args.args[0] == ["kubectl", "--context", "eks-dev", "apply", "-n", "dev", "-f", "-"]
        assert run.call_args.kwargs["input"] == manifest.text
        assert result.action is ApplyAction.INSTALLED

    def test_apply_failure(self, release: ReleaseSpec, manifest: RenderedManifest) -> None:
        failed = completed(returncode=1, stderr='namespaces "dev" not found')

        with patch("keel_core.deploy.appliers.subprocess.run", return_value=failed):
            with pytest.raises(DeployError, match="kubectl apply failed"):
                KubectlApplier().apply(release, manifest)


class TestInMemoryClusterApplier:
    def test_satisfies_the_protocol(self) -> None:
        assert isinstance(InMemoryClusterApplier(), ClusterApplier)

    def test_install_upgrade_unchanged(self, release: ReleaseSpec, manifest: RenderedManifest) -> None:
        cluster = InMemoryClusterApplier()
        upgraded = ManifestRenderer().render(release.model_copy(update={"image_tag": "43"}))

        assert cluster.apply(release, manifest).action is ApplyAction.INSTALLED
        unchanged = cluster.apply(release, manifest)
        assert (unchanged.action, unchanged.revision) == (ApplyAction.UNCHANGED, 1)
        result = cluster.apply(release, upgraded)
        assert (result.action, result.revision) == (ApplyAction.UPGRADED, 2)
        assert cluster.releases() == {("dev", "spring-app"): 2}
        assert cluster.manifest("dev", "spring-app") == upgraded.text
        assert cluster.manifest("prod", "spring-app") is None


class TestConfigureEksContext:
    def test_updates_kubeconfig(self, release: ReleaseSpec) -> None:
        cluster = ClusterConfig(name="eks-staging", region="us-east-1")

        with patch("keel_core.deploy.appliers.subprocess.run", return_value=completed()) as run:
            context = configure_eks_context(cluster, release)

        assert context == "eks-staging"
        assert run.call_args.args[0] == [
            "aws",
            "eks",
            "update-kubeconfig",
            "--name",
            "eks-staging",
            "--region",
            "us-east-1",
            "--alias",
            "eks-staging",
        ]

    def test_failure(self, release: ReleaseSpec) -> None:
        failed = completed(returncode=255, stderr="An error occurred (ResourceNotFoundException)")

        with patch("keel_core.deploy.appliers.subprocess.run", return_value=failed):
            with pytest.raises(DeployError, match="update-kubeconfig failed"):
                configure_eks_context(ClusterConfig(name="eks-staging"), release)
