"""Cluster appliers.

An applier puts a rendered release into a namespace and reports whether it
installed, upgraded or left the release unchanged. Applying identical inputs
twice is a no-op the second time.

- ``HelmApplier``: ``helm upgrade --install`` of the application chart
- ``KubectlApplier``: ``kubectl apply`` of the rendered manifest
- ``InMemoryClusterApplier``: in-process cluster for dry runs and tests

Unreachable clusters and failed applies raise ``DeployError``; deployments
are not retried automatically.
"""

from __future__ import annotations

import json
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog

from keel_core.deploy.render import RenderedManifest
from keel_core.errors import DeployError
from keel_core.schemas.config import ClusterConfig
from keel_core.schemas.deployment import ApplyAction, ApplyResult, ReleaseSpec
from keel_core.telemetry.sanitization import sanitize_error_message

logger = structlog.get_logger(__name__)

_RELEASE_NOT_FOUND = "release: not found"


@runtime_checkable
class ClusterApplier(Protocol):
    """Capability interface for applying a release to a cluster."""

    def apply(
        self,
        release: ReleaseSpec,
        manifest: RenderedManifest,
        kube_context: str | None = None,
    ) -> ApplyResult:
        """Apply ``release``.

        Raises:
            DeployError: If the cluster is unreachable or the apply fails.
        """
        ...


def _run_tool(
    cmd: list[str],
    release: ReleaseSpec,
    timeout_seconds: float | None,
    input_text: str | None = None,
) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            cmd,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError as e:
        raise DeployError(release.namespace, release.release_name, f"{cmd[0]} not found in PATH") from e
    except subprocess.TimeoutExpired as e:
        raise DeployError(
            release.namespace,
            release.release_name,
            f"{cmd[0]} {cmd[1]} timed out after {timeout_seconds}s",
        ) from e


def _failure(release: ReleaseSpec, step: str, result: subprocess.CompletedProcess[str]) -> DeployError:
    detail = sanitize_error_message((result.stderr or result.stdout or "").strip())
    return DeployError(release.namespace, release.release_name, f"{step} failed: {detail}")


class HelmApplier:
    """Deploys the application chart with Helm.

    The full value set from ``ReleaseSpec.helm_values`` is passed on every
    upgrade, so ``helm get values`` of a deployed release is directly
    comparable with the desired values.
    """

    def __init__(
        self,
        chart_path: Path,
        helm: str = "helm",
        helm_timeout: str = "5m",
        timeout_seconds: float | None = None,
    ) -> None:
        self.chart_path = Path(chart_path)
        self.helm = helm
        self.helm_timeout = helm_timeout
        self.timeout_seconds = timeout_seconds

    def _base(self, kube_context: str | None) -> list[str]:
        return [self.helm] if kube_context is None else [self.helm, "--kube-context", kube_context]

    def deployed_values(self, release: ReleaseSpec, kube_context: str | None = None) -> dict[str, Any] | None:
        """User-supplied values of the deployed release, or None if not installed."""
        cmd = [
            *self._base(kube_context),
            "get",
            "values",
            release.release_name,
            "-n",
            release.namespace,
            "-o",
            "json",
        ]
        result = _run_tool(cmd, release, self.timeout_seconds)
        if result.returncode != 0:
            if _RELEASE_NOT_FOUND in result.stderr.lower():
                return None
            raise _failure(release, "helm get values", result)
        try:
            values = json.loads(result.stdout or "null")
        except json.JSONDecodeError as e:
            raise DeployError(release.namespace, release.release_name, "unreadable helm values") from e
        return values if isinstance(values, dict) else {}

    def _revision(self, release: ReleaseSpec, kube_context: str | None) -> int | None:
        cmd = [*self._base(kube_context), "status", release.release_name, "-n", release.namespace, "-o", "json"]
        result = _run_tool(cmd, release, self.timeout_seconds)
        if result.returncode != 0:
            return None
        try:
            version = json.loads(result.stdout or "{}").get("version")
        except (json.JSONDecodeError, AttributeError):
            return None
        return version if isinstance(version, int) else None

    def apply(
        self,
        release: ReleaseSpec,
        manifest: RenderedManifest,
        kube_context: str | None = None,
    ) -> ApplyResult:
        log = logger.bind(namespace=release.namespace, release=release.release_name)
        desired = release.helm_values()
        current = self.deployed_values(release, kube_context)
        if current == desired:
            log.info("helm_release_unchanged")
            return ApplyResult(action=ApplyAction.UNCHANGED, revision=self._revision(release, kube_context))

        with tempfile.TemporaryDirectory(prefix="keel-helm-") as tmpdir:
            values_file = Path(tmpdir) / "values.json"
            values_file.write_text(json.dumps(desired), encoding="utf-8")
            cmd = [
                *self._base(kube_context),
                "upgrade",
                "--install",
                release.release_name,
                str(self.chart_path),
                "-n",
                release.namespace,
                "--create-namespace",
                "--wait",
                "--timeout",
                self.helm_timeout,
                "-f",
                str(values_file),
                "--set",
                f"image.repository={release.image_repository}",
                "--set",
                f"image.tag={release.image_tag}",
                "-o",
                "json",
            ]
            result = _run_tool(cmd, release, self.timeout_seconds)
        if result.returncode != 0:
            raise _failure(release, "helm upgrade", result)

        try:
            version = json.loads(result.stdout).get("version")
        except (json.JSONDecodeError, AttributeError):
            version = None
        action = ApplyAction.INSTALLED if current is None else ApplyAction.UPGRADED
        log.info("helm_release_applied", action=action.value, revision=version)
        return ApplyResult(action=action, revision=version if isinstance(version, int) else None)


class KubectlApplier:
    """Applies the rendered manifest with ``kubectl apply``."""

    def __init__(self, kubectl: str = "kubectl", timeout_seconds: float | None = None) -> None:
        self.kubectl = kubectl
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def parse_action(output: str) -> ApplyAction:
        """Summarize ``kubectl apply`` output lines (``<kind>/<name> created``)."""
        verbs = [line.rsplit(" ", 1)[-1] for line in output.splitlines() if line.strip()]
        if verbs and all(v == "created" for v in verbs):
            return ApplyAction.INSTALLED
        if any(v in ("created", "configured") for v in verbs):
            return ApplyAction.UPGRADED
        return ApplyAction.UNCHANGED

    def apply(
        self,
        release: ReleaseSpec,
        manifest: RenderedManifest,
        kube_context: str | None = None,
    ) -> ApplyResult:
        cmd = [self.kubectl]
        if kube_context is not None:
            cmd.extend(["--context", kube_context])
        cmd.extend(["apply", "-n", release.namespace, "-f", "-"])
        result = _run_tool(cmd, release, self.timeout_seconds, input_text=manifest.text)
        if result.returncode != 0:
            raise _failure(release, "kubectl apply", result)
        action = self.parse_action(result.stdout)
        logger.info(
            "kubectl_manifest_applied",
            namespace=release.namespace,
            release=release.release_name,
            action=action.value,
        )
        return ApplyResult(action=action)


class InMemoryClusterApplier:
    """Cluster kept in process memory.

    Tracks the manifest digest and revision of each release; re-applying the
    same manifest leaves the revision unchanged.
    """

    def __init__(self) -> None:
        self._releases: dict[tuple[str, str], tuple[str, int]] = {}
        self._manifests: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def apply(
        self,
        release: ReleaseSpec,
        manifest: RenderedManifest,
        kube_context: str | None = None,
    ) -> ApplyResult:
        key = (release.namespace, release.release_name)
        with self._lock:
            current = self._releases.get(key)
            if current is not None and current[0] == manifest.digest:
                return ApplyResult(action=ApplyAction.UNCHANGED, revision=current[1])
            revision = 1 if current is None else current[1] + 1
            self._releases[key] = (manifest.digest, revision)
            self._manifests[key] = manifest.text
        action = ApplyAction.INSTALLED if current is None else ApplyAction.UPGRADED
        return ApplyResult(action=action, revision=revision)

    def manifest(self, namespace: str, release_name: str) -> str | None:
        """Last applied manifest text of a release."""
        with self._lock:
            return self._manifests.get((namespace, release_name))

    def releases(self) -> dict[tuple[str, str], int]:
        """``{(namespace, release): revision}`` of everything deployed."""
        with self._lock:
            return {key: rev for key, (_, rev) in self._releases.items()}


def configure_eks_context(
    cluster: ClusterConfig,
    release: ReleaseSpec,
    aws: str = "aws",
    timeout_seconds: float | None = 120.0,
) -> str:
    """Write the kubeconfig entry for an EKS cluster and return its context alias.

    Raises:
        DeployError: If ``aws eks update-kubeconfig`` fails.
    """
    cmd = [
        aws,
        "eks",
        "update-kubeconfig",
        "--name",
        cluster.name,
        "--region",
        cluster.region,
        "--alias",
        cluster.name,
    ]
    result = _run_tool(cmd, release, timeout_seconds)
    if result.returncode != 0:
        raise _failure(release, "aws eks update-kubeconfig", result)
    logger.info("eks_context_configured", cluster=cluster.name, region=cluster.region)
    return cluster.name


__all__ = [
    "ClusterApplier",
    "HelmApplier",
    "InMemoryClusterApplier",
    "KubectlApplier",
    "configure_eks_context",
]
