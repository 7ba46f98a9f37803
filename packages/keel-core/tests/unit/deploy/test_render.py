"""Unit tests for manifest rendering."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from keel_core.deploy import ManifestRenderer
from keel_core.deploy.render import to_yaml
from keel_core.errors import DeployError
from keel_core.schemas.deployment import ReleaseSpec
from testing.fakes import REPOSITORY


@pytest.fixture
def release() -> ReleaseSpec:
    return ReleaseSpec(
        namespace="staging",
        release_name="spring-app",
        image_repository=REPOSITORY,
        image_tag="42",
        replica_count=2,
        resources={"limits": {"cpu": "500m", "memory": "512Mi"}},
    )


class TestDefaultTemplate:
    def test_renders_a_deployment(self, release: ReleaseSpec) -> None:
        manifest = ManifestRenderer().render(release)

        (deployment,) = manifest.documents
        assert deployment["kind"] == "Deployment"
        assert deployment["metadata"] == {
            "name": "spring-app-deployment",
            "namespace": "staging",
            "labels": {"app": "spring-app", "app.kubernetes.io/managed-by": "keel"},
        }
        assert deployment["spec"]["replicas"] == 2
        container = deployment["spec"]["template"]["spec"]["containers"][0]
        assert container["image"] == f"{REPOSITORY}:42"
        assert container["imagePullPolicy"] == "IfNotPresent"
        assert container["ports"] == [{"containerPort": 8080}]
        assert container["resources"] == {"limits": {"cpu": "500m", "memory": "512Mi"}}

    def test_empty_resources(self, release: ReleaseSpec) -> None:
        manifest = ManifestRenderer().render(release.model_copy(update={"resources": {}}))

        container = manifest.documents[0]["spec"]["template"]["spec"]["containers"][0]
        assert container["resources"] == {}

    def test_digest_is_stable_per_input(self, release: ReleaseSpec) -> None:
        renderer = ManifestRenderer()

        first = renderer.render(release)
        second = renderer.render(release)
        other = renderer.render(release.model_copy(update={"image_tag": "43"}))

        assert first.digest == second.digest
        assert first.digest != other.digest
        assert first.digest.startswith("sha256:")


class TestCustomTemplate:
    def test_custom_template(self, tmp_path: Path, release: ReleaseSpec) -> None:
        template = tmp_path / "service.yaml.j2"
        template.write_text(
            "apiVersion: v1\n"
            "kind: Service\n"
            "metadata:\n"
            "  name: {{ release.name }}\n"
            "  namespace: {{ release.namespace }}\n"
            "spec:\n"
            "  ports:\n"
            "    - port: {{ container_port }}\n"
        )

        manifest = ManifestRenderer(template).render(release)

        assert manifest.documents == [
            {
                "apiVersion": "v1",
                "kind": "Service",
                "metadata": {"name": "spring-app", "namespace": "staging"},
                "spec": {"ports": [{"port": 8080}]},
            }
        ]

    def test_undefined_variable(self, tmp_path: Path, release: ReleaseSpec) -> None:
        template = tmp_path / "bad.yaml.j2"
        template.write_text("apiVersion: v1\nkind: {{ missing }}\n")

        with pytest.raises(DeployError, match="template error"):
            ManifestRenderer(template).render(release)

    def test_missing_kind(self, tmp_path: Path, release: ReleaseSpec) -> None:
        template = tmp_path / "bad.yaml.j2"
        template.write_text("apiVersion: v1\n---\nkind: Service\n")

        with pytest.raises(DeployError, match="document 0 is missing apiVersion or kind"):
            ManifestRenderer(template).render(release)

    def test_invalid_yaml(self, tmp_path: Path, release: ReleaseSpec) -> None:
        template = tmp_path / "bad.yaml.j2"
        template.write_text("apiVersion: [v1\n")

        with pytest.raises(DeployError, match="invalid manifest YAML"):
            ManifestRenderer(template).render(release)

    def test_empty_output(self, tmp_path: Path, release: ReleaseSpec) -> None:
        template = tmp_path / "empty.yaml.j2"
        template.write_text("# nothing\n")

        with pytest.raises(DeployError, match="manifest is empty"):
            ManifestRenderer(template).render(release)


def test_to_yaml_filter() -> None:
    assert to_yaml({"b": 1, "a": {"c": "x"}}) == "a:\n  c: x\nb: 1"
    assert yaml.safe_load(to_yaml({})) == {}
