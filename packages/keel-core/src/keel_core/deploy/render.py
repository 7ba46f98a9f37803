"""Manifest rendering for deployments.

The packaged ``deployment.yaml.j2`` template mirrors the application's
Helm deployment: replicas, image repository and tag, pull policy, port and
resources. A custom template can be supplied through
``deploy.template_path``. Rendered output must parse as Kubernetes YAML
documents, each with ``apiVersion`` and ``kind``.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any, NamedTuple

import structlog
import yaml
from jinja2 import Environment, FileSystemLoader, PackageLoader, StrictUndefined, TemplateError

from keel_core.errors import DeployError
from keel_core.schemas.deployment import ReleaseSpec

logger = structlog.get_logger(__name__)

DEFAULT_TEMPLATE = "deployment.yaml.j2"


def to_yaml(value: Any) -> str:
    """Jinja filter rendering ``value`` as block YAML without a trailing newline."""
    return yaml.safe_dump(value, default_flow_style=False, sort_keys=True).rstrip("\n")


class RenderedManifest(NamedTuple):
    """Rendered manifest text, its digest and parsed documents."""

    text: str
    digest: str
    documents: list[dict[str, Any]]


class ManifestRenderer:
    """Renders and validates release manifests."""

    def __init__(self, template_path: Path | None = None) -> None:
        if template_path is None:
            loader: Any = PackageLoader("keel_core.deploy", "templates")
            self.template_name = DEFAULT_TEMPLATE
        else:
            template_path = Path(template_path)
            loader = FileSystemLoader(str(template_path.parent))
            self.template_name = template_path.name
        self._env = Environment(
            loader=loader,
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self._env.filters["toyaml"] = to_yaml

    def render(self, release: ReleaseSpec) -> RenderedManifest:
        """Render the manifest for ``release``.

        Raises:
            DeployError: If the template fails or the output is not valid Kubernetes YAML.
        """
        try:
            template = self._env.get_template(self.template_name)
            text = template.render(
                release={"name": release.release_name, "namespace": release.namespace},
                values=release.helm_values(),
                container_port=release.container_port,
            )
        except TemplateError as e:
            raise DeployError(release.namespace, release.release_name, f"template error: {e}") from e

        documents = self.validate(text, release)
        digest = f"sha256:{hashlib.sha256(text.encode('utf-8')).hexdigest()}"
        logger.debug(
            "manifest_rendered",
            namespace=release.namespace,
            release=release.release_name,
            documents=len(documents),
            manifest_digest=digest,
        )
        return RenderedManifest(text=text, digest=digest, documents=documents)

    @staticmethod
    def validate(text: str, release: ReleaseSpec) -> list[dict[str, Any]]:
        """Parse ``text`` as Kubernetes YAML documents.

        Raises:
            DeployError: If a document is not a mapping with apiVersion and kind.
        """
        try:
            documents = [doc for doc in yaml.safe_load_all(text) if doc is not None]
        except yaml.YAMLError as e:
            raise DeployError(release.namespace, release.release_name, f"invalid manifest YAML: {e}") from e

        if not documents:
            raise DeployError(release.namespace, release.release_name, "manifest is empty")
        for index, doc in enumerate(documents):
            if not isinstance(doc, dict) or not doc.get("apiVersion") or not doc.get("kind"):
                raise DeployError(
                    release.namespace,
                    release.release_name,
                    f"manifest document {index} is missing apiVersion or kind",
                )
        return documents


__all__ = ["DEFAULT_TEMPLATE", "ManifestRenderer", "RenderedManifest", "to_yaml"]
