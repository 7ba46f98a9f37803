"""Deployment schemas.

Key Components:
    ReleaseSpec: Everything the cluster interface is parameterized by
    ApplyAction / ApplyResult: What an applier did
    DeployOutcome: Success or failure of a deployment attempt
    DeploymentRecord: Append-only log entry for one deployment attempt
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from keel_core.schemas.artifacts import Image
from keel_core.schemas.stages import StageName


class ApplyAction(str, Enum):
    """What applying a release changed in the cluster."""

    INSTALLED = "installed"
    UPGRADED = "upgraded"
    UNCHANGED = "unchanged"


class DeployOutcome(str, Enum):
    """Outcome of a deployment attempt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ReleaseSpec(BaseModel):
    """Parameters for applying one release to one namespace.

    Examples:
        >>> spec = ReleaseSpec(
        ...     namespace="dev",
        ...     release_name="spring-app",
        ...     image_repository="registry.example.com/app",
        ...     image_tag="42",
        ... )
        >>> spec.helm_values()["image"]["tag"]
        '42'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    namespace: str = Field(..., min_length=1)
    release_name: str = Field(..., min_length=1)
    image_repository: str = Field(..., min_length=1)
    image_tag: str = Field(..., min_length=1)
    replica_count: int = Field(default=1, ge=0)
    pull_policy: str = Field(default="IfNotPresent")
    container_port: int = Field(default=8080, ge=1, le=65535)
    resources: dict[str, Any] = Field(default_factory=dict, description="Container resource limits")
    values: dict[str, Any] = Field(default_factory=dict, description="Extra chart values")

    def helm_values(self) -> dict[str, Any]:
        """Chart values in the layout of the deployment template."""
        values: dict[str, Any] = dict(self.values)
        values["replicaCount"] = self.replica_count
        values["image"] = {
            "repository": self.image_repository,
            "tag": self.image_tag,
            "pullPolicy": self.pull_policy,
        }
        values["resources"] = dict(self.resources)
        return values


class ApplyResult(BaseModel):
    """Result reported by a cluster applier."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    action: ApplyAction
    revision: int | None = Field(default=None, ge=1)


class DeploymentRecord(BaseModel):
    """One deployment attempt. Records are appended, never rewritten."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    record_id: str = Field(default_factory=lambda: uuid4().hex)
    run_id: str = Field(..., description="Run that made the attempt")
    source_commit_id: str | None = Field(default=None, description="Commit that was deployed")
    stage: StageName
    image: Image
    namespace: str
    release_name: str
    outcome: DeployOutcome
    action: ApplyAction | None = Field(default=None, description="None when the attempt failed")
    revision: int | None = Field(default=None)
    manifest_digest: str | None = Field(default=None, description="sha256 of the rendered manifest")
    error: str | None = Field(default=None)
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


__all__ = [
    "ApplyAction",
    "ApplyResult",
    "DeployOutcome",
    "DeploymentRecord",
    "ReleaseSpec",
]
