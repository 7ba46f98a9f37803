"""Pipeline run schemas.

Key Components:
    RunState: States of the promotion state machine
    StageStatus: Per-stage outcome within a run
    RunContext: Immutable inputs threaded through every stage call
    StageResult: Outcome of one stage
    RunRecord: Immutable snapshot of a run; each transition yields a new one
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from keel_core.schemas.artifacts import BuildArtifact, Image, Signature
from keel_core.schemas.deployment import DeploymentRecord
from keel_core.schemas.scan import ScanResult
from keel_core.schemas.stages import StageName

BRANCH_REF_PREFIX = "refs/heads/"


class RunState(str, Enum):
    """States of a pipeline run.

    pending → building → scanning → signing → pushed → {dev_deploy |
    staging_deploy | prod_deploy} → succeeded | failed. A run parked at an
    approval gate is ``pending`` again; ``cancelled`` ends a run between stages.
    """

    PENDING = "pending"
    BUILDING = "building"
    SCANNING = "scanning"
    SIGNING = "signing"
    PUSHED = "pushed"
    DEV_DEPLOY = "dev_deploy"
    STAGING_DEPLOY = "staging_deploy"
    PROD_DEPLOY = "prod_deploy"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible."""
        return self in (RunState.SUCCEEDED, RunState.FAILED, RunState.CANCELLED)


DEPLOY_STATES: dict[StageName, RunState] = {
    StageName.DEV: RunState.DEV_DEPLOY,
    StageName.STAGING: RunState.STAGING_DEPLOY,
    StageName.PROD: RunState.PROD_DEPLOY,
}


class StageStatus(str, Enum):
    """Outcome of a stage within a run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    AWAITING_APPROVAL = "awaiting_approval"
    CANCELLED = "cancelled"


def normalize_branch(branch: str) -> str:
    """Strip the ``refs/heads/`` prefix from a branch reference.

    Examples:
        >>> normalize_branch("refs/heads/dev")
        'dev'
        >>> normalize_branch("main")
        'main'
    """
    branch = branch.strip()
    if branch.startswith(BRANCH_REF_PREFIX):
        return branch[len(BRANCH_REF_PREFIX) :]
    return branch


class RunContext(BaseModel):
    """Immutable inputs of a run, passed explicitly to every stage.

    Examples:
        >>> ctx = RunContext(
        ...     branch="refs/heads/dev",
        ...     commit_id="3f2c1a9",
        ...     build_id="42",
        ...     repository="registry.example.com/app",
        ... )
        >>> (ctx.branch, ctx.image_tag)
        ('dev', '42')
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    run_id: str = Field(default_factory=lambda: uuid4().hex)
    branch: str = Field(..., min_length=1)
    commit_id: str = Field(..., min_length=1)
    build_id: str = Field(..., min_length=1)
    repository: str = Field(..., min_length=1, description="Image repository")
    source_dir: Path = Field(default=Path("."))
    triggered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("branch", mode="before")
    @classmethod
    def _normalize_branch(cls, value: object) -> object:
        if isinstance(value, str):
            return normalize_branch(value)
        return value

    @property
    def image_tag(self) -> str:
        """Images are tagged by build id."""
        return self.build_id


class StageResult(BaseModel):
    """Outcome of one stage in a run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    stage: StageName
    status: StageStatus
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None

    @property
    def duration_ms(self) -> int | None:
        """Wall-clock duration, when the stage ran."""
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


class RunRecord(BaseModel):
    """Snapshot of a pipeline run.

    Snapshots are immutable; ``advance`` returns the next snapshot.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    context: RunContext
    state: RunState = Field(default=RunState.PENDING)
    artifact: BuildArtifact | None = None
    image: Image | None = None
    scan_results: list[ScanResult] = Field(default_factory=list)
    signature: Signature | None = None
    stage_results: list[StageResult] = Field(default_factory=list)
    deployments: list[DeploymentRecord] = Field(default_factory=list)
    pending_gate: StageName | None = Field(
        default=None,
        description="Deploy stage the run is parked at, awaiting approval",
    )
    error: str | None = None
    error_type: str | None = None
    exit_code: int | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def run_id(self) -> str:
        """Run identifier."""
        return self.context.run_id

    @property
    def is_terminal(self) -> bool:
        """Whether the run has finished."""
        return self.state.is_terminal

    def advance(self, **updates: object) -> RunRecord:
        """Return the next snapshot with ``updates`` applied."""
        updates.setdefault("updated_at", datetime.now(timezone.utc))
        return self.model_copy(update=updates)

    def stage_result(self, stage: StageName) -> StageResult | None:
        """Latest result recorded for ``stage``."""
        for result in reversed(self.stage_results):
            if result.stage is stage:
                return result
        return None

    def with_stage_result(self, result: StageResult) -> list[StageResult]:
        """Stage results with ``result`` replacing any earlier entry for its stage."""
        kept = [r for r in self.stage_results if r.stage is not result.stage]
        return [*kept, result]


__all__ = [
    "BRANCH_REF_PREFIX",
    "DEPLOY_STATES",
    "RunContext",
    "RunRecord",
    "RunState",
    "StageResult",
    "StageStatus",
    "normalize_branch",
]
