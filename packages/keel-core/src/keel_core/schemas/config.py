"""Pipeline configuration schemas (keel.yaml).

Key Components:
    RetryConfig: Exponential backoff for transient failures
    BuildConfig: Build command and artifact location
    RegistryConfig: Target repository and login
    ScannerConfig / ScanGateConfig: Scanners and the gate threshold
    SigningConfig: Signer mode and secret names
    ClusterConfig / StageConfig: Deploy stages and their gates
    DeployConfig: Cluster applier and manifest template
    TimeoutConfig: Bounded timeouts per pipeline step
    PipelineConfig: Top-level configuration with the stage routing table

Example:
    >>> config = PipelineConfig(registry=RegistryConfig(repository="registry.example.com/app"))
    >>> config.routing_table()
    {'dev': <StageName.DEV: 'dev'>, 'staging': <StageName.STAGING: 'staging'>, 'prod': <StageName.PROD: 'prod'>}
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from keel_core.schemas.scan import ScanTargetKind, Severity
from keel_core.schemas.stages import StageName

DEFAULT_WATCHED_BRANCHES = ["main", "dev", "staging", "prod"]


class RetryConfig(BaseModel):
    """Retry policy configuration for transient failures.

    Examples:
        >>> config = RetryConfig(max_attempts=5, initial_delay_ms=500)
        >>> config.initial_delay_ms
        500
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=3, ge=1, le=10, description="Maximum number of attempts")
    initial_delay_ms: int = Field(default=1000, ge=0, description="Initial delay in milliseconds")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=5.0)
    max_delay_ms: int = Field(default=30000, ge=0, description="Maximum delay cap in milliseconds")
    jitter: bool = Field(default=True, description="Add ±25% jitter to delays")


class BuildConfig(BaseModel):
    """How the artifact and image are built."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    command: list[str] = Field(
        default_factory=lambda: ["mvn", "clean", "package", "-DskipTests"],
        min_length=1,
        description="Build command run in the source tree",
    )
    artifact_glob: str = Field(default="target/*.jar", description="Glob for build outputs")
    dockerfile: str = Field(default="Dockerfile")
    build_args: dict[str, str] = Field(
        default_factory=dict,
        description="Extra --build-arg values; VERSION is always set to the build id",
    )


class RegistryConfig(BaseModel):
    """Target image repository."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    repository: str = Field(
        ...,
        min_length=1,
        description="Full repository, e.g. 123456789012.dkr.ecr.eu-west-1.amazonaws.com/my-spring-app",
    )
    ecr_region: str | None = Field(default=None, description="Log in to ECR in this region before push")
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @property
    def host(self) -> str:
        """Registry host part of the repository."""
        return self.repository.split("/", 1)[0]


ScannerKind = Literal["trivy", "grype", "dependency-check", "sonarqube"]

_DEFAULT_TARGETS: dict[str, ScanTargetKind] = {
    "trivy": ScanTargetKind.IMAGE,
    "grype": ScanTargetKind.IMAGE,
    "dependency-check": ScanTargetKind.SOURCE,
    "sonarqube": ScanTargetKind.SOURCE,
}


class ScannerConfig(BaseModel):
    """One scanner run by the scan gate."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ScannerKind
    binary: str | None = Field(default=None, description="Override the scanner executable")
    args: list[str] = Field(default_factory=list, description="Extra scanner arguments")
    host_url: str | None = Field(default=None, description="SonarQube server URL")
    project_key: str | None = Field(default=None, description="SonarQube project key")
    token_secret: str = Field(default="sonarqube-token", description="Secret holding the SonarQube token")
    poll_timeout_seconds: float = Field(default=300.0, gt=0, description="Quality gate polling window")

    @property
    def target_kind(self) -> ScanTargetKind:
        """Whether this scanner inspects the source tree or the image."""
        return _DEFAULT_TARGETS[self.kind]

    @model_validator(mode="after")
    def _check_sonarqube(self) -> ScannerConfig:
        if self.kind == "sonarqube" and (not self.host_url or not self.project_key):
            raise ValueError("sonarqube scanner requires host_url and project_key")
        return self


class ScanGateConfig(BaseModel):
    """Scan gate thresholds.

    A finding at or above ``severity_threshold`` blocks the run when
    ``fail_on_threshold`` is set.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    severity_threshold: Severity = Field(default=Severity.CRITICAL)
    fail_on_threshold: bool = Field(default=True)
    ignore_unfixed: bool = Field(default=False, description="Drop findings without an upstream fix")
    scanners: list[ScannerConfig] = Field(
        default_factory=lambda: [ScannerConfig(kind="trivy")],
    )
    retry: RetryConfig = Field(default_factory=RetryConfig)
    report_dir: Path | None = Field(default=None, description="Directory for JSON scan reports")


class SigningConfig(BaseModel):
    """Signer mode and where its key material lives."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: Literal["key-pair", "cosign"] = Field(default="key-pair")
    private_key_secret: str = Field(default="signing-private-key")
    password_secret: str | None = Field(default="signing-key-password")
    public_key_path: Path | None = Field(default=None, description="PEM public key for verification")
    public_key_secret: str | None = Field(default="signing-public-key")
    lock_timeout_seconds: float | None = Field(default=None, gt=0)


class ClusterConfig(BaseModel):
    """EKS cluster a stage deploys to."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, description="EKS cluster name")
    region: str = Field(default="eu-west-1")


class StageConfig(BaseModel):
    """A deploy stage and its gates.

    Examples:
        >>> stage = StageConfig(name=StageName.DEV, branch="dev", depends_on=StageName.BUILD)
        >>> stage.namespace
        'dev'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: StageName
    branch: str = Field(..., min_length=1, description="Branch that activates the stage")
    depends_on: StageName = Field(default=StageName.BUILD)
    approval_required: bool = Field(default=False)
    namespace: str = Field(default="", description="Defaults to the stage name")
    release_name: str = Field(default="spring-app")
    cluster: ClusterConfig | None = Field(default=None)
    replica_count: int = Field(default=1, ge=0)
    resources: dict[str, Any] = Field(default_factory=dict)
    values: dict[str, Any] = Field(default_factory=dict)
    require_upstream_deployment: bool = Field(
        default=False,
        description="Require a successful deployment of the same commit to the upstream stage",
    )

    @model_validator(mode="before")
    @classmethod
    def _default_namespace(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("namespace") and data.get("name"):
            name = data["name"]
            data = {**data, "namespace": name.value if isinstance(name, StageName) else str(name)}
        return data

    @model_validator(mode="after")
    def _not_build(self) -> StageConfig:
        if self.name is StageName.BUILD:
            raise ValueError("build is not a deploy stage")
        return self


def default_stages() -> list[StageConfig]:
    """The Build → Dev → Staging → Prod chain with approvals on staging and prod."""
    return [
        StageConfig(name=StageName.DEV, branch="dev", depends_on=StageName.BUILD),
        StageConfig(
            name=StageName.STAGING,
            branch="staging",
            depends_on=StageName.DEV,
            approval_required=True,
        ),
        StageConfig(
            name=StageName.PROD,
            branch="prod",
            depends_on=StageName.STAGING,
            approval_required=True,
        ),
    ]


class DeployConfig(BaseModel):
    """How releases are applied to clusters."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    applier: Literal["helm", "kubectl", "memory"] = Field(default="helm")
    chart_path: Path = Field(default=Path("helm/spring-app"))
    template_path: Path | None = Field(default=None, description="Custom Jinja2 manifest template")
    helm_timeout: str = Field(default="5m")
    pull_policy: str = Field(default="IfNotPresent")
    container_port: int = Field(default=8080, ge=1, le=65535)
    lock_timeout_seconds: float | None = Field(default=None, gt=0)


class TimeoutConfig(BaseModel):
    """Bounded timeouts for each blocking pipeline step, in seconds."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    build_seconds: float = Field(default=1800.0, gt=0)
    scan_seconds: float = Field(default=900.0, gt=0)
    push_seconds: float = Field(default=600.0, gt=0)
    sign_seconds: float = Field(default=300.0, gt=0)
    deploy_seconds: float = Field(default=900.0, gt=0)


class PipelineConfig(BaseModel):
    """Top-level pipeline configuration.

    Validates that stage branch filters are mutually exclusive, that every
    stage branch is watched, and that each stage depends on the build or on
    a stage listed before it.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(default="keel")
    watched_branches: list[str] = Field(default_factory=lambda: list(DEFAULT_WATCHED_BRANCHES))
    build: BuildConfig = Field(default_factory=BuildConfig)
    registry: RegistryConfig
    scan: ScanGateConfig = Field(default_factory=ScanGateConfig)
    signing: SigningConfig = Field(default_factory=SigningConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    stages: list[StageConfig] = Field(default_factory=default_stages)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    state_dir: Path = Field(default=Path(".keel"), description="Run records, approvals and logs")
    approval_wait_seconds: float = Field(
        default=0.0,
        ge=0,
        description="How long a run polls for approval before parking as pending",
    )
    approval_poll_seconds: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def _validate_stages(self) -> PipelineConfig:
        seen: set[StageName] = {StageName.BUILD}
        branches: dict[str, StageName] = {}
        for stage in self.stages:
            if stage.name in seen:
                raise ValueError(f"Duplicate stage: {stage.name.value}")
            if stage.depends_on not in seen:
                raise ValueError(
                    f"Stage {stage.name.value} depends on {stage.depends_on.value}, "
                    "which is not defined before it"
                )
            if stage.branch in branches:
                raise ValueError(
                    f"Branch filter '{stage.branch}' is shared by stages "
                    f"{branches[stage.branch].value} and {stage.name.value}"
                )
            if stage.branch not in self.watched_branches:
                raise ValueError(
                    f"Stage {stage.name.value} branch '{stage.branch}' is not a watched branch"
                )
            seen.add(stage.name)
            branches[stage.branch] = stage.name
        return self

    def routing_table(self) -> dict[str, StageName]:
        """Explicit ``{branch: stage}`` routing table."""
        return {stage.branch: stage.name for stage in self.stages}

    def stage(self, name: StageName) -> StageConfig:
        """Look up a stage by name."""
        for stage in self.stages:
            if stage.name is name:
                return stage
        raise KeyError(name.value)


__all__ = [
    "DEFAULT_WATCHED_BRANCHES",
    "BuildConfig",
    "ClusterConfig",
    "DeployConfig",
    "PipelineConfig",
    "RegistryConfig",
    "RetryConfig",
    "ScanGateConfig",
    "ScannerConfig",
    "SigningConfig",
    "StageConfig",
    "TimeoutConfig",
    "default_stages",
]
