"""Pydantic schemas for keel pipeline configuration, runs and provenance."""

from __future__ import annotations

from keel_core.schemas.artifacts import BuildArtifact, Image, Signature
from keel_core.schemas.config import (
    BuildConfig,
    ClusterConfig,
    DeployConfig,
    PipelineConfig,
    RegistryConfig,
    RetryConfig,
    ScanGateConfig,
    ScannerConfig,
    SigningConfig,
    StageConfig,
    TimeoutConfig,
)
from keel_core.schemas.deployment import (
    ApplyAction,
    ApplyResult,
    DeploymentRecord,
    DeployOutcome,
    ReleaseSpec,
)
from keel_core.schemas.pipeline import (
    RunContext,
    RunRecord,
    RunState,
    StageResult,
    StageStatus,
)
from keel_core.schemas.scan import Finding, ScanResult, ScanTargetKind, Severity
from keel_core.schemas.stages import StageName

__all__ = [
    "ApplyAction",
    "ApplyResult",
    "BuildArtifact",
    "BuildConfig",
    "ClusterConfig",
    "DeployConfig",
    "DeployOutcome",
    "DeploymentRecord",
    "Finding",
    "Image",
    "PipelineConfig",
    "RegistryConfig",
    "ReleaseSpec",
    "RetryConfig",
    "RunContext",
    "RunRecord",
    "RunState",
    "ScanGateConfig",
    "ScanResult",
    "ScanTargetKind",
    "ScannerConfig",
    "Severity",
    "Signature",
    "SigningConfig",
    "StageConfig",
    "StageName",
    "StageResult",
    "StageStatus",
    "TimeoutConfig",
]
