"""keel-core: build, scan, sign and promote container images across stages.

This package provides:
- PromotionPipeline: The run state machine from branch push to deployment
- load_config, PipelineConfig: ``keel.yaml`` loading and validation
- ScanGate: Scanner adapters and severity threshold evaluation
- SigningService: Image signing and signature verification
- DeploymentExecutor: Manifest rendering, cluster apply and deployment log
- Errors: KeelError hierarchy with CLI exit codes

Example:
    >>> from keel_core import load_config
    >>> from keel_core.cli._factory import build_pipeline
    >>> pipeline = build_pipeline(load_config(Path("keel.yaml")))
    >>> record = pipeline.trigger("refs/heads/dev", "3f2c1a9", "42")
    >>> record.state
    <RunState.SUCCEEDED: 'succeeded'>

See Also:
    - keel_core.schemas: Configuration, run and provenance models
    - keel_core.telemetry: Structured logging and tracing
"""

from __future__ import annotations

from keel_core.config import load_config, parse_config
from keel_core.deploy import DeploymentExecutor
from keel_core.errors import KeelError
from keel_core.pipeline import PromotionPipeline
from keel_core.scanning import ScanGate
from keel_core.schemas import PipelineConfig, RunRecord, RunState, StageName
from keel_core.signing import SigningService

__all__ = [
    "DeploymentExecutor",
    "KeelError",
    "PipelineConfig",
    "PromotionPipeline",
    "RunRecord",
    "RunState",
    "ScanGate",
    "SigningService",
    "StageName",
    "load_config",
    "parse_config",
]
