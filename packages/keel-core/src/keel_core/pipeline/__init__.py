"""Promotion pipeline: routing, cancellation and the run state machine."""

from __future__ import annotations

from keel_core.pipeline.cancellation import (
    CancellationSource,
    CancellationToken,
    FileCancellationToken,
)
from keel_core.pipeline.engine import PromotionPipeline, run_step
from keel_core.pipeline.routing import RoutingTable

__all__ = [
    "CancellationSource",
    "CancellationToken",
    "FileCancellationToken",
    "PromotionPipeline",
    "RoutingTable",
    "run_step",
]
