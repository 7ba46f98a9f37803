"""Typed pipeline stage names."""

from __future__ import annotations

from enum import Enum


class StageName(str, Enum):
    """Pipeline stages, in chain order.

    BUILD covers build, scan, sign and push and runs for every run.
    The remaining stages deploy to an environment.

    Examples:
        >>> StageName("prod")
        <StageName.PROD: 'prod'>
        >>> StageName.STAGING.is_deploy
        True
    """

    BUILD = "build"
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"

    @property
    def is_deploy(self) -> bool:
        """Whether the stage deploys to an environment."""
        return self is not StageName.BUILD


__all__ = ["StageName"]
