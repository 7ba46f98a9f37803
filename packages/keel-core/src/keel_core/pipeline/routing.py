"""Branch routing for deploy stages.

The routing table maps a branch to at most one deploy stage by exact match.
Branch filters are mutually exclusive (checked when the configuration is
loaded), so a branch never activates more than one stage.
"""

from __future__ import annotations

from keel_core.errors import UnwatchedBranchError
from keel_core.schemas.config import PipelineConfig, StageConfig
from keel_core.schemas.pipeline import normalize_branch
from keel_core.schemas.stages import StageName


class RoutingTable:
    """Explicit ``{branch: stage}`` routing.

    Examples:
        >>> table = RoutingTable(PipelineConfig(registry=RegistryConfig(repository="r/app")))
        >>> table.select("refs/heads/dev")
        <StageName.DEV: 'dev'>
        >>> table.select("main") is None
        True
    """

    def __init__(self, config: PipelineConfig) -> None:
        self._config = config
        self._routes = config.routing_table()
        self._stages = {stage.name: stage for stage in config.stages}

    @property
    def routes(self) -> dict[str, StageName]:
        return dict(self._routes)

    @property
    def stages(self) -> list[StageConfig]:
        """Deploy stages in chain order."""
        return list(self._config.stages)

    def is_watched(self, branch: str) -> bool:
        return normalize_branch(branch) in self._config.watched_branches

    def require_watched(self, branch: str) -> str:
        """Normalized branch name.

        Raises:
            UnwatchedBranchError: If the branch does not trigger the pipeline.
        """
        normalized = normalize_branch(branch)
        if normalized not in self._config.watched_branches:
            raise UnwatchedBranchError(normalized, list(self._config.watched_branches))
        return normalized

    def select(self, branch: str) -> StageName | None:
        """Deploy stage activated by ``branch``, if any."""
        return self._routes.get(normalize_branch(branch))

    def stage(self, name: StageName) -> StageConfig:
        return self._stages[name]

    def upstream(self, name: StageName) -> StageName:
        """Stage that must succeed (or be skipped) before ``name`` may deploy."""
        return self._stages[name].depends_on


__all__ = ["RoutingTable"]
