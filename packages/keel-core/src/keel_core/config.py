"""Loading ``keel.yaml``.

The file is parsed with PyYAML and validated into ``PipelineConfig``.
Environment variables override selected settings:

    KEEL_STATE_DIR              state_dir
    KEEL_REGISTRY_REPOSITORY    registry.repository
    KEEL_APPROVAL_WAIT_SECONDS  approval_wait_seconds

Example:
    >>> config = load_config(Path("keel.yaml"))
    >>> config.routing_table()["prod"]
    <StageName.PROD: 'prod'>
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from keel_core.errors import ConfigurationError
from keel_core.schemas.config import PipelineConfig

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_FILE = "keel.yaml"

_ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "KEEL_STATE_DIR": ("state_dir",),
    "KEEL_REGISTRY_REPOSITORY": ("registry", "repository"),
    "KEEL_APPROVAL_WAIT_SECONDS": ("approval_wait_seconds",),
}


def _apply_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    for var, path in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        target = data
        for key in path[:-1]:
            nested = target.get(key)
            if not isinstance(nested, dict):
                nested = {}
                target[key] = nested
            target = nested
        target[path[-1]] = value
        logger.debug("config_override_applied", variable=var)
    return data


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"]) or "<root>"
        lines.append(f"  {location}: {detail['msg']}")
    return "\n".join(lines)


def parse_config(
    data: Mapping[str, Any] | None,
    environ: Mapping[str, str] | None = None,
    source: str = "<config>",
) -> PipelineConfig:
    """Validate raw configuration data.

    Raises:
        ConfigurationError: If the data is not a valid pipeline configuration.
    """
    if data is not None and not isinstance(data, Mapping):
        raise ConfigurationError(f"{source}: top level must be a mapping")
    merged = _apply_overrides(dict(data or {}), environ if environ is not None else os.environ)
    try:
        return PipelineConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration in {source}:\n{_format_validation_error(e)}"
        ) from e


def load_config(path: Path, environ: Mapping[str, str] | None = None) -> PipelineConfig:
    """Load and validate a ``keel.yaml`` file.

    Raises:
        ConfigurationError: If the file is missing, not YAML, or invalid.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigurationError(f"Configuration file not found: {path}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e.strerror}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    config = parse_config(data, environ=environ, source=str(path))
    logger.info(
        "config_loaded",
        path=str(path),
        stages=[stage.name.value for stage in config.stages],
        scanners=[scanner.kind for scanner in config.scan.scanners],
    )
    return config


__all__ = ["DEFAULT_CONFIG_FILE", "load_config", "parse_config"]
