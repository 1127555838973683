"""Engine configuration loading.

Search order (first existing file wins):
1. Explicit path
2. ./.nodeflow/config.yaml
3. ~/.nodeflow/config.yaml

NODEFLOW_<FIELD> environment variables override file values.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import pydantic
import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ENV_PREFIX = "NODEFLOW_"


class ConfigError(Exception):
    """Configuration file is unreadable or invalid."""

    pass


class EngineConfig(BaseModel):
    """Runtime settings for the workflow engine"""

    model_config = {"extra": "forbid"}

    # Pause between edge traversals, for UI pacing only (seconds)
    edge_delay: float = Field(default=0.3, ge=0)
    edge_delay_enabled: bool = True

    # Run bounds
    max_node_executions: int = Field(default=1000, gt=0)
    max_subflow_depth: int = Field(default=5, ge=0)

    # In-process node code wall-clock limit (seconds)
    node_timeout: float | None = Field(default=30.0, gt=0)

    # Server-side execution endpoint
    server_url: str | None = None
    server_timeout: float = Field(default=30.0, gt=0)

    # Expose the process environment to helpers.get_env
    inherit_environment: bool = False

    log_level: str = "INFO"
    log_format: Literal["rich", "json"] = "rich"


def config_search_paths(path: Path | str | None = None) -> list[Path]:
    paths = [Path.cwd() / ".nodeflow/config.yaml", Path.home() / ".nodeflow/config.yaml"]
    if path is not None:
        paths.insert(0, Path(path))
    return paths


def _env_overrides() -> dict[str, str]:
    overrides = {}
    for name in EngineConfig.model_fields:
        value = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
        if value is not None:
            overrides[name] = value
    return overrides


def load_config(path: Path | str | None = None) -> EngineConfig:
    """
    Load EngineConfig from the first config file found, then apply env overrides.

    Raises:
        ConfigError: If an explicit path is missing, or a file is invalid
    """
    if path is not None and not Path(path).exists():
        raise ConfigError(f"Config file not found: {path}")

    data: dict = {}
    source = None
    for candidate in config_search_paths(path):
        if candidate.is_file():
            try:
                with open(candidate, encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Cannot read config {candidate}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Config {candidate} must be a mapping")
            source = candidate
            break

    data.update(_env_overrides())
    try:
        config = EngineConfig.model_validate(data)
    except pydantic.ValidationError as e:
        raise ConfigError(f"Invalid configuration in {source or 'environment'}:\n{e}") from e

    if source:
        logger.debug(f"Loaded configuration from {source}")
    return config
