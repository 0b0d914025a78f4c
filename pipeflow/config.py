from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field, model_validator


class EngineConfig(BaseModel):
    """Tuning knobs for the workflow engine."""

    default_page_size: int = Field(default=50, ge=1)
    max_page_size: int = Field(default=500, ge=1)
    bottleneck_threshold: int = Field(default=20, ge=0)
    timeout: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _page_sizes_consistent(self) -> "EngineConfig":
        if self.default_page_size > self.max_page_size:
            raise ValueError(
                f"default_page_size ({self.default_page_size}) must not exceed "
                f"max_page_size ({self.max_page_size})"
            )
        return self


class PipeflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    tenant_id: str = "default"
    log_level: str = "INFO"
    engine: EngineConfig = EngineConfig()


def load_config(path: Optional[str] = None) -> PipeflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PIPEFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("PIPEFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = PipeflowConfig(**data)
    else:
        config = PipeflowConfig()

    env_db_url = os.getenv("PIPEFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_tenant = os.getenv("PIPEFLOW_TENANT")
    if env_tenant:
        config.tenant_id = env_tenant
    env_level = os.getenv("PIPEFLOW_LOG_LEVEL")
    if env_level:
        config.log_level = env_level
    return config
