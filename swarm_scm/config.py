"""Source configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from swarm_scm.swarm_client import validate_project as validate_swarm_project

DEFAULT_CHARSET = "none"
DEFAULT_CLIENT_FORMAT = "jenkins-${NODE_NAME}-${JOB_NAME}-${EXECUTOR_NUMBER}"
DEFAULT_SCRIPT_PATH = "Jenkinsfile"
DEFAULT_API_VERSION = "4"

# Environment variable -> SourceConfig field
CONFIG_ENV_VARS = {
    "SWARM_PROJECT": "project",
    "SWARM_CHARSET": "charset",
    "SWARM_CLIENT_FORMAT": "format",
    "SWARM_SCRIPT_PATH": "script_path",
    "SWARM_API_VERSION": "api_version",
    "SWARM_TIMEOUT_SECONDS": "timeout_seconds",
}


class SourceConfig(BaseModel):
    """Settings of one configured Swarm source."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    project: str = Field(min_length=1)
    charset: str = DEFAULT_CHARSET
    format: str = Field(default=DEFAULT_CLIENT_FORMAT, min_length=1)
    script_path: str = DEFAULT_SCRIPT_PATH
    api_version: str = Field(default=DEFAULT_API_VERSION, pattern=r"^v?\d+$")
    timeout_seconds: int = Field(default=20, gt=0)

    @field_validator("project")
    @classmethod
    def validate_project(cls, value: str) -> str:
        """Reject blank project ids and ids the Swarm API cannot address."""
        return validate_swarm_project(value)

    @field_validator("script_path")
    @classmethod
    def default_script_path(cls, value: str) -> str:
        """Fall back to the default build script when left blank."""
        normalized = value.strip().strip("/")
        return normalized or DEFAULT_SCRIPT_PATH


def load_source_config(project: str | None = None, **overrides: Any) -> SourceConfig:
    """
    Load source configuration by merging (in order of precedence):
      1. Built-in defaults
      2. Environment variables (after loading .env from the current directory)
      3. Explicit overrides; None values are ignored
    """
    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)

    values: dict[str, Any] = {}
    for env_var, field_name in CONFIG_ENV_VARS.items():
        env_value = os.getenv(env_var)
        if env_value:
            values[field_name] = env_value

    overrides["project"] = project
    for key, value in overrides.items():
        if value is not None:
            values[key] = value

    return SourceConfig.model_validate(values)
