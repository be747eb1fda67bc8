"""
Configuration system using Pydantic for type-safe settings management.

Settings come from, in increasing precedence: defaults, ``TASKWEAVE_``
environment variables (nested sections use ``__``, e.g.
``TASKWEAVE_RETRY__MAX_ATTEMPTS``), and a YAML file passed to
:meth:`TaskweaveSettings.from_yaml`.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskweave.exceptions import ConfigurationError
from taskweave.resilience.circuit_breaker import CircuitBreakerConfig
from taskweave.resilience.retry import RetryConfig


class WorkspaceConfig(BaseModel):
    """Where the workspace data lives."""

    root: str = Field(default=".", description="Project root directory")
    data_dir: str = Field(default=".taskweave", description="Data directory, relative to root")


class TasksConfig(BaseModel):
    """Defaults applied when creating tasks."""

    default_priority: int = Field(default=1, ge=0, description="Priority when none is given")
    default_estimated_minutes: int = Field(default=30, ge=0, description="Estimate when none is given")


class LoggingConfig(BaseModel):
    """Structured logging output."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="WARNING")
    json_output: bool = Field(default=True, alias="json", description="JSON lines instead of console output")

    model_config = ConfigDict(populate_by_name=True)


class TaskweaveSettings(BaseSettings):
    """Main taskweave settings.

    Combines every configuration section and loads from YAML files with
    environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKWEAVE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    tasks: TasksConfig = Field(default_factory=TasksConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def data_path(self) -> Path:
        """Absolute-or-relative path of the data directory."""
        return Path(self.workspace.root) / self.workspace.data_dir

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> TaskweaveSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            TaskweaveSettings instance

        Raises:
            ConfigurationError: If config file is missing, unreadable, not
                valid YAML, or holds invalid values
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(
                f"Configuration file not found: {config_path}",
                suggestion="Pass an existing file with --config",
            )

        try:
            yaml_content = config_file.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except ValidationError as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
