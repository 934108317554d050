"""Run configuration, loaded from YAML and overridden by the command line."""

import logging
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Literal, TypeAlias

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from fleet_test_runner.models.execution import TestSize

log = logging.getLogger(__name__)

Isolation: TypeAlias = Literal["process", "task"]


class ConfigurationError(Exception):
    """Raised when fleet-level configuration is invalid or incomplete."""


class RunConfig(BaseModel):
    """All options of a fleet run."""

    title: str = Field(default="Fleet Test Run", description="Title of the summary")
    application_apk: Path = Field(..., description="APK of the application under test")
    instrumentation_apk: Path = Field(..., description="APK holding the tests")
    output: Path = Field(default=Path("fleet-output"), description="Output directory")
    serials: Sequence[str] = Field(
        default_factory=list, description="Devices to use (empty means all attached)"
    )
    skip_serials: Sequence[str] = Field(
        default_factory=list, description="Devices to leave out"
    )
    debug: bool = False
    no_animations: bool = Field(default=False, description="Skip GIF generation")
    grant_all: bool = Field(default=False, description="Grant runtime permissions")
    shard: bool = Field(default=False, description="Split tests across devices")
    class_name: str | None = None
    method_name: str | None = None
    test_size: TestSize | None = None
    instrumentation_args: Mapping[str, str] = Field(default_factory=dict)
    isolation: Isolation = "process"
    backend: str = Field(default="adb", description="Backend plugin key")
    backend_config: Mapping[str, Any] = Field(default_factory=dict)
    fail_on_failure: bool = False
    fail_if_no_device: bool = False

    @model_validator(mode="after")
    def _method_requires_class(self) -> "RunConfig":
        if self.method_name and not self.class_name:
            raise ValueError("method_name requires class_name")
        return self


def load_run_config(
    path: Path, overrides: Mapping[str, Any] | None = None
) -> RunConfig:
    """Load a run configuration from a YAML file.

    Args:
        path: YAML file whose keys match RunConfig fields
        overrides: Values taking precedence over the file, e.g. CLI flags

    Returns:
        The validated configuration

    Raises:
        ConfigurationError: If the file is unreadable or the values are invalid

    """
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Unable to read config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    log.debug("Loaded config keys from %s: %s", path, sorted(data))
    return build_run_config({**data, **(overrides or {})})


def build_run_config(values: Mapping[str, Any]) -> RunConfig:
    """Validate raw values into a RunConfig, raising ConfigurationError."""
    try:
        return RunConfig.model_validate(values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid run configuration: {e}") from e
