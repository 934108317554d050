"""Models handed from the orchestrator to a device worker."""

from collections.abc import Mapping, Sequence
from typing import Any, Literal, TypeAlias

from pydantic import Field

from fleet_test_runner.models.base import AbsolutePath, Model

TestSize: TypeAlias = Literal["small", "medium", "large"]


class InstrumentationInfo(Model):
    """Package and runner identity read from an instrumentation APK manifest."""

    application_package: str = Field(..., description="Package under test")
    instrumentation_package: str = Field(..., description="Package of the test APK")
    min_sdk_version: int | None = Field(
        default=None, description="Minimum API level, if declared"
    )
    test_runner_class: str = Field(..., description="Fully qualified runner class")


class ExecutionRequest(Model):
    """Everything a worker needs to run the suite on one device."""

    serial: str = Field(..., description="Device serial as reported by the backend")
    application_apk: AbsolutePath
    instrumentation_apk: AbsolutePath
    output: AbsolutePath = Field(..., description="Root output directory of the run")
    instrumentation_info: InstrumentationInfo
    debug: bool = False
    no_animations: bool = False
    grant_all: bool = False
    class_name: str | None = None
    method_name: str | None = None
    test_size: TestSize | None = None
    instrumentation_args: Mapping[str, str] = Field(default_factory=dict)
    shard_index: int = 0
    num_shards: int = 0
    backend: str = Field(..., description="Backend plugin key")
    backend_config: Mapping[str, Any] = Field(default_factory=dict)
    python_path: Sequence[str] = Field(
        default_factory=list, description="Import path forwarded to the worker"
    )
