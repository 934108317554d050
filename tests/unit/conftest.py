"""Shared fixtures for unit tests."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from fleet_test_runner.models.execution import ExecutionRequest
from fleet_test_runner.testing.axml import build_manifest, write_apk
from fleet_test_runner.testing.factories import InstrumentationInfoFactory


@pytest.fixture
def application_apk(tmp_path: Path) -> Path:
    """Write an application APK."""
    return write_apk(tmp_path / "app.apk", build_manifest(package="com.example.app"))


@pytest.fixture
def instrumentation_apk(tmp_path: Path) -> Path:
    """Write an instrumentation APK targeting com.example.app."""
    return write_apk(tmp_path / "app-test.apk", build_manifest())


@pytest.fixture
def make_request(
    tmp_path: Path, application_apk: Path, instrumentation_apk: Path
) -> Callable[..., ExecutionRequest]:
    """Build execution requests writing below tmp_path/output."""

    def make(serial: str = "emulator-5554", **overrides: Any) -> ExecutionRequest:
        values: dict[str, Any] = {
            "serial": serial,
            "application_apk": application_apk,
            "instrumentation_apk": instrumentation_apk,
            "output": tmp_path / "output",
            "instrumentation_info": InstrumentationInfoFactory.build(),
            "backend": "fake",
        }
        values.update(overrides)
        return ExecutionRequest(**values)

    return make
