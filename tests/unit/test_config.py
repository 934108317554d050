"""Tests for run configuration loading."""

from pathlib import Path

import pytest

from fleet_test_runner.config import (
    ConfigurationError,
    build_run_config,
    load_run_config,
)


def test_load_run_config(tmp_path: Path) -> None:
    """Reads options from YAML."""
    path = tmp_path / "fleet.yaml"
    path.write_text(
        "title: Nightly\n"
        "application_apk: app.apk\n"
        "instrumentation_apk: app-test.apk\n"
        "serials: [emulator-5554]\n"
        "instrumentation_args:\n"
        "  coverage: 'true'\n"
        "backend_config:\n"
        "  adb_timeout: 30\n"
    )

    config = load_run_config(path)

    assert config.title == "Nightly"
    assert config.application_apk == Path("app.apk")
    assert config.serials == ["emulator-5554"]
    assert config.instrumentation_args == {"coverage": "true"}
    assert config.backend_config == {"adb_timeout": 30}
    assert config.isolation == "process"
    assert config.output == Path("fleet-output")


def test_overrides_take_precedence(tmp_path: Path) -> None:
    """Explicit overrides replace values from the file."""
    path = tmp_path / "fleet.yaml"
    path.write_text("application_apk: a.apk\ninstrumentation_apk: b.apk\ntitle: A\n")

    config = load_run_config(path, {"title": "B", "debug": True})

    assert config.title == "B"
    assert config.debug


def test_rejects_non_mapping(tmp_path: Path) -> None:
    """A YAML document that is not a mapping is rejected."""
    path = tmp_path / "fleet.yaml"
    path.write_text("- a\n- b\n")

    with pytest.raises(ConfigurationError, match="must contain a mapping"):
        load_run_config(path)


def test_rejects_missing_file(tmp_path: Path) -> None:
    """An unreadable file is a configuration error."""
    with pytest.raises(ConfigurationError, match="Unable to read config file"):
        load_run_config(tmp_path / "missing.yaml")


def test_rejects_invalid_yaml(tmp_path: Path) -> None:
    """Malformed YAML is a configuration error."""
    path = tmp_path / "fleet.yaml"
    path.write_text("title: [unclosed\n")

    with pytest.raises(ConfigurationError, match="Unable to read config file"):
        load_run_config(path)


def test_requires_apks() -> None:
    """Both APKs are required."""
    with pytest.raises(ConfigurationError, match="instrumentation_apk"):
        build_run_config({"application_apk": "a.apk"})


def test_method_requires_class() -> None:
    """A method filter needs a class filter."""
    with pytest.raises(ConfigurationError, match="method_name requires class_name"):
        build_run_config(
            {
                "application_apk": "a.apk",
                "instrumentation_apk": "b.apk",
                "method_name": "testOne",
            }
        )


def test_rejects_unknown_isolation() -> None:
    """Only process and task isolation exist."""
    with pytest.raises(ConfigurationError):
        build_run_config(
            {
                "application_apk": "a.apk",
                "instrumentation_apk": "b.apk",
                "isolation": "thread",
            }
        )
