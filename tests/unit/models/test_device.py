"""Tests for device models."""

import pytest

from fleet_test_runner.models.device import (
    DeviceDetails,
    DeviceTest,
    LogLevel,
    parse_getprop,
    sanitize_serial,
)


def test_device_test_orders_by_class_then_method() -> None:
    """Sorts tests by class name, then method name."""
    tests = [
        DeviceTest(class_name="b.Test", method_name="a"),
        DeviceTest(class_name="a.Test", method_name="z"),
        DeviceTest(class_name="a.Test", method_name="b"),
    ]

    assert [str(t) for t in sorted(tests)] == [
        "a.Test#b",
        "a.Test#z",
        "b.Test#a",
    ]


def test_device_test_equality_and_hash() -> None:
    """Equal tests are interchangeable as mapping keys."""
    first = DeviceTest(class_name="a.Test", method_name="one")
    second = DeviceTest(class_name="a.Test", method_name="one")

    assert first == second
    assert {first: 1}[second] == 1
    assert first != DeviceTest(class_name="a.Test", method_name="two")


def test_parse_getprop() -> None:
    """Parses bracketed property lines and ignores noise."""
    output = (
        "[ro.product.model]: [Pixel 8]\n"
        "garbage\n"
        "[ro.build.version.sdk]: [34]\r\n"
        "[empty]: []\n"
    )

    assert parse_getprop(output) == {
        "ro.product.model": "Pixel 8",
        "ro.build.version.sdk": "34",
        "empty": "",
    }


def test_device_details_from_properties() -> None:
    """Reads model, version and locale from split properties."""
    details = DeviceDetails.from_properties(
        {
            "ro.product.model": "Pixel 8",
            "ro.product.manufacturer": "Google",
            "ro.build.version.release": "14",
            "ro.build.version.sdk": "34",
            "ro.product.locale.language": "fr",
            "ro.product.locale.region": "CA",
        }
    )

    assert details.name == "Google Pixel 8"
    assert details.version == "14"
    assert details.api_level == 34
    assert (details.language, details.region) == ("fr", "CA")


def test_device_details_falls_back_to_combined_locale() -> None:
    """Splits ro.product.locale when the split properties are absent."""
    details = DeviceDetails.from_properties({"ro.product.locale": "en-US"})

    assert (details.language, details.region) == ("en", "US")


def test_device_details_tolerates_missing_values() -> None:
    """Leaves missing values unset and a bad API level at zero."""
    details = DeviceDetails.from_properties({"ro.build.version.sdk": "Q"})

    assert details.api_level == 0
    assert details.model is None
    assert details.name == ""


def test_sanitize_serial() -> None:
    """Replaces characters unsafe in file names."""
    assert sanitize_serial("192.168.1.5:5555") == "192_168_1_5_5555"
    assert sanitize_serial("emulator-5554") == "emulator-5554"


@pytest.mark.parametrize(
    ("letter", "level"),
    [("V", LogLevel.VERBOSE), ("E", LogLevel.ERROR), ("F", LogLevel.ASSERT)],
)
def test_log_level_from_letter(letter: str, level: LogLevel) -> None:
    """Maps logcat priority letters, treating fatal as assert."""
    assert LogLevel.from_letter(letter) is level
