"""Models describing devices, their tests and their log output."""

import functools
import re
from collections.abc import Mapping
from enum import StrEnum

from fleet_test_runner.models.base import Model

GETPROP_LINE = re.compile(r"^\[(.+?)\]: \[(.*)\]$")
SERIAL_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")


@functools.total_ordering
class DeviceTest(Model):
    """Identity of one test case, ordered by class then method."""

    __test__ = False

    class_name: str
    method_name: str

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, DeviceTest):
            return NotImplemented
        return (self.class_name, self.method_name) < (
            other.class_name,
            other.method_name,
        )

    def __str__(self) -> str:
        return f"{self.class_name}#{self.method_name}"


class DeviceDetails(Model):
    """Metadata describing a physical or virtual device."""

    model: str | None = None
    manufacturer: str | None = None
    version: str | None = None
    api_level: int = 0
    language: str | None = None
    region: str | None = None

    @property
    def name(self) -> str:
        """Human readable device name, e.g. "Google Pixel 8"."""
        return " ".join(part for part in (self.manufacturer, self.model) if part)

    @classmethod
    def from_properties(cls, properties: Mapping[str, str]) -> "DeviceDetails":
        """Build details from a device's system properties.

        Args:
            properties: Property names mapped to values, as read by getprop

        Returns:
            Device details with missing values left unset

        """
        language = properties.get("ro.product.locale.language") or None
        region = properties.get("ro.product.locale.region") or None
        if language is None and region is None:
            locale = properties.get("ro.product.locale", "")
            if locale:
                language, _, region_part = locale.partition("-")
                region = region_part or None

        try:
            api_level = int(properties.get("ro.build.version.sdk", "0"))
        except ValueError:
            api_level = 0

        return cls(
            model=properties.get("ro.product.model") or None,
            manufacturer=properties.get("ro.product.manufacturer") or None,
            version=properties.get("ro.build.version.release") or None,
            api_level=api_level,
            language=language,
            region=region,
        )


def parse_getprop(output: str) -> dict[str, str]:
    """Parse the output of ``getprop`` into a property mapping."""
    properties: dict[str, str] = {}
    for line in output.splitlines():
        if match := GETPROP_LINE.match(line.strip()):
            properties[match.group(1)] = match.group(2)
    return properties


def sanitize_serial(serial: str) -> str:
    """Make a device serial safe for use as a file name."""
    return SERIAL_UNSAFE.sub("_", serial)


class LogLevel(StrEnum):
    """Priority of a device log message."""

    VERBOSE = "V"
    DEBUG = "D"
    INFO = "I"
    WARN = "W"
    ERROR = "E"
    ASSERT = "A"

    @classmethod
    def from_letter(cls, letter: str) -> "LogLevel":
        """Map a logcat priority letter, treating fatal as assert."""
        if letter == "F":
            return cls.ASSERT
        return cls(letter)


class DeviceLogMessage(Model):
    """A single entry of the device log."""

    level: LogLevel
    pid: int
    tid: int
    tag: str
    time: str
    message: str

    def __str__(self) -> str:
        return (
            f"{self.time} {self.pid}/{self.tid} {self.level}/{self.tag}: "
            f"{self.message}"
        )
