"""adb device backend module."""

from fleet_test_runner.backends.adb.backend import AdbBackend
from fleet_test_runner.backends.adb.config import AdbConfig
from fleet_test_runner.backends.adb.manifest import adb_manifest

__all__ = ["AdbBackend", "AdbConfig", "adb_manifest"]
