"""Abstract device backend and the listener it reports test events to."""

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from fleet_test_runner.models.device import DeviceTest


class BackendError(Exception):
    """Base class for errors raised by a device backend."""


class DeviceNotFoundError(BackendError):
    """Raised when no attached device has the requested serial."""


class InstallError(BackendError):
    """Raised when a package cannot be installed on a device."""


class RemotePathNotFoundError(BackendError):
    """Raised when a path to pull does not exist on the device."""


class TestRunListener:
    """Receives the events of one instrumentation run.

    Events for a single test arrive in order: ``test_started``, then any of
    the failure, ignore or assumption callbacks, then ``test_ended``.
    Methods do nothing unless overridden.
    """

    __test__ = False

    def test_run_started(self, run_name: str, test_count: int) -> None:
        """Called once before the first test."""

    def test_started(self, test: DeviceTest) -> None:
        """Called when a test begins."""

    def test_failed(self, test: DeviceTest, trace: str, *, error: bool = False) -> None:
        """Called when a test fails.

        Args:
            test: The failing test
            trace: Textual stack trace reported by the device
            error: True when the test raised rather than failed an assertion

        """

    def test_ignored(self, test: DeviceTest) -> None:
        """Called when a test is skipped."""

    def test_assumption_failure(self, test: DeviceTest, trace: str) -> None:
        """Called when a test's assumption does not hold."""

    def test_ended(self, test: DeviceTest) -> None:
        """Called when a test finishes, whatever its outcome."""

    def test_run_failed(self, message: str) -> None:
        """Called when the whole run fails independently of any test."""

    def test_run_ended(self, elapsed_millis: int) -> None:
        """Called once after the last test."""


@dataclass(frozen=True, kw_only=True)
class DeviceBackend(ABC):
    """Transport to the devices of a fleet.

    Every call is addressed by device serial. Implementations raise the
    BackendError subclasses above; the executor converts anything raised
    into a recorded exception on the device's result.
    """

    @abstractmethod
    async def list_devices(self) -> Sequence[str]:
        """Return the serials of all attached, ready devices."""

    @abstractmethod
    async def install_package(
        self, serial: str, artifact: Path, *, grant_permissions: bool = False
    ) -> None:
        """Install or replace a package on a device.

        Args:
            serial: Target device serial
            artifact: Local path to the APK
            grant_permissions: Grant every runtime permission at install time

        Raises:
            InstallError: If the device rejects the package

        """

    @abstractmethod
    async def run_instrumentation(
        self,
        serial: str,
        test_package: str,
        runner_class: str,
        listener: TestRunListener,
        *,
        arguments: Mapping[str, str] | None = None,
    ) -> None:
        """Run an instrumentation and report its events to a listener.

        Args:
            serial: Target device serial
            test_package: Package of the instrumentation APK
            runner_class: Fully qualified test runner class
            listener: Receiver of test events, called in device order
            arguments: Extra instrumentation arguments (``-e key value``)

        """

    @abstractmethod
    async def pull_directory(
        self, serial: str, remote_path: str, local_path: Path
    ) -> None:
        """Copy a device directory into a local directory.

        Raises:
            RemotePathNotFoundError: If the remote directory does not exist

        """

    @abstractmethod
    async def shell(self, serial: str, command: str) -> str:
        """Run a shell command on a device and return its output."""
