"""Result models for a fleet run and the builders that assemble them.

Every entity is immutable once built. Builders enforce the order of
operations through a Lifecycle value and raise LifecycleError on any
illegal call: data added before start, data added after a terminal call,
or a duplicate identity key.
"""

import logging
import threading
import time
from collections.abc import Mapping
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import Field, field_serializer, field_validator

from fleet_test_runner.models.base import AbsolutePath, Model
from fleet_test_runner.models.device import DeviceDetails, DeviceLogMessage, DeviceTest
from fleet_test_runner.models.lifecycle import Lifecycle, LifecycleError
from fleet_test_runner.models.stack_trace import StackTrace

log = logging.getLogger(__name__)


def _now_millis() -> int:
    return time.time_ns() // 1_000_000


def _elapsed_seconds(start_ns: int) -> int:
    return (time.monotonic_ns() - start_ns) // 1_000_000_000


class TestStatus(StrEnum):
    """Outcome of a single test."""

    __test__ = False

    PASS = "PASS"
    FAIL = "FAIL"
    ERROR = "ERROR"
    IGNORED = "IGNORED"
    ASSUMPTION_FAILURE = "ASSUMPTION_FAILURE"


class DeviceTestResult(Model):
    """Outcome of one test on one device."""

    status: TestStatus
    exception: StackTrace | None = None
    duration: int = -1
    screenshots: tuple[AbsolutePath, ...] = ()
    files: tuple[AbsolutePath, ...] = ()
    animated_gif: AbsolutePath | None = None
    log: tuple[DeviceLogMessage, ...] = ()


class DeviceResult(Model):
    """Outcome of a whole run on one device."""

    install_failed: bool = False
    install_message: str | None = None
    device_details: DeviceDetails | None = None
    test_results: Mapping[DeviceTest, DeviceTestResult] = Field(default_factory=dict)
    started: int = 0
    duration: int = -1
    exceptions: tuple[StackTrace, ...] = ()

    @field_validator("test_results", mode="before")
    @classmethod
    def _accept_pairs(cls, value: Any) -> Any:
        if isinstance(value, list | tuple):
            return {
                DeviceTest.model_validate(test): DeviceTestResult.model_validate(result)
                for test, result in value
            }
        return value

    @field_validator("test_results", mode="after")
    @classmethod
    def _sort_by_test(
        cls, value: Mapping[DeviceTest, DeviceTestResult]
    ) -> Mapping[DeviceTest, DeviceTestResult]:
        return dict(sorted(value.items()))

    @field_serializer("test_results", when_used="json")
    def _serialize_pairs(
        self, value: Mapping[DeviceTest, DeviceTestResult]
    ) -> list[list[dict[str, Any]]]:
        # JSON object keys must be strings, so tests are written as pairs.
        return [
            [test.model_dump(mode="json"), result.model_dump(mode="json")]
            for test, result in value.items()
        ]


class FleetSummary(Model):
    """Output of a complete fleet run."""

    title: str
    started: int
    duration: int = -1
    results: Mapping[str, DeviceResult] = Field(default_factory=dict)

    @property
    def ended(self) -> int:
        """Epoch milliseconds at which the run ended."""
        if self.duration < 0:
            return self.started
        return self.started + self.duration * 1000


class DeviceTestResultBuilder:
    """Builds a DeviceTestResult.

    The status defaults to PASS and may be set exactly once while the test
    is running. Evidence can be attached any time after start, including
    after end, since it is harvested once the whole run is over.
    """

    def __init__(self) -> None:
        self._lifecycle = Lifecycle.NEW
        self._status = TestStatus.PASS
        self._status_marked = False
        self._exception: StackTrace | None = None
        self._start_ns = 0
        self._duration = -1
        self._screenshots: list[Path] = []
        self._files: list[Path] = []
        self._animated_gif: Path | None = None
        self._log: tuple[DeviceLogMessage, ...] | None = None

    @property
    def ended(self) -> bool:
        """Whether end has been called."""
        return self._lifecycle is Lifecycle.ENDED

    @property
    def status_marked(self) -> bool:
        """Whether a status was set explicitly."""
        return self._status_marked

    @property
    def screenshots(self) -> tuple[Path, ...]:
        """Screenshots attached so far."""
        return tuple(self._screenshots)

    def start(self) -> "DeviceTestResultBuilder":
        """Start the test and its clock."""
        self._lifecycle = self._lifecycle.start()
        self._start_ns = time.monotonic_ns()
        return self

    def mark_passed(self) -> "DeviceTestResultBuilder":
        """Mark the test passed."""
        return self._mark(TestStatus.PASS, None)

    def mark_failed(self, exception: StackTrace) -> "DeviceTestResultBuilder":
        """Mark the test failed by an assertion."""
        return self._mark(TestStatus.FAIL, exception)

    def mark_error(self, exception: StackTrace) -> "DeviceTestResultBuilder":
        """Mark the test failed by an unexpected exception."""
        return self._mark(TestStatus.ERROR, exception)

    def mark_ignored(self) -> "DeviceTestResultBuilder":
        """Mark the test skipped."""
        return self._mark(TestStatus.IGNORED, None)

    def mark_assumption_failure(
        self, exception: StackTrace
    ) -> "DeviceTestResultBuilder":
        """Mark the test as having an unmet assumption."""
        return self._mark(TestStatus.ASSUMPTION_FAILURE, exception)

    def _mark(
        self, status: TestStatus, exception: StackTrace | None
    ) -> "DeviceTestResultBuilder":
        self._lifecycle.require_running("setting a status")
        if self._status_marked:
            raise LifecycleError(f"Status already set to {self._status}.")
        self._status = status
        self._status_marked = True
        self._exception = exception
        return self

    def end(self) -> "DeviceTestResultBuilder":
        """End the test and record its duration in seconds."""
        self._lifecycle = self._lifecycle.end()
        self._duration = _elapsed_seconds(self._start_ns)
        return self

    def add_screenshot(self, path: Path) -> "DeviceTestResultBuilder":
        """Attach a screenshot."""
        self._lifecycle.require_started("adding a screenshot")
        self._screenshots.append(path)
        return self

    def add_file(self, path: Path) -> "DeviceTestResultBuilder":
        """Attach a file written by the test."""
        self._lifecycle.require_started("adding a file")
        self._files.append(path)
        return self

    def set_animated_gif(self, path: Path) -> "DeviceTestResultBuilder":
        """Attach the GIF built from the screenshots, once."""
        self._lifecycle.require_started("setting the animated GIF")
        if self._animated_gif is not None:
            raise LifecycleError("Animated GIF already set.")
        self._animated_gif = path
        return self

    def set_log(
        self, messages: tuple[DeviceLogMessage, ...]
    ) -> "DeviceTestResultBuilder":
        """Attach the device log of the test, once."""
        self._lifecycle.require_started("setting the log")
        if self._log is not None:
            raise LifecycleError("Log already set.")
        self._log = tuple(messages)
        return self

    def build(self) -> DeviceTestResult:
        """Build the result, which requires the test to have started."""
        self._lifecycle.require_started("build")
        return DeviceTestResult(
            status=self._status,
            exception=self._exception,
            duration=self._duration,
            screenshots=tuple(self._screenshots),
            files=tuple(self._files),
            animated_gif=self._animated_gif,
            log=self._log or (),
        )


class DeviceResultBuilder:
    """Builds a DeviceResult.

    Either the install is marked failed, in which case no tests can ever be
    added, or tests are started, collected, and ended. Top-level exceptions
    can be recorded at any point.
    """

    def __init__(self) -> None:
        self._lifecycle = Lifecycle.NEW
        self._install_failed = False
        self._install_message: str | None = None
        self._details: DeviceDetails | None = None
        self._tests: dict[DeviceTest, DeviceTestResultBuilder] = {}
        self._exceptions: list[StackTrace] = []
        self._started = _now_millis()
        self._start_ns = 0
        self._duration = -1

    @property
    def install_failed(self) -> bool:
        """Whether the install was marked failed."""
        return self._install_failed

    @property
    def test_result_builders(self) -> Mapping[DeviceTest, DeviceTestResultBuilder]:
        """Snapshot of the test builders collected so far."""
        return dict(self._tests)

    def set_device_details(self, details: DeviceDetails) -> "DeviceResultBuilder":
        """Record the device metadata."""
        self._details = details
        return self

    def mark_install_failed(self, message: str) -> "DeviceResultBuilder":
        """Mark the install failed, once and before tests start."""
        if self._install_failed:
            raise LifecycleError("Install already marked as failed.")
        if self._lifecycle is not Lifecycle.NEW:
            raise LifecycleError("Cannot mark install failed after tests started.")
        self._install_failed = True
        self._install_message = message
        return self

    def start_tests(self) -> "DeviceResultBuilder":
        """Start collecting tests."""
        if self._install_failed:
            raise LifecycleError("Cannot start tests after install failed.")
        self._lifecycle = self._lifecycle.start()
        self._started = _now_millis()
        self._start_ns = time.monotonic_ns()
        return self

    def add_test_result_builder(
        self, test: DeviceTest, builder: DeviceTestResultBuilder
    ) -> "DeviceResultBuilder":
        """Add the builder of a test while tests are running."""
        if self._install_failed:
            raise LifecycleError("Cannot add test results after install failed.")
        self._lifecycle.require_running("adding a test result")
        if test in self._tests:
            raise LifecycleError(f"Test already added: {test}")
        self._tests[test] = builder
        return self

    def get_test_result_builder(
        self, test: DeviceTest
    ) -> DeviceTestResultBuilder | None:
        """Return the builder of a test, or None."""
        return self._tests.get(test)

    def end_tests(self) -> "DeviceResultBuilder":
        """Stop collecting tests and record the duration in seconds."""
        self._lifecycle = self._lifecycle.end()
        self._duration = _elapsed_seconds(self._start_ns)
        return self

    def add_exception(
        self, exception: BaseException | StackTrace | str
    ) -> "DeviceResultBuilder":
        """Record a top-level exception not attributable to a single test.

        Args:
            exception: A raised exception, an already converted trace, or
                a textual trace as reported by the device

        """
        if isinstance(exception, StackTrace):
            trace = exception
        elif isinstance(exception, str):
            trace = StackTrace.from_string(exception)
        else:
            trace = StackTrace.from_exception(exception)
        self._exceptions.append(trace)
        return self

    def build(self) -> DeviceResult:
        """Build the device result."""
        return DeviceResult(
            install_failed=self._install_failed,
            install_message=self._install_message,
            device_details=self._details,
            test_results={
                test: builder.build() for test, builder in self._tests.items()
            },
            started=self._started,
            duration=self._duration,
            exceptions=tuple(self._exceptions),
        )


class FleetSummaryBuilder:
    """Builds a FleetSummary.

    Results for different devices may arrive concurrently, so adding one is
    serialized by a lock.
    """

    def __init__(self) -> None:
        self._lifecycle = Lifecycle.NEW
        self._title: str | None = None
        self._results: dict[str, DeviceResult] = {}
        self._lock = threading.Lock()
        self._started = 0
        self._start_ns = 0
        self._duration = -1

    def set_title(self, title: str) -> "FleetSummaryBuilder":
        """Set the title, once."""
        if self._title is not None:
            raise LifecycleError("Title already set.")
        self._title = title
        return self

    def start(self, started_at: int | None = None) -> "FleetSummaryBuilder":
        """Start the summary.

        Args:
            started_at: Epoch milliseconds to record instead of the current time

        """
        self._lifecycle = self._lifecycle.start()
        self._started = _now_millis() if started_at is None else started_at
        self._start_ns = time.monotonic_ns()
        return self

    def add_result(self, serial: str, result: DeviceResult) -> "FleetSummaryBuilder":
        """Add a device result under its serial while the run is going."""
        with self._lock:
            self._lifecycle.require_running("adding a result")
            if serial in self._results:
                raise LifecycleError(f"Result already added for serial {serial}.")
            self._results[serial] = result
        log.debug("[%s] Result added to summary", serial)
        return self

    def end(self, duration: int | None = None) -> "FleetSummaryBuilder":
        """End the summary.

        Args:
            duration: Seconds to record instead of the measured duration

        """
        self._lifecycle = self._lifecycle.end()
        if duration is None:
            duration = _elapsed_seconds(self._start_ns)
        self._duration = duration
        return self

    def build(self) -> FleetSummary:
        """Build the summary, which requires a title and a start."""
        if self._title is None:
            raise LifecycleError("Title is required.")
        self._lifecycle.require_started("build")
        with self._lock:
            results = dict(self._results)
        return FleetSummary(
            title=self._title,
            started=self._started,
            duration=self._duration,
            results=results,
        )
