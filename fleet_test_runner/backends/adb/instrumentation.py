"""Parser for the raw output of ``am instrument -r -w``.

With ``-r`` the runner prints key/value bundles instead of a human readable
report. Each test produces a start bundle (status code 1) and a finish
bundle whose status code gives the outcome. Values may span several lines;
any line without a known prefix continues the previous value.
"""

import logging
import time

from fleet_test_runner.backends.base import TestRunListener
from fleet_test_runner.models.device import DeviceTest

log = logging.getLogger(__name__)

STATUS_PREFIX = "INSTRUMENTATION_STATUS: "
STATUS_CODE_PREFIX = "INSTRUMENTATION_STATUS_CODE: "
RESULT_PREFIX = "INSTRUMENTATION_RESULT: "
CODE_PREFIX = "INSTRUMENTATION_CODE: "
FAILED_PREFIX = "INSTRUMENTATION_FAILED: "

STATUS_START = 1
STATUS_OK = 0
STATUS_ERROR = -1
STATUS_FAILURE = -2
STATUS_IGNORED = -3
STATUS_ASSUMPTION_FAILURE = -4


class InstrumentationOutputParser:
    """Turns instrumentation output lines into listener callbacks."""

    def __init__(self, listener: TestRunListener, run_name: str) -> None:
        self._listener = listener
        self._run_name = run_name
        self._status: dict[str, str] = {}
        self._result: dict[str, str] = {}
        self._current: dict[str, str] | None = None
        self._key: str | None = None
        self._run_started = False
        self._run_failure: str | None = None
        self._completed = False
        self._start_ns = time.monotonic_ns()

    def feed(self, line: str) -> None:
        """Consume one line of output, without its line terminator."""
        if line.startswith(STATUS_CODE_PREFIX):
            self._key = None
            self._handle_status_code(line.removeprefix(STATUS_CODE_PREFIX).strip())
        elif line.startswith(STATUS_PREFIX):
            self._store(self._status, line.removeprefix(STATUS_PREFIX))
        elif line.startswith(RESULT_PREFIX):
            self._store(self._result, line.removeprefix(RESULT_PREFIX))
        elif line.startswith(CODE_PREFIX):
            self._key = None
            self._completed = True
        elif line.startswith(FAILED_PREFIX):
            self._key = None
            self._run_failure = line.removeprefix(FAILED_PREFIX).strip()
        elif self._current is not None and self._key is not None:
            self._current[self._key] += "\n" + line

    def finish(self) -> None:
        """Signal the end of output and report the run outcome."""
        self._ensure_run_started(0)

        failure = self._run_failure
        if failure is None and "shortMsg" in self._result:
            failure = self._result["shortMsg"]
        if failure is None and not self._completed:
            failure = "Test run failed to complete. Instrumentation output ended early."
        if failure is not None:
            log.warning("Instrumentation run failed: %s", failure)
            self._listener.test_run_failed(failure)

        elapsed_millis = (time.monotonic_ns() - self._start_ns) // 1_000_000
        self._listener.test_run_ended(elapsed_millis)

    def _store(self, bundle: dict[str, str], entry: str) -> None:
        key, _, value = entry.partition("=")
        bundle[key] = value
        self._current = bundle
        self._key = key

    def _handle_status_code(self, raw_code: str) -> None:
        status, self._status = self._status, {}
        try:
            code = int(raw_code)
        except ValueError:
            log.warning("Ignoring unexpected status code %r", raw_code)
            return

        class_name = status.get("class")
        method_name = status.get("test")
        if class_name is None or method_name is None:
            log.debug("Ignoring status bundle without a test: %s", status)
            return

        test = DeviceTest(class_name=class_name, method_name=method_name)
        trace = status.get("stack", "")

        if code == STATUS_START:
            self._ensure_run_started(int(status.get("numtests", "0") or 0))
            self._listener.test_started(test)
            return

        if code == STATUS_FAILURE:
            self._listener.test_failed(test, trace)
        elif code == STATUS_ERROR:
            self._listener.test_failed(test, trace, error=True)
        elif code == STATUS_IGNORED:
            self._listener.test_ignored(test)
        elif code == STATUS_ASSUMPTION_FAILURE:
            self._listener.test_assumption_failure(test, trace)
        elif code != STATUS_OK:
            log.warning("Unknown status code %d for %s", code, test)
        self._listener.test_ended(test)

    def _ensure_run_started(self, test_count: int) -> None:
        if not self._run_started:
            self._run_started = True
            self._listener.test_run_started(self._run_name, test_count)
