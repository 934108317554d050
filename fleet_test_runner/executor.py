"""Execution of the instrumentation suite on a single device."""

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from fleet_test_runner.backends.base import (
    DeviceBackend,
    DeviceNotFoundError,
    RemotePathNotFoundError,
    TestRunListener,
)
from fleet_test_runner.harvest import (
    DEVICE_DIRS,
    FILES_DIR,
    SCREENSHOT_DIR,
    collect_test_artifacts,
    create_animated_gif,
)
from fleet_test_runner.logcat import (
    LOGCAT_CLEAR_COMMAND,
    LOGCAT_DUMP_COMMAND,
    parse_logcat,
    partition_by_test,
)
from fleet_test_runner.models.device import (
    DeviceDetails,
    DeviceTest,
    parse_getprop,
    sanitize_serial,
)
from fleet_test_runner.models.execution import ExecutionRequest
from fleet_test_runner.models.lifecycle import LifecycleError
from fleet_test_runner.models.result import (
    DeviceResult,
    DeviceResultBuilder,
    DeviceTestResultBuilder,
)
from fleet_test_runner.models.stack_trace import StackTrace

log = logging.getLogger(__name__)

MARSHMALLOW_API_LEVEL = 23
STORAGE_PERMISSIONS = (
    "android.permission.READ_EXTERNAL_STORAGE",
    "android.permission.WRITE_EXTERNAL_STORAGE",
)

WORK_DIR = "work"
IMAGE_DIR = "image"
FILE_DIR = "file"


class TestRunFailedError(Exception):
    """A whole instrumentation run failed independently of any test."""

    __test__ = False


class IncompleteTestError(Exception):
    """A test started but never finished before its run ended."""

    __test__ = False


class ResultRecordingListener(TestRunListener):
    """Records instrumentation events into a device result builder.

    Events for tests that were never reported as started are tolerated by
    starting a result on the fly. Out-of-order events never propagate;
    they are logged and kept as top-level exceptions of the device.
    """

    def __init__(self, result: DeviceResultBuilder, serial: str) -> None:
        self._result = result
        self._serial = serial

    def test_run_started(self, run_name: str, test_count: int) -> None:
        log.info(
            "[%s] Run %s started with %d test(s)", self._serial, run_name, test_count
        )

    def test_started(self, test: DeviceTest) -> None:
        log.debug("[%s] Test started: %s", self._serial, test)
        with self._recording():
            builder = DeviceTestResultBuilder().start()
            self._result.add_test_result_builder(test, builder)

    def test_failed(self, test: DeviceTest, trace: str, *, error: bool = False) -> None:
        log.info("[%s] Test %s: %s", self._serial, "error" if error else "failed", test)
        with self._recording():
            exception = StackTrace.from_string(trace)
            if error:
                self._builder(test).mark_error(exception)
            else:
                self._builder(test).mark_failed(exception)

    def test_ignored(self, test: DeviceTest) -> None:
        log.debug("[%s] Test ignored: %s", self._serial, test)
        with self._recording():
            self._builder(test).mark_ignored()

    def test_assumption_failure(self, test: DeviceTest, trace: str) -> None:
        log.debug("[%s] Test assumption failed: %s", self._serial, test)
        with self._recording():
            self._builder(test).mark_assumption_failure(StackTrace.from_string(trace))

    def test_ended(self, test: DeviceTest) -> None:
        log.debug("[%s] Test ended: %s", self._serial, test)
        with self._recording():
            self._builder(test).end()

    def test_run_failed(self, message: str) -> None:
        log.warning("[%s] Run failed: %s", self._serial, message)
        self._result.add_exception(TestRunFailedError(message))

    def test_run_ended(self, elapsed_millis: int) -> None:
        log.info("[%s] Run ended after %d ms", self._serial, elapsed_millis)

    def finish_incomplete_tests(self) -> None:
        """Record every test still running as an error and end it."""
        for test, builder in self._result.test_result_builders.items():
            if builder.ended:
                continue
            log.warning("[%s] Test did not finish: %s", self._serial, test)
            if not builder.status_marked:
                error = IncompleteTestError(
                    f"{test} did not finish before the run ended."
                )
                builder.mark_error(StackTrace.from_exception(error))
            builder.end()

    def _builder(self, test: DeviceTest) -> DeviceTestResultBuilder:
        if (builder := self._result.get_test_result_builder(test)) is not None:
            return builder
        log.warning("[%s] Event for a test that never started: %s", self._serial, test)
        builder = DeviceTestResultBuilder().start()
        self._result.add_test_result_builder(test, builder)
        return builder

    @contextmanager
    def _recording(self) -> Iterator[None]:
        try:
            yield
        except LifecycleError as e:
            log.error("[%s] Unexpected test event: %s", self._serial, e)
            self._result.add_exception(e)


def device_work_dir(output: Path, serial: str) -> Path:
    """Private working directory of a device inside the run output."""
    return output / WORK_DIR / sanitize_serial(serial)


def instrumentation_arguments(request: ExecutionRequest) -> Mapping[str, str]:
    """Build the ``-e`` arguments of an instrumentation run."""
    arguments: dict[str, str] = {}
    for key, value in request.instrumentation_args.items():
        if not key or not value:
            log.debug(
                "Can't process instrumentation arg [%s=>%s] (empty key or value)",
                key,
                value,
            )
            continue
        arguments[key] = value

    if request.num_shards:
        arguments["numShards"] = str(request.num_shards)
        arguments["shardIndex"] = str(request.shard_index)

    if request.class_name:
        if request.method_name:
            arguments["class"] = f"{request.class_name}#{request.method_name}"
        else:
            arguments["class"] = request.class_name

    if request.test_size:
        arguments["size"] = request.test_size

    return arguments


@dataclass(frozen=True, kw_only=True)
class DeviceExecutor:
    """Runs the full install, test and harvest cycle on one device.

    ``run`` never raises: every failure becomes part of the returned result,
    either as a failed install or as a top-level exception.
    """

    backend: DeviceBackend
    request: ExecutionRequest

    @property
    def serial(self) -> str:
        return self.request.serial

    @property
    def work_dir(self) -> Path:
        return device_work_dir(self.request.output, self.serial)

    @property
    def image_dir(self) -> Path:
        return self.request.output / IMAGE_DIR / sanitize_serial(self.serial)

    @property
    def file_dir(self) -> Path:
        return self.request.output / FILE_DIR / sanitize_serial(self.serial)

    async def run(self) -> DeviceResult:
        """Execute the suite on the device.

        Returns:
            The device's result

        """
        result = DeviceResultBuilder()
        info = self.request.instrumentation_info
        log.debug("[%s] Instrumentation info: %s", self.serial, info)

        try:
            details = await self._resolve_device()
        except Exception as e:
            log.error("[%s] Unable to reach device: %s", self.serial, e)
            return result.add_exception(e).build()
        result.set_device_details(details)
        log.debug("[%s] Device details: %s", self.serial, details)

        if (message := await self._install(details, result)) is not None:
            return result.mark_install_failed(message).build()

        try:
            await self._run_tests(result)
        except Exception as e:
            log.error("[%s] Test run raised: %s", self.serial, e, exc_info=e)
            result.add_exception(e)

        await self._harvest(result)
        log.info("[%s] Done", self.serial)
        return result.build()

    async def _resolve_device(self) -> DeviceDetails:
        if self.serial not in await self.backend.list_devices():
            raise DeviceNotFoundError(f"Unknown device serial: {self.serial}")
        properties = parse_getprop(await self.backend.shell(self.serial, "getprop"))
        return DeviceDetails.from_properties(properties)

    async def _install(
        self, details: DeviceDetails, result: DeviceResultBuilder
    ) -> str | None:
        """Install both APKs and prepare storage, returning a failure message."""
        grant = self.request.grant_all and details.api_level >= MARSHMALLOW_API_LEVEL
        artifacts = (
            (self.request.application_apk, "Unable to install application APK."),
            (
                self.request.instrumentation_apk,
                "Unable to install instrumentation APK.",
            ),
        )
        for artifact, message in artifacts:
            try:
                await self.backend.install_package(
                    self.serial, artifact, grant_permissions=grant
                )
            except Exception as e:
                log.warning(
                    "[%s] Install of %s failed: %s", self.serial, artifact.name, e
                )
                result.add_exception(e)
                return message

        try:
            for name in DEVICE_DIRS:
                for remote in await self._remote_dirs(name):
                    await self.backend.shell(self.serial, f"rm -rf {remote}")
        except Exception as e:
            log.warning("[%s] Unable to clear device storage: %s", self.serial, e)
            result.add_exception(e)
            return "Unable to prepare device storage."

        if details.api_level >= MARSHMALLOW_API_LEVEL:
            package = self.request.instrumentation_info.application_package
            try:
                for permission in STORAGE_PERMISSIONS:
                    await self.backend.shell(
                        self.serial, f"pm grant {package} {permission}"
                    )
            except Exception as e:
                log.warning("[%s] Unable to grant storage access: %s", self.serial, e)
                result.add_exception(e)
                return "Unable to grant external storage access to application APK."

        return None

    async def _run_tests(self, result: DeviceResultBuilder) -> None:
        info = self.request.instrumentation_info
        self.work_dir.mkdir(parents=True, exist_ok=True)
        listener = ResultRecordingListener(result, self.serial)

        result.start_tests()
        try:
            await self.backend.shell(self.serial, LOGCAT_CLEAR_COMMAND)
            await self.backend.run_instrumentation(
                self.serial,
                info.instrumentation_package,
                info.test_runner_class,
                listener,
                arguments=instrumentation_arguments(self.request),
            )
        finally:
            listener.finish_incomplete_tests()
            result.end_tests()

    async def _harvest(self, result: DeviceResultBuilder) -> None:
        """Attach logs, screenshots and files, recording any failure."""
        steps = (
            self._attach_logs,
            self._pull_device_files,
            self._attach_screenshots,
            self._attach_files,
        )
        for step in steps:
            try:
                await step(result)
            except Exception as e:
                log.error("[%s] Harvest failed: %s", self.serial, e, exc_info=e)
                result.add_exception(e)

    async def _attach_logs(self, result: DeviceResultBuilder) -> None:
        output = await self.backend.shell(self.serial, LOGCAT_DUMP_COMMAND)
        logs = partition_by_test(parse_logcat(output.splitlines()))
        for test, messages in logs.items():
            if (builder := result.get_test_result_builder(test)) is not None:
                builder.set_log(tuple(messages))

    async def _pull_device_files(self, result: DeviceResultBuilder) -> None:
        for name in DEVICE_DIRS:
            local = self.work_dir / name
            for remote in await self._remote_dirs(name):
                try:
                    await self.backend.pull_directory(self.serial, remote, local)
                except RemotePathNotFoundError as e:
                    log.debug("[%s] Nothing to pull: %s", self.serial, e)

    async def _attach_screenshots(self, result: DeviceResultBuilder) -> None:
        artifacts = collect_test_artifacts(
            self.work_dir / SCREENSHOT_DIR, self.image_dir
        )
        for test, screenshots in artifacts.items():
            if (builder := result.get_test_result_builder(test)) is None:
                log.error("[%s] Unable to find test for %s", self.serial, test)
                continue
            for screenshot in screenshots:
                builder.add_screenshot(screenshot)

        if self.request.no_animations:
            return

        for test, screenshots in artifacts.items():
            builder = result.get_test_result_builder(test)
            if builder is None or len(screenshots) < 2:
                continue
            animated_gif = self.image_dir / test.class_name / f"{test.method_name}.gif"
            try:
                create_animated_gif(screenshots, animated_gif)
            except (OSError, ValueError) as e:
                log.error("[%s] Unable to create GIF for %s: %s", self.serial, test, e)
                result.add_exception(e)
                continue
            builder.set_animated_gif(animated_gif)

    async def _attach_files(self, result: DeviceResultBuilder) -> None:
        artifacts = collect_test_artifacts(self.work_dir / FILES_DIR, self.file_dir)
        for test, files in artifacts.items():
            if (builder := result.get_test_result_builder(test)) is None:
                log.error("[%s] Unable to find test for %s", self.serial, test)
                continue
            for path in files:
                builder.add_file(path)

    async def _remote_dirs(self, name: str) -> tuple[str, str]:
        """Return the external and internal storage locations of a directory."""
        output = await self.backend.shell(self.serial, "echo $EXTERNAL_STORAGE")
        external = output.strip()
        package = self.request.instrumentation_info.application_package
        return f"{external}/{name}", f"/data/data/{package}/{name}"
