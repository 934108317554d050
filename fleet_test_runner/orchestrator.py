"""Fleet orchestrator running the suite on every target device."""

import asyncio
import logging
import shutil
import sys
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from fleet_test_runner.backends.base import DeviceBackend
from fleet_test_runner.config import ConfigurationError, RunConfig
from fleet_test_runner.executor import WORK_DIR
from fleet_test_runner.manifest.extractor import extract_instrumentation_info
from fleet_test_runner.models.device import sanitize_serial
from fleet_test_runner.models.execution import ExecutionRequest, InstrumentationInfo
from fleet_test_runner.models.result import (
    DeviceResult,
    DeviceResultBuilder,
    FleetSummary,
    FleetSummaryBuilder,
    TestStatus,
)
from fleet_test_runner.serialization import ResultCodec
from fleet_test_runner.workers import (
    DeviceWorker,
    InProcessWorker,
    SubprocessWorker,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class FleetRunResult:
    """Summary of a fleet run and its overall verdict."""

    summary: FleetSummary
    success: bool


def parse_overall_success(summary: FleetSummary) -> bool:
    """Decide whether a run succeeded.

    A run fails if any device failed to install, raised top-level
    exceptions without running a single test, or has a test that did not
    pass. A device that ran no tests and raised nothing counts as passing.
    """
    for result in summary.results.values():
        if result.install_failed:
            return False
        if result.exceptions and not result.test_results:
            return False
        if any(r.status is not TestStatus.PASS for r in result.test_results.values()):
            return False
    return True


@dataclass(frozen=True, kw_only=True)
class FleetOrchestrator:
    """Runs the instrumentation suite on a fleet of devices.

    A single target device runs in the current event loop. Several devices
    run concurrently, each in its own worker process by default, so that a
    crash on one device cannot affect the others. There is no fleet-level
    timeout: the run waits for every device to report.
    """

    backend: DeviceBackend
    config: RunConfig
    codec: ResultCodec = field(default_factory=ResultCodec)

    async def run(self) -> FleetRunResult:
        """Run the suite on all target devices.

        Returns:
            The fleet summary and the overall verdict

        Raises:
            ConfigurationError: If an APK is missing, no device is
                available while one is required, or two serials share an
                output name
            ManifestParseError: If the instrumentation APK's manifest
                cannot be read

        """
        config = self.config
        for apk in (config.application_apk, config.instrumentation_apk):
            if not apk.is_file():
                raise ConfigurationError(f"APK not found: {apk}")

        info = extract_instrumentation_info(config.instrumentation_apk)
        serials = await self.resolve_serials(info)

        output = config.output.absolute()
        if output.exists():
            shutil.rmtree(output)
        output.mkdir(parents=True)

        summary = FleetSummaryBuilder().set_title(config.title).start()
        requests = self._build_requests(serials, info, output)

        if len(requests) == 1:
            (request,) = requests
            log.info("[%s] Running on single device", request.serial)
            try:
                result = await InProcessWorker(backend=self.backend).execute(request)
            except Exception as e:
                result = self._error_result(request, e)
            summary.add_result(sanitize_serial(request.serial), result)
        elif requests:
            log.info(
                "Running on %d devices (%s isolation)",
                len(requests),
                config.isolation,
            )
            worker = self._worker()
            results = await asyncio.gather(
                *(worker.execute(request) for request in requests),
                return_exceptions=True,
            )
            for request, result in self._process_results(requests, results):
                summary.add_result(sanitize_serial(request.serial), result)
        else:
            log.warning("No devices to run on")

        summary.end()
        if not config.debug:
            shutil.rmtree(output / WORK_DIR, ignore_errors=True)

        built = summary.build()
        success = parse_overall_success(built)
        log.info("Fleet run finished: success=%s", success)
        return FleetRunResult(summary=built, success=success)

    async def resolve_serials(self, info: InstrumentationInfo) -> Sequence[str]:
        """Select the devices to run on.

        Explicit serials are used as given. Otherwise every attached device
        is used, except those below the manifest's minimum API level. The
        skip list applies in both cases.

        Raises:
            ConfigurationError: If no device remains and one is required, or
                two serials share a sanitized output name

        """
        config = self.config
        if config.serials:
            serials = list(dict.fromkeys(config.serials))
        else:
            serials = []
            for serial in await self.backend.list_devices():
                if await self._supports_min_sdk(serial, info.min_sdk_version):
                    serials.append(serial)

        skipped = set(config.skip_serials)
        serials = [serial for serial in serials if serial not in skipped]

        if not serials and config.fail_if_no_device:
            raise ConfigurationError("No devices found to run on.")

        # Output directories and summary keys use the sanitized serial.
        keys: dict[str, str] = {}
        for serial in serials:
            key = sanitize_serial(serial)
            if (other := keys.setdefault(key, serial)) != serial:
                raise ConfigurationError(
                    f"Devices {other} and {serial} share the output name {key}."
                    " Skip one of them."
                )

        log.info("Target devices: %s", ", ".join(serials) or "none")
        return serials

    async def _supports_min_sdk(self, serial: str, min_sdk_version: int | None) -> bool:
        if min_sdk_version is None:
            return True
        try:
            output = await self.backend.shell(serial, "getprop ro.build.version.sdk")
            api_level = int(output.strip())
        except Exception as e:
            # The executor records the device's failure in its result.
            log.warning("[%s] Unable to read API level: %s", serial, e)
            return True
        if api_level < min_sdk_version:
            log.info(
                "[%s] Skipping device with API level %d below minSdkVersion %d",
                serial,
                api_level,
                min_sdk_version,
            )
            return False
        return True

    def _build_requests(
        self, serials: Sequence[str], info: InstrumentationInfo, output: Path
    ) -> Sequence[ExecutionRequest]:
        config = self.config
        num_shards = len(serials) if config.shard and len(serials) > 1 else 0
        python_path = [entry for entry in sys.path if entry]
        return [
            ExecutionRequest(
                serial=serial,
                application_apk=config.application_apk.absolute(),
                instrumentation_apk=config.instrumentation_apk.absolute(),
                output=output,
                instrumentation_info=info,
                debug=config.debug,
                no_animations=config.no_animations,
                grant_all=config.grant_all,
                class_name=config.class_name,
                method_name=config.method_name,
                test_size=config.test_size,
                instrumentation_args=config.instrumentation_args,
                shard_index=index if num_shards else 0,
                num_shards=num_shards,
                backend=config.backend,
                backend_config=config.backend_config,
                python_path=python_path,
            )
            for index, serial in enumerate(serials)
        ]

    def _worker(self) -> DeviceWorker:
        if self.config.isolation == "task":
            return InProcessWorker(backend=self.backend)
        return SubprocessWorker(codec=self.codec)

    def _process_results(
        self,
        requests: Sequence[ExecutionRequest],
        results: Sequence[DeviceResult | BaseException],
    ) -> Sequence[tuple[ExecutionRequest, DeviceResult]]:
        """Pair results with their requests, converting exceptions."""
        final_results: list[tuple[ExecutionRequest, DeviceResult]] = []

        for request, result in zip(requests, results, strict=True):
            if isinstance(result, DeviceResult):
                log.info(
                    "[%s] Completed: install_failed=%s tests=%d exceptions=%d",
                    request.serial,
                    result.install_failed,
                    len(result.test_results),
                    len(result.exceptions),
                )
                final_results.append((request, result))
            elif isinstance(result, Exception):
                final_results.append((request, self._error_result(request, result)))
            else:
                raise result

        return final_results

    @staticmethod
    def _error_result(request: ExecutionRequest, error: Exception) -> DeviceResult:
        log.error(
            "[%s] Device execution failed: %s", request.serial, error, exc_info=error
        )
        return DeviceResultBuilder().add_exception(error).build()
