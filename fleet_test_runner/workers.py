"""Workers executing one device's cycle, in process or isolated."""

import asyncio
import logging
import os
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from fleet_test_runner.backends.base import DeviceBackend
from fleet_test_runner.executor import DeviceExecutor, device_work_dir
from fleet_test_runner.models.execution import ExecutionRequest
from fleet_test_runner.models.result import DeviceResult, DeviceResultBuilder
from fleet_test_runner.serialization import ResultCodec

log = logging.getLogger(__name__)

EXECUTION_FILE = "execution.json"
RESULT_FILE = "result.json"
LOG_FILE = "output.log"
WORKER_MODULE = "fleet_test_runner.worker"


class WorkerError(Exception):
    """Raised when an isolated worker does not report a usable result."""


class DeviceWorker(ABC):
    """Runs the cycle for one device and returns its result."""

    @abstractmethod
    async def execute(self, request: ExecutionRequest) -> DeviceResult:
        """Execute a request and return the device's result."""


@dataclass(frozen=True, kw_only=True)
class InProcessWorker(DeviceWorker):
    """Runs the executor in the current event loop."""

    backend: DeviceBackend

    async def execute(self, request: ExecutionRequest) -> DeviceResult:
        return await DeviceExecutor(backend=self.backend, request=request).run()


@dataclass(frozen=True, kw_only=True)
class SubprocessWorker(DeviceWorker):
    """Runs the executor in a separate Python process.

    The request is written to ``execution.json`` in the device's work
    directory and the worker writes ``result.json`` next to it. A worker
    that dies, or leaves no readable result behind, yields a result holding
    only that failure.
    """

    codec: ResultCodec
    python: str = field(default=sys.executable)

    async def execute(self, request: ExecutionRequest) -> DeviceResult:
        work_dir = device_work_dir(request.output, request.serial)
        result_file = work_dir / RESULT_FILE
        self.codec.write(work_dir / EXECUTION_FILE, request)
        result_file.unlink(missing_ok=True)

        env = dict(os.environ)
        if request.python_path:
            env["PYTHONPATH"] = os.pathsep.join(request.python_path)

        log.info("[%s] Starting worker process", request.serial)
        process = await asyncio.create_subprocess_exec(
            self.python,
            "-m",
            WORKER_MODULE,
            str(work_dir),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        if process.stdout is None:
            raise WorkerError("Worker process has no output pipe")
        async for line in process.stdout:
            log.debug(
                "[%s] worker: %s",
                request.serial,
                line.decode(errors="replace").rstrip(),
            )
        returncode = await process.wait()
        log.info("[%s] Worker exited with code %d", request.serial, returncode)

        try:
            return self._read_result(result_file, returncode)
        except WorkerError as e:
            log.error("[%s] %s", request.serial, e)
            return DeviceResultBuilder().add_exception(e).build()

    def _read_result(self, result_file: Path, returncode: int) -> DeviceResult:
        try:
            return self.codec.read(DeviceResult, result_file)
        except FileNotFoundError as e:
            raise WorkerError(
                f"Worker exited with code {returncode} without writing {RESULT_FILE}"
            ) from e
        except (OSError, ValidationError) as e:
            raise WorkerError(f"Unable to read {result_file}: {e}") from e
