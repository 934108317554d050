"""Entry point of an isolated device worker process.

Usage: ``python -m fleet_test_runner.worker <device work directory>``
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from fleet_test_runner.backends.loading import load_backend_manifest
from fleet_test_runner.executor import DeviceExecutor
from fleet_test_runner.models.execution import ExecutionRequest
from fleet_test_runner.models.result import DeviceResult, DeviceResultBuilder
from fleet_test_runner.serialization import ResultCodec
from fleet_test_runner.workers import EXECUTION_FILE, LOG_FILE, RESULT_FILE

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

log = logging.getLogger(__name__)


async def execute(request: ExecutionRequest) -> DeviceResult:
    """Open the requested backend and run the device cycle with it."""
    try:
        manifest = load_backend_manifest(request.backend)
        config = manifest.config_cls(**request.backend_config)
        async with manifest.backend_factory(config) as backend:
            return await DeviceExecutor(backend=backend, request=request).run()
    except Exception as e:
        log.error("[%s] Worker failed: %s", request.serial, e, exc_info=e)
        return DeviceResultBuilder().add_exception(e).build()


def main(argv: list[str] | None = None) -> None:
    """Worker entry point."""
    parser = argparse.ArgumentParser(description="Run the test suite on one device")
    parser.add_argument(
        "work_dir",
        type=Path,
        help=f"Device work directory containing {EXECUTION_FILE}",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stderr),
            logging.FileHandler(args.work_dir / LOG_FILE, encoding="utf-8"),
        ],
    )

    codec = ResultCodec()
    request = codec.read(ExecutionRequest, args.work_dir / EXECUTION_FILE)
    if request.debug:
        logging.getLogger("fleet_test_runner").setLevel(logging.DEBUG)

    result = asyncio.run(execute(request))
    codec.write(args.work_dir / RESULT_FILE, result)
    sys.exit(0)


if __name__ == "__main__":  # pragma: no cover
    main()
