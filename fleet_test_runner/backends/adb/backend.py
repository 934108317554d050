"""Device backend driving the ``adb`` command line tool."""

import asyncio
import logging
import os
import shlex
from collections.abc import AsyncGenerator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from fleet_test_runner.backends.adb.config import AdbConfig
from fleet_test_runner.backends.adb.instrumentation import InstrumentationOutputParser
from fleet_test_runner.backends.base import (
    BackendError,
    DeviceBackend,
    DeviceNotFoundError,
    InstallError,
    RemotePathNotFoundError,
    TestRunListener,
)

log = logging.getLogger(__name__)


def resolve_adb_path(config: AdbConfig) -> str:
    """Locate the adb binary from the config, ANDROID_HOME, or PATH."""
    sdk_path = config.sdk_path
    if sdk_path is None and (android_home := os.environ.get("ANDROID_HOME")):
        sdk_path = Path(android_home)
    if sdk_path is None:
        return "adb"
    return str(sdk_path / "platform-tools" / "adb")


def parse_devices(output: str) -> Sequence[str]:
    """Extract serials of ready devices from ``adb devices`` output."""
    serials: list[str] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "device":
            serials.append(parts[0])
    return serials


@dataclass(frozen=True, kw_only=True)
class AdbBackend(DeviceBackend):
    """Device backend built on adb subprocesses.

    Short commands are bounded by ``adb_timeout``. Instrumentation runs are
    not, since a suite may legitimately run for a long time.
    """

    config: AdbConfig
    adb_path: str

    @classmethod
    @asynccontextmanager
    async def from_config(cls, config: AdbConfig) -> AsyncGenerator["AdbBackend", None]:
        """Create backend with a running adb server."""
        backend = cls(config=config, adb_path=resolve_adb_path(config))
        await backend._adb("start-server")
        yield backend

    async def list_devices(self) -> Sequence[str]:
        """Return the serials of all attached, ready devices."""
        return parse_devices(await self._adb("devices"))

    async def install_package(
        self, serial: str, artifact: Path, *, grant_permissions: bool = False
    ) -> None:
        """Install or replace a package, raising InstallError on rejection."""
        args = ["-s", serial, "install", "-r"]
        if grant_permissions:
            args.append("-g")
        args.append(str(artifact))

        returncode, stdout, stderr = await self._exec(*args)
        output = (stdout + stderr).strip()
        if returncode != 0 or "Success" not in output:
            self._raise_for_missing_device(serial, stderr)
            raise InstallError(f"Failed to install {artifact.name}: {output}")
        log.debug("[%s] Installed %s", serial, artifact.name)

    async def run_instrumentation(
        self,
        serial: str,
        test_package: str,
        runner_class: str,
        listener: TestRunListener,
        *,
        arguments: Mapping[str, str] | None = None,
    ) -> None:
        """Run ``am instrument -r -w`` and stream its events to the listener."""
        command = ["am", "instrument", "-r", "-w"]
        for key, value in (arguments or {}).items():
            command.extend(["-e", key, value])
        command.append(f"{test_package}/{runner_class}")
        shell_command = " ".join(shlex.quote(part) for part in command)
        log.info("[%s] Running %s", serial, shell_command)

        process = await asyncio.create_subprocess_exec(
            self.adb_path,
            "-s",
            serial,
            "shell",
            shell_command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        if process.stdout is None or process.stderr is None:
            raise BackendError("adb shell process has no output pipes")

        parser = InstrumentationOutputParser(listener, test_package)
        async for raw_line in process.stdout:
            parser.feed(raw_line.decode(errors="replace").rstrip("\r\n"))
        stderr = await process.stderr.read()
        await process.wait()

        if process.returncode != 0:
            self._raise_for_missing_device(serial, stderr.decode(errors="replace"))
        parser.finish()

    async def pull_directory(
        self, serial: str, remote_path: str, local_path: Path
    ) -> None:
        """Copy the contents of a device directory into a local directory."""
        returncode, listing, _ = await self._exec(
            "-s", serial, "shell", f"ls -d {shlex.quote(remote_path)}"
        )
        if returncode != 0 or "No such file" in listing or not listing.strip():
            raise RemotePathNotFoundError(f"{remote_path} does not exist on {serial}")

        local_path.mkdir(parents=True, exist_ok=True)
        source = f"{remote_path.rstrip('/')}/."
        await self._adb("-s", serial, "pull", source, str(local_path))
        log.debug("[%s] Pulled %s to %s", serial, remote_path, local_path)

    async def shell(self, serial: str, command: str) -> str:
        """Run a shell command on a device and return its standard output."""
        return await self._adb("-s", serial, "shell", command)

    async def _adb(self, *args: str) -> str:
        returncode, stdout, stderr = await self._exec(*args)
        if returncode != 0:
            if len(args) >= 2 and args[0] == "-s":
                self._raise_for_missing_device(args[1], stderr)
            raise BackendError(
                f"adb {' '.join(args)} exited with {returncode}: {stderr.strip()}"
            )
        return stdout

    async def _exec(self, *args: str) -> tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                self.adb_path,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise BackendError(f"adb binary not found at '{self.adb_path}'") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.config.adb_timeout
            )
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise BackendError(
                f"adb {' '.join(args)} timed out after {self.config.adb_timeout}s"
            ) from e

        returncode = await process.wait()
        return (
            returncode,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )

    @staticmethod
    def _raise_for_missing_device(serial: str, stderr: str) -> None:
        if "not found" in stderr and serial in stderr:
            raise DeviceNotFoundError(f"Device {serial} not found")
