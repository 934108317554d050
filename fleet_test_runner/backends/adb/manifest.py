"""adb backend manifest."""

from fleet_test_runner.backends.adb.backend import AdbBackend
from fleet_test_runner.backends.adb.config import AdbConfig
from fleet_test_runner.backends.manifest import BackendManifest

adb_manifest = BackendManifest(
    config_cls=AdbConfig,
    backend_factory=AdbBackend.from_config,
)
