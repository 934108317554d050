"""Loading of device backends from entry points."""

from importlib.metadata import entry_points
from typing import Any

from fleet_test_runner.backends.manifest import BackendManifest

ENTRY_POINT_GROUP = "fleet_test_runner.backends"


class BackendNotFoundError(Exception):
    """Raised when a backend is not found."""


def load_backend_manifest(key: str) -> BackendManifest[Any]:
    """Load a backend manifest by key.

    Args:
        key: The backend key as registered in pyproject.toml (e.g., "adb")

    Returns:
        The backend manifest instance

    Raises:
        BackendNotFoundError: If no backend with the given key is found

    """
    entries = entry_points(group=ENTRY_POINT_GROUP)

    for entry in entries:
        if entry.name == key:
            manifest: BackendManifest[Any] = entry.load()
            return manifest

    available = [e.name for e in entries]
    raise BackendNotFoundError(
        f"Backend '{key}' not found. Available backends: {available}"
    )
