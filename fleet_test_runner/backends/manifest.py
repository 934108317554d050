"""Backend manifest definition for the plugin system."""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Generic, TypeVar

from pydantic import BaseModel

from fleet_test_runner.backends.base import DeviceBackend

ConfigT = TypeVar("ConfigT", bound=BaseModel)


@dataclass(frozen=True, kw_only=True)
class BackendManifest(Generic[ConfigT]):
    """Manifest describing a device backend plugin.

    The configuration class validates the plugin's settings and the factory
    opens a backend for the duration of a run. Workers in other processes
    rebuild the same backend from the serialized settings.
    """

    config_cls: type[ConfigT]
    backend_factory: Callable[[ConfigT], AbstractAsyncContextManager[DeviceBackend]]
