"""Configuration for the adb backend."""

from pathlib import Path

from pydantic import BaseModel


class AdbConfig(BaseModel):
    """Configuration for the adb backend."""

    # Falls back to ANDROID_HOME, then to adb on PATH
    sdk_path: Path | None = None
    adb_timeout: float = 120.0
