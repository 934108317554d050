"""Collection of test evidence pulled from a device."""

import logging
import shutil
from collections.abc import Mapping, Sequence
from pathlib import Path

from PIL import Image

from fleet_test_runner.models.device import DeviceTest

log = logging.getLogger(__name__)

SCREENSHOT_DIR = "app_fleet_screenshots"
FILES_DIR = "app_fleet_files"
DEVICE_DIRS = (SCREENSHOT_DIR, FILES_DIR)

GIF_FRAME_DURATION_MS = 1500


def collect_test_artifacts(
    pulled_dir: Path, destination: Path
) -> Mapping[DeviceTest, Sequence[Path]]:
    """Copy pulled evidence into place and group it by test.

    Devices write evidence as ``<class>/<method>/<file>``. Each class
    directory is copied below ``destination`` and every file in it is
    attributed to the test named by its parent directory.

    Args:
        pulled_dir: Directory holding the class directories pulled from a device
        destination: Directory that receives the class directories

    Returns:
        Copied files per test, sorted by path

    """
    artifacts: dict[DeviceTest, list[Path]] = {}
    if not pulled_dir.is_dir():
        return artifacts

    for class_dir in sorted(pulled_dir.iterdir()):
        if not class_dir.is_dir():
            log.debug("Ignoring stray file %s", class_dir)
            continue

        target = destination / class_dir.name
        shutil.copytree(class_dir, target, dirs_exist_ok=True)

        for path in sorted(p for p in target.rglob("*") if p.is_file()):
            test = DeviceTest(class_name=class_dir.name, method_name=path.parent.name)
            artifacts.setdefault(test, []).append(path)

    return artifacts


def create_animated_gif(screenshots: Sequence[Path], destination: Path) -> None:
    """Combine screenshots into a looping GIF.

    Frames are drawn on a white canvas sized to the largest screenshot and
    shown for 1.5 seconds each.

    Args:
        screenshots: Frames in display order
        destination: Path of the GIF to write

    Raises:
        ValueError: If no screenshots are given
        OSError: If a screenshot cannot be read or the GIF cannot be written

    """
    if not screenshots:
        raise ValueError("At least one screenshot is required")

    images = []
    for screenshot in screenshots:
        with Image.open(screenshot) as image:
            images.append(image.convert("RGB"))

    width = max(image.width for image in images)
    height = max(image.height for image in images)

    frames = []
    for image in images:
        frame = Image.new("RGB", (width, height), "white")
        frame.paste(image, (0, 0))
        frames.append(frame)

    destination.parent.mkdir(parents=True, exist_ok=True)
    frames[0].save(
        destination,
        format="GIF",
        save_all=True,
        append_images=frames[1:],
        duration=GIF_FRAME_DURATION_MS,
        loop=0,
    )
    log.debug("Wrote %d frame GIF to %s", len(frames), destination)
