"""Copying of image evidence when merging summaries from several runs."""

import logging
import shutil
from collections.abc import Sequence
from pathlib import Path

from fleet_test_runner.models.device import DeviceTest, sanitize_serial
from fleet_test_runner.models.result import DeviceTestResult, FleetSummary

log = logging.getLogger(__name__)

IMAGES_DIR = "images"


def copy_and_rewrite(
    output_dir: Path, summaries: Sequence[FleetSummary]
) -> Sequence[FleetSummary]:
    """Gather the images referenced by summaries into one directory.

    Screenshots and animated GIFs are copied into ``<output_dir>/images``
    under names derived from serial, test and file name, with a numeric
    suffix when that name is already taken, and the returned summaries
    reference the copies. References to missing files are kept
    unchanged.

    Args:
        output_dir: Directory of the merged report
        summaries: Summaries whose images should be gathered

    Returns:
        Summaries rewritten to point at the copies, in input order

    """
    images_dir = (output_dir / IMAGES_DIR).absolute()
    images_dir.mkdir(parents=True, exist_ok=True)
    copier = _ImageCopier(images_dir)

    rewritten: list[FleetSummary] = []
    for summary in summaries:
        results = {}
        for serial, device_result in summary.results.items():
            test_results = {
                test: copier.rewrite(serial, test, result)
                for test, result in device_result.test_results.items()
            }
            results[serial] = device_result.model_copy(
                update={"test_results": test_results}
            )
        rewritten.append(summary.model_copy(update={"results": results}))

    log.info("Copied %d image(s) to %s", copier.copied, images_dir)
    return rewritten


class _ImageCopier:
    def __init__(self, images_dir: Path) -> None:
        self._images_dir = images_dir
        self._copies: dict[Path, Path] = {}

    @property
    def copied(self) -> int:
        return len(self._copies)

    def rewrite(
        self, serial: str, test: DeviceTest, result: DeviceTestResult
    ) -> DeviceTestResult:
        screenshots = tuple(
            self._copy(serial, test, path) for path in result.screenshots
        )
        animated_gif = (
            self._copy(serial, test, result.animated_gif)
            if result.animated_gif is not None
            else None
        )
        return result.model_copy(
            update={"screenshots": screenshots, "animated_gif": animated_gif}
        )

    def _copy(self, serial: str, test: DeviceTest, source: Path) -> Path:
        if (copy := self._copies.get(source)) is not None:
            return copy
        if not source.is_file():
            log.warning("Referenced image %s does not exist, keeping reference", source)
            return source

        stem = "_".join(
            sanitize_serial(part)
            for part in (serial, test.class_name, test.method_name, source.stem)
        )
        copy = self._images_dir / f"{stem}{source.suffix}"
        counter = 1
        # Repeated runs of one device reuse serial, test and file name.
        while copy.exists():
            copy = self._images_dir / f"{stem}_{counter}{source.suffix}"
            counter += 1
        shutil.copyfile(source, copy)
        self._copies[source] = copy
        return copy
