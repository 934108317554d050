"""Merging of fleet summaries produced by separate runs or hosts."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from fleet_test_runner.models.result import (
    DeviceResult,
    FleetSummary,
    FleetSummaryBuilder,
)
from fleet_test_runner.serialization import ResultCodec

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class SummaryMerger:
    """Combines several fleet summaries into one.

    The merged run starts at the earliest start and ends at the latest end.
    Devices are matched by serial. When a serial appears more than once,
    the first summary holding it is the master: its device data is kept,
    and tests it lacks are added from the later summaries. A test present
    in both keeps the master's result.
    """

    codec: ResultCodec = field(default_factory=ResultCodec)

    def merge(
        self, summaries: Sequence[FleetSummary], title: str | None = None
    ) -> FleetSummary:
        """Merge summaries in order.

        Args:
            summaries: Summaries to merge; the first one seen wins conflicts
            title: Title of the merged summary, defaults to the first title

        Returns:
            The merged summary

        Raises:
            ValueError: If no summaries are given

        """
        if not summaries:
            raise ValueError("At least one summary is required to merge")

        started = min(summary.started for summary in summaries)
        ended = max(summary.ended for summary in summaries)

        results: dict[str, DeviceResult] = {}
        for summary in summaries:
            for serial, addition in summary.results.items():
                if (master := results.get(serial)) is None:
                    results[serial] = addition
                else:
                    results[serial] = merge_device_results(master, addition)

        builder = FleetSummaryBuilder()
        builder.set_title(title if title is not None else summaries[0].title)
        builder.start(started_at=started)
        for serial, result in results.items():
            builder.add_result(serial, result)
        builder.end(duration=(ended - started) // 1000)

        log.info(
            "Merged %d summaries covering %d devices", len(summaries), len(results)
        )
        return builder.build()

    def merge_files(
        self, paths: Sequence[Path], title: str | None = None
    ) -> FleetSummary:
        """Read summaries from result documents and merge them in order."""
        summaries = [self.codec.read(FleetSummary, path) for path in paths]
        return self.merge(summaries, title)


def merge_device_results(master: DeviceResult, addition: DeviceResult) -> DeviceResult:
    """Add the tests of ``addition`` that ``master`` does not have."""
    test_results = dict(master.test_results)
    for test, result in addition.test_results.items():
        test_results.setdefault(test, result)
    return master.model_copy(
        update={"test_results": dict(sorted(test_results.items()))}
    )
