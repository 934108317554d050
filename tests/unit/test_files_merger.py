"""Tests for image copying when merging."""

from pathlib import Path

import pytest

from fleet_test_runner.files_merger import copy_and_rewrite
from fleet_test_runner.merger import SummaryMerger
from fleet_test_runner.models.device import DeviceTest
from fleet_test_runner.testing.factories import (
    DeviceResultFactory,
    DeviceTestResultFactory,
    FleetSummaryFactory,
)

TEST = DeviceTest(class_name="com.example.FooTest", method_name="testOne")


def _file(path: Path, content: bytes = b"png") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def test_copies_images_and_rewrites_paths(tmp_path: Path) -> None:
    """Screenshots and GIFs are copied under unique names."""
    screenshot = _file(tmp_path / "run1" / "image" / "1.png", b"one")
    gif = _file(tmp_path / "run1" / "image" / "testOne.gif", b"gif")
    summary = FleetSummaryFactory.build(
        results={
            "emulator-5554": DeviceResultFactory.build(
                test_results={
                    TEST: DeviceTestResultFactory.build(
                        screenshots=(screenshot,), animated_gif=gif
                    )
                }
            )
        }
    )
    output = tmp_path / "merged"

    [rewritten] = copy_and_rewrite(output, [summary])

    result = rewritten.results["emulator-5554"].test_results[TEST]
    images = output.absolute() / "images"
    assert result.screenshots == (
        images / "emulator-5554_com_example_FooTest_testOne_1.png",
    )
    assert result.animated_gif == (
        images / "emulator-5554_com_example_FooTest_testOne_testOne.gif"
    )
    assert result.screenshots[0].read_bytes() == b"one"
    assert result.animated_gif.read_bytes() == b"gif"


def test_keeps_reference_to_missing_image(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    """A reference to a file that does not exist is kept and logged."""
    missing = tmp_path / "gone.png"
    result = DeviceTestResultFactory.build(screenshots=(missing,))
    summary = FleetSummaryFactory.build(
        results={"a": DeviceResultFactory.build(test_results={TEST: result})}
    )

    [rewritten] = copy_and_rewrite(tmp_path / "merged", [summary])

    assert rewritten.results["a"].test_results[TEST].screenshots == (missing,)
    assert "does not exist" in caplog.text


def test_keeps_summaries_in_order(tmp_path: Path) -> None:
    """Every summary is returned, in input order."""
    summaries = [
        FleetSummaryFactory.build(title="First"),
        FleetSummaryFactory.build(title="Second"),
    ]

    rewritten = copy_and_rewrite(tmp_path, summaries)

    assert [s.title for s in rewritten] == ["First", "Second"]
    assert (tmp_path / "images").is_dir()


def test_repeated_runs_of_one_device_keep_their_own_images(tmp_path: Path) -> None:
    """Same serial, test and file name from two runs get distinct copies."""
    first = _file(tmp_path / "runA" / "image" / "testOne" / "1.png", b"A")
    second = _file(tmp_path / "runB" / "image" / "testOne" / "1.png", b"B")
    summaries = [
        FleetSummaryFactory.build(
            results={
                "emulator-5554": DeviceResultFactory.build(
                    test_results={
                        TEST: DeviceTestResultFactory.build(screenshots=(path,))
                    }
                )
            }
        )
        for path in (first, second)
    ]
    output = tmp_path / "merged"

    rewritten = copy_and_rewrite(output, summaries)
    merged = SummaryMerger().merge(rewritten)

    images = output.absolute() / "images"
    [master] = merged.results["emulator-5554"].test_results[TEST].screenshots
    assert master == images / "emulator-5554_com_example_FooTest_testOne_1.png"
    assert master.read_bytes() == b"A"
    [later] = rewritten[1].results["emulator-5554"].test_results[TEST].screenshots
    assert later == images / "emulator-5554_com_example_FooTest_testOne_1_1.png"
    assert later.read_bytes() == b"B"
