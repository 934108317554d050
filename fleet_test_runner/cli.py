"""CLI entry point for running and merging fleet test runs."""

import argparse
import asyncio
import json
import logging
import sys
from collections import Counter
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from fleet_test_runner.backends.loading import (
    BackendNotFoundError,
    load_backend_manifest,
)
from fleet_test_runner.config import (
    ConfigurationError,
    RunConfig,
    build_run_config,
    load_run_config,
)
from fleet_test_runner.files_merger import copy_and_rewrite
from fleet_test_runner.manifest.axml import ManifestParseError
from fleet_test_runner.merger import SummaryMerger
from fleet_test_runner.models.result import FleetSummary, TestStatus
from fleet_test_runner.orchestrator import FleetOrchestrator
from fleet_test_runner.serialization import ResultCodec

SUMMARY_FILE = "result.json"

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_FATAL = 2

STATUS_SYMBOLS = {
    TestStatus.PASS: "✅",
    TestStatus.FAIL: "❌",
    TestStatus.ERROR: "❗",
    TestStatus.IGNORED: "⏭️",
    TestStatus.ASSUMPTION_FAILURE: "⚠️",
}


def log_results_summary(log: logging.Logger, summary: FleetSummary) -> None:
    """Log a formatted summary of results per device."""
    log.info("=" * 80)
    log.info("Test Results Summary: %s", summary.title)
    log.info("=" * 80)

    for serial, result in summary.results.items():
        name = result.device_details.name if result.device_details else ""
        if result.install_failed:
            log.info(
                "❌ %s %s: install failed (%s)", serial, name, result.install_message
            )
            continue

        counts = Counter(r.status for r in result.test_results.values())
        log.info(
            "%s %s: %d test(s) in %ds",
            serial,
            name,
            len(result.test_results),
            max(result.duration, 0),
        )
        for status, symbol in STATUS_SYMBOLS.items():
            if counts[status]:
                log.info("  %s %s: %d", symbol, status, counts[status])
        for exception in result.exceptions:
            log.info("  Exception: %s", exception)


def parse_instrumentation_args(values: Sequence[str]) -> Mapping[str, str]:
    """Parse ``key=value`` instrumentation arguments."""
    arguments: dict[str, str] = {}
    for value in values:
        key, separator, argument = value.partition("=")
        if not separator:
            raise ConfigurationError(
                f"Instrumentation argument must be key=value, got '{value}'"
            )
        arguments[key.strip()] = argument.strip()
    return arguments


def build_config(args: argparse.Namespace) -> RunConfig:
    """Combine the optional config file with the flags given on the CLI."""
    overrides: dict[str, Any] = {
        key: value
        for key, value in vars(args).items()
        if key not in {"command", "config"}
    }
    if "backend_config" in overrides:
        try:
            overrides["backend_config"] = json.loads(overrides["backend_config"])
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid backend config JSON: {e}") from e
    if "instrumentation_args" in overrides:
        overrides["instrumentation_args"] = parse_instrumentation_args(
            overrides["instrumentation_args"]
        )

    if args.config is not None:
        return load_run_config(args.config, overrides)
    return build_run_config(overrides)


async def run(config: RunConfig) -> int:
    """Run the suite on the fleet and return exit code."""
    log = logging.getLogger("fleet_test_runner")
    codec = ResultCodec()

    log.info("Loading backend: %s", config.backend)
    manifest = load_backend_manifest(config.backend)
    try:
        backend_config = manifest.config_cls(**config.backend_config)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid config for backend {config.backend}: {e}"
        ) from e

    async with manifest.backend_factory(backend_config) as backend:
        orchestrator = FleetOrchestrator(backend=backend, config=config, codec=codec)
        result = await orchestrator.run()

    summary_file = config.output.absolute() / SUMMARY_FILE
    codec.write(summary_file, result.summary)
    log_results_summary(log, result.summary)
    log.info("Summary written to %s", summary_file)

    if result.success:
        return EXIT_SUCCESS
    log.warning("Fleet run failed")
    return EXIT_FAILURE if config.fail_on_failure else EXIT_SUCCESS


def merge(inputs: Sequence[Path], output: Path, title: str | None = None) -> int:
    """Merge result documents into one summary and return exit code."""
    log = logging.getLogger("fleet_test_runner")
    codec = ResultCodec()

    try:
        summaries = [codec.read(FleetSummary, path) for path in inputs]
    except (OSError, ValidationError) as e:
        raise ConfigurationError(f"Unable to read result document: {e}") from e

    output.mkdir(parents=True, exist_ok=True)
    rewritten = copy_and_rewrite(output, summaries)
    merged = SummaryMerger(codec=codec).merge(rewritten, title)

    summary_file = output.absolute() / SUMMARY_FILE
    codec.write(summary_file, merged)
    log_results_summary(log, merged)
    log.info("Merged summary written to %s", summary_file)
    return EXIT_SUCCESS


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser.

    Run options default to "not given" so that only explicit flags override
    values from the config file.
    """
    parser = argparse.ArgumentParser(
        description="Run Android instrumentation tests on a fleet of devices"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    unset = argparse.SUPPRESS

    run_parser = subparsers.add_parser("run", help="Run the suite on all devices")
    run_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML file with run options",
    )
    run_parser.add_argument(
        "--backend",
        default=unset,
        help="Backend key (e.g. adb)",
    )
    run_parser.add_argument(
        "--backend-config",
        default=unset,
        help="JSON configuration for the backend",
    )
    run_parser.add_argument(
        "--app",
        dest="application_apk",
        type=Path,
        default=unset,
        help="Application APK",
    )
    run_parser.add_argument(
        "--test",
        dest="instrumentation_apk",
        type=Path,
        default=unset,
        help="Instrumentation APK",
    )
    run_parser.add_argument(
        "--serial",
        dest="serials",
        action="append",
        default=unset,
        help="Device serial to run on (repeatable, default: all attached)",
    )
    run_parser.add_argument(
        "--skip-serial",
        dest="skip_serials",
        action="append",
        default=unset,
        help="Device serial to skip (repeatable)",
    )
    run_parser.add_argument(
        "--output",
        type=Path,
        default=unset,
        help="Output directory",
    )
    run_parser.add_argument(
        "--title",
        default=unset,
        help="Title of the summary",
    )
    run_parser.add_argument(
        "--debug",
        action="store_true",
        default=unset,
        help="Verbose logging and keep work files",
    )
    run_parser.add_argument(
        "--no-animations",
        action="store_true",
        default=unset,
        help="Do not create animated GIFs",
    )
    run_parser.add_argument(
        "--grant-all",
        action="store_true",
        default=unset,
        help="Grant all runtime permissions on install",
    )
    run_parser.add_argument(
        "--shard",
        action="store_true",
        default=unset,
        help="Split the tests across devices",
    )
    run_parser.add_argument(
        "--isolation",
        choices=["process", "task"],
        default=unset,
        help="Isolation of devices in multi-device runs",
    )
    run_parser.add_argument(
        "--class-name",
        default=unset,
        help="Test class to run",
    )
    run_parser.add_argument(
        "--method-name",
        default=unset,
        help="Test method to run (requires --class-name)",
    )
    run_parser.add_argument(
        "--size",
        dest="test_size",
        choices=["small", "medium", "large"],
        default=unset,
        help="Only run tests of this size",
    )
    run_parser.add_argument(
        "--instrumentation-arg",
        dest="instrumentation_args",
        action="append",
        default=unset,
        help="Extra instrumentation argument as key=value (repeatable)",
    )
    run_parser.add_argument(
        "--fail-on-failure",
        action="store_true",
        default=unset,
        help="Exit non-zero when the run fails",
    )
    run_parser.add_argument(
        "--fail-if-no-device",
        action="store_true",
        default=unset,
        help="Exit non-zero when no device is available",
    )

    merge_parser = subparsers.add_parser("merge", help="Merge result documents")
    merge_parser.add_argument(
        "--output",
        type=Path,
        required=True,
        help="Output directory of the merged summary",
    )
    merge_parser.add_argument(
        "--title",
        default=None,
        help="Title of the merged summary (default: first input's title)",
    )
    merge_parser.add_argument(
        "inputs",
        type=Path,
        nargs="+",
        help="result.json files to merge, first one wins conflicts",
    )

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point."""
    args = create_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    log = logging.getLogger("fleet_test_runner")

    try:
        if args.command == "merge":
            exit_code = merge(args.inputs, args.output, args.title)
        else:
            config = build_config(args)
            if config.debug:
                log.setLevel(logging.DEBUG)
            exit_code = asyncio.run(run(config))
    except (ConfigurationError, ManifestParseError, BackendNotFoundError) as e:
        log.error("%s", e)
        exit_code = EXIT_FATAL
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
