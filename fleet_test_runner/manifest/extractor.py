"""Extraction of instrumentation identity from a test APK."""

import logging
import zipfile
from pathlib import Path

from fleet_test_runner.manifest.axml import ManifestParseError, XmlEvent, iter_events
from fleet_test_runner.models.execution import InstrumentationInfo

log = logging.getLogger(__name__)

MANIFEST_ENTRY = "AndroidManifest.xml"


def parse_manifest(data: bytes) -> InstrumentationInfo:
    """Read package and runner identity from a compiled manifest.

    The ``manifest`` element names the instrumentation package, ``uses-sdk``
    the minimum API level, and ``instrumentation`` the package under test
    and the runner class. Runner names that are relative (leading dot, or
    no dot at all) are resolved against the instrumentation package.

    Args:
        data: Bytes of a compiled AndroidManifest.xml

    Returns:
        The extracted instrumentation info

    Raises:
        ManifestParseError: If the document is malformed or a required
            value is missing

    """
    instrumentation_package: str | None = None
    application_package: str | None = None
    runner: str | None = None
    min_sdk_version: int | None = None

    for node in iter_events(data):
        if node.event is not XmlEvent.START_TAG:
            continue

        if node.name == "manifest":
            if attribute := node.attribute("package"):
                instrumentation_package = attribute.string_value
        elif node.name == "uses-sdk":
            if attribute := node.attribute("minSdkVersion"):
                try:
                    min_sdk_version = attribute.int_value
                except ManifestParseError:
                    # Preview codenames carry no numeric level.
                    log.warning(
                        "Ignoring non-numeric minSdkVersion %r", attribute.string_value
                    )
        elif node.name == "instrumentation":
            if attribute := node.attribute("targetPackage"):
                application_package = attribute.string_value
            if attribute := node.attribute("name"):
                runner = attribute.string_value

    if not instrumentation_package:
        raise ManifestParseError("Could not find test application package.")
    if not application_package:
        raise ManifestParseError("Could not find application package.")
    if not runner:
        raise ManifestParseError("Could not find test runner class.")

    return InstrumentationInfo(
        application_package=application_package,
        instrumentation_package=instrumentation_package,
        min_sdk_version=min_sdk_version,
        test_runner_class=resolve_runner_class(instrumentation_package, runner),
    )


def resolve_runner_class(package: str, runner: str) -> str:
    """Qualify a runner class name declared relative to a package."""
    if runner.startswith("."):
        return package + runner
    if "." not in runner:
        return f"{package}.{runner}"
    return runner


def extract_instrumentation_info(archive: Path) -> InstrumentationInfo:
    """Parse the manifest embedded in an instrumentation APK.

    Args:
        archive: Path to the APK (a zip archive)

    Returns:
        The extracted instrumentation info

    Raises:
        ManifestParseError: If the archive or its manifest is unreadable

    """
    try:
        with zipfile.ZipFile(archive) as apk:
            data = apk.read(MANIFEST_ENTRY)
    except KeyError as e:
        raise ManifestParseError(f"{archive} has no {MANIFEST_ENTRY}") from e
    except (zipfile.BadZipFile, OSError) as e:
        raise ManifestParseError(f"Unable to read {archive}: {e}") from e

    info = parse_manifest(data)
    log.info(
        "Parsed %s: package=%s target=%s runner=%s minSdk=%s",
        archive.name,
        info.instrumentation_package,
        info.application_package,
        info.test_runner_class,
        info.min_sdk_version,
    )
    return info
