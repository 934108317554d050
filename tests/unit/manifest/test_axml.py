"""Tests for the binary XML parser."""

import struct

import pytest

from fleet_test_runner.manifest.axml import (
    CHUNK_XML,
    ByteCursor,
    ManifestParseError,
    StringPool,
    XmlEvent,
    iter_events,
)
from fleet_test_runner.testing.axml import (
    XmlElement,
    build_document,
    build_manifest,
    encode_string_pool,
)


def _read_pool(data: bytes) -> StringPool:
    cursor = ByteCursor(data)
    cursor.u16()
    cursor.u16()
    size = cursor.u32()
    return StringPool.read(cursor, 0, size)


@pytest.mark.parametrize("utf8", [True, False])
def test_string_pool_decodes_strings(utf8: bool) -> None:
    """Decodes short, empty and non-ASCII strings in either encoding."""
    strings = ["manifest", "", "café ☕", "package"]

    pool = _read_pool(encode_string_pool(strings, utf8=utf8))

    assert pool.utf8 is utf8
    assert [pool[i] for i in range(len(pool))] == strings


@pytest.mark.parametrize("utf8", [True, False])
def test_string_pool_decodes_long_length_prefixes(utf8: bool) -> None:
    """Lengths that need the two-unit prefix are decoded."""
    long = "x" * (0x8000 + 3 if not utf8 else 0x80 + 3)

    pool = _read_pool(encode_string_pool(["short", long], utf8=utf8))

    assert pool[1] == long


def test_string_pool_rejects_out_of_range_index() -> None:
    """Indices beyond the pool raise."""
    pool = _read_pool(encode_string_pool(["only"]))

    with pytest.raises(ManifestParseError, match="out of range"):
        pool.get(1)
    assert pool.get(0xFFFFFFFF) is None


def test_string_pool_rejects_overlong_string() -> None:
    """A length running past the chunk raises."""
    data = bytearray(encode_string_pool(["abc"], utf8=True))
    # UTF-8 byte count of the first string, after header and offset table
    data[33] = 0x70

    with pytest.raises(ManifestParseError, match="out of bounds"):
        _read_pool(bytes(data))


def test_iter_events_walks_document() -> None:
    """Yields document, tag and end events in order with attributes."""
    root = XmlElement(
        name="manifest",
        attributes={"package": "com.example", "versionCode": 7},
        children=(XmlElement(name="application"),),
    )

    nodes = list(iter_events(build_document(root)))

    assert [(n.event, n.name) for n in nodes] == [
        (XmlEvent.START_DOCUMENT, None),
        (XmlEvent.START_TAG, "manifest"),
        (XmlEvent.START_TAG, "application"),
        (XmlEvent.END_TAG, "application"),
        (XmlEvent.END_TAG, "manifest"),
        (XmlEvent.END_DOCUMENT, None),
    ]
    manifest = nodes[1]
    package = manifest.attribute("package")
    version = manifest.attribute("versionCode")
    assert package is not None and package.string_value == "com.example"
    assert version is not None and version.int_value == 7
    assert version.string_value == "7"
    assert package.namespace == "http://schemas.android.com/apk/res/android"
    assert manifest.attribute("missing") is None


@pytest.mark.parametrize("utf8", [True, False])
def test_iter_events_same_for_both_encodings(utf8: bool) -> None:
    """Tag names and values do not depend on the pool encoding."""
    nodes = list(iter_events(build_manifest(utf8=utf8)))

    names = [n.name for n in nodes if n.event is XmlEvent.START_TAG]
    assert names == [
        "manifest",
        "uses-sdk",
        "application",
        "uses-library",
        "instrumentation",
    ]


def test_iter_events_rejects_non_xml() -> None:
    """A document not starting with an XML chunk raises."""
    with pytest.raises(ManifestParseError, match="Not a binary XML"):
        list(iter_events(b"PK\x03\x04" + b"\x00" * 12))


def test_iter_events_rejects_truncated_document() -> None:
    """A document shorter than its header claims raises."""
    data = build_manifest()

    with pytest.raises(ManifestParseError):
        list(iter_events(data[: len(data) // 2]))


def test_iter_events_rejects_empty_input() -> None:
    """No bytes at all raises."""
    with pytest.raises(ManifestParseError, match="Unexpected end of data"):
        list(iter_events(b""))


def test_iter_events_rejects_node_before_pool() -> None:
    """A node chunk without a preceding string pool raises."""
    node = struct.pack("<HHIII", 0x0102, 16, 16, 1, 0xFFFFFFFF)
    data = struct.pack("<HHI", CHUNK_XML, 8, 8 + len(node)) + node

    with pytest.raises(ManifestParseError, match="before the string pool"):
        list(iter_events(data))


def test_byte_cursor_never_moves_backwards() -> None:
    """Skipping to an earlier offset raises."""
    cursor = ByteCursor(b"\x01\x00\x02\x00")
    assert cursor.u16() == 1

    with pytest.raises(ManifestParseError, match="backwards"):
        cursor.skip_to(0)
