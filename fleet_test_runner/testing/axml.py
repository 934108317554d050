"""Writer of compiled binary XML documents and APKs for tests."""

import struct
import zipfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from fleet_test_runner.manifest.axml import (
    CHUNK_END_NAMESPACE,
    CHUNK_END_TAG,
    CHUNK_RESOURCE_MAP,
    CHUNK_START_NAMESPACE,
    CHUNK_START_TAG,
    CHUNK_STRING_POOL,
    CHUNK_XML,
    NO_INDEX,
    TYPE_INT_DEC,
    TYPE_STRING,
    UTF8_FLAG,
)
from fleet_test_runner.manifest.extractor import MANIFEST_ENTRY

ANDROID_NAMESPACE = "http://schemas.android.com/apk/res/android"


@dataclass(frozen=True, kw_only=True)
class XmlElement:
    """Element to encode; string values become pool strings, ints stay typed."""

    name: str
    attributes: Mapping[str, str | int] = field(default_factory=dict)
    children: Sequence["XmlElement"] = ()


def encode_string_pool(strings: Sequence[str], *, utf8: bool = True) -> bytes:
    """Encode a complete string pool chunk."""
    data = bytearray()
    offsets = []
    for string in strings:
        offsets.append(len(data))
        data += _encode_utf8(string) if utf8 else _encode_utf16(string)
    while len(data) % 4:
        data += b"\x00"

    header_size = 28
    strings_start = header_size + 4 * len(strings)
    chunk_size = strings_start + len(data)
    header = struct.pack(
        "<HHIIIIII",
        CHUNK_STRING_POOL,
        header_size,
        chunk_size,
        len(strings),
        0,
        UTF8_FLAG if utf8 else 0,
        strings_start,
        0,
    )
    return header + b"".join(struct.pack("<I", o) for o in offsets) + bytes(data)


def _encode_utf8(string: str) -> bytes:
    encoded = string.encode("utf-8")
    units = len(string.encode("utf-16-le")) // 2
    return _utf8_length(units) + _utf8_length(len(encoded)) + encoded + b"\x00"


def _utf8_length(length: int) -> bytes:
    if length > 0x7F:
        return bytes([(length >> 8) | 0x80, length & 0xFF])
    return bytes([length])


def _encode_utf16(string: str) -> bytes:
    encoded = string.encode("utf-16-le")
    units = len(encoded) // 2
    if units > 0x7FFF:
        prefix = struct.pack("<HH", (units >> 16) | 0x8000, units & 0xFFFF)
    else:
        prefix = struct.pack("<H", units)
    return prefix + encoded + b"\x00\x00"


class _Document:
    def __init__(self, root: XmlElement) -> None:
        self.strings: list[str] = []
        self._index(ANDROID_NAMESPACE)
        self._index("android")
        self._collect(root)

    def _index(self, string: str) -> int:
        if string not in self.strings:
            self.strings.append(string)
        return self.strings.index(string)

    def _collect(self, element: XmlElement) -> None:
        self._index(element.name)
        for name, value in element.attributes.items():
            self._index(name)
            if isinstance(value, str):
                self._index(value)
        for child in element.children:
            self._collect(child)

    def nodes(self, element: XmlElement, line: int = 1) -> bytes:
        attributes = b""
        for name, value in element.attributes.items():
            if isinstance(value, str):
                index = self._index(value)
                raw, data_type, data = index, TYPE_STRING, index
            else:
                raw, data_type, data = NO_INDEX, TYPE_INT_DEC, value & 0xFFFFFFFF
            attributes += struct.pack(
                "<IIIHBBI",
                self._index(ANDROID_NAMESPACE),
                self._index(name),
                raw,
                8,
                0,
                data_type,
                data,
            )
        body = struct.pack(
            "<IIHHHHHH",
            NO_INDEX,
            self._index(element.name),
            20,
            20,
            len(element.attributes),
            0,
            0,
            0,
        )
        start = _node(CHUNK_START_TAG, line, body + attributes)
        children = b"".join(
            self.nodes(child, line + offset + 1)
            for offset, child in enumerate(element.children)
        )
        end = _node(
            CHUNK_END_TAG, line, struct.pack("<II", NO_INDEX, self._index(element.name))
        )
        return start + children + end


def _node(chunk_type: int, line: int, body: bytes) -> bytes:
    return struct.pack("<HHIII", chunk_type, 16, 16 + len(body), line, NO_INDEX) + body


def build_document(root: XmlElement, *, utf8: bool = True) -> bytes:
    """Encode an element tree as a compiled binary XML document.

    The document carries a resource map and a namespace declaration like
    documents produced by the Android build tools.
    """
    document = _Document(root)
    nodes = document.nodes(root)
    pool = encode_string_pool(document.strings, utf8=utf8)
    resource_map = struct.pack("<HHII", CHUNK_RESOURCE_MAP, 8, 12, 0x0101021B)
    namespace = struct.pack("<II", 1, 0)
    body = (
        pool
        + resource_map
        + _node(CHUNK_START_NAMESPACE, 1, namespace)
        + nodes
        + _node(CHUNK_END_NAMESPACE, 1, namespace)
    )
    return struct.pack("<HHI", CHUNK_XML, 8, 8 + len(body)) + body


def build_manifest(
    *,
    package: str = "com.example.app.test",
    target_package: str = "com.example.app",
    runner: str = "androidx.test.runner.AndroidJUnitRunner",
    min_sdk: int | str | None = 21,
    utf8: bool = True,
) -> bytes:
    """Encode a typical instrumentation APK manifest."""
    children = []
    if min_sdk is not None:
        children.append(
            XmlElement(name="uses-sdk", attributes={"minSdkVersion": min_sdk})
        )
    library = XmlElement(
        name="uses-library", attributes={"name": "android.test.runner"}
    )
    children.append(
        XmlElement(
            name="application",
            attributes={"label": "Tests"},
            children=(library,),
        )
    )
    children.append(
        XmlElement(
            name="instrumentation",
            attributes={"name": runner, "targetPackage": target_package},
        )
    )
    root = XmlElement(
        name="manifest",
        attributes={"versionCode": 1, "package": package},
        children=tuple(children),
    )
    return build_document(root, utf8=utf8)


def write_apk(path: Path, manifest: bytes) -> Path:
    """Write a minimal APK containing the given compiled manifest."""
    with zipfile.ZipFile(path, "w") as apk:
        apk.writestr(MANIFEST_ENTRY, manifest)
        apk.writestr("classes.dex", b"dex\n035\x00")
    return path
