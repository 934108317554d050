"""Streaming parser for Android's compiled binary XML format.

A compiled document is a tree of chunks, each introduced by a header of
``type (u16), header size (u16), total size (u32)``, all little-endian:

- an XML chunk wrapping the whole document
- a string pool holding every name and string value, UTF-8 or UTF-16
- an optional resource id map, which is skipped
- one chunk per node: namespace start/end, element start/end, character data

The parser reads the buffer once, front to back. Names and values are kept
as indices into the decoded string pool and only resolved on access.
"""

import logging
import struct
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from enum import IntEnum

log = logging.getLogger(__name__)

CHUNK_STRING_POOL = 0x0001
CHUNK_XML = 0x0003
CHUNK_START_NAMESPACE = 0x0100
CHUNK_END_NAMESPACE = 0x0101
CHUNK_START_TAG = 0x0102
CHUNK_END_TAG = 0x0103
CHUNK_CDATA = 0x0104
CHUNK_RESOURCE_MAP = 0x0180

CHUNK_HEADER_SIZE = 8
NODE_HEADER_SIZE = 16
ATTRIBUTE_SIZE = 20

UTF8_FLAG = 1 << 8
NO_INDEX = 0xFFFFFFFF

TYPE_REFERENCE = 0x01
TYPE_STRING = 0x03
TYPE_INT_DEC = 0x10
TYPE_INT_HEX = 0x11
TYPE_INT_BOOLEAN = 0x12


class ManifestParseError(Exception):
    """Raised when a binary manifest or its container cannot be parsed."""


class XmlEvent(IntEnum):
    """Kinds of events produced while walking a document."""

    START_DOCUMENT = 0
    END_DOCUMENT = 1
    START_TAG = 2
    END_TAG = 3
    TEXT = 4


class ByteCursor:
    """Forward-only reader of little-endian integers over a byte buffer."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._position = 0

    @property
    def position(self) -> int:
        return self._position

    @property
    def remaining(self) -> int:
        return len(self._data) - self._position

    def u8(self) -> int:
        return self._unpack("<B", 1)

    def u16(self) -> int:
        return self._unpack("<H", 2)

    def u32(self) -> int:
        return self._unpack("<I", 4)

    def read_bytes(self, count: int) -> bytes:
        self._require(count)
        chunk = self._data[self._position : self._position + count]
        self._position += count
        return chunk

    def skip(self, count: int) -> None:
        if count < 0:
            raise ManifestParseError(
                f"Cannot move backwards by {-count} bytes at offset {self._position}"
            )
        self._require(count)
        self._position += count

    def skip_to(self, offset: int) -> None:
        self.skip(offset - self._position)

    def _unpack(self, fmt: str, size: int) -> int:
        self._require(size)
        (value,) = struct.unpack_from(fmt, self._data, self._position)
        self._position += size
        return value

    def _require(self, count: int) -> None:
        if count > self.remaining:
            raise ManifestParseError(
                f"Unexpected end of data: need {count} bytes at offset "
                f"{self._position}, {self.remaining} available"
            )


class StringPool:
    """Decoded strings of a document, addressed by index."""

    def __init__(self, strings: Sequence[str], *, utf8: bool) -> None:
        self._strings = tuple(strings)
        self.utf8 = utf8

    def __len__(self) -> int:
        return len(self._strings)

    def __getitem__(self, index: int) -> str:
        if not 0 <= index < len(self._strings):
            raise ManifestParseError(
                f"String index {index} out of range ({len(self._strings)} strings)"
            )
        return self._strings[index]

    def get(self, index: int) -> str | None:
        """Resolve an index, treating the sentinel for "no string" as None."""
        if index == NO_INDEX:
            return None
        return self[index]

    @classmethod
    def read(
        cls, cursor: ByteCursor, chunk_start: int, chunk_size: int
    ) -> "StringPool":
        """Read a string pool chunk whose 8-byte header was already consumed.

        Args:
            cursor: Cursor positioned right after the chunk header
            chunk_start: Offset of the chunk header
            chunk_size: Total size of the chunk in bytes

        Returns:
            The decoded pool

        Raises:
            ManifestParseError: If offsets or string lengths are inconsistent

        """
        string_count = cursor.u32()
        style_count = cursor.u32()
        flags = cursor.u32()
        strings_start = cursor.u32()
        cursor.u32()  # styles start

        offsets = [cursor.u32() for _ in range(string_count)]
        cursor.skip(4 * style_count)

        chunk_end = chunk_start + chunk_size
        data_start = chunk_start + strings_start
        if string_count and not cursor.position <= data_start <= chunk_end:
            raise ManifestParseError(f"Invalid string data offset {strings_start}")
        if string_count:
            cursor.skip_to(data_start)
        data = cursor.read_bytes(chunk_end - cursor.position)

        utf8 = bool(flags & UTF8_FLAG)
        decode = _decode_utf8 if utf8 else _decode_utf16
        strings = [decode(data, offset) for offset in offsets]
        log.debug("Decoded %d strings (utf8=%s)", len(strings), utf8)
        return cls(strings, utf8=utf8)


def _decode_utf8(data: bytes, offset: int) -> str:
    # Two lengths precede the bytes: UTF-16 units, then UTF-8 bytes. Each is
    # one byte, or two when the high bit of the first is set.
    _, offset = _utf8_length(data, offset)
    byte_length, offset = _utf8_length(data, offset)
    raw = _slice(data, offset, byte_length)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ManifestParseError(f"Invalid UTF-8 string at offset {offset}") from e


def _utf8_length(data: bytes, offset: int) -> tuple[int, int]:
    first = _slice(data, offset, 1)[0]
    if first & 0x80:
        second = _slice(data, offset + 1, 1)[0]
        return ((first & 0x7F) << 8) | second, offset + 2
    return first, offset + 1


def _decode_utf16(data: bytes, offset: int) -> str:
    # Length in UTF-16 units, one unit or two when the high bit is set.
    (first,) = struct.unpack("<H", _slice(data, offset, 2))
    offset += 2
    if first & 0x8000:
        (second,) = struct.unpack("<H", _slice(data, offset, 2))
        offset += 2
        length = ((first & 0x7FFF) << 16) | second
    else:
        length = first
    raw = _slice(data, offset, 2 * length)
    try:
        return raw.decode("utf-16-le")
    except UnicodeDecodeError as e:
        raise ManifestParseError(f"Invalid UTF-16 string at offset {offset}") from e


def _slice(data: bytes, offset: int, length: int) -> bytes:
    if offset < 0 or offset + length > len(data):
        raise ManifestParseError(
            f"String data out of bounds: {length} bytes at offset {offset}"
        )
    return data[offset : offset + length]


@dataclass(frozen=True, kw_only=True)
class XmlAttribute:
    """An attribute of a start tag, resolved against the string pool on access."""

    pool: StringPool = field(repr=False)
    namespace_index: int
    name_index: int
    raw_value_index: int
    data_type: int
    data: int

    @property
    def namespace(self) -> str | None:
        return self.pool.get(self.namespace_index)

    @property
    def name(self) -> str:
        return self.pool[self.name_index]

    @property
    def string_value(self) -> str | None:
        """Value as text, whatever its stored type."""
        if self.raw_value_index != NO_INDEX:
            return self.pool[self.raw_value_index]
        if self.data_type == TYPE_STRING:
            return self.pool[self.data]
        if self.data_type == TYPE_INT_DEC:
            return str(_signed(self.data))
        if self.data_type == TYPE_INT_HEX:
            return f"0x{self.data:08x}"
        if self.data_type == TYPE_INT_BOOLEAN:
            return "true" if self.data else "false"
        if self.data_type == TYPE_REFERENCE:
            return f"@0x{self.data:08x}"
        return None

    @property
    def int_value(self) -> int:
        """Value as an integer.

        Raises:
            ManifestParseError: If the value is neither numeric nor numeric text

        """
        if self.raw_value_index == NO_INDEX:
            if self.data_type == TYPE_INT_DEC:
                return _signed(self.data)
            if self.data_type in {TYPE_INT_HEX, TYPE_INT_BOOLEAN}:
                return self.data
        text = self.string_value
        try:
            return int(text or "")
        except ValueError as e:
            raise ManifestParseError(
                f"Attribute {self.name!r} is not an integer: {text!r}"
            ) from e


def _signed(value: int) -> int:
    return value - (1 << 32) if value & 0x80000000 else value


@dataclass(frozen=True, kw_only=True)
class XmlNode:
    """One event of the document walk."""

    event: XmlEvent
    line: int = 0
    name: str | None = None
    namespace: str | None = None
    text: str | None = None
    attributes: tuple[XmlAttribute, ...] = ()

    def attribute(self, name: str) -> XmlAttribute | None:
        """Find an attribute by local name."""
        return next((a for a in self.attributes if a.name == name), None)


def iter_events(data: bytes) -> Iterator[XmlNode]:
    """Walk a compiled binary XML document.

    Args:
        data: The complete document

    Yields:
        START_DOCUMENT, then one node per tag or text record, then END_DOCUMENT

    Raises:
        ManifestParseError: If the document is truncated or malformed

    """
    cursor = ByteCursor(data)
    chunk_type = cursor.u16()
    header_size = cursor.u16()
    document_size = cursor.u32()
    if chunk_type != CHUNK_XML:
        raise ManifestParseError(f"Not a binary XML document (type 0x{chunk_type:04x})")
    if header_size < CHUNK_HEADER_SIZE or document_size > len(data):
        raise ManifestParseError("Invalid binary XML document header")
    cursor.skip_to(header_size)

    yield XmlNode(event=XmlEvent.START_DOCUMENT)

    pool: StringPool | None = None
    while cursor.position + CHUNK_HEADER_SIZE <= document_size:
        chunk_start = cursor.position
        chunk_type = cursor.u16()
        header_size = cursor.u16()
        chunk_size = cursor.u32()
        if chunk_size < CHUNK_HEADER_SIZE or chunk_start + chunk_size > document_size:
            raise ManifestParseError(
                f"Invalid chunk size {chunk_size} at offset {chunk_start}"
            )

        if chunk_type == CHUNK_STRING_POOL:
            pool = StringPool.read(cursor, chunk_start, chunk_size)
        elif CHUNK_START_NAMESPACE <= chunk_type <= CHUNK_CDATA:
            if pool is None:
                raise ManifestParseError("Node chunk found before the string pool")
            node = _read_node(cursor, pool, chunk_type, chunk_start, header_size)
            if node is not None:
                yield node
        else:
            log.debug("Skipping chunk 0x%04x at offset %d", chunk_type, chunk_start)

        cursor.skip_to(chunk_start + chunk_size)

    yield XmlNode(event=XmlEvent.END_DOCUMENT)


def _read_node(
    cursor: ByteCursor,
    pool: StringPool,
    chunk_type: int,
    chunk_start: int,
    header_size: int,
) -> XmlNode | None:
    line = cursor.u32()
    cursor.u32()  # comment
    cursor.skip_to(chunk_start + header_size)

    if chunk_type in {CHUNK_START_NAMESPACE, CHUNK_END_NAMESPACE}:
        return None

    if chunk_type == CHUNK_END_TAG:
        namespace = pool.get(cursor.u32())
        return XmlNode(
            event=XmlEvent.END_TAG,
            line=line,
            namespace=namespace,
            name=pool[cursor.u32()],
        )

    if chunk_type == CHUNK_CDATA:
        return XmlNode(event=XmlEvent.TEXT, line=line, text=pool.get(cursor.u32()))

    body_start = cursor.position
    namespace = pool.get(cursor.u32())
    name = pool[cursor.u32()]
    attribute_start = cursor.u16()
    attribute_size = cursor.u16()
    attribute_count = cursor.u16()
    cursor.skip(6)  # id, class and style attribute indices
    if attribute_size < ATTRIBUTE_SIZE:
        raise ManifestParseError(f"Invalid attribute size {attribute_size}")
    cursor.skip_to(body_start + attribute_start)

    attributes = []
    for _ in range(attribute_count):
        attribute_offset = cursor.position
        namespace_index = cursor.u32()
        name_index = cursor.u32()
        raw_value_index = cursor.u32()
        cursor.u16()  # typed value size
        cursor.u8()  # reserved
        data_type = cursor.u8()
        value = cursor.u32()
        attributes.append(
            XmlAttribute(
                pool=pool,
                namespace_index=namespace_index,
                name_index=name_index,
                raw_value_index=raw_value_index,
                data_type=data_type,
                data=value,
            )
        )
        cursor.skip_to(attribute_offset + attribute_size)

    return XmlNode(
        event=XmlEvent.START_TAG,
        line=line,
        namespace=namespace,
        name=name,
        attributes=tuple(attributes),
    )
