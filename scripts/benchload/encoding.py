"""
Wire encodings for the sinks.

RowBinary (ClickHouse, and the DuckDB batch hand-off):
    per field: LEB128 varint length, then the raw bytes.

PostgreSQL binary COPY:
    stream = signature + int32 flags + int32 header-extension length,
             then tuples, then an int16 -1 trailer.
    tuple  = int16 field count, then per field int32 length + bytes
             (length -1 is SQL NULL). All integers big-endian.

Encoders know nothing about files or threads; they append to a growable
buffer that BatchBuilder hands off once it is full.
"""
import struct
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple, Union

from .records import Record

Buffer = Union[bytes, bytearray, memoryview]

COPY_SIGNATURE = b"PGCOPY\n\xff\r\n\x00"
COPY_HEADER = COPY_SIGNATURE + struct.pack(">ii", 0, 0)
COPY_TRAILER = struct.pack(">h", -1)

_INT16 = struct.Struct(">h")
_INT32 = struct.Struct(">i")
_TWO_FIELDS = _INT16.pack(2)


@dataclass
class Batch:
    """Encoded bytes for zero or more whole records."""
    data: Union[bytes, bytearray]
    rows: int

    def __len__(self) -> int:
        return len(self.data)


# LEB128

def write_varint(out: bytearray, value: int) -> None:
    """Append value as an unsigned LEB128 varint."""
    if value < 0:
        raise ValueError(f"varint must be non-negative, got {value}")
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return


def read_varint(data: Buffer, pos: int) -> Tuple[int, int]:
    """Decode a varint at pos; returns (value, position after it)."""
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("Truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7


class RowBinaryEncoder:
    """(String, String) rows in ClickHouse RowBinary."""

    name = "RowBinary"
    prefix = b""
    suffix = b""

    def encode(self, key: bytes, value: bytes, out: bytearray) -> None:
        write_varint(out, len(key))
        out += key
        write_varint(out, len(value))
        out += value

    def decode(self, data: Buffer) -> Iterator[Record]:
        view = memoryview(data)
        pos = 0
        end = len(view)
        while pos < end:
            fields = []
            for _ in range(2):
                length, pos = read_varint(view, pos)
                if pos + length > end:
                    raise ValueError(f"Field of length {length} at {pos} runs past end of batch")
                fields.append(bytes(view[pos:pos + length]))
                pos += length
            yield fields[0], fields[1]


class CopyBinaryEncoder:
    """(bytea, bytea) tuples in PostgreSQL binary COPY framing."""

    name = "COPY BINARY"
    prefix = COPY_HEADER
    suffix = COPY_TRAILER

    def encode(self, key: bytes, value: bytes, out: bytearray) -> None:
        out += _TWO_FIELDS
        out += _INT32.pack(len(key))
        out += key
        out += _INT32.pack(len(value))
        out += value

    def decode(self, data: Buffer) -> Iterator[Record]:
        for row in iter_copy_tuples(data, with_header=False):
            if len(row) != 2 or row[0] is None or row[1] is None:
                raise ValueError(f"Expected two non-null fields, got {row!r}")
            yield row[0], row[1]


def iter_copy_tuples(
    data: Buffer,
    with_header: bool = True
) -> Iterator[Tuple[Optional[bytes], ...]]:
    """
    Parse binary COPY data into tuples of fields (None for NULL).

    Stops at the -1 trailer or at the end of data.
    """
    view = memoryview(data)
    pos = 0

    if with_header:
        if bytes(view[:len(COPY_SIGNATURE)]) != COPY_SIGNATURE:
            raise ValueError("Missing binary COPY signature")
        pos = len(COPY_SIGNATURE)
        _flags, extension = struct.unpack_from(">ii", view, pos)
        pos += 8 + extension

    while pos < len(view):
        (count,) = _INT16.unpack_from(view, pos)
        pos += _INT16.size
        if count == -1:
            return
        fields = []
        for _ in range(count):
            (length,) = _INT32.unpack_from(view, pos)
            pos += _INT32.size
            if length == -1:
                fields.append(None)
                continue
            if pos + length > len(view):
                raise ValueError(f"Field of length {length} at {pos} runs past end of data")
            fields.append(bytes(view[pos:pos + length]))
            pos += length
        yield tuple(fields)


class BatchBuilder:
    """
    Accumulates encoded records until a row or byte threshold is reached.

    add() returns the finished Batch when the buffer fills, otherwise None;
    flush() returns whatever is left. A returned batch's buffer is never
    touched again by the builder.
    """

    def __init__(self, encoder, max_rows: int, max_bytes: int):
        self.encoder = encoder
        self.max_rows = max_rows
        self.max_bytes = max_bytes
        self._buffer = bytearray()
        self._rows = 0

    def add(self, key: bytes, value: bytes) -> Optional[Batch]:
        self.encoder.encode(key, value, self._buffer)
        self._rows += 1
        if self._rows >= self.max_rows or len(self._buffer) >= self.max_bytes:
            return self._take()
        return None

    def flush(self) -> Optional[Batch]:
        if self._rows == 0:
            return None
        return self._take()

    def _take(self) -> Batch:
        batch = Batch(self._buffer, self._rows)
        self._buffer = bytearray()
        self._rows = 0
        return batch
