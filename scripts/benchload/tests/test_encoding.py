"""Tests for the wire encodings and batch building."""

import struct

import pytest

from benchload.encoding import (
    COPY_HEADER,
    COPY_SIGNATURE,
    COPY_TRAILER,
    BatchBuilder,
    CopyBinaryEncoder,
    RowBinaryEncoder,
    iter_copy_tuples,
    read_varint,
    write_varint,
)

BINARY_KEY = bytes([0x00, 0xFF, 0x80, 0x7F, 0x01, 0xFE, 0x10, 0xEF, 0x55, 0xAA])


def _varint(value: int) -> bytes:
    out = bytearray()
    write_varint(out, value)
    return bytes(out)


class TestVarint:
    """Test cases for LEB128 varints."""

    @pytest.mark.parametrize(
        "value, encoded",
        [
            (0, b"\x00"),
            (1, b"\x01"),
            (90, b"\x5a"),
            (127, b"\x7f"),
            (128, b"\x80\x01"),
            (300, b"\xac\x02"),
            (16383, b"\xff\x7f"),
            (16384, b"\x80\x80\x01"),
        ],
    )
    def test_known_encodings(self, value: int, encoded: bytes) -> None:
        assert _varint(value) == encoded
        assert read_varint(encoded, 0) == (value, len(encoded))

    def test_large_values_have_no_limit(self) -> None:
        value = 2 ** 70 + 5
        encoded = _varint(value)

        assert read_varint(encoded, 0) == (value, len(encoded))
        assert all(b & 0x80 for b in encoded[:-1])
        assert not encoded[-1] & 0x80

    def test_negative_rejected(self) -> None:
        with pytest.raises(ValueError):
            write_varint(bytearray(), -1)

    def test_truncated_varint(self) -> None:
        with pytest.raises(ValueError, match="Truncated varint"):
            read_varint(b"\x80\x80", 0)

    def test_reads_from_offset(self) -> None:
        assert read_varint(b"xx\xac\x02yy", 2) == (300, 4)


class TestRowBinaryEncoder:
    """Test cases for the RowBinary row codec."""

    def test_layout(self) -> None:
        out = bytearray()
        RowBinaryEncoder().encode(b"ab", b"", out)

        assert bytes(out) == b"\x02ab\x00"

    def test_gensort_record_layout(self) -> None:
        out = bytearray()
        RowBinaryEncoder().encode(b"K" * 10, b"P" * 90, out)

        assert bytes(out) == b"\x0a" + b"K" * 10 + b"\x5a" + b"P" * 90

    def test_long_field_uses_multibyte_length(self) -> None:
        out = bytearray()
        RowBinaryEncoder().encode(b"k", b"v" * 200, out)

        assert bytes(out[:4]) == b"\x01k\xc8\x01"

    def test_decode_preserves_binary_bytes(self) -> None:
        encoder = RowBinaryEncoder()
        records = [(BINARY_KEY, bytes(i % 256 for i in range(90))), (b"", b"\x00" * 300)]
        out = bytearray()
        for key, value in records:
            encoder.encode(key, value, out)

        assert list(encoder.decode(out)) == records

    def test_decode_rejects_field_past_end(self) -> None:
        with pytest.raises(ValueError):
            list(RowBinaryEncoder().decode(b"\x05ab"))


class TestCopyBinaryEncoder:
    """Test cases for PostgreSQL binary COPY framing."""

    def test_header_and_trailer(self) -> None:
        assert COPY_SIGNATURE == b"PGCOPY\n\xff\r\n\x00"
        assert COPY_HEADER == COPY_SIGNATURE + b"\x00" * 8
        assert COPY_TRAILER == b"\xff\xff"

    def test_tuple_layout(self) -> None:
        out = bytearray()
        CopyBinaryEncoder().encode(b"ab", b"xyz", out)

        assert bytes(out) == (
            b"\x00\x02" + b"\x00\x00\x00\x02ab" + b"\x00\x00\x00\x03xyz"
        )

    def test_full_stream_parses(self) -> None:
        encoder = CopyBinaryEncoder()
        body = bytearray()
        records = [(b"AAAAAAAAAA", b"1" * 90), (BINARY_KEY, b"")]
        for key, value in records:
            encoder.encode(key, value, body)
        stream = encoder.prefix + bytes(body) + encoder.suffix

        assert list(iter_copy_tuples(stream)) == records

    def test_parser_handles_header_extension_and_null(self) -> None:
        stream = (
            COPY_SIGNATURE
            + struct.pack(">ii", 0, 4)
            + b"EXTN"
            + struct.pack(">h", 2)
            + struct.pack(">i", -1)
            + struct.pack(">i", 1) + b"z"
            + COPY_TRAILER
            + b"ignored after trailer"
        )

        assert list(iter_copy_tuples(stream)) == [(None, b"z")]

    def test_parser_requires_signature(self) -> None:
        with pytest.raises(ValueError, match="signature"):
            list(iter_copy_tuples(b"NOTCOPY" + b"\x00" * 20))

    def test_decode_rejects_null_fields(self) -> None:
        body = struct.pack(">h", 2) + struct.pack(">i", -1) + struct.pack(">i", 0)

        with pytest.raises(ValueError):
            list(CopyBinaryEncoder().decode(body))


class TestBatchBuilder:
    """Test cases for BatchBuilder."""

    def test_hands_off_at_row_threshold(self) -> None:
        builder = BatchBuilder(RowBinaryEncoder(), max_rows=3, max_bytes=1 << 20)

        assert builder.add(b"a", b"1") is None
        assert builder.add(b"b", b"2") is None
        batch = builder.add(b"c", b"3")

        assert batch is not None
        assert batch.rows == 3
        assert list(RowBinaryEncoder().decode(batch.data)) == [
            (b"a", b"1"), (b"b", b"2"), (b"c", b"3")
        ]
        assert builder.flush() is None

    def test_hands_off_at_byte_threshold(self) -> None:
        builder = BatchBuilder(RowBinaryEncoder(), max_rows=1000, max_bytes=10)

        assert builder.add(b"k", b"v") is None
        batch = builder.add(b"k", b"v" * 10)

        assert batch is not None and batch.rows == 2
        assert len(batch) >= 10

    def test_flush_returns_remainder(self) -> None:
        builder = BatchBuilder(CopyBinaryEncoder(), max_rows=10, max_bytes=1 << 20)
        builder.add(b"k", b"v")

        batch = builder.flush()

        assert batch.rows == 1
        assert builder.flush() is None

    def test_handed_off_buffer_is_not_reused(self) -> None:
        builder = BatchBuilder(RowBinaryEncoder(), max_rows=1, max_bytes=1 << 20)

        first = builder.add(b"a", b"1")
        snapshot = bytes(first.data)
        second = builder.add(b"b", b"2")

        assert first.data is not second.data
        assert bytes(first.data) == snapshot
