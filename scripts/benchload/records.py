"""
Record readers for the two input formats.

gensort: consecutive 100-byte slots, 10-byte key + 90-byte payload.
kvbin:   consecutive `u32-LE keylen, key, u32-LE vallen, value` records.

Readers are iterables of (key, value) over one partition of a file and
own their file handle; open them with `with`.
"""
import os
import struct
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple, Union

from .config import GENSORT_KEY_SIZE, GENSORT_RECORD_SIZE, ERR_TRUNCATED

Record = Tuple[bytes, bytes]

_LEN = struct.Struct("<I")
DEFAULT_BUFFER = 4 * 1024 * 1024


class RecordFormatError(ValueError):
    """Input is malformed: truncated record or a record crossing its partition."""


def pack_variable_record(key: bytes, value: bytes) -> bytes:
    """Encode one kvbin record as it appears on disk."""
    return _LEN.pack(len(key)) + key + _LEN.pack(len(value)) + value


class _FileReader:
    """Shared file handling for the on-disk readers."""

    def __init__(self, path: Union[str, Path], buffer_size: int = DEFAULT_BUFFER):
        self.path = Path(path)
        self.buffer_size = buffer_size
        self.records_read = 0
        self.bytes_read = 0
        self._fh = None

    def open(self):
        if self._fh is None:
            self._fh = open(self.path, "rb", buffering=self.buffer_size)
        return self

    def close(self):
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _read(self, size: int) -> bytes:
        if self._fh is None:
            self.open()
        return self._fh.read(size)


class FixedRecordReader(_FileReader):
    """Reads gensort records [start_record, end_record)."""

    def __init__(
        self,
        path: Union[str, Path],
        start_record: int,
        end_record: int,
        buffer_size: int = DEFAULT_BUFFER
    ):
        super().__init__(path, buffer_size)
        if start_record < 0 or end_record < start_record:
            raise ValueError(f"Invalid record range [{start_record}, {end_record})")
        self.start_record = start_record
        self.end_record = end_record

    def __iter__(self) -> Iterator[Record]:
        self.open()
        self._fh.seek(self.start_record * GENSORT_RECORD_SIZE)

        for index in range(self.start_record, self.end_record):
            raw = self._read(GENSORT_RECORD_SIZE)
            if len(raw) != GENSORT_RECORD_SIZE:
                raise RecordFormatError(
                    f"{ERR_TRUNCATED} {index} in {self.path}: "
                    f"expected {GENSORT_RECORD_SIZE} bytes, got {len(raw)}"
                )
            self.records_read += 1
            self.bytes_read += GENSORT_RECORD_SIZE
            yield raw[:GENSORT_KEY_SIZE], raw[GENSORT_KEY_SIZE:]


class VariableRecordReader(_FileReader):
    """
    Reads kvbin records from start_offset.

    With end_offset set the partition is bounded: it must end exactly on a
    record boundary and any short read before that is fatal. Without it the
    reader runs to end of file and a clean EOF between records ends the
    partition.
    """

    def __init__(
        self,
        path: Union[str, Path],
        start_offset: int = 0,
        end_offset: Optional[int] = None,
        buffer_size: int = DEFAULT_BUFFER
    ):
        super().__init__(path, buffer_size)
        if start_offset < 0 or (end_offset is not None and end_offset < start_offset):
            raise ValueError(f"Invalid byte range [{start_offset}, {end_offset})")
        self.start_offset = start_offset
        self.end_offset = end_offset

    def _read_field(
        self,
        record_start: int,
        field_start: int,
        limit: int,
        what: str,
        header: Optional[bytes] = None
    ) -> bytes:
        if header is None:
            header = self._read(_LEN.size)
        if len(header) != _LEN.size:
            raise RecordFormatError(
                f"{ERR_TRUNCATED} at offset {record_start} in {self.path}: "
                f"incomplete {what} length"
            )
        (length,) = _LEN.unpack(header)

        # Field must end within the partition, or the file when unbounded
        data_start = field_start + _LEN.size
        if data_start + length > limit:
            if self.end_offset is not None:
                raise RecordFormatError(
                    f"Record at offset {record_start} in {self.path}: "
                    f"{what} length {length} crosses partition end {limit}"
                )
            raise RecordFormatError(
                f"{ERR_TRUNCATED} at offset {record_start} in {self.path}: "
                f"{what} length {length} points past end of file"
            )

        data = self._read(length)
        if len(data) != length:
            raise RecordFormatError(
                f"{ERR_TRUNCATED} at offset {record_start} in {self.path}: "
                f"{what} length {length} points past end of file"
            )
        return data

    def __iter__(self) -> Iterator[Record]:
        self.open()
        self._fh.seek(self.start_offset)
        position = self.start_offset
        end = self.end_offset
        limit = end if end is not None else os.fstat(self._fh.fileno()).st_size

        while end is None or position < end:
            header = self._read(_LEN.size)
            if not header and end is None:
                # Clean EOF at a record start
                return

            key = self._read_field(position, position, limit, "key", header)
            value = self._read_field(position, position + _LEN.size + len(key), limit, "value")
            size = 2 * _LEN.size + len(key) + len(value)
            position += size
            self.records_read += 1
            self.bytes_read += size
            yield key, value


class MemoryRecordReader:
    """Iterates a slice of records already held in memory."""

    def __init__(self, records: Sequence[Record], start: int, end: int):
        self.records = records
        self.start = start
        self.end = end
        self.records_read = 0
        self.bytes_read = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def __iter__(self) -> Iterator[Record]:
        for index in range(self.start, self.end):
            key, value = self.records[index]
            self.records_read += 1
            self.bytes_read += 2 * _LEN.size + len(key) + len(value)
            yield key, value


def read_all_variable(path: Union[str, Path], buffer_size: int = DEFAULT_BUFFER) -> List[Record]:
    """Load every kvbin record of a file into memory."""
    with VariableRecordReader(path, buffer_size=buffer_size) as reader:
        return list(reader)
