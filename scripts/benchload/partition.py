"""
Partition planning.

Splits an input file into disjoint, record-aligned ranges, one per producer
thread. Plans are computed once, before any thread starts, and never change.
"""
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .config import (
    FORMAT_GENSORT,
    FORMAT_KVBIN,
    GENSORT_RECORD_SIZE,
    INDEX_SUFFIX,
)
from .logger import get_logger
from .records import (
    DEFAULT_BUFFER,
    FixedRecordReader,
    MemoryRecordReader,
    Record,
    VariableRecordReader,
    read_all_variable,
)

UNIT_RECORDS = "records"
UNIT_BYTES = "bytes"

_OFFSET = struct.Struct("<Q")


@dataclass(frozen=True)
class Partition:
    """Half-open range [start, end) owned by one producer; end=None reads to EOF."""
    index: int
    start: int
    end: Optional[int]
    unit: str


@dataclass
class PartitionPlan:
    """Result of planning one input file."""
    input_format: str
    path: Path
    file_size: int
    partitions: List[Partition]
    expected_records: Optional[int] = None
    sequential: bool = False
    fallback_reason: Optional[str] = None
    records: Optional[List[Record]] = field(default=None, repr=False)

    def open_reader(self, partition: Partition, buffer_size: int = DEFAULT_BUFFER):
        """Build the record reader for one partition of this plan."""
        if self.records is not None:
            return MemoryRecordReader(self.records, partition.start, partition.end)
        if self.input_format == FORMAT_GENSORT:
            return FixedRecordReader(self.path, partition.start, partition.end, buffer_size)
        return VariableRecordReader(self.path, partition.start, partition.end, buffer_size)


def plan_ranges(total_units: int, num_threads: int) -> List[Tuple[int, int]]:
    """
    Split [0, total_units) into at most num_threads contiguous ranges.

    Uses ceiling division, so every range but the last has the same size and
    threads whose start would fall at or past the end get no range at all.
    """
    if num_threads < 1:
        raise ValueError(f"num_threads must be >= 1, got {num_threads}")
    if total_units <= 0:
        return []

    per_thread = -(-total_units // num_threads)
    ranges = []
    for thread_id in range(num_threads):
        start = thread_id * per_thread
        if start >= total_units:
            break
        end = min((thread_id + 1) * per_thread, total_units)
        ranges.append((start, end))
    return ranges


def index_path_for(path: Union[str, Path]) -> Path:
    """Companion offset index location for a kvbin file."""
    return Path(str(path) + INDEX_SUFFIX)


def load_offset_index(index_path: Union[str, Path], file_size: int) -> List[int]:
    """
    Read a u64-LE offset index into a sorted, deduplicated list of record
    starts that always begins with 0 and ends with file_size.

    Entries outside (0, file_size) are dropped; a trailing partial entry is
    ignored.
    """
    logger = get_logger()
    data = Path(index_path).read_bytes()

    usable = len(data) - len(data) % _OFFSET.size
    if usable != len(data):
        logger.warning(
            "Ignoring partial trailing index entry",
            index=str(index_path),
            extra_bytes=len(data) - usable,
        )

    offsets = {0, file_size}
    dropped = 0
    for (offset,) in _OFFSET.iter_unpack(data[:usable]):
        if 0 < offset < file_size:
            offsets.add(offset)
        elif offset != 0:
            dropped += 1

    if dropped:
        logger.debug("Filtered out-of-range index entries", count=dropped)

    return sorted(offsets)


def plan_fixed(path: Union[str, Path], num_threads: int) -> PartitionPlan:
    """Plan a gensort file by record arithmetic."""
    logger = get_logger()
    path = Path(path)
    file_size = path.stat().st_size
    total_records = file_size // GENSORT_RECORD_SIZE

    trailing = file_size % GENSORT_RECORD_SIZE
    if trailing:
        logger.warning(
            "Ignoring trailing partial record",
            path=str(path),
            bytes=trailing,
        )

    partitions = [
        Partition(i, start, end, UNIT_RECORDS)
        for i, (start, end) in enumerate(plan_ranges(total_records, num_threads))
    ]
    return PartitionPlan(
        input_format=FORMAT_GENSORT,
        path=path,
        file_size=file_size,
        partitions=partitions,
        expected_records=total_records,
        sequential=len(partitions) <= 1,
    )


def plan_variable(
    path: Union[str, Path],
    num_threads: int,
    index_path: Optional[Union[str, Path]] = None,
    preload: bool = False
) -> PartitionPlan:
    """
    Plan a kvbin file.

    With an offset index, ranges are taken over index positions and mapped to
    byte offsets, so every boundary is a record start. Without one, the file
    is read by a single sequential partition, or, when preload is set,
    loaded into memory and split by record count.
    """
    logger = get_logger()
    path = Path(path)
    file_size = path.stat().st_size
    index_path = Path(index_path) if index_path else index_path_for(path)

    if num_threads == 1:
        return PartitionPlan(
            input_format=FORMAT_KVBIN,
            path=path,
            file_size=file_size,
            partitions=[Partition(0, 0, None, UNIT_BYTES)],
            sequential=True,
        )

    if not index_path.exists():
        if preload:
            logger.warning(
                "No index file found, reading whole file into memory",
                path=str(path),
                size=file_size,
            )
            records = read_all_variable(path)
            partitions = [
                Partition(i, start, end, UNIT_RECORDS)
                for i, (start, end) in enumerate(plan_ranges(len(records), num_threads))
            ]
            return PartitionPlan(
                input_format=FORMAT_KVBIN,
                path=path,
                file_size=file_size,
                partitions=partitions,
                expected_records=len(records),
                sequential=len(partitions) <= 1,
                records=records,
            )

        reason = f"no index file at {index_path}"
        logger.warning(
            "Falling back to sequential loading",
            reason=reason,
            requested_threads=num_threads,
        )
        return PartitionPlan(
            input_format=FORMAT_KVBIN,
            path=path,
            file_size=file_size,
            partitions=[Partition(0, 0, None, UNIT_BYTES)],
            sequential=True,
            fallback_reason=reason,
        )

    offsets = load_offset_index(index_path, file_size)
    logger.info(
        "Index loaded",
        offset_points=len(offsets),
        threads=num_threads,
    )

    partitions = [
        Partition(i, offsets[start], offsets[end], UNIT_BYTES)
        for i, (start, end) in enumerate(plan_ranges(len(offsets) - 1, num_threads))
    ]
    return PartitionPlan(
        input_format=FORMAT_KVBIN,
        path=path,
        file_size=file_size,
        partitions=partitions,
        sequential=len(partitions) <= 1,
    )


def plan_input(
    input_format: str,
    path: Union[str, Path],
    num_threads: int,
    preload: bool = False
) -> PartitionPlan:
    """Plan any supported input format."""
    if input_format == FORMAT_GENSORT:
        return plan_fixed(path, num_threads)
    if input_format == FORMAT_KVBIN:
        return plan_variable(path, num_threads, preload=preload)
    raise ValueError(f"Unknown input format: {input_format}")
