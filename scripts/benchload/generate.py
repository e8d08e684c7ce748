"""
Synthetic input generation for benchmarks and tests.
"""
import random
import struct
from pathlib import Path
from typing import Optional, Union

from tqdm import tqdm

from .config import GENSORT_RECORD_SIZE
from .logger import get_logger
from .partition import index_path_for
from .records import pack_variable_record

WRITE_BUFFER = 16 * 1024 * 1024

_OFFSET = struct.Struct("<Q")


def generate_gensort(
    path: Union[str, Path],
    num_records: int,
    seed: Optional[int] = None,
    progress: bool = False
) -> int:
    """Write num_records random 100-byte records; returns bytes written."""
    logger = get_logger()
    rng = random.Random(seed)
    path = Path(path)

    with open(path, "wb", buffering=WRITE_BUFFER) as fh:
        for _ in tqdm(range(num_records), desc="Generating", unit="rec", disable=not progress):
            fh.write(rng.randbytes(GENSORT_RECORD_SIZE))

    size = num_records * GENSORT_RECORD_SIZE
    logger.success("Generation complete", output=str(path), records=num_records, bytes=size)
    return size


def generate_kvbin(
    path: Union[str, Path],
    num_records: int,
    index_every: int = 0,
    max_key_size: int = 32,
    max_value_size: int = 256,
    seed: Optional[int] = None,
    progress: bool = False
) -> int:
    """
    Write num_records random kvbin records; returns bytes written.

    With index_every > 0 the start offset of every index_every-th record is
    written to the companion index file.
    """
    logger = get_logger()
    rng = random.Random(seed)
    path = Path(path)
    offsets = []
    position = 0

    with open(path, "wb", buffering=WRITE_BUFFER) as fh:
        for i in tqdm(range(num_records), desc="Generating", unit="rec", disable=not progress):
            if index_every > 0 and i % index_every == 0:
                offsets.append(position)
            key = rng.randbytes(rng.randint(1, max_key_size))
            value = rng.randbytes(rng.randint(0, max_value_size))
            record = pack_variable_record(key, value)
            fh.write(record)
            position += len(record)

    if index_every > 0:
        index_path = index_path_for(path)
        with open(index_path, "wb") as fh:
            for offset in offsets:
                fh.write(_OFFSET.pack(offset))
        logger.info("Index written", path=str(index_path), entries=len(offsets))

    logger.success("Generation complete", output=str(path), records=num_records, bytes=position)
    return position
