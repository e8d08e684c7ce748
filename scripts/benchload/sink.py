"""
Destination sink abstraction.

A sink drains one bounded channel and reports how many rows the destination
accepted. Two disciplines share that contract:

    DirectAppendSink     - consumer owns a local handle and appends each
                           decoded batch, committing every few batches
    StreamingUploadSink  - the channel is exposed as a pull byte stream and
                           handed to a client as one request/COPY body

Sinks also run the engine-side sort of a loaded table.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .channel import BoundedChannel, ChannelReader
from .config import (
    LoaderConfig,
    MSG_ROLLBACK,
    SINK_CLICKHOUSE,
    SINK_DUCKDB,
    SINK_POSTGRES,
    SINKS,
)
from .encoding import Batch, RowBinaryEncoder
from .logger import get_logger
from .metrics import MetricsCollector, RowCounter


class SinkError(RuntimeError):
    """The destination rejected an operation; message is its diagnostic."""


@dataclass
class SortRequest:
    """Engine-side sort parameters. Unset values keep engine defaults."""
    output: Optional[Path] = None
    memory_limit: Optional[str] = None
    offset: int = 0
    threads: Optional[int] = None
    temp_dir: Optional[str] = None
    work_mem: Optional[str] = None
    temp_tablespace: Optional[str] = None


@dataclass
class SortResult:
    rows: int
    seconds: float
    output: Optional[Path] = None


class Sink:
    """Base class for all destinations."""

    name = "sink"
    encoder = RowBinaryEncoder()

    # True when consume() may run concurrently, one channel per partition
    supports_lanes = False

    def __init__(self, config: LoaderConfig, metrics: Optional[MetricsCollector] = None):
        self.config = config
        self.metrics = metrics or MetricsCollector()
        self.logger = get_logger()

    def prepare(self) -> None:
        """Create the destination table if needed."""
        raise NotImplementedError

    def consume(self, channel: BoundedChannel, counter: RowCounter) -> int:
        """Drain the channel into the destination; returns rows accepted."""
        raise NotImplementedError

    def sort(self, request: SortRequest) -> SortResult:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class DirectAppendSink(Sink):
    """
    Single consumer appending decoded batches through one local handle.

    Subclasses implement begin/write_batch/commit/rollback. A commit happens
    every `flush_every` batches and once more at end of stream; a failure
    rolls back only the batches since the last commit.
    """

    def begin(self) -> None:
        raise NotImplementedError

    def write_batch(self, batch: Batch) -> None:
        raise NotImplementedError

    def commit(self) -> None:
        raise NotImplementedError

    def rollback(self) -> None:
        raise NotImplementedError

    def finish(self) -> None:
        """Hook run after the final commit."""

    def consume(self, channel: BoundedChannel, counter: RowCounter) -> int:
        flush_every = self.config.flush_every
        batches = 0
        rows = 0

        self.begin()
        try:
            for batch in channel:
                self.write_batch(batch)
                batches += 1
                rows += batch.rows
                counter.add(batch.rows)
                self.metrics.record_count("encoded_bytes", len(batch))

                if batches % flush_every == 0:
                    self.commit()
                    self.begin()

            self.commit()
        except Exception:
            self.logger.warning(MSG_ROLLBACK, sink=self.name, batches=batches)
            self.rollback()
            raise

        self.finish()
        self.logger.debug("Direct append finished", sink=self.name, batches=batches, rows=rows)
        return rows


class StreamingUploadSink(Sink):
    """
    Streams the channel as a single request body.

    upload() receives a ChannelReader already framed with the encoder's
    prefix and suffix and returns the row count the destination accepted.
    """

    def upload(self, stream: ChannelReader) -> int:
        raise NotImplementedError

    def open_stream(self, channel: BoundedChannel, counter: RowCounter) -> ChannelReader:
        return ChannelReader(
            channel,
            counter,
            prefix=self.encoder.prefix,
            suffix=self.encoder.suffix,
        )

    def consume(self, channel: BoundedChannel, counter: RowCounter) -> int:
        stream = self.open_stream(channel, counter)
        accepted = self.upload(stream)
        self.metrics.record_count("encoded_bytes", stream.bytes_served)
        return accepted


def make_sink(
    name: str,
    config: LoaderConfig,
    metrics: Optional[MetricsCollector] = None,
    **options
) -> Sink:
    """Build the sink registered under `name`."""
    if name == SINK_DUCKDB:
        from .duckdb_sink import DuckDBSink
        return DuckDBSink(config, metrics, **options)
    if name == SINK_CLICKHOUSE:
        from .clickhouse import ClickHouseSink
        return ClickHouseSink(config, metrics, **options)
    if name == SINK_POSTGRES:
        from .database import PostgresSink
        return PostgresSink(config, metrics, **options)
    raise ValueError(f"Unknown sink {name!r}, expected one of: {', '.join(SINKS)}")
