"""
Producer side of the pipeline: one partition, one thread.
Reads records, encodes them into batches and pushes them into the channel.
"""
from typing import Optional

from .channel import BoundedChannel
from .config import LoaderConfig
from .encoding import Batch, BatchBuilder
from .logger import get_logger
from .metrics import MetricsCollector
from .partition import Partition, PartitionPlan


class PartitionProducer:
    """
    Runs reader -> encoder -> batch -> channel for a single partition.

    The producer owns its file handle and batch buffer. It always releases
    its channel handle when it stops, and aborts the channel first if it
    stops on an error so the consumer never treats a short stream as done.
    """

    def __init__(
        self,
        plan: PartitionPlan,
        partition: Partition,
        channel: BoundedChannel,
        encoder,
        config: LoaderConfig,
        metrics: Optional[MetricsCollector] = None
    ):
        self.plan = plan
        self.partition = partition
        self.channel = channel
        self.encoder = encoder
        self.config = config
        self.metrics = metrics or MetricsCollector()
        self.logger = get_logger()
        self.records = 0
        self.batches = 0

    def _push(self, batch: Batch) -> None:
        self.channel.push(batch)
        self.batches += 1

    def run(self) -> int:
        """Process the partition; returns the number of records sent."""
        builder = BatchBuilder(self.encoder, self.config.batch_rows, self.config.batch_bytes)
        try:
            with self.plan.open_reader(self.partition, self.config.read_buffer_bytes) as reader:
                for key, value in reader:
                    batch = builder.add(key, value)
                    self.records += 1
                    if batch is not None:
                        self._push(batch)

                batch = builder.flush()
                if batch is not None:
                    self._push(batch)

                self.metrics.record_count("source_bytes", reader.bytes_read)
        except BaseException as e:
            self.channel.abort(e)
            raise
        finally:
            self.channel.producer_done()

        self.metrics.record_count("records_formatted", self.records)
        self.logger.info(
            f"Thread {self.partition.index} formatted {self.records} records",
            batches=self.batches,
        )
        return self.records
