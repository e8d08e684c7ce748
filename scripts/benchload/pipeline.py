"""
Load pipeline and aggregator.

Producers (one per partition) feed a bounded channel drained by a single
sink consumer. With a sink that supports lanes and connection_per_partition
set, every partition gets its own channel and consumer instead, and the
aggregator sums the lanes.

All workers are joined before anything is reported. The failure reported is
the root cause recorded on a channel; secondary "channel aborted" errors from
peers are logged at debug level only.
"""
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional

from .channel import BoundedChannel, ChannelClosedError
from .config import (
    ERR_COUNT_MISMATCH,
    KIND_FAILED,
    KIND_PANICKED,
    LoaderConfig,
    MSG_LOAD_COMPLETE,
    MSG_LOADING,
)
from .logger import get_logger
from .metrics import MetricsCollector, RowCounter
from .partition import PartitionPlan
from .processor import PartitionProducer
from .sink import Sink, SinkError

ROLE_PRODUCER = "producer"
ROLE_CONSUMER = "consumer"

# Errors a worker is expected to hit; anything else is an internal fault
EXPECTED_ERRORS = (OSError, ValueError, ChannelClosedError, SinkError)


class WorkerError(RuntimeError):
    """A producer or consumer thread stopped with an error."""

    def __init__(self, role: str, index: int, kind: str, cause: BaseException):
        self.role = role
        self.index = index
        self.kind = kind
        self.cause = cause
        if role == ROLE_PRODUCER:
            label = f"Thread {index}"
        else:
            label = f"Consumer {index}"
        super().__init__(f"{label} {kind}: {cause}")


class RowCountMismatchError(RuntimeError):
    """Producer, consumer and planned row totals disagree."""


@dataclass
class LoadResult:
    rows: int
    source_rows: int
    partitions: int
    lanes: int
    elapsed: float
    sequential: bool = False
    fallback_reason: Optional[str] = None

    @property
    def rows_per_second(self) -> float:
        return self.rows / self.elapsed if self.elapsed > 0 else 0.0


@dataclass
class _Lane:
    """One channel, its producers and the consumer draining it."""
    index: int
    channel: BoundedChannel
    producers: List[PartitionProducer]
    consumer: Optional[Future] = None
    producer_futures: Optional[List[Future]] = None


def classify_failure(role: str, index: int, error: BaseException) -> WorkerError:
    kind = KIND_FAILED if isinstance(error, EXPECTED_ERRORS) else KIND_PANICKED
    return WorkerError(role, index, kind, error)


class LoadPipeline:
    """Runs one load of a planned input into a sink."""

    def __init__(
        self,
        config: LoaderConfig,
        plan: PartitionPlan,
        sink: Sink,
        metrics: Optional[MetricsCollector] = None
    ):
        self.config = config
        self.plan = plan
        self.sink = sink
        self.metrics = metrics or MetricsCollector()
        self.logger = get_logger()
        self.counter = RowCounter(config.progress_every, self._report_progress)

    @property
    def use_lanes(self) -> bool:
        return (
            self.config.connection_per_partition
            and self.sink.supports_lanes
            and len(self.plan.partitions) > 1
        )

    def _report_progress(self, milestones: int):
        rows = milestones * self.config.progress_every
        if rows % 1_000_000 == 0:
            self.logger.info(f"Uploaded ~{rows // 1_000_000} million records...")
        else:
            self.logger.info(f"Uploaded ~{rows} records...")

    def _producer(self, partition, channel: BoundedChannel) -> PartitionProducer:
        return PartitionProducer(
            self.plan,
            partition,
            channel,
            self.sink.encoder,
            self.config,
            self.metrics,
        )

    def _build_lanes(self) -> List[_Lane]:
        partitions = self.plan.partitions
        if self.use_lanes:
            lanes = []
            for partition in partitions:
                channel = BoundedChannel(self.config.channel_capacity(1), producers=1)
                lanes.append(_Lane(partition.index, channel, [self._producer(partition, channel)]))
            return lanes

        channel = BoundedChannel(
            self.config.channel_capacity(len(partitions)),
            producers=len(partitions),
        )
        return [_Lane(0, channel, [self._producer(p, channel) for p in partitions])]

    def _consume(self, channel: BoundedChannel) -> int:
        try:
            return self.sink.consume(channel, self.counter)
        except BaseException as e:
            channel.abort(e)
            raise

    def _abort_all(self, lanes: List[_Lane], reason: BaseException):
        for lane in lanes:
            lane.channel.abort(reason)

    def run(self) -> LoadResult:
        """Load every partition; raises WorkerError or RowCountMismatchError on failure."""
        plan = self.plan
        self.logger.info(
            MSG_LOADING,
            sink=self.sink.name,
            input=str(plan.path),
            partitions=len(plan.partitions),
            threads=self.config.thread_count,
        )

        self.sink.prepare()
        lanes = self._build_lanes()
        workers = sum(len(lane.producers) for lane in lanes) + len(lanes)

        self.metrics.start_timer("load")
        start = time.perf_counter()

        producer_rows: List[int] = []
        consumer_rows: List[int] = []
        failures: List[WorkerError] = []

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="benchload") as executor:
            for lane in lanes:
                lane.consumer = executor.submit(self._consume, lane.channel)
                lane.producer_futures = [executor.submit(p.run) for p in lane.producers]

            try:
                for lane in lanes:
                    for producer, future in zip(lane.producers, lane.producer_futures):
                        try:
                            producer_rows.append(future.result())
                        except Exception as e:
                            failures.append(
                                classify_failure(ROLE_PRODUCER, producer.partition.index, e)
                            )
                    try:
                        consumer_rows.append(lane.consumer.result())
                    except Exception as e:
                        failures.append(classify_failure(ROLE_CONSUMER, lane.index, e))
            except BaseException as e:
                # Interrupted while joining: release blocked workers before the pool waits on them
                self._abort_all(lanes, e)
                raise

        elapsed = time.perf_counter() - start
        self.metrics.stop_timer("load")

        if failures:
            failure = self._root_failure(lanes, failures)
            raise failure from failure.cause

        source_rows = sum(producer_rows)
        rows = sum(consumer_rows)
        self._verify(source_rows, rows)

        self.metrics.record_count("rows_loaded", rows)
        self.logger.success(
            MSG_LOAD_COMPLETE,
            rows=rows,
            seconds=f"{elapsed:.2f}",
            lanes=len(lanes),
        )
        return LoadResult(
            rows=rows,
            source_rows=source_rows,
            partitions=len(plan.partitions),
            lanes=len(lanes),
            elapsed=elapsed,
            sequential=plan.sequential,
            fallback_reason=plan.fallback_reason,
        )

    def _root_failure(self, lanes: List[_Lane], failures: List[WorkerError]) -> WorkerError:
        roots = [lane.channel.abort_reason for lane in lanes if lane.channel.abort_reason]
        chosen = None
        for root in roots:
            chosen = next((f for f in failures if f.cause is root), None)
            if chosen is not None:
                break
        if chosen is None:
            chosen = failures[0]

        for failure in failures:
            if failure is not chosen:
                self.logger.debug("Secondary worker failure", error=str(failure))
        self.logger.error("Load failed", error=str(chosen), kind=chosen.kind)
        return chosen

    def _verify(self, source_rows: int, rows: int):
        expected = self.plan.expected_records
        if rows != source_rows:
            raise RowCountMismatchError(
                f"{ERR_COUNT_MISMATCH}: producers sent {source_rows}, sink accepted {rows}"
            )
        if expected is not None and source_rows != expected:
            raise RowCountMismatchError(
                f"{ERR_COUNT_MISMATCH}: planned {expected} records, producers sent {source_rows}"
            )
        if self.counter.value != rows:
            raise RowCountMismatchError(
                f"{ERR_COUNT_MISMATCH}: counter observed {self.counter.value}, sink accepted {rows}"
            )
